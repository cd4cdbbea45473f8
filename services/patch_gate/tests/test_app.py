from __future__ import annotations

import json

from fastapi.testclient import TestClient

from services.patch_gate.app.main import app


def test_health_and_self_test_hide_secrets(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert "app" in r.json()["roots"]

    r = client.get("/api/fs/self_test")
    body = r.json()
    assert body["enabled"] is True
    assert body["admin_token_set"] is True
    assert "test-admin-token" not in r.text
    assert body["limits"]["max_patch_bytes"] == 262_144


def test_disabled_gateway_is_404(repo, clean_env) -> None:
    clean_env.setenv("PATCH_GATE_REPO_ROOT", str(repo))
    with TestClient(app, base_url="http://localhost") as c:
        r = c.post("/api/fs/prepare", json={"root": "app", "path": "x.ts", "find": "a"})
    assert r.status_code == 404
    assert r.json()["error"] == "disabled"


def test_auth_and_host_guard(gate_env) -> None:
    with TestClient(app, base_url="http://localhost") as c:
        r = c.get("/api/fs/read", params={"root": "app", "path": "x.ts"})
        assert r.status_code == 401
        assert r.json()["error"] == "unauthorized"

    with TestClient(app, base_url="http://evil.example") as c:
        r = c.get(
            "/api/fs/read",
            params={"root": "app", "path": "x.ts"},
            headers={"Authorization": "Bearer test-admin-token"},
        )
        assert r.status_code == 403
        assert r.json()["error"] == "forbidden_host"


def test_read_and_list(client, write_file) -> None:
    write_file("app/m.ts", "a\r\nb\n")
    r = client.get("/api/fs/read", params={"root": "app", "path": "m.ts"})
    assert r.status_code == 200
    body = r.json()
    assert body["text"] == "a\r\nb\n"
    assert body["eol"] == "MIXED"
    assert body["hash"].startswith("sha256:")

    r = client.post("/api/fs/read", json={"root": "app", "path": "missing.ts"})
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"

    r = client.post("/api/fs/list", json={"root": "app"})
    assert r.status_code == 200
    assert [e["name"] for e in r.json()["entries"]] == ["m.ts"]


def test_prepare_then_apply(client, write_file, read_bytes) -> None:
    write_file("app/x.ts", "foo\nbar\n")
    r = client.post("/api/fs/prepare", json={"root": "app", "path": "x.ts", "find": "bar", "replace": "baz"})
    assert r.status_code == 200
    op = r.json()
    assert op["ok"] is True
    assert op["risk_level"] == "medium"
    assert op["approval_id"].startswith("appr_")

    dry = client.post("/api/fs/patch", json={"root": "app", "path": "x.ts", "patch_unified": op["patch_unified"]})
    assert dry.status_code == 200
    assert dry.json()["wrote"] is False
    assert dry.json()["approval_id"] == op["approval_id"]

    r = client.post(
        "/api/fs/patch",
        json={
            "root": "app",
            "path": "x.ts",
            "patch_unified": op["patch_unified"],
            "expected_hash": op["expected_hash"],
            "approval_id": op["approval_id"],
            "dry_run": False,
        },
    )
    assert r.status_code == 200
    assert r.json()["wrote"] is True
    assert r.json()["after_hash"] == op["after_hash"]
    assert read_bytes("app/x.ts") == b"foo\nbaz\n"

    again = client.post(
        "/api/fs/patch",
        json={
            "root": "app",
            "path": "x.ts",
            "patch_unified": op["patch_unified"],
            "expected_hash": op["expected_hash"],
            "approval_id": op["approval_id"],
            "dry_run": False,
        },
    )
    assert again.status_code == 409
    assert again.json()["error"] == "hash_mismatch"
    assert "hint" in again.json()


def test_replace_is_prepare_alias(client, write_file, read_bytes) -> None:
    write_file("app/x.ts", "foo\nbar\nbar\n")
    r = client.post("/api/fs/replace", json={"root": "app", "path": "x.ts", "find": "bar", "replace": "baz"})
    assert r.status_code == 409
    assert r.json()["error"] == "ambiguous_match"
    assert r.json()["matches"] == 2

    r = client.post(
        "/api/fs/replace", json={"root": "app", "path": "x.ts", "find": "bar", "replace": "baz", "mode": "all"}
    )
    assert r.status_code == 200
    assert r.json()["stats"] == {"added": 2, "removed": 2}
    assert read_bytes("app/x.ts") == b"foo\nbar\nbar\n"


def test_input_errors(client, write_file) -> None:
    write_file("app/x.ts", "foo\n")
    r = client.post("/api/fs/prepare", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_json"

    r = client.post("/api/fs/prepare", json={"root": "app"})
    assert r.status_code == 400
    assert r.json()["error"] == "missing_fields"

    r = client.post("/api/fs/prepare", json={"root": "app", "path": "x.ts", "find": "foo", "mode": "many"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_mode"

    r = client.post("/api/fs/prepare", json={"root": "app", "path": "x.ts"})
    assert r.json()["error"] == "missing_fields"

    r = client.post("/api/fs/patch", json={"root": "app", "path": "x.ts"})
    assert r.json()["error"] == "missing_fields"


def test_body_size_limits(gate_env, write_file) -> None:
    gate_env.setenv("PATCH_GATE_MAX_PATCH_BYTES", "64")
    write_file("app/x.ts", "foo\n")
    big = {"root": "app", "path": "x.ts", "find": "foo", "replace": "x" * 200}
    with TestClient(app, base_url="http://localhost") as c:
        c.headers.update({"Authorization": "Bearer test-admin-token"})
        r = c.post("/api/fs/prepare", content=json.dumps(big).encode("utf-8"))
        assert r.status_code == 413
        assert r.json()["error"] == "payload_too_large"

        r = c.post("/api/fs/patch", json={"root": "app", "path": "x.ts", "patch_unified": "x" * 200})
        assert r.status_code == 413
        assert r.json()["error"] == "patch_too_large"


def test_propose_change_with_intent(client, write_file, audit_records) -> None:
    write_file("components/Card.tsx", "old\n")
    r = client.post(
        "/api/fs/propose_change",
        json={
            "root": "components",
            "path": "Card.tsx",
            "find": "old",
            "replace": "new",
            "intent": "rename label",
            "explanation": "clearer copy",
        },
    )
    assert r.status_code == 200
    p = r.json()["proposal"]
    assert p["kind"] == "change_proposal_prepared"
    assert p["explanation"] == "clearer copy"
    assert p["risk_level"] == "low"
    assert any(rec.get("op") == "propose_change" and rec.get("intent") == "rename label" for rec in audit_records())


def test_propose_and_apply_proposal(client, write_file, read_bytes) -> None:
    write_file("lib/a.ts", "a\n")
    write_file("config/package.json", '{"v": 1}\n')
    r = client.post(
        "/api/fs/propose",
        json={
            "title": "bump",
            "explanation": "two edits",
            "ops": [
                {"root": "lib", "path": "a.ts", "find": "a", "replace": "A"},
                {"root": "config", "path": "package.json", "find": '"v": 1', "replace": '"v": 2'},
            ],
        },
    )
    assert r.status_code == 200
    proposal = r.json()
    assert proposal["risk_level"] == "high"
    assert proposal["touched_files"] == ["lib/a.ts", "config/package.json"]

    r = client.post("/api/fs/apply_proposal", json={"dry_run": False, "ops": proposal["ops"]})
    assert r.status_code == 200
    assert r.json()["applied"] == 2
    assert read_bytes("lib/a.ts") == b"A\n"
    assert read_bytes("config/package.json") == b'{"v": 2}\n'


def test_propose_invalid_op_reports_index(client, write_file) -> None:
    write_file("lib/a.ts", "a\n")
    r = client.post(
        "/api/fs/propose",
        json={"ops": [{"root": "lib", "path": "a.ts", "find": "a"}, {"root": "lib", "path": "a.ts", "find": "a", "mode": "x"}]},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_mode"
    assert r.json()["index"] == 1


def test_apply_proposal_failure_status(client, write_file) -> None:
    write_file("lib/a.ts", "a\n")
    op = client.post("/api/fs/prepare", json={"root": "lib", "path": "a.ts", "find": "a", "replace": "A"}).json()
    write_file("lib/a.ts", "a\nb\n")
    r = client.post("/api/fs/apply_proposal", json={"dry_run": False, "ops": [op]})
    assert r.status_code == 409
    body = r.json()
    assert body["ok"] is False
    assert body["error"] == "hash_mismatch"
    assert body["log"][0]["status"] == "failed"


def test_patch_and_find_replace_together_are_rejected(client, write_file, read_bytes) -> None:
    write_file("app/x.ts", "foo\nbar\n")
    diff = "--- a/x.ts\n+++ b/x.ts\n@@ -1,2 +1,2 @@\n foo\n-bar\n+qux\n"

    r = client.post(
        "/api/fs/propose_change",
        json={"root": "app", "path": "x.ts", "find": "foo", "replace": "zzz", "patch_unified": diff},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_payload"
    assert "not both" in r.json()["hint"]

    r = client.post(
        "/api/fs/propose",
        json={
            "ops": [
                {"root": "app", "path": "x.ts", "find": "foo", "replace": "FOO"},
                {"root": "app", "path": "x.ts", "replace": "zzz", "patch_unified": diff},
            ]
        },
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_payload"
    assert r.json()["index"] == 1
    assert read_bytes("app/x.ts") == b"foo\nbar\n"


def test_supplied_patch_ignores_mode(client, write_file) -> None:
    write_file("app/x.ts", "foo\nbar\n")
    diff = "--- a/x.ts\n+++ b/x.ts\n@@ -1,2 +1,2 @@\n foo\n-bar\n+qux\n"
    r = client.post(
        "/api/fs/propose_change",
        json={"root": "app", "path": "x.ts", "mode": "bogus", "patch_unified": diff},
    )
    assert r.status_code == 200
    assert r.json()["proposal"]["mode"] == "patch"


def test_blank_identity_and_empty_ops_are_missing_fields(client, write_file) -> None:
    write_file("app/x.ts", "foo\n")

    r = client.post("/api/fs/prepare", json={"root": "", "path": "x.ts", "find": "foo"})
    assert r.status_code == 400
    assert r.json()["error"] == "missing_fields"
    assert r.json()["need"] == ["root"]

    r = client.post("/api/fs/prepare", json={"root": "app", "path": "  ", "find": "foo"})
    assert r.json()["error"] == "missing_fields"
    assert r.json()["need"] == ["path"]

    r = client.post("/api/fs/patch", json={"root": "app", "path": "", "patch_unified": "@@ -1 +1 @@\n-a\n+b\n"})
    assert r.status_code == 400
    assert r.json()["error"] == "missing_fields"
    assert r.json()["need"] == ["path"]

    r = client.post("/api/fs/propose", json={"title": "t", "ops": []})
    assert r.status_code == 400
    assert r.json()["error"] == "missing_fields"
    assert r.json()["need"] == ["ops[0..n]"]

    r = client.post("/api/fs/propose", json={"ops": [{"root": "app", "path": "", "find": "foo"}]})
    assert r.json()["error"] == "missing_fields"
    assert r.json()["index"] == 0
