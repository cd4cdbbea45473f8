from __future__ import annotations

import json
import os
from typing import Any

import pytest

from services.patch_gate.app.settings import DEFAULT_ALLOWED_EXT, DEFAULT_ROOTS, RiskRules, Settings


ADMIN_TOKEN = "test-admin-token"


def make_settings(repo_root: str, **overrides: Any) -> Settings:
    state = os.path.join(repo_root, "state")
    base: dict[str, Any] = {
        "repo_root": repo_root,
        "enabled": True,
        "admin_token": ADMIN_TOKEN,
        "max_file_bytes": 1_048_576,
        "max_patch_bytes": 262_144,
        "max_list_entries": 200,
        "debug": False,
        "local_only": True,
        "audit_log_path": os.path.join(state, "fs_audit.jsonl"),
        "debug_log_path": os.path.join(state, "debug.ndjson"),
        "roots": dict(DEFAULT_ROOTS),
        "allowed_ext": list(DEFAULT_ALLOWED_EXT),
        "risk": RiskRules(),
    }
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def repo(tmp_path):
    for d in ("app", "components", "lib", "config"):
        (tmp_path / d).mkdir()
    return tmp_path


@pytest.fixture
def settings(repo) -> Settings:
    return make_settings(str(repo))


@pytest.fixture
def settings_factory(repo):
    def _make(**overrides: Any) -> Settings:
        return make_settings(str(repo), **overrides)

    return _make


@pytest.fixture
def write_file(repo):
    """Write exact bytes (no newline translation) under the repo; returns the absolute path."""

    def _write(rel: str, text: str, *, bom: bool = False) -> str:
        p = repo / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        data = ("\ufeff" if bom else "") + text
        p.write_bytes(data.encode("utf-8"))
        return str(p)

    return _write


@pytest.fixture
def read_bytes(repo):
    def _read(rel: str) -> bytes:
        return (repo / rel).read_bytes()

    return _read


@pytest.fixture
def audit_records(settings):
    def _records() -> list[dict[str, Any]]:
        if not os.path.isfile(settings.audit_log_path):
            return []
        with open(settings.audit_log_path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    return _records


_ENV_KEYS = (
    "PATCH_GATE_REPO_ROOT",
    "PATCH_GATE_ENABLE",
    "PATCH_GATE_ADMIN_TOKEN",
    "PATCH_GATE_DEBUG",
    "PATCH_GATE_MAX_FILE_BYTES",
    "PATCH_GATE_MAX_PATCH_BYTES",
    "PATCH_GATE_MAX_LIST_ENTRIES",
    "PATCH_GATE_AUDIT_LOG_PATH",
    "PATCH_GATE_DEBUG_LOG_PATH",
    "PATCH_GATE_ROOTS",
    "PATCH_GATE_RISK_HIGH_CHURN",
    "PATCH_GATE_RISK_MEDIUM_CHURN",
    "PATCH_GATE_LOCAL_ONLY",
)


@pytest.fixture
def clean_env(monkeypatch):
    for k in _ENV_KEYS:
        monkeypatch.delenv(k, raising=False)
    return monkeypatch


@pytest.fixture
def gate_env(repo, clean_env):
    clean_env.setenv("PATCH_GATE_REPO_ROOT", str(repo))
    clean_env.setenv("PATCH_GATE_ENABLE", "1")
    clean_env.setenv("PATCH_GATE_ADMIN_TOKEN", ADMIN_TOKEN)
    return clean_env


@pytest.fixture
def client(gate_env):
    from fastapi.testclient import TestClient

    from services.patch_gate.app.main import app

    with TestClient(app, base_url="http://localhost") as c:
        c.headers.update({"Authorization": f"Bearer {ADMIN_TOKEN}"})
        yield c
