"""
Reference caller: propose → sequential apply, with a single re-propose on hash_mismatch.

The gate never retries on its own; this is the loop an agent is expected to run.
"""

from __future__ import annotations

import json
import os
from typing import Any, Callable
from urllib.error import HTTPError
from urllib.request import Request, urlopen


Transport = Callable[[str, str, "dict[str, Any] | None"], "tuple[int, dict[str, Any] | None, str]"]


def patch_gate_base_url() -> str:
    return (os.environ.get("PATCH_GATE_URL") or "http://127.0.0.1:5130").rstrip("/")


def _admin_token() -> str:
    return str(os.environ.get("PATCH_GATE_ADMIN_TOKEN") or "")


def http_json(
    method: str,
    url: str,
    body: dict[str, Any] | None = None,
    *,
    token: str | None = None,
    timeout: float = 30,
) -> tuple[int, dict[str, Any] | None, str]:
    data = None
    headers = {"Accept": "application/json"}
    tok = token if token is not None else _admin_token()
    if tok:
        headers["Authorization"] = f"Bearer {tok}"
    if body is not None:
        data = json.dumps(body).encode("utf-8")
        headers["Content-Type"] = "application/json"
    req = Request(url, method=method.upper(), data=data, headers=headers)
    try:
        with urlopen(req, timeout=timeout) as resp:  # nosec - local gate
            raw = resp.read().decode("utf-8", errors="replace")
            try:
                return int(resp.status), (json.loads(raw) if raw else None), raw
            except ValueError:
                return int(resp.status), None, raw
    except HTTPError as e:
        # Keep status + envelope (409 hash_mismatch etc.) so the caller can react.
        try:
            raw = e.read().decode("utf-8", errors="replace")
        except Exception:
            raw = str(e)
        try:
            j = json.loads(raw) if raw else None
        except ValueError:
            j = None
        return int(getattr(e, "code", 0) or 0), (j if isinstance(j, dict) else None), raw
    except Exception as e:
        return 0, None, str(e)


def _default_transport(base_url: str | None, token: str | None) -> Transport:
    base = (base_url or patch_gate_base_url()).rstrip("/")

    def send(method: str, path: str, body: dict[str, Any] | None = None):
        return http_json(method, base + path, body, token=token)

    return send


def _error_of(status: int, j: dict[str, Any] | None, raw: str) -> dict[str, Any]:
    if isinstance(j, dict) and j.get("error"):
        return {"status": status, **j}
    return {"status": status, "ok": False, "error": "http_error", "details": raw[:500]}


def _apply_body(op: dict[str, Any], dry_run: bool) -> dict[str, Any]:
    return {
        "root": op.get("root"),
        "path": op.get("path"),
        "patch_unified": op.get("patch_unified") or "",
        "expected_hash": op.get("expected_hash") or op.get("before_hash") or "",
        "approval_id": op.get("approval_id") or "",
        "dry_run": dry_run,
    }


def propose_and_apply(
    ops: list[dict[str, Any]],
    *,
    title: str = "",
    explanation: str = "",
    dry_run: bool = False,
    base_url: str | None = None,
    token: str | None = None,
    transport: Transport | None = None,
) -> dict[str, Any]:
    """
    Propose every op, then apply the prepared ops one at a time.

    On a hash_mismatch the failing op alone is re-proposed against the current
    file and applied once more. Any other failure, or a second failure of the
    same op, stops the run; ops applied before it stay applied.
    """
    send = transport or _default_transport(base_url, token)

    status, proposal, raw = send("POST", "/api/fs/propose", {"title": title, "explanation": explanation, "ops": ops})
    if status != 200 or not isinstance(proposal, dict) or not proposal.get("ok"):
        return {"ok": False, "stage": "propose", "error": _error_of(status, proposal, raw), "applied": []}

    applied: list[dict[str, Any]] = []
    retried: list[int] = []
    for i, prepared in enumerate(proposal.get("ops") or []):
        if not prepared.get("changed", True) or not prepared.get("patch_unified"):
            applied.append({"index": i, "status": "no_op"})
            continue

        status, j, raw = send("POST", "/api/fs/patch", _apply_body(prepared, dry_run))
        if status != 200 and isinstance(j, dict) and j.get("error") == "hash_mismatch":
            retried.append(i)
            status, fresh, raw = send("POST", "/api/fs/propose", {"title": title, "explanation": explanation, "ops": [ops[i]]})
            if status != 200 or not isinstance(fresh, dict) or not fresh.get("ok"):
                return {
                    "ok": False,
                    "stage": "repropose",
                    "index": i,
                    "error": _error_of(status, fresh, raw),
                    "applied": applied,
                    "retried": retried,
                }
            prepared = (fresh.get("ops") or [{}])[0]
            if not prepared.get("changed", True) or not prepared.get("patch_unified"):
                applied.append({"index": i, "status": "no_op"})
                continue
            status, j, raw = send("POST", "/api/fs/patch", _apply_body(prepared, dry_run))

        if status != 200 or not isinstance(j, dict) or not j.get("ok"):
            return {
                "ok": False,
                "stage": "apply",
                "index": i,
                "error": _error_of(status, j, raw),
                "applied": applied,
                "retried": retried,
            }
        applied.append({"index": i, "status": "applied", "result": j})

    return {"ok": True, "proposal": proposal, "applied": applied, "retried": retried}
