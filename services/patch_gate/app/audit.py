from __future__ import annotations

import contextvars
from datetime import datetime, timezone
import json
import os
import time
from typing import Any

from .settings import Settings


REQ_ID: contextvars.ContextVar[str] = contextvars.ContextVar("patch_gate_req_id", default="")


def _ts_utc() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def elapsed_ms(t0: float) -> int:
    return int(max(0.0, (time.time() - t0) * 1000.0))


def _append_line(path: str, payload: dict[str, Any]) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False) + "\n")


def append_audit(settings: Settings, record: dict[str, Any]) -> None:
    """One NDJSON line per phase outcome. Never raises; an audit failure must not fail the request."""
    try:
        payload: dict[str, Any] = {"ts": _ts_utc()}
        req_id = REQ_ID.get()
        if req_id:
            payload["req_id"] = req_id
        payload.update({k: v for k, v in (record or {}).items() if v is not None})
        _append_line(settings.audit_log_path, payload)
    except Exception:
        pass


def dbg(settings: Settings, location: str, message: str, data: dict[str, Any] | None = None) -> None:
    # Forensic log, only with PATCH_GATE_DEBUG=1. Keep tiny + never log secrets or file contents.
    if not settings.debug:
        return
    try:
        _append_line(
            settings.debug_log_path,
            {"ts": _ts_utc(), "req_id": REQ_ID.get(), "location": location, "message": message, "data": data or {}},
        )
    except Exception:
        pass
