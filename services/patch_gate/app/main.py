from __future__ import annotations

import json
import os
import time
from typing import Any, Callable
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .audit import REQ_ID, append_audit, dbg, elapsed_ms
from .deriver import ReplaceMode
from .eol import describe_eol
from .guard import (
    GuardError,
    list_dir,
    read_text_file,
    require_admin,
    require_local_request,
    resolve_allowlisted_dir,
    resolve_allowlisted_file,
)
from .models import (
    ApplyProposalRequest,
    ApplyRequestIn,
    FileRef,
    PrepareRequest,
    ProposeChangeRequest,
    ProposeRequest,
    parse_model,
)
from .pipeline import (
    PROPOSAL_KIND,
    ApplyRequest,
    OpRequest,
    apply_patch,
    apply_proposal,
    prepare,
    propose,
)
from .results import Err, ErrorKind, Ok, Result, fail
from .settings import Settings, get_settings


app = FastAPI(title="Patch Gate", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?",
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.middleware("http")
async def _request_log_middleware(request: Request, call_next):
    started = time.time()
    req_id = uuid.uuid4().hex[:12]
    token = REQ_ID.set(req_id)
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        settings = get_settings()
        if settings.enabled:
            append_audit(
                settings,
                {
                    "op": "http",
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "ms": elapsed_ms(started),
                },
            )
        REQ_ID.reset(token)


# -----------------------
# Helpers
# -----------------------


def _render(err: Err) -> JSONResponse:
    return JSONResponse(err.envelope(), status_code=err.status)


def _rejected(settings: Settings, op: str, err: Err, **record: Any) -> Err:
    append_audit(settings, {"op": op, "ok": False, "error": err.error, **record})
    return err


def _guard(request: Request, settings: Settings) -> Err | None:
    try:
        require_admin(settings, request.headers.get("authorization"))
        require_local_request(settings, request.headers.get("host"), request.headers.get("origin"))
    except GuardError as e:
        return fail(e.code, **e.details)  # type: ignore[arg-type]
    return None


async def _read_json(request: Request, settings: Settings, too_large: ErrorKind) -> Result[Any]:
    raw = await request.body()
    if len(raw) > settings.max_patch_bytes:
        return fail(too_large, bytes=len(raw), max=settings.max_patch_bytes)
    if not raw.strip():
        return Ok({})
    try:
        return Ok(json.loads(raw.decode("utf-8")))
    except (UnicodeDecodeError, ValueError):
        return fail("invalid_json")


Handler = Callable[[Settings, Any], "Result[dict[str, Any]] | Response"]


async def _json_route(
    request: Request,
    op: str,
    model: type[BaseModel],
    handler: Handler,
    *,
    too_large: ErrorKind = "payload_too_large",
) -> Response | dict[str, Any]:
    """Guard → raw size check → JSON parse → model validation → handler. Pipeline errors are already audited."""
    settings = get_settings()
    denied = _guard(request, settings)
    if denied is not None:
        return _render(_rejected(settings, op, denied))

    body = await _read_json(request, settings, too_large)
    if isinstance(body, Err):
        return _render(_rejected(settings, op, body))
    parsed = parse_model(model, body.value)
    if isinstance(parsed, Err):
        return _render(_rejected(settings, op, parsed))

    try:
        result = handler(settings, parsed.value)
    except Exception as e:
        dbg(settings, f"main.{op}", "unhandled", {"type": type(e).__name__})
        return _render(_rejected(settings, op, fail("internal_error", details=str(e)[:200])))
    if isinstance(result, Response):
        return result
    if isinstance(result, Err):
        return _render(result)
    return result.value


def _missing_identity(root: str, path: str) -> list[str]:
    return [name for name, v in (("root", root), ("path", path)) if not str(v or "").strip()]


def _op_request(settings: Settings, op: str, raw: Any, *, index: int | None = None) -> Result[OpRequest]:
    at = {"index": index} if index is not None else {}
    missing = _missing_identity(raw.root, raw.path)
    if missing:
        err = fail("missing_fields", need=missing, **at)
        return _rejected(settings, op, err, root=raw.root, path=raw.path)

    patch_unified = str(getattr(raw, "patch_unified", "") or "")
    if patch_unified:
        if raw.find or raw.replace:
            err = fail("invalid_payload", hint="Provide patch_unified OR find/replace, not both.", **at)
            return _rejected(settings, op, err, root=raw.root, path=raw.path)
        # Mode is meaningless for a supplied patch.
        return Ok(OpRequest(root=raw.root, path=raw.path, patch_unified=patch_unified))

    mode = ReplaceMode.parse(raw.mode)
    if mode is None:
        err = fail("invalid_mode", mode=raw.mode, allowed=[m.value for m in ReplaceMode], **at)
        return _rejected(settings, op, err, root=raw.root, path=raw.path)
    if not raw.find:
        need = ["find", "patch_unified"] if hasattr(raw, "patch_unified") else ["find"]
        err = fail("missing_fields", need=need, **at)
        return _rejected(settings, op, err, root=raw.root, path=raw.path)
    return Ok(
        OpRequest(
            root=raw.root,
            path=raw.path,
            find=raw.find,
            replace=raw.replace,
            mode=mode,
            patch_unified=patch_unified,
        )
    )


# -----------------------
# Handlers
# -----------------------


def _prepare_handler(op: str) -> Handler:
    def run(settings: Settings, body: PrepareRequest) -> Result[dict[str, Any]]:
        req = _op_request(settings, op, body)
        if isinstance(req, Err):
            return req
        r = prepare(settings, req.value, op=op)
        if isinstance(r, Err):
            return r
        return Ok(r.value.to_json())

    return run


def _propose_change(settings: Settings, body: ProposeChangeRequest) -> Result[dict[str, Any]]:
    op = "propose_change"
    req = _op_request(settings, op, body)
    if isinstance(req, Err):
        return req
    r = prepare(settings, req.value, op=op, intent=body.intent)
    if isinstance(r, Err):
        return r
    proposal = {**r.value.to_json(), "kind": PROPOSAL_KIND, "explanation": body.explanation}
    if body.intent:
        proposal["intent"] = body.intent
    return Ok({"ok": True, "proposal": proposal})


def _propose(settings: Settings, body: ProposeRequest) -> Result[dict[str, Any]]:
    if not body.ops:
        return _rejected(settings, "propose", fail("missing_fields", need=["ops[0..n]"]))
    reqs: list[OpRequest] = []
    for i, raw in enumerate(body.ops):
        req = _op_request(settings, "propose", raw, index=i)
        if isinstance(req, Err):
            return req
        reqs.append(req.value)
    r = propose(settings, reqs, title=body.title, explanation=body.explanation)
    if isinstance(r, Err):
        return r
    return Ok(r.value.to_json())


def _patch(settings: Settings, body: ApplyRequestIn) -> Result[dict[str, Any]]:
    missing = _missing_identity(body.root, body.path)
    if not body.patch_unified:
        missing.append("patch_unified")
    if missing:
        return _rejected(settings, "patch", fail("missing_fields", need=missing), root=body.root, path=body.path)
    r = apply_patch(
        settings,
        ApplyRequest(
            root=body.root,
            path=body.path,
            patch_unified=body.patch_unified,
            dry_run=body.dry_run,
            expected_hash=body.expected_hash,
            approval_id=body.approval_id,
        ),
    )
    if isinstance(r, Err):
        return r
    return Ok(r.value.to_json())


def _apply_proposal(settings: Settings, body: ApplyProposalRequest) -> Response:
    steps = [
        ApplyRequest(
            root=o.root,
            path=o.path,
            patch_unified=o.patch_unified,
            dry_run=body.dry_run,
            expected_hash=o.expected_hash or o.before_hash,
            approval_id=o.approval_id,
        )
        for o in body.ops
    ]
    outcome = apply_proposal(settings, steps, dry_run=body.dry_run)
    payload = outcome.to_json()
    if outcome.error is None:
        return JSONResponse(payload)
    return JSONResponse({**outcome.error.envelope(), **payload}, status_code=outcome.error.status)


# -----------------------
# Routes
# -----------------------


@app.get("/health")
def health() -> dict[str, Any]:
    s = get_settings()
    return {"ok": True, "service": "patch-gate", "enabled": s.enabled, "roots": sorted(s.roots)}


@app.get("/api/fs/self_test")
def self_test() -> dict[str, Any]:
    s = get_settings()
    return {
        "ok": True,
        "enabled": s.enabled,
        "admin_token_set": bool(s.admin_token),
        "local_only": s.local_only,
        "repo_root": s.repo_root,
        "roots": dict(s.roots),
        "allowed_ext": list(s.allowed_ext),
        "limits": {
            "max_file_bytes": s.max_file_bytes,
            "max_patch_bytes": s.max_patch_bytes,
            "max_list_entries": s.max_list_entries,
        },
        "risk": {
            "high_churn": s.risk.high_churn,
            "medium_churn": s.risk.medium_churn,
            "low_prefixes": list(s.risk.low_prefixes),
            "medium_prefixes": list(s.risk.medium_prefixes),
        },
        "audit_log_path": s.audit_log_path,
        "debug": s.debug,
    }


async def _file_ref(request: Request, settings: Settings) -> Result[FileRef]:
    if request.method == "GET":
        data: Any = dict(request.query_params)
    else:
        body = await _read_json(request, settings, "payload_too_large")
        if isinstance(body, Err):
            return body
        data = body.value
    return parse_model(FileRef, data)


@app.api_route("/api/fs/read", methods=["GET", "POST"])
async def fs_read(request: Request):
    t0 = time.time()
    settings = get_settings()
    denied = _guard(request, settings)
    if denied is not None:
        return _render(_rejected(settings, "read", denied))
    ref = await _file_ref(request, settings)
    if isinstance(ref, Err):
        return _render(_rejected(settings, "read", ref))
    try:
        resolved = resolve_allowlisted_file(settings, ref.value.root, ref.value.path)
        f = read_text_file(resolved.abs_path, settings.max_file_bytes)
    except GuardError as e:
        err = fail(e.code, **e.details)  # type: ignore[arg-type]
        return _render(_rejected(settings, "read", err, root=ref.value.root, path=ref.value.path))
    except OSError as e:
        err = fail("read_failed", details=str(e)[:200])
        return _render(_rejected(settings, "read", err, root=ref.value.root, path=ref.value.path))

    eol = describe_eol(f.text)
    append_audit(
        settings,
        {"op": "read", "ok": True, "root": resolved.root_key, "path": resolved.rel_path, "eol": eol, "ms": elapsed_ms(t0)},
    )
    return {
        "ok": True,
        "root": resolved.root_key,
        "path": resolved.rel_path,
        "text": f.text,
        "hash": f.hash,
        "eol": eol,
        "bytes": f.bytes,
    }


@app.api_route("/api/fs/list", methods=["GET", "POST"])
async def fs_list(request: Request):
    settings = get_settings()
    denied = _guard(request, settings)
    if denied is not None:
        return _render(_rejected(settings, "list", denied))
    ref = await _file_ref(request, settings)
    if isinstance(ref, Err):
        return _render(_rejected(settings, "list", ref))
    try:
        rel, abs_dir = resolve_allowlisted_dir(settings, ref.value.root, ref.value.path)
        entries, truncated = list_dir(abs_dir, settings.max_list_entries)
    except GuardError as e:
        err = fail(e.code, **e.details)  # type: ignore[arg-type]
        return _render(_rejected(settings, "list", err, root=ref.value.root, path=ref.value.path))
    except OSError as e:
        err = fail("read_failed", details=str(e)[:200])
        return _render(_rejected(settings, "list", err, root=ref.value.root, path=ref.value.path))
    return {"ok": True, "root": ref.value.root, "path": rel, "entries": entries, "truncated": truncated}


@app.post("/api/fs/prepare")
async def fs_prepare(request: Request):
    return await _json_route(request, "prepare", PrepareRequest, _prepare_handler("prepare"))


@app.post("/api/fs/replace")
async def fs_replace(request: Request):
    # Same as prepare; never writes.
    return await _json_route(request, "replace", PrepareRequest, _prepare_handler("replace"))


@app.post("/api/fs/propose_change")
async def fs_propose_change(request: Request):
    return await _json_route(request, "propose_change", ProposeChangeRequest, _propose_change)


@app.post("/api/fs/propose")
async def fs_propose(request: Request):
    return await _json_route(request, "propose", ProposeRequest, _propose)


@app.post("/api/fs/patch")
async def fs_patch(request: Request):
    return await _json_route(request, "patch", ApplyRequestIn, _patch, too_large="patch_too_large")


@app.post("/api/fs/apply_proposal")
async def fs_apply_proposal(request: Request):
    return await _json_route(request, "apply_proposal", ApplyProposalRequest, _apply_proposal, too_large="patch_too_large")


def serve() -> None:
    import uvicorn

    host = os.environ.get("PATCH_GATE_HOST") or "127.0.0.1"
    port = int(os.environ.get("PATCH_GATE_PORT") or 5130)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    serve()
