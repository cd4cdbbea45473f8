"""
Staged patch pipeline: prepare (derive + diff + token), propose (many ops), apply (gate + write).

Every public function returns Ok/Err and emits exactly one audit record per
outcome. Nothing here raises for caller or state errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import time
from typing import Any

from .audit import append_audit, dbg, elapsed_ms
from .content import FileIdentity, content_hash, make_approval_id, patch_hash
from .deriver import (
    Derivation,
    OpMode,
    ReplaceMode,
    derive_find_replace,
    derive_from_patch,
    mode_label,
)
from .diff_engine import apply_unified_diff, build_validated_diff, diff_stats
from .eol import EolStyle, detect_eol_style, is_mixed, to_canonical, to_original
from .guard import GuardError, ResolvedFile, TextFile, read_text_file, resolve_allowlisted_file
from .results import Err, Ok, Result, fail
from .risk import RiskLevel, classify_risk, overall_risk
from .settings import Settings
from .writer import write_atomic_text_file


PROPOSAL_KIND = "change_proposal_prepared"


@dataclass(frozen=True)
class OpRequest:
    root: str
    path: str
    find: str = ""
    replace: str = ""
    mode: ReplaceMode = ReplaceMode.SINGLE
    patch_unified: str = ""


@dataclass(frozen=True)
class PreparedOp:
    identity: FileIdentity
    mode: OpMode
    matches: int
    before_hash: str
    after_hash: str
    patch_unified: str
    patch_hash: str
    approval_id: str
    eol: EolStyle
    stats: dict[str, int]
    risk: RiskLevel
    changed: bool

    def to_json(self) -> dict[str, Any]:
        return {
            "ok": True,
            "changed": self.changed,
            "root": self.identity.root,
            "path": self.identity.path,
            "mode": mode_label(self.mode),
            "matches": self.matches,
            "expected_hash": self.before_hash,
            "before_hash": self.before_hash,
            "after_hash": self.after_hash,
            "patch_unified": self.patch_unified,
            "patch_hash": self.patch_hash,
            "approval_id": self.approval_id,
            "eol": self.eol,
            "stats": dict(self.stats),
            "risk_level": self.risk.label,
        }


@dataclass(frozen=True)
class Proposal:
    title: str
    explanation: str
    ops: list[PreparedOp]
    generated_at: str

    @property
    def risk(self) -> RiskLevel:
        return overall_risk(op.risk for op in self.ops)

    @property
    def touched_files(self) -> list[str]:
        seen: dict[str, None] = {}
        for op in self.ops:
            seen.setdefault(op.identity.key, None)
        return list(seen)

    def to_json(self) -> dict[str, Any]:
        return {
            "ok": True,
            "kind": PROPOSAL_KIND,
            "version": 1,
            "title": self.title,
            "explanation": self.explanation,
            "risk_level": self.risk.label,
            "touched_files": self.touched_files,
            "ops": [op.to_json() for op in self.ops],
            "generated_at": self.generated_at,
        }


@dataclass(frozen=True)
class ApplyRequest:
    root: str
    path: str
    patch_unified: str
    dry_run: bool = True
    expected_hash: str = ""
    approval_id: str = ""


@dataclass(frozen=True)
class ApplyOutcome:
    identity: FileIdentity
    dry_run: bool
    before_hash: str
    after_hash: str
    patch_hash: str
    approval_id: str
    wrote: bool
    eol: EolStyle

    def to_json(self) -> dict[str, Any]:
        return {
            "ok": True,
            "root": self.identity.root,
            "path": self.identity.path,
            "dry_run": self.dry_run,
            "before_hash": self.before_hash,
            "after_hash": self.after_hash,
            "patch_hash": self.patch_hash,
            "approval_id": self.approval_id,
            "wrote": self.wrote,
            "eol": self.eol,
        }


@dataclass
class ProposalApplyOutcome:
    dry_run: bool
    log: list[dict[str, Any]] = field(default_factory=list)
    error: Err | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "ok": self.ok,
            "dry_run": self.dry_run,
            "applied": sum(1 for e in self.log if e.get("status") == "applied"),
            "wrote": sum(1 for e in self.log if (e.get("result") or {}).get("wrote")),
            "log": self.log,
        }
        if self.error is not None:
            out["error"] = self.error.error
        return out


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _guard_err(e: GuardError) -> Err:
    return fail(e.code, **e.details)  # type: ignore[arg-type]


def _reject(settings: Settings, op: str, err: Err, t0: float, **record: Any) -> Err:
    append_audit(
        settings,
        {
            "op": op,
            "ok": False,
            "error": err.error,
            "matches": err.details.get("matches"),
            **record,
            "ms": elapsed_ms(t0),
        },
    )
    return err


def read_target(settings: Settings, root: str, path: str) -> Result[tuple[ResolvedFile, TextFile]]:
    try:
        resolved = resolve_allowlisted_file(settings, root, path)
        before = read_text_file(resolved.abs_path, settings.max_file_bytes)
    except GuardError as e:
        return _guard_err(e)
    except OSError as e:
        return fail("read_failed", details=str(e)[:200])
    return Ok((resolved, before))


def _derive(before_lf: str, req: OpRequest) -> Result[Derivation]:
    if req.patch_unified:
        return derive_from_patch(before_lf, req.patch_unified)
    return derive_find_replace(before_lf, req.find, req.replace, req.mode)


def prepare_loaded(
    settings: Settings,
    resolved: ResolvedFile,
    before: TextFile,
    req: OpRequest,
    *,
    op: str = "prepare",
    intent: str | None = None,
    t0: float | None = None,
) -> Result[PreparedOp]:
    """Run derive → diff → validate → hash → token → risk against an already-read file."""
    t0 = t0 if t0 is not None else time.time()
    identity = resolved.identity
    eol = detect_eol_style(before.text)
    audit_ctx: dict[str, Any] = {
        "root": identity.root,
        "path": identity.path,
        "eol": eol,
        "eol_mixed": True if is_mixed(before.text) else None,
        "intent": intent or None,
    }

    before_lf = to_canonical(before.text)
    derived = _derive(before_lf, req)
    if isinstance(derived, Err):
        return _reject(settings, op, derived.with_details(eol=eol), t0, **audit_ctx)
    d = derived.value

    if not d.changed_from(before_lf):
        stats = {"added": 0, "removed": 0}
        prepared = PreparedOp(
            identity=identity,
            mode=d.mode,
            matches=d.matches,
            before_hash=before.hash,
            after_hash=before.hash,
            patch_unified="",
            patch_hash="",
            approval_id="",
            eol=eol,
            stats=stats,
            risk=classify_risk(identity.root, identity.path, stats, settings.risk),
            changed=False,
        )
        append_audit(
            settings,
            {
                "op": op,
                "ok": True,
                "phase": "no_op",
                "matches": d.matches,
                "before_hash": before.hash,
                "after_hash": before.hash,
                **audit_ctx,
                "ms": elapsed_ms(t0),
            },
        )
        return Ok(prepared)

    built = build_validated_diff(before_lf, d.after, identity.path)
    if isinstance(built, Err):
        dbg(settings, "pipeline.prepare_loaded", "self_check_failed", {"path": identity.key, "matches": d.matches})
        return _reject(
            settings,
            op,
            built.with_details(matches=d.matches, eol=eol),
            t0,
            before_hash=before.hash,
            **audit_ctx,
        )
    diff_text = built.value

    diff_bytes = len(diff_text.encode("utf-8"))
    if diff_bytes > settings.max_patch_bytes:
        err = fail("patch_too_large", bytes=diff_bytes, max=settings.max_patch_bytes, eol=eol)
        return _reject(settings, op, err, t0, before_hash=before.hash, **audit_ctx)

    after_hash = content_hash(to_original(d.after, eol))
    approval_id = make_approval_id(identity.key, before.hash, diff_text)
    stats = diff_stats(diff_text)
    prepared = PreparedOp(
        identity=identity,
        mode=d.mode,
        matches=d.matches,
        before_hash=before.hash,
        after_hash=after_hash,
        patch_unified=diff_text,
        patch_hash=patch_hash(diff_text),
        approval_id=approval_id,
        eol=eol,
        stats=stats,
        risk=classify_risk(identity.root, identity.path, stats, settings.risk),
        changed=True,
    )
    append_audit(
        settings,
        {
            "op": op,
            "ok": True,
            "phase": "generated",
            "matches": d.matches,
            "before_hash": before.hash,
            "after_hash": after_hash,
            "approval_id": approval_id,
            "patch_hash": prepared.patch_hash,
            "risk_level": prepared.risk.label,
            **audit_ctx,
            "ms": elapsed_ms(t0),
        },
    )
    return Ok(prepared)


def prepare(settings: Settings, req: OpRequest, *, op: str = "prepare", intent: str | None = None) -> Result[PreparedOp]:
    t0 = time.time()
    loaded = read_target(settings, req.root, req.path)
    if isinstance(loaded, Err):
        return _reject(settings, op, loaded, t0, root=req.root, path=req.path)
    resolved, before = loaded.value
    return prepare_loaded(settings, resolved, before, req, op=op, intent=intent, t0=t0)


def propose(settings: Settings, reqs: list[OpRequest], *, title: str = "", explanation: str = "") -> Result[Proposal]:
    """Prepare every op in order; the first failure aborts the proposal (with its index)."""
    ops: list[PreparedOp] = []
    for i, req in enumerate(reqs):
        r = prepare(settings, req, op="propose")
        if isinstance(r, Err):
            return r.with_details(index=i)
        ops.append(r.value)
    return Ok(Proposal(title=title, explanation=explanation, ops=ops, generated_at=_now_iso()))


def apply_patch(settings: Settings, req: ApplyRequest) -> Result[ApplyOutcome]:
    """
    Concurrency gate, in order: re-read + hash, expected-hash CAS, approval token,
    clean re-apply, then (unless dry_run) the atomic write.
    """
    t0 = time.time()
    op = "patch"
    phase = "dry_run" if req.dry_run else "apply"
    ctx: dict[str, Any] = {"root": req.root, "path": req.path, "phase": phase}

    patch_bytes = len(req.patch_unified.encode("utf-8"))
    if patch_bytes > settings.max_patch_bytes:
        err = fail("patch_too_large", bytes=patch_bytes, max=settings.max_patch_bytes)
        return _reject(settings, op, err, t0, **ctx)
    if not req.dry_run and not req.expected_hash:
        return _reject(settings, op, fail("missing_expected_hash", need="expected_hash for apply"), t0, **ctx)
    if not req.dry_run and not req.approval_id:
        return _reject(settings, op, fail("missing_approval_id", need="approval_id from prepare/dry_run"), t0, **ctx)

    loaded = read_target(settings, req.root, req.path)
    if isinstance(loaded, Err):
        return _reject(settings, op, loaded, t0, **ctx)
    resolved, before = loaded.value
    identity = resolved.identity
    eol = detect_eol_style(before.text)
    ctx.update(
        {
            "root": identity.root,
            "path": identity.path,
            "eol": eol,
            "eol_mixed": True if is_mixed(before.text) else None,
            "before_hash": before.hash,
        }
    )

    if req.expected_hash and req.expected_hash != before.hash:
        err = fail("hash_mismatch", expected=req.expected_hash, actual=before.hash, eol=eol)
        return _reject(settings, op, err, t0, **ctx)

    patch_lf = to_canonical(req.patch_unified)
    approval_id = make_approval_id(identity.key, before.hash, patch_lf)
    if req.approval_id and req.approval_id != approval_id:
        err = fail("approval_id_mismatch", expected=approval_id, received=req.approval_id, eol=eol)
        return _reject(settings, op, err, t0, **ctx)

    after_lf = apply_unified_diff(to_canonical(before.text), patch_lf)
    if after_lf is None:
        err = fail("patch_does_not_apply", before_hash=before.hash, eol=eol)
        return _reject(settings, op, err, t0, **ctx)

    after_text = to_original(after_lf, eol)
    after_hash = content_hash(after_text)
    p_hash = patch_hash(patch_lf)

    wrote = False
    if not req.dry_run:
        try:
            write_atomic_text_file(resolved.abs_path, after_text, bom=before.had_bom)
        except OSError as e:
            err = fail("write_failed", details=str(e)[:200], eol=eol)
            return _reject(settings, op, err, t0, **ctx)
        wrote = True

    append_audit(
        settings,
        {
            "op": op,
            "ok": True,
            **ctx,
            "after_hash": after_hash,
            "approval_id": approval_id,
            "patch_hash": p_hash,
            "wrote": wrote,
            "ms": elapsed_ms(t0),
        },
    )
    return Ok(
        ApplyOutcome(
            identity=identity,
            dry_run=req.dry_run,
            before_hash=before.hash,
            after_hash=after_hash,
            patch_hash=p_hash,
            approval_id=approval_id,
            wrote=wrote,
            eol=eol,
        )
    )


def apply_proposal(settings: Settings, steps: list[ApplyRequest], *, dry_run: bool = True) -> ProposalApplyOutcome:
    """
    Apply prepared ops strictly in order. No cross-op atomicity: earlier writes
    stay when a later op fails, and ops after the failure are not attempted.
    """
    out = ProposalApplyOutcome(dry_run=dry_run)
    for i, step in enumerate(steps):
        base = {"index": i, "root": step.root, "path": step.path}
        if out.error is not None:
            out.log.append({**base, "status": "not_attempted"})
            continue
        if not step.patch_unified or not step.approval_id:
            out.log.append({**base, "status": "no_op"})
            continue
        r = apply_patch(settings, step)
        if isinstance(r, Err):
            out.error = r.with_details(index=i)
            out.log.append({**base, "status": "failed", "error": r.envelope()})
            continue
        out.log.append({**base, "status": "applied", "result": r.value.to_json()})
    return out
