"""
Access guard: who may call, and which (root, path) pairs are reachable.

The patch pipeline never sees a raw caller path; it only receives a
ResolvedFile produced here.
"""

from __future__ import annotations

from dataclasses import dataclass
import hmac
import os
from typing import Any

from .content import FileIdentity, content_hash
from .eol import strip_bom
from .settings import Settings


DENY_SEGMENTS = {"node_modules", ".next", ".git"}
DENY_PREFIXES = (".env",)  # blocks .env, .env.local, etc.

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "[::1]")


class GuardError(Exception):
    def __init__(self, code: str, message: str = "", **details: Any) -> None:
        super().__init__(message or code)
        self.code = code
        self.details = details


@dataclass(frozen=True)
class ResolvedFile:
    root_key: str
    root_dir: str
    rel_path: str
    abs_path: str

    @property
    def identity(self) -> FileIdentity:
        return FileIdentity(root=self.root_key, path=self.rel_path)


@dataclass(frozen=True)
class TextFile:
    # BOM already stripped; hash is over this text.
    text: str
    hash: str
    bytes: int
    had_bom: bool


def require_enabled(settings: Settings) -> None:
    if not settings.enabled:
        raise GuardError("disabled", "fs_gateway_disabled")


def _bearer(authorization: str | None) -> str:
    h = str(authorization or "").strip()
    if h[:7].lower() != "bearer ":
        return ""
    return h[7:].strip()


def require_admin(settings: Settings, authorization: str | None) -> None:
    require_enabled(settings)
    want = settings.admin_token
    if not want:
        raise GuardError("misconfig", "missing_server_admin_token")
    got = _bearer(authorization)
    if not got or not hmac.compare_digest(got.encode("utf-8"), want.encode("utf-8")):
        raise GuardError("unauthorized")


def _is_local_host(host: str) -> bool:
    for h in _LOCAL_HOSTS:
        if host == h or host.startswith(h + ":"):
            return True
    return False


def require_local_request(settings: Settings, host: str | None, origin: str | None) -> None:
    if not settings.local_only:
        return
    h = str(host or "").strip().lower()
    if not h:
        return
    if not _is_local_host(h):
        raise GuardError("forbidden_host", "forbidden_non_local_host", host=h)
    o = str(origin or "").strip().lower()
    if o and h not in o:
        raise GuardError("forbidden_origin", origin=o)


def normalize_rel_path(p: str) -> str:
    s = str(p or "").replace("\\", "/")
    return s.lstrip("/")


def resolve_root_dir(settings: Settings, root_key: str) -> str:
    sub = settings.roots.get(str(root_key or ""))
    if not sub:
        raise GuardError("invalid_root", root=root_key, allowed_roots=sorted(settings.roots))
    return os.path.abspath(os.path.join(settings.repo_root, sub))


def _check_segments(rel: str) -> None:
    for seg in [s for s in rel.split("/") if s]:
        if seg == "..":
            raise GuardError("escape", "path_escapes_allowlist")
        if seg in DENY_SEGMENTS:
            raise GuardError("denied_segment", "path_denied_segment", seg=seg)
        for pref in DENY_PREFIXES:
            if seg.startswith(pref):
                raise GuardError("denied_prefix", "path_denied_prefix", pref=pref)


def _inside(root_real: str, cand_real: str) -> bool:
    return cand_real == root_real or cand_real.startswith(root_real + os.sep)


def resolve_allowlisted_file(settings: Settings, root_key: str, rel_path: str) -> ResolvedFile:
    root_dir = resolve_root_dir(settings, root_key)
    rel = normalize_rel_path(rel_path)
    if not rel or "\0" in rel:
        raise GuardError("invalid_path", path=rel)

    _check_segments(rel)

    candidate = os.path.abspath(os.path.join(root_dir, rel))
    ext = os.path.splitext(candidate)[1].lower()
    if ext not in settings.allowed_ext:
        raise GuardError("bad_ext", "file_type_not_allowed", ext=ext)

    # Symlink escape protection: realpath both sides.
    root_real = os.path.realpath(root_dir)
    cand_real = os.path.realpath(candidate)
    if not _inside(root_real, cand_real):
        raise GuardError("escape", "path_escapes_allowlist")

    return ResolvedFile(root_key=str(root_key), root_dir=root_real, rel_path=rel, abs_path=cand_real)


def resolve_allowlisted_dir(settings: Settings, root_key: str, rel_path: str) -> tuple[str, str]:
    root_dir = resolve_root_dir(settings, root_key)
    rel = normalize_rel_path(rel_path) or "."
    if "\0" in rel:
        raise GuardError("invalid_path", path=rel)
    if rel != ".":
        _check_segments(rel)
    root_real = os.path.realpath(root_dir)
    cand_real = os.path.realpath(os.path.join(root_dir, rel))
    if not _inside(root_real, cand_real):
        raise GuardError("escape", "path_escapes_allowlist")
    return rel, cand_real


def read_text_file(abs_path: str, max_bytes: int) -> TextFile:
    if not os.path.exists(abs_path):
        raise GuardError("not_found")
    if not os.path.isfile(abs_path):
        raise GuardError("not_a_file")

    size = os.path.getsize(abs_path)
    if size > max_bytes:
        raise GuardError("file_too_large", bytes=size, max=max_bytes)

    with open(abs_path, "rb") as f:
        raw = f.read()
    if len(raw) > max_bytes:
        raise GuardError("file_too_large", bytes=len(raw), max=max_bytes)
    # Binary heuristic: reject NUL bytes.
    if b"\0" in raw:
        raise GuardError("binary", "binary_not_allowed")
    try:
        decoded = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise GuardError("binary", "file is not valid UTF-8", details=str(e)[:200])

    text, had_bom = strip_bom(decoded)
    return TextFile(text=text, hash=content_hash(text), bytes=len(text.encode("utf-8")), had_bom=had_bom)


def list_dir(abs_dir: str, max_entries: int) -> tuple[list[dict[str, Any]], bool]:
    """Return (entries, truncated); dirs first then name, blocked names skipped."""
    if not os.path.isdir(abs_dir):
        raise GuardError("not_found")
    entries: list[dict[str, Any]] = []
    truncated = False
    with os.scandir(abs_dir) as it:
        for e in it:
            if e.name in DENY_SEGMENTS or e.name.startswith(DENY_PREFIXES):
                continue
            if len(entries) >= max_entries:
                truncated = True
                break
            if e.is_dir(follow_symlinks=False):
                entries.append({"name": e.name, "type": "dir"})
            elif e.is_file(follow_symlinks=False):
                entries.append({"name": e.name, "type": "file", "size": e.stat(follow_symlinks=False).st_size})
            else:
                entries.append({"name": e.name, "type": "other"})
    entries.sort(key=lambda x: (0 if x["type"] == "dir" else 1, x["name"]))
    return entries, truncated
