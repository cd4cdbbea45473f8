from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar, Union


T = TypeVar("T")


ErrorKind = Literal[
    # input
    "missing_fields",
    "invalid_mode",
    "invalid_json",
    "invalid_payload",
    "payload_too_large",
    "missing_expected_hash",
    "missing_approval_id",
    # state mismatch
    "find_not_found",
    "ambiguous_match",
    "patch_does_not_apply",
    # concurrency
    "hash_mismatch",
    "approval_id_mismatch",
    # internal consistency
    "patch_generation_failed",
    "internal_error",
    # resource limits
    "file_too_large",
    "patch_too_large",
    # access guard
    "disabled",
    "unauthorized",
    "misconfig",
    "forbidden_host",
    "forbidden_origin",
    "invalid_root",
    "invalid_path",
    "denied_segment",
    "denied_prefix",
    "bad_ext",
    "escape",
    "binary",
    "not_found",
    "not_a_file",
    "read_failed",
    "write_failed",
]


_STATUS: dict[str, int] = {
    "missing_fields": 400,
    "invalid_mode": 400,
    "invalid_json": 400,
    "invalid_payload": 400,
    "payload_too_large": 413,
    "missing_expected_hash": 400,
    "missing_approval_id": 400,
    "find_not_found": 409,
    "ambiguous_match": 409,
    "patch_does_not_apply": 409,
    "hash_mismatch": 409,
    "approval_id_mismatch": 409,
    "patch_generation_failed": 500,
    "internal_error": 500,
    "file_too_large": 413,
    "patch_too_large": 413,
    "disabled": 404,
    "unauthorized": 401,
    "misconfig": 500,
    "forbidden_host": 403,
    "forbidden_origin": 403,
    "not_found": 404,
    "read_failed": 500,
    "write_failed": 500,
}

_HINTS: dict[str, str] = {
    "find_not_found": "Find block did not match current file. Re-read file and retry.",
    "ambiguous_match": "mode=single requires exactly 1 match. Use a tighter find, or mode=first/all.",
    "patch_does_not_apply": "Patch hunks did not match current file. Re-read the file and regenerate patch.",
    "hash_mismatch": "File changed since prepare. Re-run prepare/propose and apply the fresh patch.",
    "approval_id_mismatch": "approval_id does not match this file, starting hash and patch. Re-run prepare.",
    "patch_generation_failed": "Generated patch did not apply cleanly to its own input.",
}


def status_for(error: str) -> int:
    return _STATUS.get(error, 400)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: Literal[True] = True


@dataclass(frozen=True)
class Err:
    error: str
    hint: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ok: Literal[False] = False

    @property
    def status(self) -> int:
        return status_for(self.error)

    def with_details(self, **extra: Any) -> "Err":
        return Err(error=self.error, hint=self.hint, details={**self.details, **extra})

    def envelope(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": False, "error": self.error}
        if self.hint:
            out["hint"] = self.hint
        out.update(self.details)
        return out


Result = Union[Ok[T], Err]


def fail(error: ErrorKind, hint: str | None = None, **details: Any) -> Err:
    return Err(error=error, hint=hint if hint is not None else _HINTS.get(error), details=dict(details))
