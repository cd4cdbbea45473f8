from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .results import Ok, Result, fail


# -----------------------
# Requests
# -----------------------


class FileRef(BaseModel):
    root: str
    path: str = ""


class PrepareRequest(BaseModel):
    root: str
    path: str
    find: str = ""
    replace: str = ""
    mode: str = "single"


class ProposeChangeRequest(PrepareRequest):
    patch_unified: str = ""
    intent: str = ""
    explanation: str = ""


class ProposeOpIn(BaseModel):
    root: str
    path: str
    find: str = ""
    replace: str = ""
    mode: str = "single"
    patch_unified: str = ""


class ProposeRequest(BaseModel):
    title: str = ""
    explanation: str = ""
    ops: list[ProposeOpIn] = Field(default_factory=list)


class ApplyRequestIn(BaseModel):
    root: str
    path: str
    patch_unified: str = ""
    dry_run: bool = True
    expected_hash: str = ""
    approval_id: str = ""


class ProposalOpIn(BaseModel):
    # Accepts the prepared Op shape verbatim; unknown keys are ignored.
    root: str
    path: str
    patch_unified: str = ""
    expected_hash: str = ""
    before_hash: str = ""
    approval_id: str = ""


class ApplyProposalRequest(BaseModel):
    dry_run: bool = True
    ops: list[ProposalOpIn] = Field(default_factory=list)


def parse_model(model: type[BaseModel], data: Any) -> Result[Any]:
    """Validate a decoded JSON body; missing keys map to missing_fields, anything else to invalid_payload."""
    if not isinstance(data, dict):
        return fail("invalid_payload", details="expected a JSON object")
    try:
        return Ok(model.model_validate(data))
    except ValidationError as e:
        errors = e.errors()
        missing = [".".join(str(p) for p in err.get("loc", ())) for err in errors if err.get("type") == "missing"]
        if missing:
            return fail("missing_fields", need=missing)
        first = errors[0] if errors else {}
        return fail(
            "invalid_payload",
            field=".".join(str(p) for p in first.get("loc", ())),
            details=str(first.get("msg") or "")[:200],
        )


__all__ = [
    "ApplyProposalRequest",
    "ApplyRequestIn",
    "FileRef",
    "PrepareRequest",
    "ProposalOpIn",
    "ProposeChangeRequest",
    "ProposeOpIn",
    "ProposeRequest",
    "parse_model",
]
