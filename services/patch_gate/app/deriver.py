from __future__ import annotations

from dataclasses import dataclass
import enum
from typing import Literal, Union

from .diff_engine import apply_unified_diff
from .eol import to_canonical
from .results import Ok, Result, fail


class ReplaceMode(enum.Enum):
    SINGLE = "single"
    FIRST = "first"
    ALL = "all"

    @classmethod
    def parse(cls, raw: str | None) -> "ReplaceMode | None":
        """Boundary parse; empty means the default (single). None for unknown strings."""
        s = str(raw or "").strip()
        if not s:
            return cls.SINGLE
        try:
            return cls(s)
        except ValueError:
            return None


PATCH_MODE = "patch"
OpMode = Union[ReplaceMode, Literal["patch"]]


def mode_label(mode: OpMode) -> str:
    return mode.value if isinstance(mode, ReplaceMode) else str(mode)


@dataclass(frozen=True)
class Derivation:
    after: str
    matches: int
    mode: OpMode

    def changed_from(self, before: str) -> bool:
        return self.after != before


def count_occurrences(haystack: str, needle: str) -> int:
    # Literal and non-overlapping, like str.count; empty needles never match.
    if not needle:
        return 0
    return haystack.count(needle)


def replace_once(haystack: str, needle: str, repl: str) -> str:
    return haystack.replace(needle, repl, 1)


def replace_all(haystack: str, needle: str, repl: str) -> str:
    return haystack.replace(needle, repl)


def derive_find_replace(before: str, find: str, replace: str, mode: ReplaceMode) -> Result[Derivation]:
    """
    Derive canonical `after` from a literal find/replace.

    `before` must already be canonical; find/replace are canonicalised here so a
    CRLF find block still matches an LF-normalized file.
    """
    find_lf = to_canonical(find)
    replace_lf = to_canonical(replace)

    matches = count_occurrences(before, find_lf)
    if matches == 0:
        return fail("find_not_found", matches=matches)
    if mode is ReplaceMode.SINGLE and matches != 1:
        return fail("ambiguous_match", matches=matches)

    if mode is ReplaceMode.ALL:
        after = replace_all(before, find_lf, replace_lf)
    else:
        after = replace_once(before, find_lf, replace_lf)
    return Ok(Derivation(after=after, matches=matches, mode=mode))


def derive_from_patch(before: str, patch_text: str) -> Result[Derivation]:
    patched = apply_unified_diff(before, to_canonical(patch_text))
    if patched is None:
        return fail("patch_does_not_apply", hint="Provided patch_unified did not apply to current file.")
    return Ok(Derivation(after=patched, matches=1, mode=PATCH_MODE))
