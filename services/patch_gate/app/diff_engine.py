"""
Unified diff generation, parsing and exact application over canonical (LF) text.

Generation uses difflib with 3 lines of context. Application is strict: every
context and removed line must match byte-for-byte. A hunk may land at a
different line than its header says (nearest exact match wins), but nothing is
ever applied fuzzily or partially.
"""

from __future__ import annotations

from dataclasses import dataclass
import difflib
import re

from .eol import split_lines
from .results import Ok, Result, fail


CONTEXT_LINES = 3
NO_NEWLINE_MARKER = "\\ No newline at end of file"

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_PREAMBLE_PREFIXES = ("diff ", "index ", "Index:", "===", "new file mode", "deleted file mode", "old mode", "new mode", "similarity index")


class DiffFormatError(ValueError):
    pass


@dataclass(frozen=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    # Lines carry their terminators; the last line of a file may lack "\n".
    old_lines: tuple[str, ...]
    new_lines: tuple[str, ...]


def generate_unified_diff(before: str, after: str, rel_path: str) -> str:
    out: list[str] = []
    for line in difflib.unified_diff(
        split_lines(before),
        split_lines(after),
        fromfile=f"a/{rel_path}",
        tofile=f"b/{rel_path}",
        n=CONTEXT_LINES,
    ):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n" + NO_NEWLINE_MARKER + "\n")
    return "".join(out)


def _strip_eol(line: str) -> str:
    return line[:-1] if line.endswith("\n") else line


def parse_unified_diff(diff_text: str) -> list[Hunk]:
    """Parse a single-file unified diff into hunks. Raises DiffFormatError."""
    lines = diff_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    hunks: list[Hunk] = []
    file_headers = 0
    i = 0
    while i < len(lines):
        ln = lines[i]

        if ln.startswith("@@"):
            m = _HUNK_RE.match(ln)
            if not m:
                raise DiffFormatError(f"malformed hunk header: {ln[:80]!r}")
            old_start = int(m.group(1))
            old_count = int(m.group(2)) if m.group(2) is not None else 1
            new_start = int(m.group(3))
            new_count = int(m.group(4)) if m.group(4) is not None else 1

            old: list[str] = []
            new: list[str] = []
            old_left, new_left = old_count, new_count
            last_tag = ""
            i += 1
            while i < len(lines) and (old_left > 0 or new_left > 0 or lines[i].startswith("\\")):
                body = lines[i]
                if body.startswith("\\"):
                    # Marker applies to the line just before it.
                    if last_tag in (" ", "-"):
                        old[-1] = _strip_eol(old[-1])
                    if last_tag in (" ", "+"):
                        new[-1] = _strip_eol(new[-1])
                    if not last_tag:
                        raise DiffFormatError("no-newline marker without a preceding line")
                    i += 1
                    continue

                # A bare empty line is context for an empty line (editors strip the leading space).
                tag = body[0] if body else " "
                content = body[1:] + "\n"
                if tag == " ":
                    if old_left <= 0 or new_left <= 0:
                        raise DiffFormatError("hunk has more context lines than its header declares")
                    old.append(content)
                    new.append(content)
                    old_left -= 1
                    new_left -= 1
                elif tag == "-":
                    if old_left <= 0:
                        raise DiffFormatError("hunk has more removed lines than its header declares")
                    old.append(content)
                    old_left -= 1
                elif tag == "+":
                    if new_left <= 0:
                        raise DiffFormatError("hunk has more added lines than its header declares")
                    new.append(content)
                    new_left -= 1
                else:
                    raise DiffFormatError(f"unknown hunk line prefix: {tag!r}")
                last_tag = tag
                i += 1

            if old_left or new_left:
                raise DiffFormatError("hunk line counts do not match header")
            hunks.append(
                Hunk(
                    old_start=old_start,
                    old_count=old_count,
                    new_start=new_start,
                    new_count=new_count,
                    old_lines=tuple(old),
                    new_lines=tuple(new),
                )
            )
            continue

        if ln.startswith("--- "):
            file_headers += 1
            if file_headers > 1:
                raise DiffFormatError("patch touches more than one file")
            if i + 1 >= len(lines) or not lines[i + 1].startswith("+++ "):
                raise DiffFormatError("missing +++ header after ---")
            i += 2
            continue

        if not ln.strip():
            i += 1
            continue

        if ln.startswith(_PREAMBLE_PREFIXES):
            if hunks:
                raise DiffFormatError("patch touches more than one file")
            i += 1
            continue

        raise DiffFormatError(f"unexpected line in patch: {ln[:80]!r}")

    if not hunks:
        raise DiffFormatError("patch has no hunks")
    return hunks


def _locate(src: list[str], block: tuple[str, ...], want: int, lo: int) -> int | None:
    hi = len(src) - len(block)
    if hi < lo:
        return None
    want = min(max(want, lo), hi)
    n = len(block)
    for d in range(0, hi - lo + 1):
        for at in ((want,) if d == 0 else (want + d, want - d)):
            if lo <= at <= hi and tuple(src[at : at + n]) == block:
                return at
        if want + d >= hi and want - d <= lo:
            break
    return None


def apply_hunks(before: str, hunks: list[Hunk]) -> str | None:
    src = split_lines(before)
    out: list[str] = []
    pos = 0
    for h in hunks:
        # "-N,0" means "insert after line N"; otherwise N is the 1-based first old line.
        want = h.old_start if h.old_count == 0 else h.old_start - 1
        at = _locate(src, h.old_lines, want, pos)
        if at is None:
            return None
        out.extend(src[pos:at])
        out.extend(h.new_lines)
        pos = at + len(h.old_lines)
    out.extend(src[pos:])
    return "".join(out)


def apply_unified_diff(before: str, diff_text: str) -> str | None:
    """Apply diff_text to before. None when the patch is malformed or does not match."""
    try:
        hunks = parse_unified_diff(diff_text)
    except DiffFormatError:
        return None
    return apply_hunks(before, hunks)


def diff_stats(diff_text: str) -> dict[str, int]:
    added = 0
    removed = 0
    in_hunks = False
    for ln in diff_text.split("\n"):
        if ln.startswith("@@"):
            in_hunks = True
            continue
        # File headers only appear before the first hunk of a single-file diff.
        if not in_hunks:
            continue
        if ln.startswith("+"):
            added += 1
        elif ln.startswith("-"):
            removed += 1
    return {"added": added, "removed": removed}


def build_validated_diff(before: str, after: str, rel_path: str) -> Result[str]:
    """Generate the authoritative diff and prove it reproduces `after` from `before`."""
    diff_text = generate_unified_diff(before, after, rel_path)
    replayed = apply_unified_diff(before, diff_text)
    if replayed is None or replayed != after:
        return fail("patch_generation_failed")
    return Ok(diff_text)


__all__ = [
    "DiffFormatError",
    "Hunk",
    "apply_hunks",
    "apply_unified_diff",
    "build_validated_diff",
    "diff_stats",
    "generate_unified_diff",
    "parse_unified_diff",
]
