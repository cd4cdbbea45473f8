from __future__ import annotations

import pytest

from services.patch_gate.app.diff_engine import (
    NO_NEWLINE_MARKER,
    DiffFormatError,
    apply_unified_diff,
    build_validated_diff,
    diff_stats,
    generate_unified_diff,
    parse_unified_diff,
)
from services.patch_gate.app.results import Ok


_LONG = "".join(f"line {i}\n" for i in range(1, 31))


@pytest.mark.parametrize(
    "before,after",
    [
        ("foo\nbar\n", "foo\nbaz\n"),
        ("", "x\n"),
        ("x\n", ""),
        ("a\nb", "a\nc"),
        ("a\nb", "a\nb\n"),
        ("a\nb\n", "a\nb"),
        ("\n\n\n", "\n\nx\n\n"),
        (_LONG, _LONG.replace("line 2\n", "line two\n").replace("line 28\n", "")),
    ],
)
def test_generated_diff_reproduces_after(before: str, after: str) -> None:
    diff = generate_unified_diff(before, after, "f.txt")
    assert apply_unified_diff(before, diff) == after


def test_headers_and_no_newline_marker() -> None:
    diff = generate_unified_diff("a\nb", "a\nc", "lib/x.py")
    assert diff.startswith("--- a/lib/x.py\n+++ b/lib/x.py\n@@ ")
    assert NO_NEWLINE_MARKER in diff
    assert diff.endswith("\n")


def test_far_apart_edits_produce_two_hunks() -> None:
    after = _LONG.replace("line 2\n", "line two\n").replace("line 28\n", "line 28!\n")
    hunks = parse_unified_diff(generate_unified_diff(_LONG, after, "f.txt"))
    assert len(hunks) == 2
    assert hunks[0].old_start < hunks[1].old_start


def test_hunk_can_land_at_shifted_offset() -> None:
    diff = "--- a/f\n+++ b/f\n@@ -1,3 +1,3 @@\n a\n-b\n+B\n c\n"
    shifted = "x\ny\na\nb\nc\n"
    assert apply_unified_diff(shifted, diff) == "x\ny\na\nB\nc\n"


def test_context_mismatch_is_rejected() -> None:
    diff = generate_unified_diff("a\nb\nc\n", "a\nB\nc\n", "f")
    assert apply_unified_diff("a\nX\nc\n", diff) is None


def test_bare_empty_line_counts_as_context() -> None:
    diff = "--- a/f\n+++ b/f\n@@ -1,3 +1,3 @@\n a\n\n-c\n+C\n"
    assert apply_unified_diff("a\n\nc\n", diff) == "a\n\nC\n"


def test_multi_file_patch_is_rejected() -> None:
    diff = (
        "--- a/one\n+++ b/one\n@@ -1 +1 @@\n-a\n+b\n"
        "--- a/two\n+++ b/two\n@@ -1 +1 @@\n-a\n+b\n"
    )
    with pytest.raises(DiffFormatError):
        parse_unified_diff(diff)
    assert apply_unified_diff("a\n", diff) is None


def test_git_preamble_is_tolerated() -> None:
    diff = "diff --git a/f b/f\nindex 123..456 100644\n--- a/f\n+++ b/f\n@@ -1 +1 @@\n-a\n+b\n"
    assert apply_unified_diff("a\n", diff) == "b\n"


@pytest.mark.parametrize(
    "bad",
    [
        "",
        "not a diff\n",
        "--- a/f\n+++ b/f\n",
        "--- a/f\n+++ b/f\n@@ -1,2 +1,2 @@\n a\n",
        "--- a/f\n+++ b/f\n@@ -1 +1 @@\n-a\n+b\n+c\n",
        "--- a/f\n+++ b/f\n@@ garbage @@\n",
    ],
)
def test_malformed_patches_raise(bad: str) -> None:
    with pytest.raises(DiffFormatError):
        parse_unified_diff(bad)


def test_diff_stats_ignore_headers() -> None:
    diff = generate_unified_diff("-- a\nb\n", "b\nc\nd\n", "f")
    assert diff_stats(diff) == {"added": 2, "removed": 1}


def test_build_validated_diff_ok() -> None:
    r = build_validated_diff("foo\nbar\n", "foo\nbaz\n", "x.ts")
    assert isinstance(r, Ok)
    assert "-bar\n+baz\n" in r.value
