from __future__ import annotations

from typing import Literal


EolStyle = Literal["CRLF", "LF"]
EolDescription = Literal["CRLF", "LF", "MIXED", "NONE"]

BOM = "\ufeff"


def to_canonical(text: str) -> str:
    return text.replace("\r\n", "\n")


def to_original(text: str, eol: EolStyle) -> str:
    # Input must already be canonical; a leftover CRLF would become CR CR LF.
    return text.replace("\n", "\r\n") if eol == "CRLF" else text


def detect_eol_style(text: str) -> EolStyle:
    """Whole-file classification: any CRLF makes the file CRLF."""
    return "CRLF" if "\r\n" in text else "LF"


def describe_eol(text: str) -> EolDescription:
    """Finer-grained report used by reads and audit records; never drives writes."""
    if not text or "\n" not in text:
        return "NONE"
    if "\r\n" in text:
        return "MIXED" if "\n" in text.replace("\r\n", "") else "CRLF"
    return "LF"


def is_mixed(text: str) -> bool:
    return describe_eol(text) == "MIXED"


def strip_bom(text: str) -> tuple[str, bool]:
    if text.startswith(BOM):
        return text[1:], True
    return text, False


def split_lines(text: str) -> list[str]:
    # Only "\n" terminates a line; str.splitlines() would also split on \r, \f, \x1c, etc.
    if not text:
        return []
    parts = text.split("\n")
    lines = [p + "\n" for p in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines
