"""Content addressing: hashes over text and the approval token derived from them."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib

from .eol import strip_bom


HASH_PREFIX = "sha256:"
APPROVAL_PREFIX = "appr_"


@dataclass(frozen=True)
class FileIdentity:
    root: str
    path: str

    @property
    def key(self) -> str:
        return f"{self.root}/{self.path}"


def sha256_hex(text: str) -> str:
    h = hashlib.sha256()
    h.update(text.encode("utf-8"))
    return h.hexdigest()


def content_hash(text: str) -> str:
    body, _ = strip_bom(text)
    return HASH_PREFIX + sha256_hex(body)


def patch_hash(diff_text: str) -> str:
    return HASH_PREFIX + sha256_hex(diff_text)


def make_approval_id(identity_key: str, before_hash: str, diff_text: str) -> str:
    """
    Deterministic approval id, no server storage required.

    Binds file identity + starting content hash + exact (canonical) diff text.
    A token minted against one state of one file never validates against another.
    """
    raw = f"{identity_key}\n{before_hash}\n{sha256_hex(diff_text)}"
    return APPROVAL_PREFIX + sha256_hex(raw)[:16]
