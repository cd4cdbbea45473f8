from __future__ import annotations

import os
import uuid

from .eol import BOM


def write_atomic_text_file(abs_path: str, content: str, *, bom: bool = False) -> None:
    """
    Replace abs_path with content.

    The temp file lives next to the target so the final rename stays on one
    filesystem; the rename is the only step that changes the visible file.
    """
    d = os.path.dirname(abs_path)
    base = os.path.basename(abs_path)
    tmp = os.path.join(d, f".{base}.pg_tmp_{uuid.uuid4().hex}.tmp")

    data = ((BOM if bom else "") + content).encode("utf-8")
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        # Best-effort; a missing target is fine.
        try:
            os.remove(abs_path)
        except FileNotFoundError:
            pass
        os.replace(tmp, abs_path)
    except BaseException:
        try:
            os.remove(tmp)
        except FileNotFoundError:
            pass
        raise
