"""Filesystem helpers shared by the checkpoint and report writers."""

from __future__ import annotations

import os
import uuid
from contextlib import suppress
from pathlib import Path

__all__ = ["atomic_write_bytes", "atomic_write_text", "ensure_parent_exists"]


def ensure_parent_exists(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_bytes(path: Path, payload: bytes, *, temp_suffix: str = ".part") -> int:
    """Atomically write ``payload`` to ``path`` and return the byte count.

    The bytes land in a sibling temporary file that is fsynced and then
    renamed over ``path``; readers never observe a partial file.
    """

    ensure_parent_exists(path)
    suffix = temp_suffix if temp_suffix.startswith(".") else f".{temp_suffix}"
    temp_path = path.with_name(f"{path.name}{suffix}.{uuid.uuid4().hex}")
    replaced = False
    try:
        with temp_path.open("wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
        replaced = True
        return len(payload)
    finally:
        if not replaced:
            with suppress(FileNotFoundError):
                temp_path.unlink()


def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    """Atomically write ``text`` to ``path`` using :func:`atomic_write_bytes`."""

    atomic_write_bytes(path, text.encode(encoding))
