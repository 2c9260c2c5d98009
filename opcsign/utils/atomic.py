"""Atomic file replacement helpers."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO


def atomic_write(path: Path, write: Callable[[BinaryIO], None]) -> None:
    """Write ``path`` atomically via ``write``.

    The write is performed via a temporary file in the destination directory
    followed by an ``os.replace`` once the contents are flushed and fsynced,
    so readers see either the old file or the complete new one.
    """
    destination = Path(path)

    fd: int | None = None
    tmp_path: str | None = None

    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}",
            suffix=".tmp",
        )

        with os.fdopen(fd, "wb") as handle:
            fd = None  # Ownership transferred to file object
            write(handle)
            handle.flush()
            os.fsync(handle.fileno())

        if destination.exists():
            os.chmod(tmp_path, destination.stat().st_mode & 0o777)
        os.replace(tmp_path, destination)
        tmp_path = None
    finally:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
