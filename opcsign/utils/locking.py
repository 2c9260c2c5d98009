"""Exclusive advisory locks for files that are rewritten in place."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from types import TracebackType

from opcsign.errors import PackageLockedError

logger = logging.getLogger(__name__)


def lock_path_for(path: Path) -> Path:
    """Return the sidecar lock file used for ``path``."""
    return path.parent / f".{path.name}.lock"


class ExclusiveFileLock:
    """Non-blocking exclusive lock on a sidecar ``.<name>.lock`` file.

    Uses ``fcntl.flock`` on POSIX. On Windows the lock file is created with
    ``O_EXCL`` and its existence is the lock.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.lock_path = lock_path_for(self.path)
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock or raise ``PackageLockedError`` immediately."""
        if self._fd is not None:
            return
        if sys.platform == "win32":
            self._fd = self._acquire_exclusive_create()
        else:
            self._fd = self._acquire_flock()
        logger.debug("Acquired lock %s", self.lock_path)

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            if sys.platform != "win32":
                import fcntl

                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError:
            # Another process may already hold a fresh lock on the same name.
            pass
        logger.debug("Released lock %s", self.lock_path)

    def __enter__(self) -> ExclusiveFileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def _acquire_flock(self) -> int:
        import fcntl

        fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o666)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise PackageLockedError(f"{self.path} is being signed by another process.") from exc
        except OSError:
            os.close(fd)
            raise
        return fd

    def _acquire_exclusive_create(self) -> int:
        try:
            return os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o666)
        except FileExistsError as exc:
            raise PackageLockedError(f"{self.path} is being signed by another process.") from exc
