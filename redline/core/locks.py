"""Non-blocking advisory locks guarding one session's command slot."""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
import threading


class ThreadLock:
    """In-process try-lock with a cheap ``busy`` marker checked first."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def try_acquire(self) -> bool:
        if not self._mutex.acquire(blocking=False):
            return False
        self._busy = True
        return True

    def release(self) -> None:
        self._busy = False
        self._mutex.release()

    def close(self) -> None:
        """Release any OS resources; the lock stays usable afterwards."""


class FileLock(ThreadLock):
    """Try-lock that also takes ``flock`` on a path shared across processes."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._fd: int | None = None

    def try_acquire(self) -> bool:
        if not super().try_acquire():
            return False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError:
            super().release()
            raise
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            super().release()
            return False
        except OSError:
            os.close(fd)
            super().release()
            raise
        self._fd = fd
        return True

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        super().release()

    def close(self) -> None:
        """Remove the lock file unless someone still holds it."""
        if self._fd is not None or not self.path.exists():
            return
        try:
            fd = os.open(self.path, os.O_RDWR)
        except FileNotFoundError:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return
        try:
            self.path.unlink(missing_ok=True)
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)


def build_lock(lock_path: str | None) -> ThreadLock:
    if lock_path:
        return FileLock(lock_path)
    return ThreadLock()
