"""File-based reader/writer locks for cache keys.

Each cache key owns a lock file. Exclusive holders take ``LOCK_EX`` and
shared holders take ``LOCK_SH`` on it with ``fcntl.flock``. Because flock
locks belong to the open file description, two threads of one process that
open the file separately contend exactly like two processes do.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


class FileLock:
    """A reader/writer lock on a single lock file.

    Args:
        path: Lock file path (created if missing).
        shared: Take a shared (reader) lock instead of an exclusive one.
    """

    def __init__(self, path: Path, shared: bool = False) -> None:
        self.path = path
        self.shared = shared
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        """Whether this lock is currently held."""
        return self._fd is not None

    def _open(self) -> int:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)

    def acquire(self, timeout: float | None = None) -> None:
        """Acquire the lock, blocking until available.

        Args:
            timeout: Acquisition timeout in seconds (None = block forever).

        Raises:
            TimeoutError: If the lock cannot be acquired within timeout.
            RuntimeError: If the lock is already held by this object.
        """
        if self._fd is not None:
            raise RuntimeError(f"Lock already held: {self.path}")

        op = fcntl.LOCK_SH if self.shared else fcntl.LOCK_EX
        fd = self._open()
        try:
            if timeout is None:
                fcntl.flock(fd, op)
            else:
                start = time.monotonic()
                while True:
                    try:
                        fcntl.flock(fd, op | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() - start >= timeout:
                            raise TimeoutError(
                                f"Timeout waiting for lock {self.path.name}"
                            ) from None
                        time.sleep(_POLL_INTERVAL)
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        logger.debug(
            "Acquired %s lock %s", "shared" if self.shared else "exclusive", self.path.name
        )

    def try_acquire(self) -> bool:
        """Acquire the lock without blocking.

        Returns:
            True if the lock was acquired, False if another holder has it.
        """
        if self._fd is not None:
            raise RuntimeError(f"Lock already held: {self.path}")

        op = fcntl.LOCK_SH if self.shared else fcntl.LOCK_EX
        fd = self._open()
        try:
            fcntl.flock(fd, op | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        self._fd = fd
        return True

    def release(self) -> None:
        """Release the lock (no-op if not held)."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released lock %s", self.path.name)


@contextmanager
def file_lock(
    path: Path,
    shared: bool = False,
    timeout: float | None = None,
) -> Iterator[FileLock]:
    """Hold a FileLock for the duration of a with-block.

    Args:
        path: Lock file path.
        shared: Take a shared lock.
        timeout: Acquisition timeout in seconds (None = blocking).

    Yields:
        The held FileLock.
    """
    lock = FileLock(path, shared=shared)
    lock.acquire(timeout=timeout)
    try:
        yield lock
    finally:
        lock.release()


__all__ = ["FileLock", "file_lock"]
