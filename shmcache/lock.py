"""Cross-process mutual exclusion backed by flock on a well-known lock file."""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from shmcache.errors import LockTimeoutError, LockUnavailableError
from shmcache.settings import DEFAULT_LOCK_TIMEOUT, DEFAULT_PERMISSIONS

if TYPE_CHECKING:
    from collections.abc import Iterator

    from shmcache.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.001
MAX_POLL_INTERVAL = 0.05


class LockCoordinator:
    """Binary, non-reentrant lock shared by every process that uses the same lock path.

    Each acquisition opens its own file description and takes an exclusive flock on it,
    so the lock excludes other threads of the same process as well as other processes,
    and the OS drops it if the holder dies. Acquiring again while already holding the
    lock blocks like any other contender.

    Attributes:
        path: Lock file path.
        timeout: Seconds to wait before giving up, or None to wait forever.
    """

    def __init__(
        self,
        path: str,
        *,
        timeout: float | None = DEFAULT_LOCK_TIMEOUT,
        permissions: int = DEFAULT_PERMISSIONS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        """Initialize the lock coordinator.

        Args:
            path: Lock file path, created on first acquisition.
            timeout: Seconds to wait for the lock, or None to block indefinitely.
            permissions: Permission bits for a newly created lock file.
            poll_interval: Initial delay between attempts while waiting with a timeout.
        """
        self.path = path
        self.timeout = timeout
        self._permissions = permissions
        self._poll_interval = poll_interval
        self._local = threading.local()

    @classmethod
    def from_settings(cls, settings: Settings) -> LockCoordinator:
        """Build a lock coordinator from settings."""
        return cls(settings.lock_path, timeout=settings.lock_timeout, permissions=settings.permissions)

    @property
    def locked(self) -> bool:
        """Whether the calling thread holds the lock."""
        return getattr(self._local, "fd", None) is not None

    def _open(self) -> int:
        try:
            return os.open(self.path, os.O_RDONLY | os.O_CREAT | os.O_CLOEXEC, self._permissions)
        except OSError as e:
            msg = f"Failed to open lock file {self.path}: {e}"
            raise LockUnavailableError(msg) from e

    def acquire(self) -> None:
        """Block until the lock is held exclusively.

        Raises:
            LockUnavailableError: If the lock file cannot be opened or locked.
            LockTimeoutError: If the lock is not obtained within the timeout.
        """
        fd = self._open()
        try:
            if self.timeout is None:
                fcntl.flock(fd, fcntl.LOCK_EX)
            else:
                self._acquire_with_timeout(fd, self.timeout)
        except BlockingIOError:
            os.close(fd)
            logger.error("Timed out after %.3fs waiting for lock %s", self.timeout, self.path)
            msg = f"Failed to acquire lock {self.path} within {self.timeout}s"
            raise LockTimeoutError(msg) from None
        except OSError as e:
            os.close(fd)
            msg = f"Failed to lock {self.path}: {e}"
            raise LockUnavailableError(msg) from e
        self._local.fd = fd

    def _acquire_with_timeout(self, fd: int, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        delay = self._poll_interval
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise
                logger.debug("Lock %s is busy, retrying in %.3fs", self.path, delay)
                time.sleep(min(delay, remaining))
                delay = min(delay * 2, MAX_POLL_INTERVAL)
            else:
                return

    def release(self) -> None:
        """Release the lock held by the calling thread.

        Raises:
            RuntimeError: If the calling thread does not hold the lock.
        """
        fd = getattr(self._local, "fd", None)
        if fd is None:
            msg = f"Cannot release lock {self.path}: not held"
            raise RuntimeError(msg)
        self._local.fd = None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def held(self) -> Iterator[None]:
        """Context manager holding the lock for the duration of the block.

        Yields:
            None

        Raises:
            LockUnavailableError: If lock acquisition fails or times out.
        """
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def __getstate__(self) -> dict[str, Any]:
        """Support pickling for multiprocessing: a held lock is never transferred."""
        state = self.__dict__.copy()
        del state["_local"]
        return state

    def __setstate__(self, state: dict[str, Any]) -> None:
        """Support unpickling for multiprocessing."""
        self.__dict__.update(state)
        self._local = threading.local()

    def __repr__(self) -> str:
        """Return a string representation of the lock coordinator."""
        return f"LockCoordinator(path={self.path!r}, timeout={self.timeout})"
