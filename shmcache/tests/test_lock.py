"""Tests for the cross-process lock coordinator."""

from __future__ import annotations

import pickle
import threading
import time
from typing import TYPE_CHECKING

import pytest

from shmcache.errors import LockTimeoutError, LockUnavailableError
from shmcache.lock import LockCoordinator

if TYPE_CHECKING:
    from pathlib import Path


def test_acquire_and_release(tmp_path: Path) -> None:
    """The lock reports being held between acquire and release."""
    lock = LockCoordinator(str(tmp_path / "cache.lock"), timeout=1.0)
    assert not lock.locked
    lock.acquire()
    assert lock.locked
    lock.release()
    assert not lock.locked
    assert (tmp_path / "cache.lock").exists()


def test_held_releases_on_error(tmp_path: Path) -> None:
    """The context manager releases the lock even when the block raises."""
    lock = LockCoordinator(str(tmp_path / "cache.lock"), timeout=1.0)
    with pytest.raises(RuntimeError, match="boom"), lock.held():
        assert lock.locked
        msg = "boom"
        raise RuntimeError(msg)
    assert not lock.locked
    with lock.held():
        assert lock.locked


def test_contention_times_out(tmp_path: Path) -> None:
    """A second coordinator on the same path waits, then gives up."""
    path = str(tmp_path / "cache.lock")
    holder = LockCoordinator(path, timeout=1.0)
    contender = LockCoordinator(path, timeout=0.05)
    with holder.held():
        start = time.monotonic()
        with pytest.raises(LockTimeoutError):
            contender.acquire()
        assert time.monotonic() - start >= 0.05
        assert not contender.locked
    with contender.held():
        assert contender.locked


def test_timeout_is_a_lock_unavailable_error(tmp_path: Path) -> None:
    """Callers handling LockUnavailableError also catch timeouts."""
    path = str(tmp_path / "cache.lock")
    with LockCoordinator(path).held(), pytest.raises(LockUnavailableError):
        LockCoordinator(path, timeout=0).acquire()


def test_not_reentrant(tmp_path: Path) -> None:
    """Acquiring again from the holding thread blocks like any other contender."""
    lock = LockCoordinator(str(tmp_path / "cache.lock"), timeout=0.05)
    with lock.held():
        with pytest.raises(LockTimeoutError):
            lock.acquire()
        assert lock.locked


def test_release_without_acquire(tmp_path: Path) -> None:
    """Releasing a lock the thread does not hold is a programming error."""
    lock = LockCoordinator(str(tmp_path / "cache.lock"))
    with pytest.raises(RuntimeError, match="not held"):
        lock.release()


def test_unopenable_lock_file(tmp_path: Path) -> None:
    """A lock file that cannot be created raises LockUnavailableError."""
    lock = LockCoordinator(str(tmp_path / "missing" / "cache.lock"))
    with pytest.raises(LockUnavailableError, match="Failed to open lock file"):
        lock.acquire()


def test_blocking_acquire_waits_for_release(tmp_path: Path) -> None:
    """Without a timeout, acquire blocks until the holder releases."""
    path = str(tmp_path / "cache.lock")
    holder = LockCoordinator(path)
    waiter = LockCoordinator(path, timeout=None)
    acquired = threading.Event()

    def wait_for_lock() -> None:
        with waiter.held():
            acquired.set()

    holder.acquire()
    thread = threading.Thread(target=wait_for_lock)
    thread.start()
    try:
        assert not acquired.wait(0.1)
    finally:
        holder.release()
    thread.join(timeout=5)
    assert acquired.is_set()


def test_threads_are_serialized(tmp_path: Path) -> None:
    """Threads sharing one coordinator never interleave their critical sections."""
    lock = LockCoordinator(str(tmp_path / "cache.lock"), timeout=10.0)
    counter = {"value": 0}

    def work() -> None:
        for _ in range(20):
            with lock.held():
                current = counter["value"]
                time.sleep(0.0005)
                counter["value"] = current + 1

    threads = [threading.Thread(target=work) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter["value"] == 100


def test_pickle_does_not_transfer_ownership(tmp_path: Path) -> None:
    """An unpickled coordinator starts out not holding the lock."""
    lock = LockCoordinator(str(tmp_path / "cache.lock"), timeout=0.05)
    with lock.held():
        clone = pickle.loads(pickle.dumps(lock))  # noqa: S301
        assert clone.path == lock.path
        assert not clone.locked
        with pytest.raises(LockTimeoutError):
            clone.acquire()
