"""Fixed-capacity shared memory segment holding one opaque byte blob.

The segment starts with a small control header followed by the content area:

- bytes 0-3: magic (``b"SHMC"``), all zeros on a freshly created segment
- byte 4: state (1 = open, 2 = deleted)
- bytes 5-7: reserved
- bytes 8-15: sequence counter (uint64), odd while a write is in progress
- bytes 16-23: content length (uint64)

Writers are serialized by the cache lock. Readers take no lock and instead retry
until they see the same even sequence number before and after copying the content,
so a read never observes a half-written blob.
"""

from __future__ import annotations

import logging
import os
import struct
import threading
import time
from contextlib import contextmanager
from multiprocessing.shared_memory import SharedMemory
from typing import TYPE_CHECKING, Any

from shmcache.errors import SegmentUnavailableError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

    from shmcache.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_SIZE = 320_000
DEFAULT_PERMISSIONS = 0o644
MAGIC = b"SHMC"
EMPTY_MAGIC = b"\x00" * 4
STATE_OPEN = 1
STATE_DELETED = 2
HEADER_FORMAT = ">4sB3xQQ"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 24
STATE_OFFSET = 4
SEQUENCE_OFFSET = 8
LENGTH_OFFSET = 16
OPEN_ATTEMPTS = 20
OPEN_RETRY_DELAY = 0.005
DEFAULT_READ_TIMEOUT = 5.0
MIN_READ_BACKOFF = 0.0001
MAX_READ_BACKOFF = 0.01


class SegmentStore:
    """Owns one named shared memory segment: opens or creates it, reads and writes its content.

    The handle is attached lazily and re-attached transparently when another process
    deleted the segment, so every process computing the same name follows the current
    segment. Handles replaced this way stay mapped until no thread is reading them.

    Attributes:
        name: Name of the shared memory segment.
        requested_capacity: Size in bytes used when this store creates the segment.
        permissions: Permission bits applied to a newly created segment.
    """

    def __init__(
        self,
        name: str,
        *,
        size: int = DEFAULT_SEGMENT_SIZE,
        permissions: int = DEFAULT_PERMISSIONS,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
    ) -> None:
        """Initialize the segment store. No shared memory is touched until first use.

        Args:
            name: Name of the shared memory segment.
            size: Requested segment size in bytes, including the control header.
            permissions: Permission bits for a newly created segment.
            read_timeout: Seconds a reader waits for an in-progress write to finish
                before treating the write as abandoned.
        """
        if size <= HEADER_SIZE:
            msg = f"segment size must be larger than the {HEADER_SIZE} byte header, got {size}"
            raise ValueError(msg)
        self._name = name
        self._size = size
        self._permissions = permissions
        self._read_timeout = read_timeout
        self._init_handles()

    def _init_handles(self) -> None:
        self._shm: SharedMemory | None = None
        self._handle_lock = threading.Lock()
        self._retired: list[SharedMemory] = []
        self._users = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> SegmentStore:
        """Build a segment store from settings."""
        return cls(settings.segment_name, size=settings.segment_size, permissions=settings.permissions)

    @property
    def name(self) -> str:
        """Name of the shared memory segment."""
        return self._name

    @property
    def permissions(self) -> int:
        """Permission bits applied to a newly created segment."""
        return self._permissions

    @property
    def requested_capacity(self) -> int:
        """Size in bytes this store asks for when creating the segment."""
        return self._size

    @property
    def actual_capacity(self) -> int:
        """Size in bytes of the segment as allocated by the OS."""
        return self.open_or_create().size

    @property
    def max_content_size(self) -> int:
        """Largest blob that fits in the segment after the control header."""
        return self.actual_capacity - HEADER_SIZE

    def open_or_create(self) -> SharedMemory:
        """Return a live handle to the segment, creating the segment if it does not exist.

        Returns:
            The attached SharedMemory.

        Raises:
            SegmentUnavailableError: If the segment cannot be created or opened.
        """
        with self._handle_lock:
            return self._current()

    def _current(self) -> SharedMemory:
        # Caller holds _handle_lock
        if self._shm is not None:
            if not self._is_deleted(self._shm):
                return self._shm
            logger.info("Shared memory %s was deleted by another process, reopening", self._name)
            self._retire()
        self._shm = self._attach_or_create()
        return self._shm

    @contextmanager
    def _attached(self) -> Iterator[SharedMemory]:
        """Pin the current handle so no other thread closes it while it is in use."""
        with self._handle_lock:
            shm = self._current()
            self._users += 1
        try:
            yield shm
        finally:
            with self._handle_lock:
                self._users -= 1
                if not self._users:
                    self._close_retired()

    def _retire(self) -> None:
        # Caller holds _handle_lock
        if self._shm is not None:
            self._retired.append(self._shm)
            self._shm = None
        if not self._users:
            self._close_retired()

    def _close_retired(self) -> None:
        while self._retired:
            self._retired.pop().close()

    def _attach_or_create(self) -> SharedMemory:
        last_error: Exception | None = None
        for _attempt in range(OPEN_ATTEMPTS):
            try:
                shm = SharedMemory(name=self._name, create=False, track=False)
            except FileNotFoundError:
                pass
            except ValueError as e:
                # Another process created the name but has not sized it yet
                last_error = e
                time.sleep(OPEN_RETRY_DELAY)
                continue
            except OSError as e:
                msg = f"Failed to open shared memory {self._name}: {e}"
                raise SegmentUnavailableError(msg) from e
            else:
                if self._is_deleted(shm):
                    # Marked for deletion but not unlinked yet
                    shm.close()
                    time.sleep(OPEN_RETRY_DELAY)
                    continue
                logger.info("Attached to existing shared memory: %s (%d bytes)", self._name, shm.size)
                return shm

            try:
                shm = SharedMemory(name=self._name, create=True, size=self._size, track=False)
            except FileExistsError as e:
                last_error = e
                continue
            except OSError as e:
                msg = f"Failed to create shared memory {self._name}: {e}"
                raise SegmentUnavailableError(msg) from e
            self._apply_permissions(shm)
            logger.info("Created new shared memory: %s (%d bytes)", self._name, shm.size)
            return shm

        msg = f"Gave up opening shared memory {self._name} after {OPEN_ATTEMPTS} attempts"
        raise SegmentUnavailableError(msg) from last_error

    def _apply_permissions(self, shm: SharedMemory) -> None:
        # SharedMemory always creates with 0o600, widen it to the configured mode
        try:
            os.fchmod(shm._fd, self._permissions)  # noqa: SLF001
        except OSError as e:
            logger.warning("Failed to set permissions %s on shared memory %s: %s", oct(self._permissions), self._name, e)

    @staticmethod
    def _is_deleted(shm: SharedMemory) -> bool:
        return shm.buf[STATE_OFFSET] == STATE_DELETED

    def read_all(self) -> bytes:
        """Return the full current content of the segment.

        A write in progress in another thread or process is waited for, up to the
        read timeout, after which the writer is assumed dead.

        Returns:
            The stored blob, or b"" if the segment is empty or holds foreign data.
        """
        deadline = time.monotonic() + self._read_timeout
        backoff = MIN_READ_BACKOFF
        while True:
            with self._attached() as shm:
                data = self._snapshot(shm)
            if data is not None:
                return data
            if time.monotonic() >= deadline:
                logger.warning(
                    "Shared memory %s stayed mid-write for %.1f seconds, treating the write as abandoned",
                    self._name,
                    self._read_timeout,
                )
                return b""
            time.sleep(backoff)
            backoff = min(backoff * 2, MAX_READ_BACKOFF)

    def _snapshot(self, shm: SharedMemory) -> bytes | None:
        """Copy the content if no write overlapped the copy, None to retry."""
        buf = shm.buf
        magic, state, sequence, length = struct.unpack_from(HEADER_FORMAT, buf, 0)
        if state == STATE_DELETED or sequence % 2:
            return None
        if magic not in (MAGIC, EMPTY_MAGIC):
            logger.warning("Shared memory %s holds foreign data (magic %r), treating as empty", self._name, magic)
            return b""
        capacity = len(buf) - HEADER_SIZE
        data = bytes(buf[HEADER_SIZE : HEADER_SIZE + min(length, capacity)])
        if struct.unpack_from(">Q", buf, SEQUENCE_OFFSET)[0] != sequence:
            return None
        if length > capacity:
            logger.warning("Shared memory %s reports %d bytes of content, more than it holds", self._name, length)
            return b""
        return data

    def write_all(self, data: bytes) -> None:
        """Replace the entire content of the segment.

        Callers must hold the cache lock: concurrent writers are not supported.

        Args:
            data: The new content.

        Raises:
            ValueError: If the data does not fit in the segment.
        """
        with self._attached() as shm:
            buf = shm.buf
            capacity = len(buf) - HEADER_SIZE
            if len(data) > capacity:
                msg = f"{len(data)} bytes do not fit in shared memory {self._name} ({capacity} bytes available)"
                raise ValueError(msg)

            sequence = struct.unpack_from(">Q", buf, SEQUENCE_OFFSET)[0]
            if sequence % 2:
                # A previous writer died mid-write
                sequence += 1
            struct.pack_into(">Q", buf, SEQUENCE_OFFSET, sequence + 1)
            buf[HEADER_SIZE : HEADER_SIZE + len(data)] = data
            struct.pack_into(">4sB", buf, 0, MAGIC, STATE_OPEN)
            struct.pack_into(">Q", buf, LENGTH_OFFSET, len(data))
            struct.pack_into(">Q", buf, SEQUENCE_OFFSET, sequence + 2)

    def content_length(self) -> int:
        """Return the length in bytes of the currently stored blob."""
        with self._attached() as shm:
            return struct.unpack_from(">Q", shm.buf, LENGTH_OFFSET)[0]

    def delete(self) -> None:
        """Mark the segment deleted and unlink it.

        Processes still attached notice the deleted state on their next access and
        reopen, which creates a fresh empty segment. The OS releases the memory once
        every process has detached.
        """
        with self._handle_lock:
            shm = self._current()
            struct.pack_into(">4sB", shm.buf, 0, MAGIC, STATE_DELETED)
            try:
                shm.unlink()
            except FileNotFoundError:
                logger.debug("Shared memory %s was already unlinked", self._name)
            finally:
                self._retire()
        logger.info("Deleted shared memory: %s", self._name)

    def close(self) -> None:
        """Detach from the segment without deleting it.

        A handle still being read by another thread is closed once that read finishes.
        """
        with self._handle_lock:
            self._retire()

    def __getstate__(self) -> dict[str, Any]:
        """Support pickling for multiprocessing: the handle is reattached lazily."""
        return {
            "_name": self._name,
            "_size": self._size,
            "_permissions": self._permissions,
            "_read_timeout": self._read_timeout,
        }

    def __setstate__(self, state: dict[str, Any]) -> None:
        """Support unpickling for multiprocessing."""
        self.__dict__.update(state)
        self._init_handles()

    def __enter__(self) -> SegmentStore:
        """Context manager entry."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit - detaches from the segment."""
        self.close()

    def __repr__(self) -> str:
        """Return a string representation of the segment store."""
        return f"SegmentStore(name={self._name!r}, size={self._size}, permissions={oct(self._permissions)})"
