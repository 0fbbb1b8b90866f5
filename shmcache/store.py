"""Cache store backed by a shared memory segment.

Every mutating operation runs as one transaction: take the lock, decode the map from
the segment, change it, write it back through the overflow policy, release the lock.
Reads decode the current snapshot without locking.
"""

from __future__ import annotations

import logging
import operator
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from shmcache.codec import NEVER, Entry, Payload, decode_map, encode_map
from shmcache.errors import DecodeError
from shmcache.lock import LockCoordinator
from shmcache.segment import SegmentStore
from shmcache.settings import get_settings

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from types import TracebackType

    from shmcache.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheInfo:
    """Snapshot of the cache segment."""

    name: str
    requested_capacity: int
    actual_capacity: int
    used_bytes: int
    entries: int
    expired_entries: int


class CacheStore:
    """Key-value cache shared by every process attached to the same segment and lock.

    Entries expire lazily: an expired entry is dropped when it is read, or by the
    garbage collection pass that runs when the encoded map no longer fits the segment.
    If the map still does not fit after garbage collection the segment is recreated
    and all entries are lost; this is logged but not reported to the caller.
    """

    def __init__(
        self,
        segment: SegmentStore,
        lock: LockCoordinator,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache store.

        Args:
            segment: Segment holding the encoded map.
            lock: Lock serializing mutations of the segment.
            clock: Wall-clock source for expiration timestamps.
        """
        self._segment = segment
        self._lock = lock
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, clock: Callable[[], float] = time.time) -> CacheStore:
        """Build a cache store whose segment and lock are derived from settings."""
        if settings is None:
            settings = get_settings()
        return cls(SegmentStore.from_settings(settings), LockCoordinator.from_settings(settings), clock=clock)

    @property
    def segment(self) -> SegmentStore:
        """The underlying segment store."""
        return self._segment

    @property
    def lock(self) -> LockCoordinator:
        """The lock serializing mutations."""
        return self._lock

    def get(self, key: str, default: Any = None) -> Any:  # noqa: ANN401
        """Get an item from the cache.

        Args:
            key: The key to look up.
            default: The value to return on a miss.

        Returns:
            The cached value or the default value.
        """
        entry = self._read_map().get(key)
        if entry is None:
            return default
        if entry.is_expired(self._clock()):
            self._evict_expired([key])
            return default
        return self._unwrap(key, entry, default)

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        """Get several items from one snapshot.

        Args:
            keys: The keys to look up.

        Returns:
            A mapping of every requested key to its value, or None on a miss.
        """
        entries = self._read_map()
        now = self._clock()
        result: dict[str, Any] = {}
        expired = []
        for key in keys:
            entry = entries.get(key)
            if entry is not None and entry.is_expired(now):
                expired.append(key)
                entry = None
            result[key] = None if entry is None else self._unwrap(key, entry, None)
        if expired:
            self._evict_expired(expired)
        return result

    def put(self, key: str, value: Any, ttl: float = 0) -> bool:  # noqa: ANN401
        """Store an item for ttl seconds.

        Args:
            key: The key to store.
            value: The value to store.
            ttl: Seconds until the item expires; zero or negative means never.

        Returns:
            True once the map has been written.
        """
        return self.put_many({key: value}, ttl)

    def put_many(self, values: Mapping[str, Any], ttl: float = 0) -> bool:
        """Store several items for ttl seconds in a single transaction.

        Returns:
            True once the map has been written.
        """
        expires_at = self._expiration(ttl)
        new_entries = {_check_key(key): Entry(Payload.wrap(value), expires_at) for key, value in values.items()}

        def mutate(entries: dict[str, Entry]) -> tuple[bool, bool]:
            entries.update(new_entries)
            return True, True

        return self._transaction(mutate)

    def forever(self, key: str, value: Any) -> bool:  # noqa: ANN401
        """Store an item that never expires."""
        return self.put(key, value, 0)

    def increment(self, key: str, delta: int = 1) -> int:
        """Add delta to an integer item, creating it with value delta if it is missing.

        A created item never expires; an existing item keeps its expiration. An item
        that has expired but was not evicted yet counts as missing: the counter restarts
        at delta without an expiration instead of adding to the stale value.

        Args:
            key: The key to increment.
            delta: The amount to add.

        Returns:
            The resulting value.

        Raises:
            ValueError: If the stored value is not integer-like.
            TypeError: If the stored value has no integer interpretation.
        """
        _check_key(key)
        delta = operator.index(delta)

        def mutate(entries: dict[str, Entry]) -> tuple[int, bool]:
            entry = entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                entries[key] = Entry(Payload.wrap(delta))
                return delta, True
            try:
                value = entry.payload.as_int() + delta
            except DecodeError as e:
                msg = f"Cached value for {key!r} cannot be decoded"
                raise ValueError(msg) from e
            entries[key] = Entry(Payload.wrap(value), entry.expires_at)
            return value, True

        return self._transaction(mutate)

    def decrement(self, key: str, delta: int = 1) -> int:
        """Subtract delta from an integer item; see increment."""
        return self.increment(key, -operator.index(delta))

    def forget(self, key: str) -> bool:
        """Remove an item from the cache.

        Returns:
            True if the key was present and removed, False otherwise.
        """

        def mutate(entries: dict[str, Entry]) -> tuple[bool, bool]:
            if entries.pop(key, None) is None:
                return False, False
            return True, True

        return self._transaction(mutate)

    def flush(self) -> bool:
        """Remove all items from the cache."""

        def mutate(entries: dict[str, Entry]) -> tuple[bool, bool]:
            entries.clear()
            return True, True

        return self._transaction(mutate)

    def info(self) -> CacheInfo:
        """Return a snapshot of the segment's capacity and contents."""
        entries = self._read_map()
        now = self._clock()
        return CacheInfo(
            name=self._segment.name,
            requested_capacity=self._segment.requested_capacity,
            actual_capacity=self._segment.actual_capacity,
            used_bytes=self._segment.content_length(),
            entries=len(entries),
            expired_entries=sum(1 for entry in entries.values() if entry.is_expired(now)),
        )

    def destroy(self) -> None:
        """Delete the segment. The next access creates a fresh, empty one."""
        with self._lock.held():
            self._segment.delete()

    def close(self) -> None:
        """Detach from the segment without deleting it."""
        self._segment.close()

    def _transaction(self, mutate: Callable[[dict[str, Entry]], tuple[T, bool]]) -> T:
        """Run mutate on the current map under the lock, writing the map back if it changed.

        Args:
            mutate: Callable changing the map in place and returning (result, changed).

        Returns:
            The result returned by mutate.
        """
        with self._lock.held():
            entries = self._read_map()
            result, changed = mutate(entries)
            if changed:
                self._write_map(entries)
            return result

    def _evict_expired(self, keys: Iterable[str]) -> None:
        """Remove keys that are still expired once the lock is held."""

        def mutate(entries: dict[str, Entry]) -> tuple[None, bool]:
            now = self._clock()
            changed = False
            for key in keys:
                entry = entries.get(key)
                if entry is not None and entry.is_expired(now):
                    del entries[key]
                    changed = True
            return None, changed

        self._transaction(mutate)

    def _read_map(self) -> dict[str, Entry]:
        blob = self._segment.read_all()
        try:
            return decode_map(blob)
        except DecodeError as e:
            logger.warning("Discarding undecodable cache map in %s (%d bytes): %s", self._segment.name, len(blob), e)
            return {}

    def _write_map(self, entries: dict[str, Entry]) -> None:
        """Persist the map, collecting expired entries or recreating the segment on overflow."""
        encoded = encode_map(entries)
        capacity = self._segment.max_content_size
        if len(encoded) <= capacity:
            self._segment.write_all(encoded)
            return

        now = self._clock()
        live = {key: entry for key, entry in entries.items() if not entry.is_expired(now)}
        encoded = encode_map(live)
        if len(encoded) <= capacity:
            self._segment.write_all(encoded)
            logger.info(
                "Garbage collection performed on %s: removed %d expired entries, %d of %d bytes used",
                self._segment.name,
                len(entries) - len(live),
                len(encoded),
                capacity,
            )
            return

        logger.warning(
            "Cache map for %s needs %d bytes but only %d fit after garbage collection, "
            "segment will be recreated and %d entries dropped",
            self._segment.name,
            len(encoded),
            capacity,
            len(entries),
        )
        self._segment.delete()

    def _expiration(self, ttl: float) -> float:
        return self._clock() + ttl if ttl > 0 else NEVER

    def _unwrap(self, key: str, entry: Entry, default: Any) -> Any:  # noqa: ANN401
        try:
            return entry.payload.unwrap()
        except DecodeError as e:
            logger.warning("Failed to decode cached value for %r: %s", key, e)
            return default

    def __enter__(self) -> CacheStore:
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
        """Return a string representation of the cache store."""
        return f"CacheStore(segment={self._segment!r}, lock={self._lock!r})"


def _check_key(key: str) -> str:
    if not isinstance(key, str):
        msg = f"cache keys must be str, got {type(key).__name__}"
        raise TypeError(msg)
    try:
        key.encode("utf-8")
    except UnicodeEncodeError as e:
        msg = f"cache key {key!r} is not valid UTF-8: {e.reason}"
        raise ValueError(msg) from e
    return key
