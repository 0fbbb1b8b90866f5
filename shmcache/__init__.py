"""Cross-process key-value cache stored in a single shared memory segment."""

from shmcache.codec import Entry, Payload
from shmcache.errors import (
    DecodeError,
    LockTimeoutError,
    LockUnavailableError,
    SegmentUnavailableError,
    SharedCacheError,
)
from shmcache.lock import LockCoordinator
from shmcache.segment import SegmentStore
from shmcache.settings import Settings, get_settings
from shmcache.store import CacheInfo, CacheStore

__all__ = [
    "CacheInfo",
    "CacheStore",
    "DecodeError",
    "Entry",
    "LockCoordinator",
    "LockTimeoutError",
    "LockUnavailableError",
    "Payload",
    "SegmentStore",
    "SegmentUnavailableError",
    "Settings",
    "SharedCacheError",
    "get_settings",
]
