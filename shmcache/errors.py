"""Exceptions raised by the shared memory cache."""

from __future__ import annotations


class SharedCacheError(Exception):
    """Base class for shared memory cache errors."""


class SegmentUnavailableError(SharedCacheError):
    """Exception raised when the shared memory segment cannot be created or opened."""


class LockUnavailableError(SharedCacheError):
    """Exception raised when the cross-process lock cannot be obtained."""


class LockTimeoutError(LockUnavailableError):
    """Exception raised when lock acquisition times out."""


class DecodeError(SharedCacheError):
    """Exception raised when a blob or payload cannot be decoded."""
