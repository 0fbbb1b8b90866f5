"""Settings module for runtime configuration."""

from __future__ import annotations

import functools
import os
import tempfile

import xxhash

from shmcache.segment import DEFAULT_PERMISSIONS, DEFAULT_SEGMENT_SIZE, HEADER_SIZE

NAMESPACE_TOKEN = "shmcache"
SEGMENT_NAME_PREFIX = "shmc_"
DEFAULT_DISCRIMINATOR = "default"
DEFAULT_LOCK_TIMEOUT = 60.0

__all__ = [
    "DEFAULT_DISCRIMINATOR",
    "DEFAULT_LOCK_TIMEOUT",
    "DEFAULT_PERMISSIONS",
    "DEFAULT_SEGMENT_SIZE",
    "Settings",
    "derive_segment_name",
    "get_settings",
]

_UNSET = object()


def derive_segment_name(discriminator: str) -> str:
    """Derive the shared memory segment name for a discriminator.

    Every process computing the name from the same discriminator lands on the same
    segment, so no handshake between workers is needed.

    Args:
        discriminator: Free-form string separating independent caches on one host.

    Returns:
        A short POSIX shared memory name.
    """
    digest = xxhash.xxh64_hexdigest(f"{NAMESPACE_TOKEN}:{discriminator}".encode())
    return f"{SEGMENT_NAME_PREFIX}{digest}"


def _parse_size(value: str | int) -> int:
    size = int(value)
    if size <= HEADER_SIZE:
        msg = f"segment size must be larger than the {HEADER_SIZE} byte segment header, got {size}"
        raise ValueError(msg)
    return size


def _parse_permissions(value: str | int) -> int:
    """Parse permission bits, accepting octal strings such as "644" or "0o600"."""
    perms = int(value, 8) if isinstance(value, str) else int(value)
    if not 0 <= perms <= 0o777:  # noqa: PLR2004
        msg = f"permissions must be between 0o000 and 0o777, got {oct(perms)}"
        raise ValueError(msg)
    return perms


def _parse_timeout(value: str | float | None) -> float | None:
    """Parse a lock timeout in seconds; "none" or an empty string disables it."""
    if value is None:
        return None
    if isinstance(value, str):
        if value.strip().lower() in ("", "none"):
            return None
        value = float(value)
    timeout = float(value)
    if timeout < 0:
        msg = f"lock timeout must not be negative, got {timeout}"
        raise ValueError(msg)
    return timeout


class Settings:
    """Runtime configuration for the shared memory cache.

    Values come from ``SHMCACHE_*`` environment variables unless overridden by keyword.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        segment_key: str | None = None,
        discriminator: str | None = None,
        segment_size: int | None = None,
        permissions: int | None = None,
        lock_dir: str | None = None,
        lock_timeout: float | None | object = _UNSET,
    ) -> None:
        """Initialize settings from keyword overrides and environment variables."""
        self._segment_key = segment_key or os.environ.get("SHMCACHE_SEGMENT_KEY") or None
        self._discriminator = discriminator or os.environ.get("SHMCACHE_DISCRIMINATOR", DEFAULT_DISCRIMINATOR)
        self._segment_size = _parse_size(
            segment_size if segment_size is not None else os.environ.get("SHMCACHE_SEGMENT_SIZE", DEFAULT_SEGMENT_SIZE),
        )
        self._permissions = _parse_permissions(
            permissions if permissions is not None else os.environ.get("SHMCACHE_PERMISSIONS", DEFAULT_PERMISSIONS),
        )
        self._lock_dir = lock_dir or os.environ.get("SHMCACHE_LOCK_DIR") or tempfile.gettempdir()
        if lock_timeout is _UNSET:
            lock_timeout = os.environ.get("SHMCACHE_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT)
        self._lock_timeout = _parse_timeout(lock_timeout)

    @property
    def segment_name(self) -> str:
        """Name of the shared memory segment, explicit key first."""
        return self._segment_key or derive_segment_name(self._discriminator)

    @property
    def lock_path(self) -> str:
        """Path of the lock file guarding the segment."""
        return os.path.join(self._lock_dir, f"{self.segment_name}.lock")  # noqa: PTH118

    @property
    def segment_key(self) -> str | None:
        """Explicit segment name override, if any."""
        return self._segment_key

    @segment_key.setter
    def segment_key(self, value: str | None) -> None:
        self._segment_key = value or None

    @property
    def discriminator(self) -> str:
        """Discriminator the segment name is derived from."""
        return self._discriminator

    @property
    def segment_size(self) -> int:
        """Requested segment capacity in bytes."""
        return self._segment_size

    @segment_size.setter
    def segment_size(self, value: int) -> None:
        self._segment_size = _parse_size(value)

    @property
    def permissions(self) -> int:
        """Permission bits applied to a newly created segment and lock file."""
        return self._permissions

    @permissions.setter
    def permissions(self, value: int) -> None:
        self._permissions = _parse_permissions(value)

    @property
    def lock_dir(self) -> str:
        """Directory holding the lock file."""
        return self._lock_dir

    @property
    def lock_timeout(self) -> float | None:
        """Seconds to wait for the lock, None to wait forever."""
        return self._lock_timeout

    def __repr__(self) -> str:
        """Return a string representation of the settings."""
        return (
            f"Settings(segment_name={self.segment_name!r}, segment_size={self._segment_size}, "
            f"permissions={oct(self._permissions)}, lock_path={self.lock_path!r}, lock_timeout={self._lock_timeout})"
        )


@functools.cache
def get_settings() -> Settings:
    """Return the process-wide settings, read from the environment on first use.

    Raises:
        ValueError: If a SHMCACHE_* environment variable holds an invalid value.
    """
    return Settings()
