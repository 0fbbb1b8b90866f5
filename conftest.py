"""Fixtures for the test suite."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

import pytest

from shmcache.settings import Settings
from shmcache.store import CacheStore

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

logging.basicConfig(
    force=True,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)


def unique_segment_key() -> str:
    """Return a segment name no other test uses."""
    return f"test_shmc_{uuid.uuid4().hex[:12]}"


@pytest.fixture(name="cache_settings")
def cache_settings_fixture(tmp_path: Path) -> Settings:
    """Settings for an isolated segment and lock file."""
    return Settings(
        segment_key=unique_segment_key(),
        segment_size=64 * 1024,
        lock_dir=str(tmp_path),
        lock_timeout=10.0,
    )


@pytest.fixture(name="store")
def store_fixture(cache_settings: Settings) -> Generator[CacheStore]:
    """A cache store on a fresh segment, deleted after the test."""
    store = CacheStore.from_settings(cache_settings)
    yield store
    store.destroy()
