"""Shared test fixtures and marker registration."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from keyswitch._manager import KeyManager
from keyswitch.storage._memory import MemoryStorage

if TYPE_CHECKING:
    from collections.abc import Iterator


def pytest_configure(config: object) -> None:
    """Register custom markers."""
    if isinstance(config, pytest.Config):
        config.addinivalue_line("markers", "integration: requires external services")


@pytest.fixture()
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def manager(storage: MemoryStorage) -> Iterator[KeyManager]:
    """A loaded manager over in-memory storage."""
    m = KeyManager(storage)
    m.load()
    yield m
    m.close()
