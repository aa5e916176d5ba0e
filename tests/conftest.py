"""Shared fixtures for the clinicsync tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from clinicsync.client.store import LocalStore
from tests.fakes import FakeRemoteStore


@pytest.fixture
def store(tmp_path: Path) -> Generator[LocalStore, None, None]:
    """Open a local store in a temporary directory."""
    local = LocalStore(tmp_path / "local.db").open()
    yield local
    local.close()


@pytest.fixture
def remote() -> FakeRemoteStore:
    """Create an empty in-memory remote store."""
    return FakeRemoteStore()
