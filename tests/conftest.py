"""
Shared fixtures for Folio tests.

Every test gets a fresh workspace database in a temporary directory and an
in-memory notifier whose event log can be inspected.
"""

import tempfile

import pytest
import pytest_asyncio

from engine.folio.notify import InMemoryNotifier
from engine.folio.store import EntityStore
from engine.folio.workspace import Workspace


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store(data_dir):
    """Create entity store (not initialized)."""
    return EntityStore(data_dir, wal_mode=False)


@pytest.fixture
def notifier():
    """Create in-memory notifier transport."""
    return InMemoryNotifier()


@pytest_asyncio.fixture
async def workspace(store, notifier):
    """Open workspace over the temp store."""
    ws = Workspace(store, notifier)
    await ws.open()
    yield ws
    await ws.close()

