import asyncio

import pytest

from tymelyne.config import reload_config
from tymelyne.memory import MemoryDataClient


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Every test sees default settings regardless of the host environment."""
    for name in ("TYMELYNE_BACKEND", "TYMELYNE_POSTS_PAGE_SIZE", "TYMELYNE_COMMENTS_PAGE_SIZE"):
        monkeypatch.delenv(name, raising=False)
    reload_config()
    yield
    reload_config()


@pytest.fixture
def client():
    return MemoryDataClient()


@pytest.fixture
def slow_client(client):
    """Memory client whose calls yield to the event loop before running."""
    original = client.execute

    async def execute(query):
        await asyncio.sleep(0)
        return await original(query)

    client.execute = execute
    return client
