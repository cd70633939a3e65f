"""pytest configuration for ToolHub tests."""

import asyncio

import pytest

from toolhub.store import MemoryStore


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture()
def store():
    """A fresh in-process store for each test."""
    return MemoryStore()


@pytest.fixture()
def settle():
    """Let subscription and background tasks run until *predicate* holds."""

    async def _settle(predicate=None, timeout: float = 1.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            await asyncio.sleep(0.005)
            if predicate is None:
                await asyncio.sleep(0.02)
                return True
            if predicate():
                return True
            if loop.time() >= deadline:
                return False

    return _settle
