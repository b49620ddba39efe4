"""
Shared fixtures for STREAM-LEASE tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from stream_lease.config import StreamLeaseConfig
from stream_lease.event_source import InMemoryEventSource
from stream_lease.memory_storage import InMemoryStorage


class FakeClock:
    """Settable UTC clock for deterministic lease expiry."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it is true or fail the test after ``timeout``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def make_config(**overrides) -> StreamLeaseConfig:
    """Test configuration: in-memory stores and source, fast timings."""
    values = dict(
        consumer_id="consumer-a",
        storage_mode="memory",
        source_mode="memory",
        api_enabled=False,
        lease_duration_seconds=10.0,
        dispatch_interval_seconds=0.05,
        receive_batch_size=100,
        receive_timeout_seconds=0.05,
        default_base_delay_ms=10,
        default_max_delay_ms=100,
        shutdown_grace_seconds=2.0,
    )
    values.update(overrides)
    return StreamLeaseConfig(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def lease_store(clock):
    return InMemoryStorage(clock=clock)


@pytest.fixture
def checkpoint_store(clock):
    return InMemoryStorage(clock=clock)


@pytest.fixture
def event_source():
    return InMemoryEventSource(["0", "1", "2", "3"])
