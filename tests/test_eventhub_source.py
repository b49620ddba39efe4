"""
Tests for the Event Hubs source adapter using a fake consumer client.
"""

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from azure.eventhub.exceptions import OwnershipLostError as EventHubOwnershipLostError

from stream_lease.event_source import OwnershipLostError, TransientSourceError
from stream_lease.eventhub_source import (
    EARLIEST_POSITION,
    LATEST_POSITION,
    EventHubSource,
    map_source_error,
    resolve_starting_position,
    to_event,
)
from stream_lease.models import StartPosition
from tests.conftest import make_config


def event_data(sequence_number, body=b"payload", properties=None):
    return SimpleNamespace(
        body=body,
        sequence_number=sequence_number,
        partition_key="key",
        enqueued_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
        properties=properties,
    )


class FakeConsumerClient:
    """Stands in for EventHubConsumerClient; delivers scripted callbacks."""

    def __init__(self, batches=(), error=None, exit_after=False, partition_ids=("0", "1")):
        self.batches = list(batches)
        self.error = error
        self.exit_after = exit_after
        self.partition_ids = list(partition_ids)
        self.receive_kwargs = []
        self.closed = False

    async def receive_batch(self, on_event_batch, on_error, **kwargs):
        self.receive_kwargs.append(kwargs)
        for batch in self.batches:
            await on_event_batch(None, batch)
        self.batches = []
        if self.error is not None:
            await on_error(None, self.error)
        if self.exit_after:
            return
        await asyncio.Event().wait()

    async def get_partition_ids(self):
        return self.partition_ids

    async def close(self):
        self.closed = True


@pytest.fixture
def eventhub_config():
    return make_config(
        source_mode="eventhub",
        eventhub_connection_string="Endpoint=sb://ns/;SharedAccessKeyName=k;SharedAccessKey=v",
        eventhub_name="orders",
        receive_batch_size=10,
    )


class TestConversions:
    def test_ownership_lost_mapped(self):
        error = map_source_error(EventHubOwnershipLostError(), "3")

        assert isinstance(error, OwnershipLostError)
        assert error.partition_id == "3"

    def test_stolen_link_mapped_to_ownership_lost(self):
        error = map_source_error(RuntimeError("Receiver link was stolen by a higher epoch"), "0")

        assert isinstance(error, OwnershipLostError)

    def test_other_errors_are_transient(self):
        cause = ConnectionResetError("reset")

        error = map_source_error(cause, "0")

        assert isinstance(error, TransientSourceError)
        assert error.original_error is cause

    def test_to_event_joins_body_sections_and_decodes_keys(self):
        data = event_data(41, body=iter([b"ab", b"cd"]), properties={b"kind": "order"})

        event = to_event(data)

        assert event.body == b"abcd"
        assert event.position == 41
        assert event.properties == {"kind": "order"}

    def test_starting_positions(self):
        assert resolve_starting_position(12, StartPosition.EARLIEST) == (12, False)
        assert resolve_starting_position(None, StartPosition.LATEST) == (LATEST_POSITION, False)
        assert resolve_starting_position(None, StartPosition.EARLIEST) == (EARLIEST_POSITION, False)


class TestEventHubSource:
    async def test_partition_ids_from_metadata_client(self, eventhub_config):
        source = EventHubSource(eventhub_config, client_factory=FakeConsumerClient)

        assert await source.get_partition_ids() == ["0", "1"]
        await source.close()

    async def test_receive_passes_owner_level_and_position(self, eventhub_config):
        client = FakeConsumerClient(batches=[[event_data(13), event_data(14)]])
        source = EventHubSource(eventhub_config, client_factory=lambda: client)

        receiver = await source.open_partition("0", start_after=12, owner_level=5)
        batch = await receiver.receive_batch(10, 1.0)
        await source.close()

        assert [e.position for e in batch] == [13, 14]
        kwargs = client.receive_kwargs[0]
        assert kwargs["owner_level"] == 5
        assert kwargs["starting_position"] == 12
        assert kwargs["starting_position_inclusive"] is False
        assert client.closed

    async def test_oversized_sdk_batch_split(self, eventhub_config):
        client = FakeConsumerClient(batches=[[event_data(i) for i in range(5)]])
        source = EventHubSource(eventhub_config, client_factory=lambda: client)
        receiver = await source.open_partition("0")

        first = await receiver.receive_batch(3, 1.0)
        second = await receiver.receive_batch(3, 1.0)
        await receiver.close()

        assert [e.position for e in first] == [0, 1, 2]
        assert [e.position for e in second] == [3, 4]

    async def test_timeout_returns_empty(self, eventhub_config):
        source = EventHubSource(eventhub_config, client_factory=FakeConsumerClient)
        receiver = await source.open_partition("0")

        assert await receiver.receive_batch(10, 0.01) == []
        await receiver.close()

    async def test_ownership_lost_surfaces(self, eventhub_config):
        client = FakeConsumerClient(error=EventHubOwnershipLostError())
        source = EventHubSource(eventhub_config, client_factory=lambda: client)
        receiver = await source.open_partition("0", owner_level=1)

        with pytest.raises(OwnershipLostError):
            await receiver.receive_batch(10, 1.0)
        await receiver.close()

    async def test_exited_loop_restarts_after_last_position(self, eventhub_config):
        client = FakeConsumerClient(batches=[[event_data(7)]], exit_after=True)
        source = EventHubSource(eventhub_config, client_factory=lambda: client)
        receiver = await source.open_partition("0")

        assert [e.position for e in await receiver.receive_batch(10, 1.0)] == [7]
        await asyncio.sleep(0.01)

        with pytest.raises(TransientSourceError):
            await receiver.receive_batch(10, 1.0)
        await asyncio.sleep(0.01)
        await receiver.close()

        assert client.receive_kwargs[1]["starting_position"] == 7
        assert client.receive_kwargs[1]["starting_position_inclusive"] is False
