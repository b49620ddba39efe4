"""
Tests for application wiring, the run loop and the console entry point.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from stream_lease.config import ConfigurationError
from stream_lease.dispatcher import DispatcherFatalError
from stream_lease.event_source import InMemoryEventSource
from stream_lease.main import StreamLeaseApplication, create_event_source, main
from stream_lease.storage import StorageConnectionError
from tests.conftest import make_config, wait_until


class CollectingProcessor:
    def __init__(self):
        self.positions = []

    async def __call__(self, context, events):
        self.positions.extend((context.partition_id, e.position) for e in events)


class TestCreateEventSource:
    def test_memory_source_uses_configured_partitions(self):
        source = create_event_source(make_config(partition_ids="a,b"))

        assert isinstance(source, InMemoryEventSource)
        assert sorted(source._logs) == ["a", "b"]

    def test_eventhub_source(self):
        from stream_lease.eventhub_source import EventHubSource

        config = make_config(
            source_mode="eventhub",
            eventhub_connection_string="Endpoint=sb://ns/;SharedAccessKeyName=k;SharedAccessKey=v",
            eventhub_name="orders",
        )

        assert isinstance(create_event_source(config), EventHubSource)


class TestStreamLeaseApplication:
    async def test_consumes_and_shuts_down_cleanly(self):
        source = InMemoryEventSource(["0", "1"])
        await source.append_many("0", [b"a", b"b", b"c"])
        await source.append("1", b"d")
        processor = CollectingProcessor()
        app = StreamLeaseApplication(config=make_config(), processor=processor, event_source=source)

        await app.initialize()
        run_task = asyncio.create_task(app.run())
        try:
            await wait_until(lambda: len(processor.positions) == 4)
            await wait_until(lambda: app.dispatcher.stats()["owned_partitions"] == ["0", "1"])
            await wait_until(lambda: app.dispatcher._workers["0"].result.last_checkpoint == 2)

            app.shutdown_event.set()
            await asyncio.wait_for(run_task, 3.0)
        finally:
            await app.stop()

        assert not app.dispatcher.is_running
        leases = await app.lease_store.list_leases()
        assert all(lease.owner_id is None for lease in leases)
        assert (await app.checkpoint_store.get_checkpoint("0")).position == 2

    async def test_initialize_builds_api_when_enabled(self):
        app = StreamLeaseApplication(config=make_config(api_enabled=True))

        await app.initialize()
        await app.stop()

        assert app.fastapi_app is not None
        assert app.lease_store is not app.checkpoint_store

    async def test_invalid_timing_rejected_at_startup(self):
        app = StreamLeaseApplication(
            config=make_config(lease_duration_seconds=10, renew_interval_seconds=9)
        )

        with pytest.raises(ConfigurationError):
            await app.initialize()

    async def test_store_initialization_failure_is_logged_and_raised(self):
        app = StreamLeaseApplication(config=make_config())
        failing_init = AsyncMock(side_effect=StorageConnectionError("store down"))

        with patch("stream_lease.main.initialize_storage_backends", new=failing_init), \
                patch("stream_lease.logging_config.log_operation_error") as log_error:
            with pytest.raises(StorageConnectionError):
                await app.initialize()

        assert log_error.call_args.args[1] == "initialize_storage"
        assert log_error.call_args.kwargs["storage_mode"] == "memory"
        assert app.dispatcher is None

    async def test_fatal_dispatcher_error_propagates(self):
        app = StreamLeaseApplication(config=make_config(max_consecutive_store_failures=1))
        await app.initialize()

        async def failing_list():
            raise StorageConnectionError("store down")

        app.lease_store.list_leases = failing_list
        try:
            with pytest.raises(DispatcherFatalError):
                await asyncio.wait_for(app.run(), 3.0)
        finally:
            await app.stop()


class TestMain:
    def test_configuration_error_exits_2(self):
        with patch("stream_lease.main.async_main", side_effect=ConfigurationError("bad")):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 2

    def test_fatal_error_exits_1(self):
        with patch("stream_lease.main.async_main", side_effect=DispatcherFatalError("store down")):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1
