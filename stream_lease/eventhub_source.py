"""
Azure Event Hubs event source for STREAM-LEASE.

Adapts the callback-based ``EventHubConsumerClient.receive_batch`` into the
explicit pull interface the partition workers use. One background task per
open partition runs the SDK receive loop and hands batches over through a
single-slot queue, so the SDK blocks until the worker has taken the
previous batch.
"""

import asyncio
import contextlib
from typing import Callable, List, Optional, Union

import structlog
from azure.eventhub import EventData
from azure.eventhub.aio import EventHubConsumerClient
from azure.eventhub.exceptions import OwnershipLostError as EventHubOwnershipLostError

from .config import StreamLeaseConfig
from .event_source import (
    EventSource,
    EventSourceError,
    OwnershipLostError,
    PartitionReceiver,
    TransientSourceError,
)
from .models import Event, StartPosition

logger = structlog.get_logger(__name__)

EARLIEST_POSITION = "-1"
LATEST_POSITION = "@latest"

ClientFactory = Callable[[], EventHubConsumerClient]


def map_source_error(error: BaseException, partition_id: Optional[str]) -> EventSourceError:
    """
    Translate an SDK exception into the source error hierarchy.

    A receiver with a higher owner level (epoch) detaches older receivers
    with a "link stolen" error; that is ownership loss, not a transient fault.
    """
    if isinstance(error, EventSourceError):
        return error

    message = str(error)
    if isinstance(error, EventHubOwnershipLostError) or "stolen" in message.lower():
        return OwnershipLostError(
            f"Ownership of partition {partition_id} lost: {message}", partition_id, error
        )
    return TransientSourceError(
        f"Event Hubs receive failed on partition {partition_id}: {type(error).__name__}: {message}",
        partition_id,
        error,
    )


def to_event(event_data: EventData) -> Event:
    """Convert an SDK EventData into an Event positioned by sequence number."""
    body = event_data.body
    if not isinstance(body, (bytes, bytearray)):
        body = b"".join(body)

    properties = {}
    for key, value in (event_data.properties or {}).items():
        properties[key.decode("utf-8") if isinstance(key, bytes) else key] = value

    return Event(
        body=bytes(body),
        position=event_data.sequence_number,
        partition_key=event_data.partition_key,
        enqueued_at=event_data.enqueued_time,
        properties=properties,
    )


def resolve_starting_position(
    start_after: Optional[int],
    start_position: StartPosition
) -> tuple:
    """Return (starting_position, starting_position_inclusive) for the SDK."""
    if start_after is not None:
        return start_after, False
    if start_position == StartPosition.LATEST:
        return LATEST_POSITION, False
    return EARLIEST_POSITION, False


class EventHubPartitionReceiver(PartitionReceiver):
    """Pull-based reader over one Event Hubs partition."""

    def __init__(
        self,
        client: EventHubConsumerClient,
        partition_id: str,
        starting_position: Union[str, int],
        starting_position_inclusive: bool,
        max_batch_size: int,
        prefetch: int,
        owner_level: Optional[int] = None
    ):
        self.client = client
        self.partition_id = partition_id
        self.starting_position = starting_position
        self.starting_position_inclusive = starting_position_inclusive
        self.max_batch_size = max_batch_size
        self.prefetch = prefetch
        self.owner_level = owner_level

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._pending: List[Event] = []
        self._last_position: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def start(self) -> None:
        self._task = asyncio.create_task(
            self._receive_loop(), name=f"eventhub-receive-{self.partition_id}"
        )

    async def _receive_loop(self) -> None:
        async def on_event_batch(partition_context, events: List[EventData]):
            if events:
                await self._queue.put([to_event(event) for event in events])

        async def on_error(partition_context, error):
            await self._queue.put(map_source_error(error, self.partition_id))

        try:
            await self.client.receive_batch(
                on_event_batch=on_event_batch,
                on_error=on_error,
                partition_id=self.partition_id,
                max_batch_size=self.max_batch_size,
                max_wait_time=None,
                starting_position=self.starting_position,
                starting_position_inclusive=self.starting_position_inclusive,
                prefetch=self.prefetch,
                owner_level=self.owner_level,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._queue.put(map_source_error(e, self.partition_id))

    def _restart_after_exit(self) -> None:
        """Restart the SDK loop from the last delivered event."""
        if self._last_position is not None:
            self.starting_position = self._last_position
            self.starting_position_inclusive = False
        self.start()

    def _take(self, max_count: int) -> List[Event]:
        batch, self._pending = self._pending[:max_count], self._pending[max_count:]
        if batch:
            self._last_position = batch[-1].position
        return batch

    async def receive_batch(self, max_count: int, timeout: float) -> List[Event]:
        if self._closed:
            raise EventSourceError("Receiver is closed", self.partition_id)

        if self._pending:
            return self._take(max_count)

        if self._task is not None and self._task.done() and self._queue.empty():
            self._restart_after_exit()
            raise TransientSourceError(
                f"Event Hubs receive loop for partition {self.partition_id} ended; restarted",
                self.partition_id,
            )

        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return []

        if isinstance(item, EventSourceError):
            raise item

        self._pending = item
        return self._take(max_count)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        try:
            await self.client.close()
        except Exception as e:
            logger.warning(
                "Error closing Event Hubs receiver client",
                partition_id=self.partition_id,
                error=str(e),
            )


class EventHubSource(EventSource):
    """
    Event source backed by an Azure Event Hub.

    Each opened partition gets its own consumer client so closing one
    receiver never disturbs another.
    """

    def __init__(self, config: StreamLeaseConfig, client_factory: Optional[ClientFactory] = None):
        self.config = config
        self._client_factory = client_factory or self._create_client
        self._metadata_client: Optional[EventHubConsumerClient] = None
        self._receivers: List[EventHubPartitionReceiver] = []

    def _create_client(self) -> EventHubConsumerClient:
        kwargs: dict = {
            "conn_str": self.config.eventhub_connection_string,
            "consumer_group": self.config.consumer_group,
        }
        if self.config.eventhub_name:
            kwargs["eventhub_name"] = self.config.eventhub_name
        return EventHubConsumerClient.from_connection_string(**kwargs)

    async def get_partition_ids(self) -> List[str]:
        if self._metadata_client is None:
            self._metadata_client = self._client_factory()
        try:
            return list(await self._metadata_client.get_partition_ids())
        except Exception as e:
            raise map_source_error(e, None) from e

    async def open_partition(
        self,
        partition_id: str,
        start_after: Optional[int] = None,
        start_position: StartPosition = StartPosition.EARLIEST,
        owner_level: Optional[int] = None
    ) -> PartitionReceiver:
        starting_position, inclusive = resolve_starting_position(start_after, start_position)

        receiver = EventHubPartitionReceiver(
            client=self._client_factory(),
            partition_id=partition_id,
            starting_position=starting_position,
            starting_position_inclusive=inclusive,
            max_batch_size=self.config.receive_batch_size,
            prefetch=self.config.eventhub_prefetch,
            owner_level=owner_level,
        )
        receiver.start()
        self._receivers = [r for r in self._receivers if not r._closed] + [receiver]

        logger.info(
            "Event Hubs partition receiver opened",
            partition_id=partition_id,
            starting_position=str(starting_position),
            owner_level=owner_level,
        )
        return receiver

    async def close(self) -> None:
        for receiver in self._receivers:
            await receiver.close()
        self._receivers = []

        if self._metadata_client is not None:
            try:
                await self._metadata_client.close()
            except Exception as e:
                logger.warning(f"Error closing Event Hubs metadata client: {e}")
            finally:
                self._metadata_client = None
