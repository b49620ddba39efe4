"""
Event source abstractions for STREAM-LEASE.

Defines the pull-style partition reader the workers consume from, the
source error hierarchy, and an in-memory partitioned log used for tests,
demos and single-process runs.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from .models import Event, StartPosition

logger = structlog.get_logger(__name__)


class EventSourceError(Exception):
    """
    Base exception class for event source errors.

    Wraps client-library exceptions the same way StorageError wraps
    database driver exceptions.
    """

    def __init__(
        self,
        message: str,
        partition_id: Optional[str] = None,
        original_error: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.partition_id = partition_id
        self.original_error = original_error


class TransientSourceError(EventSourceError):
    """Temporary receive failure; the worker retries with backoff."""
    pass


class OwnershipLostError(EventSourceError):
    """
    The source no longer lets this reader consume the partition.

    Terminal for the worker bound to the partition.
    """
    pass


class PartitionReceiver(ABC):
    """Explicit pull-based reader positioned on one partition."""

    partition_id: str

    @abstractmethod
    async def receive_batch(self, max_count: int, timeout: float) -> List[Event]:
        """
        Return up to max_count events in position order.

        Waits at most ``timeout`` seconds for the first event. A timeout is
        not an error: an empty list is returned.

        Raises:
            TransientSourceError: On a retryable failure
            OwnershipLostError: If the partition was taken away from this reader
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the receiver. Safe to call more than once."""
        pass


class EventSource(ABC):
    """A partitioned, append-only event log."""

    @abstractmethod
    async def get_partition_ids(self) -> List[str]:
        """Return the partition IDs of the stream."""
        pass

    @abstractmethod
    async def open_partition(
        self,
        partition_id: str,
        start_after: Optional[int] = None,
        start_position: StartPosition = StartPosition.EARLIEST,
        owner_level: Optional[int] = None
    ) -> PartitionReceiver:
        """
        Open a receiver on a partition.

        Args:
            partition_id: Partition to read
            start_after: Resume strictly after this position when given
            start_position: Where to start when there is no position to resume from
            owner_level: Exclusive-reader epoch; a higher level detaches lower ones
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the source and every receiver it opened."""
        pass


class InMemoryPartitionReceiver(PartitionReceiver):
    """Receiver over one partition of an InMemoryEventSource."""

    def __init__(self, source: "InMemoryEventSource", partition_id: str, next_index: int):
        self.source = source
        self.partition_id = partition_id
        self._next_index = next_index
        self._revoked = False
        self._closed = False

    async def receive_batch(self, max_count: int, timeout: float) -> List[Event]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        condition = self.source._condition

        async with condition:
            while True:
                if self._closed:
                    raise EventSourceError("Receiver is closed", self.partition_id)
                if self._revoked:
                    raise OwnershipLostError(
                        f"Partition {self.partition_id} was revoked from this receiver",
                        self.partition_id,
                    )

                injected = self.source._injected_errors.get(self.partition_id)
                if injected:
                    raise injected.pop(0)

                log = self.source._logs[self.partition_id]
                if self._next_index < len(log):
                    batch = log[self._next_index:self._next_index + max_count]
                    self._next_index += len(batch)
                    return list(batch)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    return []
                try:
                    await asyncio.wait_for(condition.wait(), remaining)
                except asyncio.TimeoutError:
                    pass

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.source._receivers.get(self.partition_id, set()).discard(self)
        async with self.source._condition:
            self.source._condition.notify_all()


class InMemoryEventSource(EventSource):
    """
    In-process partitioned append-only log.

    Positions are 0-based and equal to the event's index in its partition,
    like Event Hubs sequence numbers.
    """

    def __init__(self, partition_ids: Optional[List[str]] = None):
        self._logs: Dict[str, List[Event]] = {pid: [] for pid in (partition_ids or [])}
        self._receivers: Dict[str, set] = {}
        self._injected_errors: Dict[str, List[BaseException]] = {}
        self._condition = asyncio.Condition()
        self.opened: List[Dict[str, Any]] = []

    def add_partition(self, partition_id: str) -> None:
        self._logs.setdefault(partition_id, [])

    async def append(
        self,
        partition_id: str,
        body: bytes,
        partition_key: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None
    ) -> Event:
        """Append an event and wake receivers waiting on the partition."""
        if isinstance(body, str):
            body = body.encode("utf-8")

        async with self._condition:
            log = self._logs.setdefault(partition_id, [])
            event = Event(
                body=body,
                position=len(log),
                partition_key=partition_key,
                enqueued_at=datetime.now(timezone.utc),
                properties=dict(properties or {}),
            )
            log.append(event)
            self._condition.notify_all()
        return event

    async def append_many(self, partition_id: str, bodies: List[bytes]) -> List[Event]:
        return [await self.append(partition_id, body) for body in bodies]

    async def revoke(self, partition_id: str) -> None:
        """Make every open receiver on the partition raise OwnershipLostError."""
        async with self._condition:
            for receiver in self._receivers.get(partition_id, set()):
                receiver._revoked = True
            self._condition.notify_all()
        logger.info("Partition revoked from open receivers", partition_id=partition_id)

    def inject_error(self, partition_id: str, error: BaseException) -> None:
        """Queue an error for the next receive on the partition."""
        self._injected_errors.setdefault(partition_id, []).append(error)

    def events(self, partition_id: str) -> List[Event]:
        return list(self._logs.get(partition_id, []))

    async def get_partition_ids(self) -> List[str]:
        return sorted(self._logs)

    async def open_partition(
        self,
        partition_id: str,
        start_after: Optional[int] = None,
        start_position: StartPosition = StartPosition.EARLIEST,
        owner_level: Optional[int] = None
    ) -> PartitionReceiver:
        if partition_id not in self._logs:
            raise EventSourceError(f"Unknown partition {partition_id}", partition_id)

        if start_after is not None:
            next_index = start_after + 1
        elif start_position == StartPosition.LATEST:
            next_index = len(self._logs[partition_id])
        else:
            next_index = 0

        receiver = InMemoryPartitionReceiver(self, partition_id, next_index)
        self._receivers.setdefault(partition_id, set()).add(receiver)
        self.opened.append({
            "partition_id": partition_id,
            "start_after": start_after,
            "start_position": start_position,
            "owner_level": owner_level,
        })
        return receiver

    async def close(self) -> None:
        for receivers in list(self._receivers.values()):
            for receiver in list(receivers):
                await receiver.close()
