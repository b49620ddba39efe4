"""
Telemetry sink for STREAM-LEASE.

Fire-and-forget operational events (partition claimed, batch processed,
checkpoint written, ...) tagged with the operation ID of the worker run that
produced them. ``emit`` never blocks and never raises: events go into a
bounded queue and are dropped, and counted, when it is full. A background
task drains the queue into the configured exporters.
"""

import asyncio
import contextlib
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
import structlog

from .config import StreamLeaseConfig

logger = structlog.get_logger(__name__)

PARTITION_CLAIMED = "partition_claimed"
PARTITION_LOST = "partition_lost"
PARTITION_RELEASED = "partition_released"
BATCH_PROCESSED = "batch_processed"
CHECKPOINT_WRITTEN = "checkpoint_written"
WORKER_ERROR = "worker_error"
DISPATCHER_ERROR = "dispatcher_error"


class Severity(str, Enum):
    VERBOSE = "verbose"
    INFORMATION = "information"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def new_operation_id() -> str:
    """Operation ID correlating every event of one partition worker run."""
    return str(uuid.uuid4())


@dataclass
class TelemetryEvent:
    name: str
    consumer_id: str
    severity: Severity = Severity.INFORMATION
    partition_id: Optional[str] = None
    operation_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        data["properties"] = {k: _jsonable(v) for k, v in self.properties.items()}
        return data


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class TelemetryExporter(ABC):
    """Destination for drained telemetry batches."""

    @abstractmethod
    async def export(self, events: List[TelemetryEvent]) -> None:
        pass

    async def close(self) -> None:
        pass


class StructlogExporter(TelemetryExporter):
    """Writes telemetry events to the structured log."""

    def __init__(self, bound_logger=None):
        self.logger = bound_logger or structlog.get_logger("stream_lease.telemetry.events")

    async def export(self, events: List[TelemetryEvent]) -> None:
        for event in events:
            level = "warning" if event.severity in (Severity.WARNING, Severity.ERROR, Severity.CRITICAL) else "debug"
            getattr(self.logger, level)(
                "Telemetry event",
                telemetry_event=event.name,
                severity=event.severity.value,
                partition_id=event.partition_id,
                operation_id=event.operation_id,
                **event.properties
            )


class HttpExporter(TelemetryExporter):
    """POSTs telemetry batches as JSON to an HTTP collector."""

    def __init__(self, endpoint: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0):
        self.endpoint = endpoint
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def export(self, events: List[TelemetryEvent]) -> None:
        response = await self.client.post(
            self.endpoint,
            json={"events": [event.to_dict() for event in events]},
        )
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class TelemetrySink:
    """
    Bounded, non-blocking telemetry queue with a background drain task.
    """

    def __init__(
        self,
        consumer_id: str,
        exporters: Optional[List[TelemetryExporter]] = None,
        queue_size: int = 1000,
        batch_size: int = 50
    ):
        self.consumer_id = consumer_id
        self.exporters = exporters if exporters is not None else [StructlogExporter()]
        self.batch_size = batch_size
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._drain_task: Optional[asyncio.Task] = None

        self.emitted = 0
        self.dropped = 0
        self.export_failures = 0

    def emit(
        self,
        name: str,
        partition_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        severity: Severity = Severity.INFORMATION,
        **properties: Any
    ) -> bool:
        """
        Enqueue a telemetry event.

        Returns:
            bool: False if the event was dropped because the queue is full
        """
        event = TelemetryEvent(
            name=name,
            consumer_id=self.consumer_id,
            severity=severity,
            partition_id=partition_id,
            operation_id=operation_id,
            properties=properties,
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        self.emitted += 1
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_loop(), name="telemetry-drain")

    async def stop(self) -> None:
        """Stop draining, export what is still queued and close exporters."""
        if self._drain_task is not None:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None

        await self.flush()

        for exporter in self.exporters:
            try:
                await exporter.close()
            except Exception as e:
                logger.warning(f"Error closing telemetry exporter: {e}")

    async def flush(self) -> None:
        """Export everything currently queued."""
        while not self._queue.empty():
            await self._export(self._take_batch())

    def _take_batch(self, first: Optional[TelemetryEvent] = None) -> List[TelemetryEvent]:
        batch = [first] if first is not None else []
        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return batch

    async def _drain_loop(self) -> None:
        while True:
            first = await self._queue.get()
            await self._export(self._take_batch(first))

    async def _export(self, batch: List[TelemetryEvent]) -> None:
        if not batch:
            return
        for exporter in self.exporters:
            try:
                await exporter.export(batch)
            except Exception as e:
                self.export_failures += 1
                logger.warning(
                    "Telemetry export failed",
                    exporter=type(exporter).__name__,
                    events=len(batch),
                    error=str(e),
                )


def create_telemetry_sink(config: StreamLeaseConfig) -> TelemetrySink:
    """Build the sink with the structlog exporter plus HTTP when configured."""
    exporters: List[TelemetryExporter] = [StructlogExporter()]
    if config.telemetry_endpoint:
        exporters.append(HttpExporter(config.telemetry_endpoint))
    return TelemetrySink(
        consumer_id=config.consumer_id,
        exporters=exporters,
        queue_size=config.telemetry_queue_size,
    )
