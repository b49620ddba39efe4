"""
Event processor contract for STREAM-LEASE.

A processor receives each batch whole, in arrival order, together with the
partition context of the worker that read it. Delivery is at-least-once: a
batch may be handed over again after a crash or lease loss.
"""

from typing import List, Protocol, runtime_checkable

import structlog

from .models import Event, PartitionContext

logger = structlog.get_logger(__name__)


@runtime_checkable
class EventProcessor(Protocol):
    async def __call__(self, context: PartitionContext, events: List[Event]) -> None:
        ...


class LoggingProcessor:
    """Default processor: logs each event and does nothing else."""

    def __init__(self, preview_bytes: int = 200):
        self.preview_bytes = preview_bytes

    async def __call__(self, context: PartitionContext, events: List[Event]) -> None:
        for event in events:
            logger.info(
                "Event received",
                partition_id=context.partition_id,
                position=event.position,
                partition_key=event.partition_key,
                operation_id=context.operation_id,
                body=event.body[:self.preview_bytes].decode("utf-8", errors="replace"),
            )
