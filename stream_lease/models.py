"""
Data models for STREAM-LEASE.

Defines the core data structures used throughout the system including
PartitionLease, Checkpoint, Event, WorkerHandle and related enums.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class WorkerState(str, Enum):
    """Partition worker state enumeration."""
    INITIALIZING = "initializing"
    RECEIVING = "receiving"
    PROCESSING = "processing"
    CHECKPOINTING = "checkpointing"
    LEASE_LOST = "lease_lost"
    CLOSING = "closing"
    CLOSED = "closed"


class StartPosition(str, Enum):
    """Where a partition without a checkpoint starts receiving."""
    EARLIEST = "earliest"
    LATEST = "latest"


class BalancingMode(str, Enum):
    """How the dispatcher chooses its target partitions."""
    DYNAMIC = "dynamic"
    STATIC = "static"


class StopReason(str, Enum):
    """Why a worker was told to stop."""
    SHUTDOWN = "shutdown"
    LEASE_LOST = "lease_lost"
    REBALANCE = "rebalance"


@dataclass
class PartitionLease:
    """
    Time-bounded exclusive claim on a partition.

    fencing_token strictly increases every time the lease is granted by an
    acquisition; renewals keep the token and only move expires_at.
    """
    partition_id: str
    owner_id: Optional[str]
    fencing_token: int
    expires_at: Optional[datetime]

    def is_live(self, now: datetime) -> bool:
        return (
            self.owner_id is not None and
            self.expires_at is not None and
            self.expires_at > now
        )

    def remaining_seconds(self, now: datetime) -> float:
        if not self.is_live(now):
            return 0.0
        return (self.expires_at - now).total_seconds()


@dataclass
class Checkpoint:
    """
    Durably recorded position up to which a partition has been committed.
    """
    partition_id: str
    position: int
    fencing_token: int
    updated_at: datetime


@dataclass
class ConsumerMember:
    """
    Liveness record of one consumer process.

    Refreshed on every dispatcher cycle; a consumer counts toward the fleet
    size until expires_at passes, whether or not it holds any lease.
    """
    consumer_id: str
    joined_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(frozen=True)
class Event:
    """
    A single event read from a partition.

    Immutable once produced; ordered by position within its partition.
    """
    body: bytes
    position: int
    partition_key: Optional[str] = None
    enqueued_at: Optional[datetime] = None
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PartitionContext:
    """Context handed to the event processor alongside each batch."""
    partition_id: str
    fencing_token: int
    operation_id: str
    consumer_id: str


@dataclass
class WorkerHandle:
    """
    Dispatcher-owned handle on a running partition worker.

    Created when a lease is acquired, dropped when the bound worker terminates.
    """
    partition_id: str
    fencing_token: int
    operation_id: str
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    stop_reason: Optional[StopReason] = None
    claimed_at: Optional[datetime] = None
    task: Optional[asyncio.Task] = None

    def signal_stop(self, reason: StopReason) -> None:
        """Ask the worker to stop; the first reason given wins."""
        if self.stop_reason is None:
            self.stop_reason = reason
        self.cancel.set()

    @property
    def lease_lost(self) -> bool:
        return self.stop_reason == StopReason.LEASE_LOST


@dataclass
class WorkerResult:
    """Outcome of a finished partition worker."""
    partition_id: str
    fencing_token: int
    final_state: WorkerState
    batches_processed: int = 0
    events_processed: int = 0
    last_checkpoint: Optional[int] = None
    error: Optional[BaseException] = None


# Pydantic models for API responses
class HealthResponse(BaseModel):
    """Response model for the health endpoint."""
    consumer_id: str
    status: str
    uptime_seconds: float
    owned_partitions: int
    balancing_mode: str
    version: str
    process: Dict[str, Any] = {}


class LeaseResponse(BaseModel):
    """Response model for a partition lease."""
    partition_id: str
    owner_id: Optional[str]
    fencing_token: int
    expires_at: Optional[datetime]
    is_live: bool
    remaining_seconds: float


class CheckpointResponse(BaseModel):
    """Response model for a partition checkpoint."""
    partition_id: str
    position: int
    fencing_token: int
    updated_at: datetime


class OwnedPartitionResponse(BaseModel):
    """Response model for a partition owned by this process."""
    partition_id: str
    fencing_token: int
    operation_id: str
    claimed_at: Optional[datetime]
    stopping: bool


class DispatcherStatsResponse(BaseModel):
    """Response model for dispatcher statistics."""
    consumer_id: str
    is_running: bool
    owned_partitions: List[str]
    cycles: int
    partitions_claimed: int
    partitions_released: int
    leases_lost: int
    workers_completed: int
    workers_failed: int
    live_consumers: int
    consecutive_store_failures: int
    telemetry_dropped: int
