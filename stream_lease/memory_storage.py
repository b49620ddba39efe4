"""
In-memory storage backend for STREAM-LEASE.

Implements both store interfaces on plain dictionaries guarded by an
asyncio lock. Only safe within one process; used for tests, demos and
single-process deployments. The clock is injectable so expiry can be
driven deterministically.
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from .models import Checkpoint, ConsumerMember, PartitionLease
from .storage import (
    CheckpointStoreInterface,
    LeaseStoreInterface,
    decide_acquire,
    decide_checkpoint,
    decide_heartbeat,
    decide_release,
    decide_renew,
    utcnow,
)

logger = structlog.get_logger(__name__)


class InMemoryStorage(LeaseStoreInterface, CheckpointStoreInterface):
    """
    Lock-guarded in-process lease and checkpoint store.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utcnow
        self._leases: Dict[str, PartitionLease] = {}
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._members: Dict[str, ConsumerMember] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.info("In-memory storage initialized")

    async def close(self) -> None:
        logger.debug("In-memory storage closed")

    async def acquire_lease(self, partition_id: str, owner_id: str, duration_seconds: float) -> PartitionLease:
        async with self._lock:
            lease = decide_acquire(
                self._leases.get(partition_id), partition_id, owner_id, duration_seconds, self.clock()
            )
            self._leases[partition_id] = lease
            return replace(lease)

    async def renew_lease(
        self, partition_id: str, owner_id: str, fencing_token: int, duration_seconds: float
    ) -> PartitionLease:
        async with self._lock:
            lease = decide_renew(
                self._leases.get(partition_id), partition_id, owner_id,
                fencing_token, duration_seconds, self.clock()
            )
            self._leases[partition_id] = lease
            return replace(lease)

    async def release_lease(self, partition_id: str, owner_id: str, fencing_token: int) -> bool:
        async with self._lock:
            released = decide_release(self._leases.get(partition_id), owner_id, fencing_token)
            if released is None:
                return False
            self._leases[partition_id] = released
            return True

    async def get_lease(self, partition_id: str) -> Optional[PartitionLease]:
        lease = self._leases.get(partition_id)
        return replace(lease) if lease is not None else None

    async def list_leases(self) -> List[PartitionLease]:
        return [replace(lease) for lease in sorted(self._leases.values(), key=lambda l: l.partition_id)]

    async def heartbeat_member(self, consumer_id: str, ttl_seconds: float) -> ConsumerMember:
        async with self._lock:
            member = decide_heartbeat(self._members.get(consumer_id), consumer_id, ttl_seconds, self.clock())
            self._members[consumer_id] = member
            return replace(member)

    async def list_members(self) -> List[ConsumerMember]:
        return [replace(m) for m in sorted(self._members.values(), key=lambda m: m.consumer_id)]

    async def remove_member(self, consumer_id: str) -> bool:
        async with self._lock:
            return self._members.pop(consumer_id, None) is not None

    async def get_checkpoint(self, partition_id: str) -> Optional[Checkpoint]:
        checkpoint = self._checkpoints.get(partition_id)
        return replace(checkpoint) if checkpoint is not None else None

    async def put_checkpoint(self, partition_id: str, position: int, fencing_token: int) -> Checkpoint:
        async with self._lock:
            checkpoint = decide_checkpoint(
                self._checkpoints.get(partition_id), partition_id, position, fencing_token, self.clock()
            )
            self._checkpoints[partition_id] = checkpoint
            return replace(checkpoint)

    async def list_checkpoints(self) -> List[Checkpoint]:
        return [replace(c) for c in sorted(self._checkpoints.values(), key=lambda c: c.partition_id)]
