"""
Storage interface abstractions for STREAM-LEASE.

Defines the abstract Lease Store and Checkpoint Store interfaces, the storage
error hierarchy, and the pure decision rules every backend applies inside its
own atomic section. Keeping the rules here means the in-memory, SQLite and
Snowflake backends cannot disagree about who wins a lease or which
checkpoint is accepted.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .models import Checkpoint, ConsumerMember, PartitionLease


def utcnow() -> datetime:
    """Timezone-aware current UTC time used for every lease and checkpoint timestamp."""
    return datetime.now(timezone.utc)


class StorageError(Exception):
    """
    Base exception class for storage-related errors.

    Used to wrap database-specific exceptions and provide consistent
    error handling across different storage backends.
    """

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        """
        Initialize storage error.

        Args:
            message: Human-readable error message
            original_error: Original exception that caused this error
        """
        super().__init__(message)
        self.original_error = original_error


class StorageConnectionError(StorageError):
    """
    Raised when the backing database is unreachable or busy.

    Transient: callers retry these with backoff.
    """
    pass


class TransactionConflictError(StorageConnectionError):
    """
    Raised when a conditional write lost a race with a concurrent writer.

    The decision is re-made against the fresh record on retry.
    """
    pass


class LeaseError(StorageError):
    """Base class for lease conflicts. Never retried."""

    def __init__(self, message: str, partition_id: str, current: Optional[PartitionLease] = None):
        super().__init__(message)
        self.partition_id = partition_id
        self.current = current


class LeaseHeldError(LeaseError):
    """Another owner holds a live lease on the partition."""
    pass


class FencingMismatchError(LeaseError):
    """
    The stored fencing token or owner differs from the caller's.

    Proves another process has acquired the partition since; the caller
    must stop processing immediately.
    """
    pass


class LeaseExpiredError(LeaseError):
    """The caller's lease lapsed (or was released) before it was renewed."""
    pass


class CheckpointError(StorageError):
    """Base class for rejected checkpoint writes."""

    def __init__(self, message: str, partition_id: str, current: Optional[Checkpoint] = None):
        super().__init__(message)
        self.partition_id = partition_id
        self.current = current


class StaleFencingError(CheckpointError):
    """The stored checkpoint carries a newer fencing token than the writer's."""
    pass


class CheckpointRegressionError(CheckpointError):
    """The write would move the checkpoint position backwards."""
    pass


# Decision rules shared by every backend. Each backend reads the current
# record, applies one of these, and writes the result within a single
# atomic section (a lock, an IMMEDIATE transaction, or a conditional UPDATE).

def decide_acquire(
    current: Optional[PartitionLease],
    partition_id: str,
    owner_id: str,
    duration_seconds: float,
    now: datetime,
) -> PartitionLease:
    """
    Compute the lease record produced by a successful acquisition.

    Raises:
        LeaseHeldError: If a different owner holds a live lease
    """
    if current is not None and current.is_live(now) and current.owner_id != owner_id:
        raise LeaseHeldError(
            f"Partition {partition_id} is leased by {current.owner_id} "
            f"until {current.expires_at.isoformat()}",
            partition_id,
            current,
        )

    last_token = current.fencing_token if current is not None else 0
    return PartitionLease(
        partition_id=partition_id,
        owner_id=owner_id,
        fencing_token=last_token + 1,
        expires_at=now + timedelta(seconds=duration_seconds),
    )


def decide_renew(
    current: Optional[PartitionLease],
    partition_id: str,
    owner_id: str,
    fencing_token: int,
    duration_seconds: float,
    now: datetime,
) -> PartitionLease:
    """
    Compute the lease record produced by a successful renewal.

    Raises:
        FencingMismatchError: If the partition was acquired by someone else since
        LeaseExpiredError: If the caller's lease is no longer live
    """
    if current is None:
        raise LeaseExpiredError(
            f"Partition {partition_id} has no lease record", partition_id, current
        )

    if current.fencing_token != fencing_token or (
        current.owner_id is not None and current.owner_id != owner_id
    ):
        raise FencingMismatchError(
            f"Partition {partition_id} fencing token is {current.fencing_token} "
            f"(owner {current.owner_id}), caller holds {fencing_token} as {owner_id}",
            partition_id,
            current,
        )

    if not current.is_live(now):
        raise LeaseExpiredError(
            f"Lease on partition {partition_id} (token {fencing_token}) expired or was released",
            partition_id,
            current,
        )

    return PartitionLease(
        partition_id=partition_id,
        owner_id=owner_id,
        fencing_token=fencing_token,
        expires_at=now + timedelta(seconds=duration_seconds),
    )


def decide_release(
    current: Optional[PartitionLease],
    owner_id: str,
    fencing_token: int,
) -> Optional[PartitionLease]:
    """
    Compute the lease record left after a release, or None for a no-op.

    The fencing counter is kept so the next acquisition still increments it.
    """
    if current is None or current.owner_id != owner_id or current.fencing_token != fencing_token:
        return None

    return PartitionLease(
        partition_id=current.partition_id,
        owner_id=None,
        fencing_token=current.fencing_token,
        expires_at=None,
    )


def decide_checkpoint(
    current: Optional[Checkpoint],
    partition_id: str,
    position: int,
    fencing_token: int,
    now: datetime,
) -> Checkpoint:
    """
    Compute the checkpoint record produced by an accepted write.

    Raises:
        StaleFencingError: If the stored record has a greater fencing token
        CheckpointRegressionError: If position is behind the stored position
    """
    if current is not None:
        if current.fencing_token > fencing_token:
            raise StaleFencingError(
                f"Checkpoint for partition {partition_id} was written with token "
                f"{current.fencing_token}; writer holds {fencing_token}",
                partition_id,
                current,
            )
        if position < current.position:
            raise CheckpointRegressionError(
                f"Checkpoint for partition {partition_id} is at {current.position}; "
                f"refusing to move back to {position}",
                partition_id,
                current,
            )

    return Checkpoint(
        partition_id=partition_id,
        position=position,
        fencing_token=fencing_token,
        updated_at=now,
    )


def decide_heartbeat(
    current: Optional[ConsumerMember],
    consumer_id: str,
    ttl_seconds: float,
    now: datetime,
) -> ConsumerMember:
    """Compute the membership record after a heartbeat; a lapsed member rejoins."""
    joined_at = current.joined_at if current is not None and current.is_live(now) else now
    return ConsumerMember(
        consumer_id=consumer_id,
        joined_at=joined_at,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


class LeaseStoreInterface(ABC):
    """
    Durable per-partition lease records with compare-and-swap writes.

    Implementations must be safe for concurrent use from several processes,
    not only from several tasks of one process.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Set up connections and create tables if needed."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the backend and clean up resources."""
        pass

    @abstractmethod
    async def acquire_lease(
        self,
        partition_id: str,
        owner_id: str,
        duration_seconds: float
    ) -> PartitionLease:
        """
        Atomically acquire a lease on a partition.

        Succeeds only if no live lease exists or the live lease belongs to
        owner_id. The returned lease carries a fencing token strictly greater
        than any previously issued for the partition.

        Raises:
            LeaseHeldError: If another owner holds a live lease
            StorageError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def renew_lease(
        self,
        partition_id: str,
        owner_id: str,
        fencing_token: int,
        duration_seconds: float
    ) -> PartitionLease:
        """
        Extend a live lease held with exactly this fencing token.

        Raises:
            FencingMismatchError: If another owner acquired the partition since
            LeaseExpiredError: If the lease is no longer live
            StorageError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def release_lease(
        self,
        partition_id: str,
        owner_id: str,
        fencing_token: int
    ) -> bool:
        """
        Clear a lease early so another consumer need not wait for expiry.

        Releasing an expired or foreign lease is a no-op.

        Returns:
            bool: True if a lease was released
        """
        pass

    @abstractmethod
    async def get_lease(self, partition_id: str) -> Optional[PartitionLease]:
        """Return the stored lease record for a partition, if any."""
        pass

    @abstractmethod
    async def list_leases(self) -> List[PartitionLease]:
        """Return all stored lease records."""
        pass

    @abstractmethod
    async def heartbeat_member(self, consumer_id: str, ttl_seconds: float) -> ConsumerMember:
        """
        Record that a consumer is alive for the next ttl_seconds.

        Members count toward the fleet size used for fair-share balancing
        even while they hold no lease.

        Raises:
            StorageError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def list_members(self) -> List[ConsumerMember]:
        """Return all membership records, live or lapsed."""
        pass

    @abstractmethod
    async def remove_member(self, consumer_id: str) -> bool:
        """
        Drop a consumer's membership record on clean shutdown.

        Returns:
            bool: True if a record was removed
        """
        pass


class CheckpointStoreInterface(ABC):
    """
    Durable partition → last committed position map, fenced by lease tokens.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Set up connections and create tables if needed."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the backend and clean up resources."""
        pass

    @abstractmethod
    async def get_checkpoint(self, partition_id: str) -> Optional[Checkpoint]:
        """Return the stored checkpoint for a partition, or None if not found."""
        pass

    @abstractmethod
    async def put_checkpoint(
        self,
        partition_id: str,
        position: int,
        fencing_token: int
    ) -> Checkpoint:
        """
        Record progress for a partition.

        Rejected writes leave the stored record untouched.

        Raises:
            StaleFencingError: If the stored record's token is greater
            CheckpointRegressionError: If position is behind the stored one
            StorageError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def list_checkpoints(self) -> List[Checkpoint]:
        """Return all stored checkpoints."""
        pass
