"""
Lease manager for STREAM-LEASE.

Acquires, renews and releases partition leases on behalf of this consumer
and keeps one background renewal task per held partition. A renewal that
is rejected by the store, or that cannot succeed before the lease window
closes, is reported immediately through the partition's ``on_lost``
callback and the renewal task ends.
"""

import asyncio
import contextlib
import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from .backoff import calculate_delay
from .config import StreamLeaseConfig
from .logging_config import log_backoff_retry, log_lease_transition, log_operation_error
from .models import PartitionLease
from .storage import (
    FencingMismatchError,
    LeaseExpiredError,
    LeaseStoreInterface,
    StorageError,
)
from .telemetry import PARTITION_LOST, Severity, TelemetrySink

logger = structlog.get_logger(__name__)

LostCallback = Callable[[str, int, BaseException], Any]


@dataclass
class _Renewal:
    partition_id: str
    fencing_token: int
    on_lost: LostCallback
    operation_id: Optional[str]
    task: Optional[asyncio.Task] = None
    renewals: int = 0
    lease_deadline: float = 0.0


class LeaseManager:
    """
    Owns the lease lifecycle of every partition this consumer holds.
    """

    def __init__(
        self,
        lease_store: LeaseStoreInterface,
        config: StreamLeaseConfig,
        telemetry: Optional[TelemetrySink] = None,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the lease manager.

        Args:
            lease_store: Store holding the partition leases
            config: Application configuration
            telemetry: Optional telemetry sink
            clock: Monotonic clock used to track the local lease window
        """
        self.lease_store = lease_store
        self.config = config
        self.telemetry = telemetry
        self.clock = clock or time.monotonic
        self.owner_id = config.consumer_id
        self.lease_duration_seconds = config.lease_duration_seconds
        self.renew_interval_seconds = config.effective_renew_interval_seconds
        self._renewals: Dict[str, _Renewal] = {}

    async def acquire_lease(
        self,
        partition_id: str,
        owner_id: Optional[str] = None,
        duration_seconds: Optional[float] = None
    ) -> int:
        """
        Acquire a lease on a partition.

        Returns:
            int: The fencing token of the new lease

        Raises:
            LeaseHeldError: If another owner holds a live lease
            StorageError: If the store cannot be reached
        """
        owner = owner_id or self.owner_id
        lease = await self.lease_store.acquire_lease(
            partition_id, owner, duration_seconds or self.lease_duration_seconds
        )
        log_lease_transition(
            logger, partition_id, "claimed", owner, lease.fencing_token,
            expires_at=lease.expires_at.isoformat(),
        )
        return lease.fencing_token

    async def renew_lease(
        self,
        partition_id: str,
        fencing_token: int,
        owner_id: Optional[str] = None,
        duration_seconds: Optional[float] = None
    ) -> PartitionLease:
        """
        Extend a held lease.

        Raises:
            FencingMismatchError: If another owner acquired the partition since
            LeaseExpiredError: If the lease lapsed or was released
            StorageError: If the store cannot be reached
        """
        return await self.lease_store.renew_lease(
            partition_id,
            owner_id or self.owner_id,
            fencing_token,
            duration_seconds or self.lease_duration_seconds,
        )

    async def release_lease(
        self,
        partition_id: str,
        fencing_token: int,
        owner_id: Optional[str] = None
    ) -> bool:
        """
        Release a lease early. Best effort and idempotent.

        Store errors are logged and not raised: an unreleased lease simply
        expires on its own.
        """
        owner = owner_id or self.owner_id
        try:
            released = await self.lease_store.release_lease(partition_id, owner, fencing_token)
        except StorageError as e:
            logger.warning(
                "Lease release failed; lease will expire on its own",
                partition_id=partition_id,
                fencing_token=fencing_token,
                error=str(e),
            )
            return False

        if released:
            log_lease_transition(logger, partition_id, "released", owner, fencing_token)
        return released

    def start_renewal(
        self,
        partition_id: str,
        fencing_token: int,
        on_lost: LostCallback,
        operation_id: Optional[str] = None
    ) -> None:
        """
        Start renewing a freshly acquired lease in the background.

        Args:
            partition_id: Partition whose lease to renew
            fencing_token: Token returned by acquire_lease
            on_lost: Called as on_lost(partition_id, fencing_token, error) when
                the lease is lost; may be a coroutine function
            operation_id: Worker run the lease belongs to, for telemetry
        """
        existing = self._renewals.get(partition_id)
        if existing is not None and existing.task is not None and not existing.task.done():
            existing.task.cancel()

        renewal = _Renewal(partition_id, fencing_token, on_lost, operation_id)
        renewal.lease_deadline = self.clock() + self.lease_duration_seconds
        renewal.task = asyncio.create_task(
            self._renewal_loop(renewal), name=f"lease-renewal-{partition_id}"
        )
        self._renewals[partition_id] = renewal

        logger.debug(
            "Lease renewal started",
            partition_id=partition_id,
            fencing_token=fencing_token,
            renew_interval_seconds=self.renew_interval_seconds,
        )

    async def stop_renewal(self, partition_id: str) -> None:
        """Stop renewing a partition's lease. The lease itself is left alone."""
        renewal = self._renewals.pop(partition_id, None)
        if renewal is None or renewal.task is None:
            return
        if renewal.task is asyncio.current_task():
            return

        renewal.task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await renewal.task

    def lease_window_remaining(self, partition_id: str) -> Optional[float]:
        """
        Seconds until the held lease expires, as seen from the last successful
        renewal. None when no renewal is running for the partition.
        """
        renewal = self._renewals.get(partition_id)
        if renewal is None:
            return None
        return max(0.0, renewal.lease_deadline - self.clock())

    def held_partitions(self) -> Dict[str, int]:
        """Partitions with an active renewal, mapped to their fencing tokens."""
        return {
            pid: renewal.fencing_token
            for pid, renewal in self._renewals.items()
            if renewal.task is not None and not renewal.task.done()
        }

    async def stop_all(self) -> None:
        for partition_id in list(self._renewals):
            await self.stop_renewal(partition_id)

    async def _renewal_loop(self, renewal: _Renewal) -> None:
        """
        Renew every renew_interval_seconds until cancelled or lost.

        Transient store errors are retried with backoff as long as the local
        lease window has room for another attempt.
        """
        try:
            while True:
                await asyncio.sleep(self.renew_interval_seconds)

                attempt = 0
                while True:
                    try:
                        await self.renew_lease(renewal.partition_id, renewal.fencing_token)
                        renewal.lease_deadline = self.clock() + self.lease_duration_seconds
                        renewal.renewals += 1
                        break

                    except (FencingMismatchError, LeaseExpiredError) as e:
                        await self._report_lost(renewal, e)
                        return

                    except StorageError as e:
                        attempt += 1
                        delay_ms = calculate_delay(
                            attempt,
                            self.config.default_base_delay_ms,
                            self.config.default_max_delay_ms,
                        )
                        remaining = renewal.lease_deadline - self.clock()
                        if remaining <= delay_ms / 1000.0:
                            await self._report_lost(
                                renewal,
                                LeaseExpiredError(
                                    f"Lease on partition {renewal.partition_id} could not be renewed "
                                    f"before it expired: {e}",
                                    renewal.partition_id,
                                ),
                            )
                            return

                        log_backoff_retry(
                            logger, "renew_lease", attempt, delay_ms, e,
                            partition_id=renewal.partition_id,
                            remaining_seconds=round(remaining, 3),
                        )
                        await asyncio.sleep(delay_ms / 1000.0)

        except asyncio.CancelledError:
            logger.debug("Lease renewal cancelled", partition_id=renewal.partition_id)
            raise
        except Exception as e:
            log_operation_error(logger, "renew_lease", e, 0, partition_id=renewal.partition_id)
            await self._report_lost(renewal, e)

    async def _report_lost(self, renewal: _Renewal, error: BaseException) -> None:
        if self._renewals.get(renewal.partition_id) is renewal:
            del self._renewals[renewal.partition_id]

        log_lease_transition(
            logger, renewal.partition_id, "lost", self.owner_id, renewal.fencing_token,
            reason=type(error).__name__,
            error=str(error),
        )
        if self.telemetry is not None:
            self.telemetry.emit(
                PARTITION_LOST,
                partition_id=renewal.partition_id,
                operation_id=renewal.operation_id,
                severity=Severity.WARNING,
                fencing_token=renewal.fencing_token,
                reason=type(error).__name__,
            )

        try:
            result = renewal.on_lost(renewal.partition_id, renewal.fencing_token, error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log_operation_error(
                logger, "on_lease_lost", e, 0, partition_id=renewal.partition_id
            )
