"""
Partition dispatcher for STREAM-LEASE.

Runs the periodic claim cycle of one consumer process: discover the
partitions of the stream, decide which ones this process should own,
acquire their leases, start a worker for each, reap finished workers and
give back partitions above the fair share. On shutdown every worker is
signalled and given a bounded grace period, then all held leases are
released.
"""

import asyncio
import math
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from .config import StreamLeaseConfig
from .event_source import EventSource, EventSourceError
from .lease_manager import LeaseManager
from .logging_config import log_operation_error, log_rebalance
from .models import BalancingMode, ConsumerMember, PartitionLease, StopReason, WorkerHandle, WorkerState
from .processor import EventProcessor
from .storage import CheckpointStoreInterface, LeaseHeldError, StorageError, utcnow
from .telemetry import (
    DISPATCHER_ERROR,
    PARTITION_CLAIMED,
    PARTITION_RELEASED,
    Severity,
    TelemetrySink,
    new_operation_id,
)
from .worker import PartitionWorker

logger = structlog.get_logger(__name__)


class DispatcherFatalError(Exception):
    """The dispatcher cannot make progress and must be surfaced to the operator."""
    pass


class ShutdownTimeoutError(Exception):
    """Workers did not stop within the shutdown grace period."""

    def __init__(self, partition_ids: List[str], grace_seconds: float):
        self.partition_ids = partition_ids
        self.grace_seconds = grace_seconds
        super().__init__(
            f"Workers for partitions {partition_ids} did not stop within {grace_seconds}s"
        )


def fair_share(partition_count: int, owner_count: int) -> int:
    """Partitions each live owner should hold: ceil(P / F)."""
    if partition_count <= 0:
        return 0
    return math.ceil(partition_count / max(1, owner_count))


def static_assignment(partition_ids: List[str], process_index: int, process_count: int) -> List[str]:
    """Partitions whose index i satisfies i % process_count == process_index."""
    return [pid for i, pid in enumerate(partition_ids) if i % process_count == process_index]


class PartitionDispatcher:
    """
    Claims partitions and supervises one worker per owned partition.
    """

    def __init__(
        self,
        lease_manager: LeaseManager,
        checkpoint_store: CheckpointStoreInterface,
        event_source: EventSource,
        processor: EventProcessor,
        config: StreamLeaseConfig,
        telemetry: Optional[TelemetrySink] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the dispatcher.

        Args:
            lease_manager: Lease lifecycle manager for this consumer
            checkpoint_store: Store the workers resume from and commit to
            event_source: Stream being consumed
            processor: Batch processor handed to every worker
            config: Application configuration
            telemetry: Optional telemetry sink
            clock: Source of the current UTC time
        """
        self.lease_manager = lease_manager
        self.lease_store = lease_manager.lease_store
        self.checkpoint_store = checkpoint_store
        self.event_source = event_source
        self.processor = processor
        self.config = config
        self.telemetry = telemetry
        self.clock = clock or utcnow
        self.consumer_id = config.consumer_id
        self.balancing_mode = BalancingMode(config.balancing_mode)

        self._handles: Dict[str, WorkerHandle] = {}
        self._workers: Dict[str, PartitionWorker] = {}
        self._shutdown_event: Optional[asyncio.Event] = None
        self._is_running = False

        # Statistics
        self.cycles = 0
        self.partitions_claimed = 0
        self.partitions_released = 0
        self.leases_lost = 0
        self.workers_completed = 0
        self.workers_failed = 0
        self.consecutive_store_failures = 0
        self.idle_claim_cycles = 0
        self.live_consumers = 0

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """
        Run claim cycles until the shutdown event is set.

        Raises:
            DispatcherFatalError: If the store stays unavailable or nothing can be claimed
            ShutdownTimeoutError: If workers outlive the shutdown grace period
        """
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._is_running = True

        logger.info(
            "Partition dispatcher starting",
            consumer_id=self.consumer_id,
            balancing_mode=self.balancing_mode.value,
            dispatch_interval_seconds=self.config.dispatch_interval_seconds,
            lease_duration_seconds=self.config.lease_duration_seconds,
        )

        try:
            while not self._shutdown_event.is_set():
                await self.tick()

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.dispatch_interval_seconds
                    )
                    break
                except asyncio.TimeoutError:
                    continue

        except DispatcherFatalError as e:
            logger.error("Partition dispatcher aborting", error=str(e))
            self._emit_error(e)
            raise

        finally:
            try:
                await self._shutdown_workers()
            finally:
                await self._leave_fleet()
                self._is_running = False
                logger.info(
                    "Partition dispatcher stopped",
                    consumer_id=self.consumer_id,
                    cycles=self.cycles,
                    partitions_claimed=self.partitions_claimed,
                    leases_lost=self.leases_lost,
                )

    def stop(self) -> None:
        """Request shutdown; run() returns once workers are stopped."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def tick(self) -> None:
        """One dispatch cycle: reap, discover, balance, claim, release."""
        self.cycles += 1
        await self._reap_finished()

        try:
            partition_ids = await self._discover_partitions()
        except EventSourceError as e:
            log_operation_error(logger, "discover_partitions", e, 0)
            self._emit_error(e)
            return

        try:
            await self.lease_store.heartbeat_member(self.consumer_id, self.member_ttl_seconds)
            leases = await self.lease_store.list_leases()
            members = await self.lease_store.list_members()
        except StorageError as e:
            self._record_store_failure(e)
            return
        self.consecutive_store_failures = 0

        to_claim, to_release = self._plan(partition_ids, leases, members)

        for partition_id in to_release:
            handle = self._handles.get(partition_id)
            if handle is not None:
                logger.info(
                    "Releasing partition above fair share",
                    partition_id=partition_id,
                    fencing_token=handle.fencing_token,
                )
                handle.signal_stop(StopReason.REBALANCE)

        claimed, claim_errors = await self._claim(to_claim)
        self._track_idle_claims(to_claim, claimed, claim_errors)

    async def _discover_partitions(self) -> List[str]:
        if self.config.partition_ids:
            return list(self.config.partition_ids)
        return await self.event_source.get_partition_ids()

    @property
    def member_ttl_seconds(self) -> float:
        """How long one heartbeat keeps this consumer counted in the fleet."""
        return max(self.config.lease_duration_seconds, 2 * self.config.dispatch_interval_seconds)

    def _plan(
        self,
        partition_ids: List[str],
        leases: List[PartitionLease],
        members: List[ConsumerMember]
    ) -> Tuple[List[str], List[str]]:
        """
        Compute the partitions to claim and the ones to give back.

        The fleet is every live member plus every owner of a live lease, so a
        consumer that has just joined counts before it holds anything.
        """
        now = self.clock()
        known = set(partition_ids)
        foreign = {
            lease.partition_id
            for lease in leases
            if lease.partition_id in known and lease.is_live(now) and lease.owner_id != self.consumer_id
        }
        active = [pid for pid, handle in self._handles.items() if not handle.cancel.is_set()]
        claimable = [pid for pid in partition_ids if pid not in self._handles and pid not in foreign]

        owners = {member.consumer_id for member in members if member.is_live(now)}
        owners.update(
            lease.owner_id
            for lease in leases
            if lease.partition_id in known and lease.is_live(now)
        )
        owners.add(self.consumer_id)
        self.live_consumers = len(owners)

        if self.balancing_mode == BalancingMode.STATIC:
            targets = set(static_assignment(
                partition_ids, self.config.process_index, self.config.process_count
            ))
            to_claim = [pid for pid in claimable if pid in targets]
            to_release = [pid for pid in active if pid not in targets]
            share = len(targets)
        else:
            share = fair_share(len(partition_ids), len(owners))
            to_claim = claimable[:max(0, share - len(active))]
            to_release = self._excess(active, len(active) - share, now)

        log_rebalance(
            logger,
            self.consumer_id,
            total_partitions=len(partition_ids),
            active_owners=len(owners),
            fair_share=share,
            owned=len(active),
            to_claim=len(to_claim),
            to_release=len(to_release),
            balancing_mode=self.balancing_mode.value,
        )
        return to_claim, to_release

    def _excess(self, active: List[str], excess: int, now: datetime) -> List[str]:
        """
        Newest claims above the fair share, limited to partitions held for at
        least one full lease interval.
        """
        if excess <= 0:
            return []
        eligible = [
            self._handles[pid] for pid in active
            if self._handles[pid].claimed_at is not None
            and (now - self._handles[pid].claimed_at).total_seconds() >= self.config.lease_duration_seconds
        ]
        eligible.sort(key=lambda handle: handle.claimed_at, reverse=True)
        return [handle.partition_id for handle in eligible[:excess]]

    async def _claim(self, to_claim: List[str]) -> Tuple[List[str], int]:
        claimed: List[str] = []
        claim_errors = 0

        for partition_id in to_claim:
            if self._shutdown_event is not None and self._shutdown_event.is_set():
                break
            try:
                fencing_token = await self.lease_manager.acquire_lease(partition_id)
            except LeaseHeldError as e:
                logger.debug(
                    "Partition already leased",
                    partition_id=partition_id,
                    owner_id=e.current.owner_id if e.current else None,
                )
                continue
            except StorageError as e:
                claim_errors += 1
                log_operation_error(logger, "acquire_lease", e, 0, partition_id=partition_id)
                continue

            self._spawn(partition_id, fencing_token)
            claimed.append(partition_id)

        return claimed, claim_errors

    def _spawn(self, partition_id: str, fencing_token: int) -> WorkerHandle:
        handle = WorkerHandle(
            partition_id=partition_id,
            fencing_token=fencing_token,
            operation_id=new_operation_id(),
            claimed_at=self.clock(),
        )
        self.lease_manager.start_renewal(
            partition_id, fencing_token, self._on_lease_lost, operation_id=handle.operation_id
        )

        worker = PartitionWorker(
            handle,
            self.lease_manager,
            self.checkpoint_store,
            self.event_source,
            self.processor,
            self.config,
            self.telemetry,
        )
        handle.task = asyncio.create_task(worker.run(), name=f"partition-worker-{partition_id}")
        self._handles[partition_id] = handle
        self._workers[partition_id] = worker
        self.partitions_claimed += 1

        if self.telemetry is not None:
            self.telemetry.emit(
                PARTITION_CLAIMED,
                partition_id=partition_id,
                operation_id=handle.operation_id,
                fencing_token=fencing_token,
            )
        return handle

    def _on_lease_lost(self, partition_id: str, fencing_token: int, error: BaseException) -> None:
        handle = self._handles.get(partition_id)
        if handle is not None and handle.fencing_token == fencing_token:
            handle.signal_stop(StopReason.LEASE_LOST)

    async def _reap_finished(self) -> None:
        for partition_id, handle in list(self._handles.items()):
            if handle.task is not None and handle.task.done():
                await self._finalize(partition_id, handle)

    async def _finalize(self, partition_id: str, handle: WorkerHandle) -> None:
        """Drop a terminated worker, stop its renewal and give its lease back."""
        self._handles.pop(partition_id, None)
        worker = self._workers.pop(partition_id, None)
        await self.lease_manager.stop_renewal(partition_id)

        task = handle.task
        error = None
        if task is not None:
            if task.cancelled():
                error = asyncio.CancelledError()
            else:
                error = task.exception()

        lease_lost = handle.lease_lost or (
            worker is not None and worker.result.final_state == WorkerState.LEASE_LOST
        )

        if lease_lost:
            self.leases_lost += 1
        elif await self.lease_manager.release_lease(partition_id, handle.fencing_token):
            self.partitions_released += 1
            if self.telemetry is not None:
                self.telemetry.emit(
                    PARTITION_RELEASED,
                    partition_id=partition_id,
                    operation_id=handle.operation_id,
                    fencing_token=handle.fencing_token,
                    reason=handle.stop_reason.value if handle.stop_reason else None,
                )

        if error is not None:
            self.workers_failed += 1
            logger.error(
                "Partition worker failed",
                partition_id=partition_id,
                fencing_token=handle.fencing_token,
                error_type=type(error).__name__,
                error=str(error),
            )
        else:
            self.workers_completed += 1

    async def _shutdown_workers(self) -> None:
        """
        Signal every worker, wait for the grace period, then release leases.

        Raises:
            ShutdownTimeoutError: If any worker had to be cancelled
        """
        handles = list(self._handles.values())
        for handle in handles:
            handle.signal_stop(StopReason.SHUTDOWN)

        tasks = [handle.task for handle in handles if handle.task is not None]
        pending: Set[asyncio.Task] = set()
        if tasks:
            logger.info("Waiting for partition workers to stop", workers=len(tasks))
            _, pending = await asyncio.wait(tasks, timeout=self.config.shutdown_grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        stragglers = [h.partition_id for h in handles if h.task in pending]

        for partition_id, handle in list(self._handles.items()):
            await self._finalize(partition_id, handle)
        await self.lease_manager.stop_all()

        if stragglers:
            error = ShutdownTimeoutError(stragglers, self.config.shutdown_grace_seconds)
            logger.error("Shutdown grace period exceeded", partition_ids=stragglers)
            self._emit_error(error)
            raise error

    async def _leave_fleet(self) -> None:
        """Drop the membership record so the rest of the fleet rebalances at once."""
        try:
            await self.lease_store.remove_member(self.consumer_id)
        except StorageError as e:
            logger.warning(
                "Could not remove consumer membership; it will lapse on its own",
                consumer_id=self.consumer_id,
                error=str(e),
            )

    def _record_store_failure(self, error: StorageError) -> None:
        self.consecutive_store_failures += 1
        log_operation_error(
            logger, "refresh_fleet_view", error, 0,
            consecutive_failures=self.consecutive_store_failures,
        )
        if self.consecutive_store_failures >= self.config.max_consecutive_store_failures:
            raise DispatcherFatalError(
                f"Lease store unavailable for {self.consecutive_store_failures} consecutive cycles: {error}"
            ) from error

    def _track_idle_claims(self, to_claim: List[str], claimed: List[str], claim_errors: int) -> None:
        """Count cycles where claimable partitions could not be claimed because of store errors."""
        if claimed or not to_claim or claim_errors == 0:
            self.idle_claim_cycles = 0
            return

        self.idle_claim_cycles += 1
        limit = self.config.max_idle_claim_cycles
        if limit and self.idle_claim_cycles >= limit:
            raise DispatcherFatalError(
                f"No partition could be claimed for {self.idle_claim_cycles} consecutive cycles "
                f"although {len(to_claim)} were unowned"
            )

    def _emit_error(self, error: BaseException) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(
                DISPATCHER_ERROR,
                severity=Severity.ERROR,
                error_type=type(error).__name__,
                error=str(error),
            )

    @property
    def is_running(self) -> bool:
        return self._is_running

    def owned_partitions(self) -> List[Dict[str, Any]]:
        """Partitions with a live worker in this process."""
        return [
            {
                "partition_id": handle.partition_id,
                "fencing_token": handle.fencing_token,
                "operation_id": handle.operation_id,
                "claimed_at": handle.claimed_at,
                "stopping": handle.cancel.is_set(),
            }
            for handle in sorted(self._handles.values(), key=lambda h: h.partition_id)
        ]

    def stats(self) -> Dict[str, Any]:
        return {
            "consumer_id": self.consumer_id,
            "is_running": self._is_running,
            "owned_partitions": sorted(self._handles),
            "cycles": self.cycles,
            "partitions_claimed": self.partitions_claimed,
            "partitions_released": self.partitions_released,
            "leases_lost": self.leases_lost,
            "workers_completed": self.workers_completed,
            "workers_failed": self.workers_failed,
            "live_consumers": self.live_consumers,
            "consecutive_store_failures": self.consecutive_store_failures,
            "telemetry_dropped": self.telemetry.dropped if self.telemetry is not None else 0,
        }
