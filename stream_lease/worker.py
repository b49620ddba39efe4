"""
Partition worker for STREAM-LEASE.

A worker is bound to one partition under one fencing token. It resumes
strictly after the stored checkpoint, pulls batches from the event source,
hands each batch to the processor and commits the batch with a single
fenced checkpoint at its last position. Once the lease is known to be lost
the worker makes no further receive, process or checkpoint calls.
"""

import asyncio
import time
from typing import List, Optional

import structlog

from .backoff import BackoffExhaustedError, calculate_delay, create_retry_callback, retry_async
from .config import StreamLeaseConfig
from .event_source import EventSource, OwnershipLostError, PartitionReceiver, TransientSourceError
from .lease_manager import LeaseManager
from .logging_config import (
    log_backoff_retry,
    log_batch_processed,
    log_checkpoint_written,
    log_operation_error,
    log_worker_transition,
)
from .models import (
    Checkpoint,
    Event,
    PartitionContext,
    StartPosition,
    StopReason,
    WorkerHandle,
    WorkerResult,
    WorkerState,
)
from .processor import EventProcessor
from .storage import (
    CheckpointError,
    CheckpointRegressionError,
    CheckpointStoreInterface,
    StaleFencingError,
    StorageError,
)
from .telemetry import (
    BATCH_PROCESSED,
    CHECKPOINT_WRITTEN,
    WORKER_ERROR,
    Severity,
    TelemetrySink,
)

logger = structlog.get_logger(__name__)


class CheckpointWriteError(Exception):
    """
    A checkpoint could not be written within the lease window.

    The batch stays uncommitted and will be delivered again.
    """

    def __init__(self, partition_id: str, position: int, attempts: int, last_error: Optional[BaseException]):
        self.partition_id = partition_id
        self.position = position
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Checkpoint at position {position} for partition {partition_id} failed "
            f"after {attempts} attempts: {last_error}"
        )


class PartitionWorker:
    """
    Consumes one partition for as long as its lease is held.
    """

    def __init__(
        self,
        handle: WorkerHandle,
        lease_manager: LeaseManager,
        checkpoint_store: CheckpointStoreInterface,
        event_source: EventSource,
        processor: EventProcessor,
        config: StreamLeaseConfig,
        telemetry: Optional[TelemetrySink] = None
    ):
        self.handle = handle
        self.lease_manager = lease_manager
        self.checkpoint_store = checkpoint_store
        self.event_source = event_source
        self.processor = processor
        self.config = config
        self.telemetry = telemetry

        self.partition_id = handle.partition_id
        self.fencing_token = handle.fencing_token
        self.state = WorkerState.INITIALIZING
        self.context = PartitionContext(
            partition_id=handle.partition_id,
            fencing_token=handle.fencing_token,
            operation_id=handle.operation_id,
            consumer_id=config.consumer_id,
        )
        self.result = WorkerResult(
            partition_id=handle.partition_id,
            fencing_token=handle.fencing_token,
            final_state=WorkerState.INITIALIZING,
        )
        self._log = logger.bind(
            partition_id=self.partition_id,
            fencing_token=self.fencing_token,
            operation_id=handle.operation_id,
        )

    def _transition(self, state: WorkerState) -> None:
        if state == self.state:
            return
        log_worker_transition(self._log, self.partition_id, self.state.value, state.value)
        self.state = state
        self.result.final_state = state

    def _mark_lease_lost(self, error: BaseException) -> None:
        self.handle.signal_stop(StopReason.LEASE_LOST)
        self._log.warning(
            "Partition worker lost its lease",
            reason=type(error).__name__,
            error=str(error),
        )
        self._transition(WorkerState.LEASE_LOST)

    async def run(self) -> WorkerResult:
        """
        Consume until told to stop or the lease is lost.

        Returns:
            WorkerResult: Final state and counters

        Raises:
            CheckpointWriteError: If a batch could not be committed
            Exception: Whatever the processor raised
        """
        receiver: Optional[PartitionReceiver] = None
        self._log.info("Partition worker starting")

        try:
            receiver = await self._open_receiver()

            while not self.handle.cancel.is_set():
                self._transition(WorkerState.RECEIVING)
                events = await self._receive(receiver)
                if events is None:
                    break
                if not events:
                    continue

                self._transition(WorkerState.PROCESSING)
                await self._process(events)

                # Lost while processing: finish the batch, commit nothing
                if self.handle.lease_lost:
                    break

                self._transition(WorkerState.CHECKPOINTING)
                await self._checkpoint(events[-1].position)

            if self.handle.lease_lost:
                self._transition(WorkerState.LEASE_LOST)

        except (OwnershipLostError, StaleFencingError) as e:
            self._mark_lease_lost(e)

        except Exception as e:
            self.result.error = e
            log_operation_error(
                self._log, "partition_worker", e, 0,
                state=self.state.value,
            )
            if self.telemetry is not None:
                self.telemetry.emit(
                    WORKER_ERROR,
                    partition_id=self.partition_id,
                    operation_id=self.handle.operation_id,
                    severity=Severity.ERROR,
                    state=self.state.value,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            raise

        finally:
            lease_lost = self.state == WorkerState.LEASE_LOST
            if not lease_lost:
                self._transition(WorkerState.CLOSING)
            if receiver is not None:
                try:
                    await receiver.close()
                except Exception as e:
                    self._log.warning("Error closing partition receiver", error=str(e))
            if not lease_lost:
                self._transition(WorkerState.CLOSED)

            self._log.info(
                "Partition worker stopped",
                final_state=self.result.final_state.value,
                stop_reason=self.handle.stop_reason.value if self.handle.stop_reason else None,
                batches_processed=self.result.batches_processed,
                events_processed=self.result.events_processed,
                last_checkpoint=self.result.last_checkpoint,
            )

        return self.result

    async def _open_receiver(self) -> PartitionReceiver:
        checkpoint = await self.checkpoint_store.get_checkpoint(self.partition_id)
        start_after = checkpoint.position if checkpoint is not None else None
        self.result.last_checkpoint = start_after

        receiver = await self.event_source.open_partition(
            self.partition_id,
            start_after=start_after,
            start_position=StartPosition(self.config.start_position),
            owner_level=self.fencing_token,
        )
        self._log.info(
            "Partition receiver opened",
            start_after=start_after,
            start_position=self.config.start_position if start_after is None else None,
        )
        return receiver

    async def _receive(self, receiver: PartitionReceiver) -> Optional[List[Event]]:
        """
        Receive one batch, racing the cancel signal.

        Returns None when the worker was told to stop. Transient source
        errors are retried for as long as the worker runs.
        """
        attempt = 0
        while True:
            if self.handle.cancel.is_set():
                return None

            receive_task = asyncio.ensure_future(
                receiver.receive_batch(
                    max_count=self.config.receive_batch_size,
                    timeout=self.config.receive_timeout_seconds,
                )
            )
            cancel_task = asyncio.ensure_future(self.handle.cancel.wait())
            try:
                await asyncio.wait({receive_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (receive_task, cancel_task):
                    if not task.done():
                        task.cancel()
                await asyncio.gather(receive_task, cancel_task, return_exceptions=True)

            if self.handle.cancel.is_set():
                return None

            try:
                return receive_task.result()
            except TransientSourceError as e:
                attempt += 1
                delay_ms = calculate_delay(
                    attempt, self.config.default_base_delay_ms, self.config.default_max_delay_ms
                )
                log_backoff_retry(self._log, "receive_batch", attempt, delay_ms, e)
                try:
                    await asyncio.wait_for(self.handle.cancel.wait(), timeout=delay_ms / 1000.0)
                    return None
                except asyncio.TimeoutError:
                    continue

    async def _process(self, events: List[Event]) -> None:
        started = time.monotonic()
        await self.processor(self.context, events)
        duration_ms = (time.monotonic() - started) * 1000

        self.result.batches_processed += 1
        self.result.events_processed += len(events)

        log_batch_processed(
            self._log,
            self.partition_id,
            len(events),
            events[0].position,
            events[-1].position,
            round(duration_ms, 2),
        )
        if self.telemetry is not None:
            self.telemetry.emit(
                BATCH_PROCESSED,
                partition_id=self.partition_id,
                operation_id=self.handle.operation_id,
                event_count=len(events),
                first_position=events[0].position,
                last_position=events[-1].position,
                duration_ms=round(duration_ms, 2),
            )

    async def _checkpoint(self, position: int) -> Optional[Checkpoint]:
        """
        Commit the batch ending at ``position`` under this worker's token.

        Retries storage failures until the lease window closes. Returns None
        without writing once the lease has been lost.

        Raises:
            StaleFencingError: If a newer owner has already checkpointed
            CheckpointWriteError: If the write could not be made in time
        """
        window = self.lease_manager.lease_window_remaining(self.partition_id)
        if window is None:
            window = self.config.lease_duration_seconds
        deadline = time.monotonic() + window

        attempts = 0

        async def put() -> Optional[Checkpoint]:
            nonlocal attempts
            if self.handle.lease_lost:
                return None
            attempts += 1
            return await self.checkpoint_store.put_checkpoint(
                self.partition_id, position, self.fencing_token
            )

        try:
            checkpoint = await retry_async(
                put,
                max_attempts=self.config.checkpoint_max_attempts,
                base_delay_ms=self.config.default_base_delay_ms,
                max_delay_ms=self.config.default_max_delay_ms,
                retry_on=(StorageError,),
                give_up_on=(CheckpointError,),
                deadline=deadline,
                on_retry=create_retry_callback(
                    self._log, "put_checkpoint", position=position
                ),
            )
        except CheckpointRegressionError as e:
            raise CheckpointWriteError(self.partition_id, position, attempts, e) from e
        except BackoffExhaustedError as e:
            if not self.handle.lease_lost:
                raise CheckpointWriteError(self.partition_id, position, attempts, e.last_error) from e
            checkpoint = None

        if checkpoint is None:
            self._log.info(
                "Checkpoint abandoned after lease loss", position=position, attempts=attempts
            )
            return None

        self.result.last_checkpoint = checkpoint.position
        log_checkpoint_written(
            self._log, self.partition_id, checkpoint.position, checkpoint.fencing_token, attempts
        )
        if self.telemetry is not None:
            self.telemetry.emit(
                CHECKPOINT_WRITTEN,
                partition_id=self.partition_id,
                operation_id=self.handle.operation_id,
                position=checkpoint.position,
                fencing_token=checkpoint.fencing_token,
                attempts=attempts,
            )
        return checkpoint
