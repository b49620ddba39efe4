"""
FastAPI application for STREAM-LEASE.

Read-only status endpoints: process health, the partitions this process
owns, the lease and checkpoint tables, and dispatcher statistics.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List

import psutil
import structlog
from fastapi import FastAPI, HTTPException

from . import __version__
from .config import StreamLeaseConfig
from .dispatcher import PartitionDispatcher
from .models import (
    CheckpointResponse,
    DispatcherStatsResponse,
    HealthResponse,
    LeaseResponse,
    OwnedPartitionResponse,
)
from .storage import CheckpointStoreInterface, LeaseStoreInterface, StorageError, utcnow

logger = structlog.get_logger(__name__)


def collect_process_metadata() -> Dict[str, Any]:
    """Resource usage of this consumer process."""
    try:
        process = psutil.Process(os.getpid())
        with process.oneshot():
            memory = process.memory_info()
            return {
                "pid": process.pid,
                "num_threads": process.num_threads(),
                "cpu_percent": process.cpu_percent(interval=None),
                "memory_rss_mb": round(memory.rss / (1024 ** 2), 2),
            }
    except psutil.Error as e:
        logger.warning(f"Failed to collect process metadata: {e}")
        return {}


class StreamLeaseAPI:
    """
    FastAPI application wrapper for STREAM-LEASE.

    Serves status information from the dispatcher and the two stores.
    """

    def __init__(
        self,
        dispatcher: PartitionDispatcher,
        lease_store: LeaseStoreInterface,
        checkpoint_store: CheckpointStoreInterface,
        config: StreamLeaseConfig
    ):
        self.dispatcher = dispatcher
        self.lease_store = lease_store
        self.checkpoint_store = checkpoint_store
        self.config = config
        self.app = FastAPI(
            title="STREAM-LEASE Partition Consumer",
            description="Leased, checkpointed consumption of a partitioned event stream",
            version=__version__
        )
        self.startup_time = datetime.now(timezone.utc)

        self._register_routes()

    def _register_routes(self):
        """Register all API routes."""

        @self.app.get("/health", response_model=HealthResponse)
        async def health():
            """Process health and ownership summary."""
            uptime = (datetime.now(timezone.utc) - self.startup_time).total_seconds()
            return HealthResponse(
                consumer_id=self.config.consumer_id,
                status="healthy" if self.dispatcher.is_running else "starting",
                uptime_seconds=uptime,
                owned_partitions=len(self.dispatcher.owned_partitions()),
                balancing_mode=self.config.balancing_mode,
                version=__version__,
                process=collect_process_metadata(),
            )

        @self.app.get("/partitions", response_model=List[OwnedPartitionResponse])
        async def owned_partitions():
            """Partitions with a running worker in this process."""
            return [OwnedPartitionResponse(**item) for item in self.dispatcher.owned_partitions()]

        @self.app.get("/leases", response_model=List[LeaseResponse])
        async def list_leases():
            """All partition lease records."""
            try:
                leases = await self.lease_store.list_leases()
            except StorageError as e:
                logger.error(f"Lease listing failed: {e}")
                raise HTTPException(status_code=503, detail="Lease store unavailable")

            now = utcnow()
            return [
                LeaseResponse(
                    partition_id=lease.partition_id,
                    owner_id=lease.owner_id,
                    fencing_token=lease.fencing_token,
                    expires_at=lease.expires_at,
                    is_live=lease.is_live(now),
                    remaining_seconds=round(lease.remaining_seconds(now), 3),
                )
                for lease in leases
            ]

        @self.app.get("/checkpoints", response_model=List[CheckpointResponse])
        async def list_checkpoints():
            """All partition checkpoints."""
            try:
                checkpoints = await self.checkpoint_store.list_checkpoints()
            except StorageError as e:
                logger.error(f"Checkpoint listing failed: {e}")
                raise HTTPException(status_code=503, detail="Checkpoint store unavailable")

            return [CheckpointResponse(**vars(checkpoint)) for checkpoint in checkpoints]

        @self.app.get("/checkpoints/{partition_id}", response_model=CheckpointResponse)
        async def get_checkpoint(partition_id: str):
            """Checkpoint of a single partition."""
            try:
                checkpoint = await self.checkpoint_store.get_checkpoint(partition_id)
            except StorageError as e:
                logger.error(f"Checkpoint lookup failed: {e}")
                raise HTTPException(status_code=503, detail="Checkpoint store unavailable")

            if checkpoint is None:
                raise HTTPException(
                    status_code=404, detail=f"No checkpoint for partition {partition_id}"
                )
            return CheckpointResponse(**vars(checkpoint))

        @self.app.get("/stats", response_model=DispatcherStatsResponse)
        async def stats():
            """Dispatcher counters."""
            return DispatcherStatsResponse(**self.dispatcher.stats())


def create_app(
    dispatcher: PartitionDispatcher,
    lease_store: LeaseStoreInterface,
    checkpoint_store: CheckpointStoreInterface,
    config: StreamLeaseConfig
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application
    """
    return StreamLeaseAPI(dispatcher, lease_store, checkpoint_store, config).app
