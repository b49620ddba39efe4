"""
Storage factory for STREAM-LEASE.

Creates the lease store and checkpoint store selected by configuration.
The two stores are always independent instances so leases and checkpoints
can live in different databases.
"""

from typing import Tuple

import structlog

from .config import StreamLeaseConfig
from .memory_storage import InMemoryStorage
from .storage import CheckpointStoreInterface, LeaseStoreInterface
from .sqlite_storage import SQLiteStorage

logger = structlog.get_logger(__name__)


def create_storage_backends(
    config: StreamLeaseConfig
) -> Tuple[LeaseStoreInterface, CheckpointStoreInterface]:
    """
    Create storage backends based on configuration.

    Args:
        config: STREAM-LEASE configuration

    Returns:
        Tuple[LeaseStoreInterface, CheckpointStoreInterface]: Lease store and checkpoint store

    Raises:
        ValueError: If storage mode is not supported
    """
    storage_mode = config.storage_mode.lower()

    if storage_mode == "snowflake":
        # Imported lazily so the connector is only loaded when selected
        from .snowflake_storage import SnowflakeStorage

        logger.info("Using Snowflake storage backend")
        return SnowflakeStorage(config), SnowflakeStorage(config)

    elif storage_mode == "sqlite":
        logger.info(
            "Using SQLite storage backend",
            lease_db_path=config.lease_db_path,
            checkpoint_db_path=config.checkpoint_db_path,
        )
        return (
            SQLiteStorage(config, db_path=config.lease_db_path),
            SQLiteStorage(config, db_path=config.checkpoint_db_path),
        )

    elif storage_mode == "memory":
        logger.info("Using in-memory storage backend (single process only)")
        return InMemoryStorage(), InMemoryStorage()

    else:
        raise ValueError(
            f"Unsupported storage mode: {storage_mode}. Must be 'memory', 'sqlite' or 'snowflake'"
        )


async def initialize_storage_backends(
    lease_store: LeaseStoreInterface,
    checkpoint_store: CheckpointStoreInterface
) -> None:
    """
    Initialize both storage backends.

    Raises:
        StorageError: If initialization fails
    """
    try:
        await lease_store.initialize()
        logger.info("Lease store initialized successfully")

        if checkpoint_store is not lease_store:
            await checkpoint_store.initialize()
            logger.info("Checkpoint store initialized successfully")

    except Exception as e:
        logger.error(f"Failed to initialize storage backends: {e}")
        raise


async def close_storage_backends(
    lease_store: LeaseStoreInterface,
    checkpoint_store: CheckpointStoreInterface
) -> None:
    """
    Close both storage backends gracefully.

    Close failures are logged; shutdown continues.
    """
    for name, store in (("checkpoint", checkpoint_store), ("lease", lease_store)):
        if name == "lease" and store is checkpoint_store:
            continue
        try:
            await store.close()
            logger.info(f"{name.capitalize()} store closed")
        except Exception as e:
            logger.error(f"Error closing {name} store: {e}")
