"""
Snowflake storage backend for STREAM-LEASE.

Implements the lease and checkpoint store interfaces on Snowflake tables.
Snowflake has no row locks, so every conditional write is an optimistic
compare-and-swap: read the record with its version, decide, then write with
``WHERE version = <read version>`` and check the row count. A lost race
raises TransactionConflictError and the decision is re-made on retry.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import snowflake.connector
import structlog
from snowflake.connector import DictCursor
from snowflake.connector.errors import (
    DatabaseError,
    InterfaceError,
    OperationalError,
)

from .backoff import create_retry_callback, with_backoff
from .config import StreamLeaseConfig
from .models import Checkpoint, ConsumerMember, PartitionLease
from .storage import (
    CheckpointStoreInterface,
    LeaseStoreInterface,
    StorageConnectionError,
    StorageError,
    TransactionConflictError,
    decide_acquire,
    decide_checkpoint,
    decide_heartbeat,
    decide_release,
    decide_renew,
    utcnow,
)

# Queries below use ? placeholders
snowflake.connector.paramstyle = "qmark"

logger = structlog.get_logger(__name__)

_retry_callback = create_retry_callback(logger, "snowflake_operation")


def _snowflake_backoff(max_attempts: int = 5):
    """Retry policy for lost CAS races and transient connector failures."""
    return with_backoff(
        max_attempts=max_attempts,
        base_delay_ms=100,
        max_delay_ms=5000,
        retry_on=[StorageConnectionError],
        on_retry=_retry_callback,
        reraise=True,
    )


def _to_ntz(value: Optional[datetime]) -> Optional[datetime]:
    """TIMESTAMP_NTZ columns hold naive UTC."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_ntz(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class SnowflakeStorage(LeaseStoreInterface, CheckpointStoreInterface):
    """
    Snowflake implementation of the lease and checkpoint stores.
    """

    def __init__(self, config: StreamLeaseConfig, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize Snowflake storage backend.

        Args:
            config: STREAM-LEASE configuration containing Snowflake connection parameters
            clock: Source of the current time (UTC, timezone-aware)
        """
        self.config = config
        self.clock = clock or utcnow
        self.connection: Optional[snowflake.connector.SnowflakeConnection] = None
        self._connection_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """
        Initialize the Snowflake storage backend.

        Creates database connection and ensures required tables exist.

        Raises:
            StorageError: If initialization fails
        """
        try:
            await self._connect()
            await self._ensure_tables_exist()
            logger.info("Snowflake storage backend initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Snowflake storage: {e}")
            raise StorageError(f"Snowflake initialization failed: {e}", e) from e

    async def close(self) -> None:
        """Close the Snowflake connection and clean up resources."""
        async with self._connection_lock:
            if self.connection:
                try:
                    self.connection.close()
                    logger.info("Snowflake connection closed")
                except Exception as e:
                    logger.warning(f"Error closing Snowflake connection: {e}")
                finally:
                    self.connection = None

    @_snowflake_backoff()
    async def _connect(self) -> None:
        """
        Establish connection to Snowflake with retry logic.

        Raises:
            StorageConnectionError: If connection fails after retries
        """
        async with self._connection_lock:
            if self.connection:
                return

            try:
                self.connection = snowflake.connector.connect(
                    **self.config.snowflake_connection_params,
                    autocommit=False
                )
                logger.info("Connected to Snowflake successfully")
            except (OperationalError, InterfaceError, DatabaseError) as e:
                logger.error(f"Failed to connect to Snowflake: {e}")
                raise StorageConnectionError(f"Snowflake connection failed: {e}", e) from e

    async def _ensure_connection(self) -> snowflake.connector.SnowflakeConnection:
        if not self.connection:
            await self._connect()
        return self.connection

    async def _ensure_tables_exist(self) -> None:
        """
        Create PARTITION_LEASES, PARTITION_CHECKPOINTS and CONSUMER_MEMBERS if they don't exist.

        Raises:
            StorageError: If table creation fails
        """
        connection = await self._ensure_connection()

        try:
            cursor = connection.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS PARTITION_LEASES (
                    partition_id STRING PRIMARY KEY,
                    owner_id STRING,
                    fencing_token INTEGER NOT NULL,
                    expires_at TIMESTAMP_NTZ,
                    version INTEGER NOT NULL,
                    updated_at TIMESTAMP_NTZ NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS PARTITION_CHECKPOINTS (
                    partition_id STRING PRIMARY KEY,
                    position INTEGER NOT NULL,
                    fencing_token INTEGER NOT NULL,
                    version INTEGER NOT NULL,
                    updated_at TIMESTAMP_NTZ NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS CONSUMER_MEMBERS (
                    consumer_id STRING PRIMARY KEY,
                    joined_at TIMESTAMP_NTZ NOT NULL,
                    expires_at TIMESTAMP_NTZ NOT NULL,
                    updated_at TIMESTAMP_NTZ NOT NULL
                )
            """)

            connection.commit()
            cursor.close()
            logger.info("Ensured Snowflake tables exist")

        except Exception as e:
            connection.rollback()
            logger.error(f"Failed to create Snowflake tables: {e}")
            raise StorageError(f"Table creation failed: {e}", e) from e

    async def _execute(self, operation: str, body: Callable[[Any], Any]) -> Any:
        """
        Run ``body`` with a DictCursor inside one transaction.

        Lease/checkpoint conflicts propagate unchanged; transient connector
        errors become StorageConnectionError so the backoff policy retries them.
        """
        connection = await self._ensure_connection()
        cursor = connection.cursor(DictCursor)
        try:
            result = body(cursor)
            connection.commit()
            return result
        except StorageError:
            connection.rollback()
            raise
        except (OperationalError, InterfaceError) as e:
            connection.rollback()
            logger.warning(f"Transient Snowflake error during {operation}: {e}")
            raise StorageConnectionError(f"Snowflake {operation} failed: {e}", e) from e
        except Exception as e:
            connection.rollback()
            logger.error(f"Snowflake {operation} failed: {e}")
            raise StorageError(f"Snowflake {operation} failed: {e}", e) from e
        finally:
            cursor.close()

    # Lease store

    @staticmethod
    def _select_lease(cursor, partition_id: str) -> Tuple[Optional[PartitionLease], Optional[int]]:
        cursor.execute("""
            SELECT partition_id, owner_id, fencing_token, expires_at, version
            FROM PARTITION_LEASES
            WHERE partition_id = ?
        """, (partition_id,))
        row = cursor.fetchone()
        if not row:
            return None, None
        return SnowflakeStorage._row_to_lease(row), row['VERSION']

    def _write_lease(self, cursor, lease: PartitionLease, read_version: Optional[int]) -> None:
        """Compare-and-swap the lease row against the version that was read."""
        now = _to_ntz(self.clock())
        if read_version is None:
            cursor.execute("""
                INSERT INTO PARTITION_LEASES (
                    partition_id, owner_id, fencing_token, expires_at, version, updated_at
                )
                SELECT ?, ?, ?, ?, 1, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM PARTITION_LEASES WHERE partition_id = ?
                )
            """, (
                lease.partition_id,
                lease.owner_id,
                lease.fencing_token,
                _to_ntz(lease.expires_at),
                now,
                lease.partition_id,
            ))
        else:
            cursor.execute("""
                UPDATE PARTITION_LEASES
                SET owner_id = ?,
                    fencing_token = ?,
                    expires_at = ?,
                    version = version + 1,
                    updated_at = ?
                WHERE partition_id = ?
                  AND version = ?
            """, (
                lease.owner_id,
                lease.fencing_token,
                _to_ntz(lease.expires_at),
                now,
                lease.partition_id,
                read_version,
            ))

        if cursor.rowcount != 1:
            raise TransactionConflictError(
                f"Concurrent write to lease for partition {lease.partition_id}"
            )

    @staticmethod
    def _row_to_lease(row: Dict[str, Any]) -> PartitionLease:
        return PartitionLease(
            partition_id=row['PARTITION_ID'],
            owner_id=row['OWNER_ID'],
            fencing_token=row['FENCING_TOKEN'],
            expires_at=_from_ntz(row['EXPIRES_AT']),
        )

    @_snowflake_backoff(max_attempts=8)
    async def acquire_lease(self, partition_id: str, owner_id: str, duration_seconds: float) -> PartitionLease:
        def acquire(cursor) -> PartitionLease:
            current, version = self._select_lease(cursor, partition_id)
            lease = decide_acquire(current, partition_id, owner_id, duration_seconds, self.clock())
            self._write_lease(cursor, lease, version)
            return lease

        lease = await self._execute("acquire_lease", acquire)
        logger.debug(
            "Lease acquired",
            partition_id=partition_id,
            owner_id=owner_id,
            fencing_token=lease.fencing_token,
        )
        return lease

    @_snowflake_backoff(max_attempts=8)
    async def renew_lease(
        self, partition_id: str, owner_id: str, fencing_token: int, duration_seconds: float
    ) -> PartitionLease:
        def renew(cursor) -> PartitionLease:
            current, version = self._select_lease(cursor, partition_id)
            lease = decide_renew(
                current, partition_id, owner_id, fencing_token, duration_seconds, self.clock()
            )
            self._write_lease(cursor, lease, version)
            return lease

        return await self._execute("renew_lease", renew)

    @_snowflake_backoff(max_attempts=8)
    async def release_lease(self, partition_id: str, owner_id: str, fencing_token: int) -> bool:
        def release(cursor) -> bool:
            current, version = self._select_lease(cursor, partition_id)
            released = decide_release(current, owner_id, fencing_token)
            if released is None:
                return False
            self._write_lease(cursor, released, version)
            return True

        return await self._execute("release_lease", release)

    @_snowflake_backoff(max_attempts=3)
    async def get_lease(self, partition_id: str) -> Optional[PartitionLease]:
        return await self._execute(
            "get_lease", lambda cursor: self._select_lease(cursor, partition_id)[0]
        )

    @_snowflake_backoff(max_attempts=3)
    async def list_leases(self) -> List[PartitionLease]:
        def select_all(cursor) -> List[PartitionLease]:
            cursor.execute("""
                SELECT partition_id, owner_id, fencing_token, expires_at, version
                FROM PARTITION_LEASES
                ORDER BY partition_id
            """)
            return [self._row_to_lease(row) for row in cursor.fetchall()]

        return await self._execute("list_leases", select_all)

    # Consumer membership

    @staticmethod
    def _row_to_member(row: Dict[str, Any]) -> ConsumerMember:
        return ConsumerMember(
            consumer_id=row['CONSUMER_ID'],
            joined_at=_from_ntz(row['JOINED_AT']),
            expires_at=_from_ntz(row['EXPIRES_AT']),
        )

    @_snowflake_backoff(max_attempts=3)
    async def heartbeat_member(self, consumer_id: str, ttl_seconds: float) -> ConsumerMember:
        def heartbeat(cursor) -> ConsumerMember:
            cursor.execute("""
                SELECT consumer_id, joined_at, expires_at
                FROM CONSUMER_MEMBERS
                WHERE consumer_id = ?
            """, (consumer_id,))
            row = cursor.fetchone()
            now = self.clock()
            member = decide_heartbeat(
                self._row_to_member(row) if row else None, consumer_id, ttl_seconds, now
            )

            # Only this consumer writes its own row, so no version guard is needed
            cursor.execute("""
                MERGE INTO CONSUMER_MEMBERS AS target
                USING (SELECT ? AS consumer_id, ? AS joined_at, ? AS expires_at, ? AS updated_at) AS source
                ON target.consumer_id = source.consumer_id
                WHEN MATCHED THEN
                    UPDATE SET
                        joined_at = source.joined_at,
                        expires_at = source.expires_at,
                        updated_at = source.updated_at
                WHEN NOT MATCHED THEN
                    INSERT (consumer_id, joined_at, expires_at, updated_at)
                    VALUES (source.consumer_id, source.joined_at, source.expires_at, source.updated_at)
            """, (
                member.consumer_id,
                _to_ntz(member.joined_at),
                _to_ntz(member.expires_at),
                _to_ntz(now),
            ))
            return member

        return await self._execute("heartbeat_member", heartbeat)

    @_snowflake_backoff(max_attempts=3)
    async def list_members(self) -> List[ConsumerMember]:
        def select_all(cursor) -> List[ConsumerMember]:
            cursor.execute("""
                SELECT consumer_id, joined_at, expires_at
                FROM CONSUMER_MEMBERS
                ORDER BY consumer_id
            """)
            return [self._row_to_member(row) for row in cursor.fetchall()]

        return await self._execute("list_members", select_all)

    @_snowflake_backoff(max_attempts=3)
    async def remove_member(self, consumer_id: str) -> bool:
        def remove(cursor) -> bool:
            cursor.execute("DELETE FROM CONSUMER_MEMBERS WHERE consumer_id = ?", (consumer_id,))
            return cursor.rowcount == 1

        return await self._execute("remove_member", remove)

    # Checkpoint store

    @staticmethod
    def _select_checkpoint(cursor, partition_id: str) -> Tuple[Optional[Checkpoint], Optional[int]]:
        cursor.execute("""
            SELECT partition_id, position, fencing_token, updated_at, version
            FROM PARTITION_CHECKPOINTS
            WHERE partition_id = ?
        """, (partition_id,))
        row = cursor.fetchone()
        if not row:
            return None, None
        return SnowflakeStorage._row_to_checkpoint(row), row['VERSION']

    @staticmethod
    def _row_to_checkpoint(row: Dict[str, Any]) -> Checkpoint:
        return Checkpoint(
            partition_id=row['PARTITION_ID'],
            position=row['POSITION'],
            fencing_token=row['FENCING_TOKEN'],
            updated_at=_from_ntz(row['UPDATED_AT']),
        )

    @_snowflake_backoff(max_attempts=3)
    async def get_checkpoint(self, partition_id: str) -> Optional[Checkpoint]:
        return await self._execute(
            "get_checkpoint", lambda cursor: self._select_checkpoint(cursor, partition_id)[0]
        )

    @_snowflake_backoff(max_attempts=8)
    async def put_checkpoint(self, partition_id: str, position: int, fencing_token: int) -> Checkpoint:
        def put(cursor) -> Checkpoint:
            current, version = self._select_checkpoint(cursor, partition_id)
            checkpoint = decide_checkpoint(current, partition_id, position, fencing_token, self.clock())

            if version is None:
                cursor.execute("""
                    INSERT INTO PARTITION_CHECKPOINTS (
                        partition_id, position, fencing_token, version, updated_at
                    )
                    SELECT ?, ?, ?, 1, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM PARTITION_CHECKPOINTS WHERE partition_id = ?
                    )
                """, (
                    partition_id,
                    position,
                    fencing_token,
                    _to_ntz(checkpoint.updated_at),
                    partition_id,
                ))
            else:
                cursor.execute("""
                    UPDATE PARTITION_CHECKPOINTS
                    SET position = ?,
                        fencing_token = ?,
                        version = version + 1,
                        updated_at = ?
                    WHERE partition_id = ?
                      AND version = ?
                """, (
                    position,
                    fencing_token,
                    _to_ntz(checkpoint.updated_at),
                    partition_id,
                    version,
                ))

            if cursor.rowcount != 1:
                raise TransactionConflictError(
                    f"Concurrent checkpoint write for partition {partition_id}"
                )
            return checkpoint

        return await self._execute("put_checkpoint", put)

    @_snowflake_backoff(max_attempts=3)
    async def list_checkpoints(self) -> List[Checkpoint]:
        def select_all(cursor) -> List[Checkpoint]:
            cursor.execute("""
                SELECT partition_id, position, fencing_token, updated_at, version
                FROM PARTITION_CHECKPOINTS
                ORDER BY partition_id
            """)
            return [self._row_to_checkpoint(row) for row in cursor.fetchall()]

        return await self._execute("list_checkpoints", select_all)
