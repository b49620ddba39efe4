"""
SQLite storage backend for STREAM-LEASE.

Implements the lease and checkpoint store interfaces on a SQLite database
file. Every conditional write runs inside a ``BEGIN IMMEDIATE`` transaction,
which takes the database write lock before the current record is read, so
the compare-and-swap is atomic across every process sharing the file.
"""

import asyncio
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, List, Optional

import structlog

from .backoff import create_retry_callback, with_backoff
from .config import StreamLeaseConfig
from .models import Checkpoint, ConsumerMember, PartitionLease
from .storage import (
    CheckpointStoreInterface,
    LeaseStoreInterface,
    StorageConnectionError,
    StorageError,
    decide_acquire,
    decide_checkpoint,
    decide_heartbeat,
    decide_release,
    decide_renew,
    utcnow,
)

logger = structlog.get_logger(__name__)

_retry_callback = create_retry_callback(logger, "sqlite_operation")


def _sqlite_backoff():
    """Retry policy for operations that hit a locked or busy database."""
    return with_backoff(
        max_attempts=5,
        base_delay_ms=50,
        max_delay_ms=2000,
        retry_on=[StorageConnectionError],
        on_retry=_retry_callback,
        reraise=True,
    )


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


class SQLiteStorage(LeaseStoreInterface, CheckpointStoreInterface):
    """
    SQLite implementation of the lease and checkpoint stores.

    The factory creates one instance per role so leases and checkpoints can
    live in separate database files.
    """

    def __init__(
        self,
        config: StreamLeaseConfig,
        db_path: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize SQLite storage backend.

        Args:
            config: STREAM-LEASE configuration
            db_path: Database file; defaults to config.lease_db_path
            clock: Source of the current time (UTC, timezone-aware)
        """
        self.config = config
        self.db_path = db_path or config.lease_db_path
        self.clock = clock or utcnow
        self.connection: Optional[sqlite3.Connection] = None
        self._connection_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """
        Open the database and create the lease and checkpoint tables.

        Raises:
            StorageError: If initialization fails
        """
        try:
            await self._connect()
            await self._create_schema()
            logger.info(f"SQLite storage initialized with database: {self.db_path}")
        except StorageError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize SQLite storage: {e}")
            raise StorageError(f"SQLite initialization failed: {e}", e) from e

    async def close(self) -> None:
        """Close SQLite database connection."""
        async with self._connection_lock:
            if self.connection:
                try:
                    self.connection.close()
                    logger.info("SQLite connection closed", db_path=self.db_path)
                except sqlite3.Error as e:
                    logger.warning(f"Error closing SQLite connection: {e}")
                finally:
                    self.connection = None

    @_sqlite_backoff()
    async def _connect(self) -> None:
        async with self._connection_lock:
            if self.connection:
                return

            try:
                # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
                self.connection = sqlite3.connect(
                    self.db_path,
                    check_same_thread=False,
                    timeout=1.0,
                    isolation_level=None
                )
                self.connection.execute("PRAGMA journal_mode=WAL")
                self.connection.execute("PRAGMA synchronous=FULL")
                logger.debug(f"Connected to SQLite database: {self.db_path}")
            except sqlite3.OperationalError as e:
                self.connection = None
                raise StorageConnectionError(f"SQLite connection failed: {e}", e) from e

    def _ensure_connection(self) -> sqlite3.Connection:
        if not self.connection:
            raise StorageError("SQLite connection is not initialized")
        return self.connection

    async def _create_schema(self) -> None:
        def create(cursor: sqlite3.Cursor) -> None:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS PARTITION_LEASES (
                    partition_id TEXT PRIMARY KEY,
                    owner_id TEXT,
                    fencing_token INTEGER NOT NULL,
                    expires_at TEXT,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS PARTITION_CHECKPOINTS (
                    partition_id TEXT PRIMARY KEY,
                    position INTEGER NOT NULL,
                    fencing_token INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS CONSUMER_MEMBERS (
                    consumer_id TEXT PRIMARY KEY,
                    joined_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_partition_leases_owner ON PARTITION_LEASES(owner_id)"
            )

        self._run("create_schema", create)
        logger.debug("SQLite schema created successfully")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        connection = self._ensure_connection()
        cursor = connection.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            yield cursor
            connection.execute("COMMIT")
        except BaseException:
            if connection.in_transaction:
                connection.execute("ROLLBACK")
            raise
        finally:
            cursor.close()

    def _run(self, operation: str, body: Callable[[sqlite3.Cursor], Any]) -> Any:
        """
        Run ``body`` in an IMMEDIATE transaction, translating driver errors.

        Lease and checkpoint conflicts raised by ``body`` roll the transaction
        back and propagate unchanged.
        """
        try:
            with self._transaction() as cursor:
                return body(cursor)
        except StorageError:
            raise
        except sqlite3.OperationalError as e:
            # "database is locked" and friends: another process holds the write lock
            raise StorageConnectionError(f"SQLite {operation} failed: {e}", e) from e
        except sqlite3.Error as e:
            logger.error(f"SQLite {operation} failed: {e}")
            raise StorageError(f"SQLite {operation} failed: {e}", e) from e

    @staticmethod
    def _select_lease(cursor: sqlite3.Cursor, partition_id: str) -> Optional[PartitionLease]:
        cursor.execute(
            "SELECT partition_id, owner_id, fencing_token, expires_at "
            "FROM PARTITION_LEASES WHERE partition_id = ?",
            (partition_id,)
        )
        row = cursor.fetchone()
        return SQLiteStorage._row_to_lease(row) if row else None

    @staticmethod
    def _write_lease(cursor: sqlite3.Cursor, lease: PartitionLease, now: datetime) -> None:
        cursor.execute("""
            INSERT INTO PARTITION_LEASES (partition_id, owner_id, fencing_token, expires_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(partition_id) DO UPDATE SET
                owner_id = excluded.owner_id,
                fencing_token = excluded.fencing_token,
                expires_at = excluded.expires_at,
                updated_at = excluded.updated_at
        """, (
            lease.partition_id,
            lease.owner_id,
            lease.fencing_token,
            _to_text(lease.expires_at),
            now.isoformat(),
        ))

    @staticmethod
    def _row_to_lease(row: tuple) -> PartitionLease:
        partition_id, owner_id, fencing_token, expires_at = row
        return PartitionLease(
            partition_id=partition_id,
            owner_id=owner_id,
            fencing_token=fencing_token,
            expires_at=_from_text(expires_at),
        )

    @staticmethod
    def _row_to_checkpoint(row: tuple) -> Checkpoint:
        partition_id, position, fencing_token, updated_at = row
        return Checkpoint(
            partition_id=partition_id,
            position=position,
            fencing_token=fencing_token,
            updated_at=_from_text(updated_at),
        )

    # Lease store

    @_sqlite_backoff()
    async def acquire_lease(self, partition_id: str, owner_id: str, duration_seconds: float) -> PartitionLease:
        def acquire(cursor: sqlite3.Cursor) -> PartitionLease:
            now = self.clock()
            lease = decide_acquire(
                self._select_lease(cursor, partition_id), partition_id, owner_id, duration_seconds, now
            )
            self._write_lease(cursor, lease, now)
            return lease

        return self._run("acquire_lease", acquire)

    @_sqlite_backoff()
    async def renew_lease(
        self, partition_id: str, owner_id: str, fencing_token: int, duration_seconds: float
    ) -> PartitionLease:
        def renew(cursor: sqlite3.Cursor) -> PartitionLease:
            now = self.clock()
            lease = decide_renew(
                self._select_lease(cursor, partition_id), partition_id, owner_id,
                fencing_token, duration_seconds, now
            )
            self._write_lease(cursor, lease, now)
            return lease

        return self._run("renew_lease", renew)

    @_sqlite_backoff()
    async def release_lease(self, partition_id: str, owner_id: str, fencing_token: int) -> bool:
        def release(cursor: sqlite3.Cursor) -> bool:
            released = decide_release(self._select_lease(cursor, partition_id), owner_id, fencing_token)
            if released is None:
                return False
            self._write_lease(cursor, released, self.clock())
            return True

        return self._run("release_lease", release)

    @_sqlite_backoff()
    async def get_lease(self, partition_id: str) -> Optional[PartitionLease]:
        return self._run("get_lease", lambda cursor: self._select_lease(cursor, partition_id))

    @_sqlite_backoff()
    async def list_leases(self) -> List[PartitionLease]:
        def select_all(cursor: sqlite3.Cursor) -> List[PartitionLease]:
            cursor.execute(
                "SELECT partition_id, owner_id, fencing_token, expires_at "
                "FROM PARTITION_LEASES ORDER BY partition_id"
            )
            return [self._row_to_lease(row) for row in cursor.fetchall()]

        return self._run("list_leases", select_all)

    # Consumer membership

    @staticmethod
    def _row_to_member(row: tuple) -> ConsumerMember:
        consumer_id, joined_at, expires_at = row
        return ConsumerMember(
            consumer_id=consumer_id,
            joined_at=_from_text(joined_at),
            expires_at=_from_text(expires_at),
        )

    @_sqlite_backoff()
    async def heartbeat_member(self, consumer_id: str, ttl_seconds: float) -> ConsumerMember:
        def heartbeat(cursor: sqlite3.Cursor) -> ConsumerMember:
            cursor.execute(
                "SELECT consumer_id, joined_at, expires_at FROM CONSUMER_MEMBERS WHERE consumer_id = ?",
                (consumer_id,)
            )
            row = cursor.fetchone()
            member = decide_heartbeat(
                self._row_to_member(row) if row else None, consumer_id, ttl_seconds, self.clock()
            )
            cursor.execute("""
                INSERT INTO CONSUMER_MEMBERS (consumer_id, joined_at, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(consumer_id) DO UPDATE SET
                    joined_at = excluded.joined_at,
                    expires_at = excluded.expires_at
            """, (member.consumer_id, _to_text(member.joined_at), _to_text(member.expires_at)))
            return member

        return self._run("heartbeat_member", heartbeat)

    @_sqlite_backoff()
    async def list_members(self) -> List[ConsumerMember]:
        def select_all(cursor: sqlite3.Cursor) -> List[ConsumerMember]:
            cursor.execute(
                "SELECT consumer_id, joined_at, expires_at FROM CONSUMER_MEMBERS ORDER BY consumer_id"
            )
            return [self._row_to_member(row) for row in cursor.fetchall()]

        return self._run("list_members", select_all)

    @_sqlite_backoff()
    async def remove_member(self, consumer_id: str) -> bool:
        def remove(cursor: sqlite3.Cursor) -> bool:
            cursor.execute("DELETE FROM CONSUMER_MEMBERS WHERE consumer_id = ?", (consumer_id,))
            return cursor.rowcount == 1

        return self._run("remove_member", remove)

    # Checkpoint store

    @staticmethod
    def _select_checkpoint(cursor: sqlite3.Cursor, partition_id: str) -> Optional[Checkpoint]:
        cursor.execute(
            "SELECT partition_id, position, fencing_token, updated_at "
            "FROM PARTITION_CHECKPOINTS WHERE partition_id = ?",
            (partition_id,)
        )
        row = cursor.fetchone()
        return SQLiteStorage._row_to_checkpoint(row) if row else None

    @_sqlite_backoff()
    async def get_checkpoint(self, partition_id: str) -> Optional[Checkpoint]:
        return self._run("get_checkpoint", lambda cursor: self._select_checkpoint(cursor, partition_id))

    @_sqlite_backoff()
    async def put_checkpoint(self, partition_id: str, position: int, fencing_token: int) -> Checkpoint:
        def put(cursor: sqlite3.Cursor) -> Checkpoint:
            checkpoint = decide_checkpoint(
                self._select_checkpoint(cursor, partition_id),
                partition_id, position, fencing_token, self.clock()
            )
            cursor.execute("""
                INSERT INTO PARTITION_CHECKPOINTS (partition_id, position, fencing_token, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(partition_id) DO UPDATE SET
                    position = excluded.position,
                    fencing_token = excluded.fencing_token,
                    updated_at = excluded.updated_at
            """, (
                checkpoint.partition_id,
                checkpoint.position,
                checkpoint.fencing_token,
                checkpoint.updated_at.isoformat(),
            ))
            return checkpoint

        return self._run("put_checkpoint", put)

    @_sqlite_backoff()
    async def list_checkpoints(self) -> List[Checkpoint]:
        def select_all(cursor: sqlite3.Cursor) -> List[Checkpoint]:
            cursor.execute(
                "SELECT partition_id, position, fencing_token, updated_at "
                "FROM PARTITION_CHECKPOINTS ORDER BY partition_id"
            )
            return [self._row_to_checkpoint(row) for row in cursor.fetchall()]

        return self._run("list_checkpoints", select_all)
