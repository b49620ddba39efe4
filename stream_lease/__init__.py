"""
STREAM-LEASE: leased, checkpointed consumption of a partitioned event stream

A fleet of consumer processes shares the partitions of an append-only
stream. Each partition is owned by at most one process at a time through a
short, renewable lease carrying a fencing token; progress is recorded in
fenced checkpoints so a new owner resumes right after the last committed
batch.

Key Features:
- Compare-and-swap leases with strictly increasing fencing tokens
- Monotonic checkpoints that reject writes from stale owners
- Dynamic fair-share balancing across live consumers
- SQLite, Snowflake and in-memory lease/checkpoint stores
- Azure Event Hubs event source
- Read-only status API

Example:
    >>> from stream_lease.main import StreamLeaseApplication
    >>> from stream_lease.config import load_config
    >>> app = StreamLeaseApplication(load_config(source_mode="memory", storage_mode="memory"))
    >>> await app.initialize()
    >>> await app.run()
"""

__version__ = "0.1.0"
__description__ = "Leased, fenced and checkpointed partition consumption for event streams"
__license__ = "MIT"

from .config import StreamLeaseConfig
from .models import Checkpoint, Event, PartitionContext, PartitionLease, WorkerState

__all__ = [
    "__version__",
    "__description__",
    "__license__",
    "StreamLeaseConfig",
    "Checkpoint",
    "Event",
    "PartitionContext",
    "PartitionLease",
    "WorkerState",
]
