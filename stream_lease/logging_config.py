"""
Logging configuration for STREAM-LEASE.

Provides structured logging setup with JSON and console formatters,
plus helpers that keep lease, batch and checkpoint records consistent.
"""

import logging
import sys
import time
import traceback
from typing import Any, Optional

import structlog
from structlog.types import FilteringBoundLogger

from .config import StreamLeaseConfig


def configure_logging(config: StreamLeaseConfig) -> FilteringBoundLogger:
    """
    Configure structured logging for STREAM-LEASE.

    Sets up structlog with appropriate processors, formatters, and log levels
    based on the provided configuration.

    Args:
        config: StreamLeaseConfig instance with logging settings

    Returns:
        FilteringBoundLogger: Configured logger instance
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.log_level),
    )

    common_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if config.log_format == "json":
        processors = common_processors + [
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:  # console format
        processors = common_processors + [
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.log_level)
        ),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger("stream_lease")
    logger.info(
        "Logging configured",
        log_level=config.log_level,
        log_format=config.log_format,
        consumer_id=config.consumer_id,
    )

    return logger


class ErrorContext:
    """
    Context manager for error tracking and logging.

    Logs operation start, success, or failure with timing and error context.
    Exceptions are never suppressed.
    """

    def __init__(
        self,
        logger: FilteringBoundLogger,
        operation: str,
        **context: Any
    ):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time: Optional[float] = None
        self.bound_logger = None

    def __enter__(self) -> FilteringBoundLogger:
        self.start_time = time.time()
        self.bound_logger = self.logger.bind(operation=self.operation, **self.context)
        self.bound_logger.debug("Operation started")
        return self.bound_logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000 if self.start_time else 0

        if exc_type is None:
            self.bound_logger.debug(
                "Operation completed successfully",
                duration_ms=duration_ms,
            )
        else:
            log_operation_error(
                self.logger,
                self.operation,
                exc_val,
                duration_ms,
                **self.context
            )

        self.bound_logger = None
        return False


def log_operation_error(
    logger: FilteringBoundLogger,
    operation: str,
    error: BaseException,
    duration_ms: float,
    retry_count: int = 0,
    **context: Any
) -> None:
    """
    Log an operation error with comprehensive context.

    Args:
        logger: The logger instance
        operation: Name of the operation that failed
        error: The exception that occurred
        duration_ms: Duration of the operation in milliseconds
        retry_count: Current retry attempt number
        **context: Additional context to include in the log
    """
    error_context = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "duration_ms": duration_ms,
        "retry_count": retry_count,
        **context
    }

    # Wrapped storage/source errors carry the driver exception as __cause__
    if error.__cause__ is not None:
        error_context["original_error_type"] = type(error.__cause__).__name__
        error_context["original_error_message"] = str(error.__cause__)

    if error.__traceback__ is not None:
        error_context["stack_trace"] = ''.join(traceback.format_tb(error.__traceback__))

    logger.error("Operation failed", **error_context)


def log_backoff_retry(
    logger: FilteringBoundLogger,
    operation: str,
    attempt: int,
    delay_ms: float,
    error: BaseException,
    **context: Any
) -> None:
    """
    Log a backoff retry attempt.

    Args:
        logger: The logger instance
        operation: Name of the operation being retried
        attempt: Attempt number that just failed
        delay_ms: Delay before the next attempt in milliseconds
        error: The error that triggered the retry
        **context: Additional context to include in the log
    """
    logger.warning(
        "Retrying operation after backoff",
        operation=operation,
        attempt=attempt,
        delay_ms=round(delay_ms, 1),
        error_type=type(error).__name__,
        error_message=str(error),
        **context
    )


def log_lease_transition(
    logger: FilteringBoundLogger,
    partition_id: str,
    transition: str,
    owner_id: str,
    fencing_token: Optional[int],
    **context: Any
) -> None:
    """
    Log a lease ownership transition (claimed, renewed, lost, released).

    Lost leases are logged at warning level, everything else at info.
    """
    log_level = "warning" if transition == "lost" else "info"
    getattr(logger, log_level)(
        "Partition lease transition",
        partition_id=partition_id,
        transition=transition,
        owner_id=owner_id,
        fencing_token=fencing_token,
        **context
    )


def log_worker_transition(
    logger: FilteringBoundLogger,
    partition_id: str,
    from_state: str,
    to_state: str,
    **context: Any
) -> None:
    """Log a partition worker state change."""
    logger.debug(
        "Partition worker state transition",
        partition_id=partition_id,
        from_state=from_state,
        to_state=to_state,
        **context
    )


def log_batch_processed(
    logger: FilteringBoundLogger,
    partition_id: str,
    event_count: int,
    first_position: Optional[int],
    last_position: Optional[int],
    duration_ms: float,
    **context: Any
) -> None:
    """
    Log a processed batch with its position range.

    Args:
        logger: The logger instance
        partition_id: Partition the batch was read from
        event_count: Number of events in the batch
        first_position: Position of the first event
        last_position: Position of the last event
        duration_ms: Processing time in milliseconds
        **context: Additional context to include in the log
    """
    logger.info(
        "Batch processed",
        partition_id=partition_id,
        event_count=event_count,
        first_position=first_position,
        last_position=last_position,
        duration_ms=duration_ms,
        **context
    )


def log_checkpoint_written(
    logger: FilteringBoundLogger,
    partition_id: str,
    position: int,
    fencing_token: int,
    attempts: int,
    **context: Any
) -> None:
    """Log an accepted checkpoint write."""
    logger.info(
        "Checkpoint written",
        partition_id=partition_id,
        position=position,
        fencing_token=fencing_token,
        attempts=attempts,
        **context
    )


def log_rebalance(
    logger: FilteringBoundLogger,
    consumer_id: str,
    total_partitions: int,
    active_owners: int,
    fair_share: int,
    owned: int,
    to_claim: int,
    to_release: int,
    **context: Any
) -> None:
    """
    Log a dispatcher balancing decision.

    Quiet cycles (nothing to claim or release) are logged at debug level.
    """
    log_level = "info" if (to_claim or to_release) else "debug"
    getattr(logger, log_level)(
        "Partition balance computed",
        consumer_id=consumer_id,
        total_partitions=total_partitions,
        active_owners=active_owners,
        fair_share=fair_share,
        owned=owned,
        to_claim=to_claim,
        to_release=to_release,
        **context
    )
