"""
Exponential backoff utility for STREAM-LEASE.

Provides a reusable exponential backoff decorator for coroutine functions,
plus a call-site helper whose retry budget can be bounded by a deadline
(used for checkpoint writes, which must finish inside the lease window).
"""

import asyncio
import functools
import random
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, Type, TypeVar

from .config import StreamLeaseConfig
from .logging_config import log_backoff_retry

F = TypeVar('F', bound=Callable[..., Awaitable[Any]])

RetryCallback = Callable[[int, float, BaseException], None]


class BackoffExhaustedError(Exception):
    """Raised when all retry attempts (or the retry deadline) have been used up."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Backoff exhausted after {attempts} attempts. Last error: {last_error}"
        )


def calculate_delay(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    jitter: bool = True
) -> float:
    """
    Calculate the delay for a given retry attempt using exponential backoff.

    Args:
        attempt: Current attempt number (1-based)
        base_delay_ms: Base delay in milliseconds
        max_delay_ms: Maximum delay in milliseconds
        jitter: Whether to apply jitter to prevent thundering herd

    Returns:
        float: Delay in milliseconds
    """
    exponential_delay = base_delay_ms * (2 ** (attempt - 1))
    delay = min(exponential_delay, max_delay_ms)

    # ±25% random variation
    if jitter:
        jitter_range = delay * 0.25
        jitter_offset = random.uniform(-jitter_range, jitter_range)
        delay = max(0, delay + jitter_offset)

    return delay


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    max_attempts: int = 5,
    base_delay_ms: int = 100,
    max_delay_ms: int = 30000,
    jitter: bool = True,
    retry_on: Sequence[Type[BaseException]] = (Exception,),
    give_up_on: Sequence[Type[BaseException]] = (),
    deadline: Optional[float] = None,
    on_retry: Optional[RetryCallback] = None,
    reraise: bool = False,
) -> Any:
    """
    Call ``func`` until it succeeds, retrying matching errors with backoff.

    Args:
        func: Zero-argument coroutine function to call
        max_attempts: Maximum number of calls
        base_delay_ms: Base delay in milliseconds
        max_delay_ms: Maximum delay in milliseconds
        jitter: Whether to apply jitter
        retry_on: Exception types that trigger a retry; anything else propagates
        give_up_on: Subtypes of retry_on that propagate immediately instead
        deadline: time.monotonic() value after which no further attempt is started
        on_retry: Callback called with (attempt, delay_ms, error) before sleeping
        reraise: Raise the last error itself instead of BackoffExhaustedError

    Returns:
        Whatever ``func`` returns

    Raises:
        BackoffExhaustedError: When attempts or the deadline run out
    """
    if max_attempts <= 0:
        raise BackoffExhaustedError(0, ValueError("Zero max attempts configured"))

    retry_types = tuple(retry_on)
    fatal_types = tuple(give_up_on)
    last_error: Optional[BaseException] = None
    attempt = 0

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except retry_types as e:
            if fatal_types and isinstance(e, fatal_types):
                raise
            last_error = e

        if attempt >= max_attempts:
            break

        delay_ms = calculate_delay(attempt, base_delay_ms, max_delay_ms, jitter)
        if deadline is not None and time.monotonic() + delay_ms / 1000.0 >= deadline:
            break

        if on_retry:
            on_retry(attempt, delay_ms, last_error)

        await asyncio.sleep(delay_ms / 1000.0)

    if reraise:
        raise last_error
    raise BackoffExhaustedError(attempt, last_error) from last_error


def with_backoff(
    max_attempts: Optional[int] = None,
    base_delay_ms: Optional[int] = None,
    max_delay_ms: Optional[int] = None,
    jitter: Optional[bool] = None,
    retry_on: Optional[Sequence[Type[BaseException]]] = None,
    timeout_total_s: Optional[float] = None,
    on_retry: Optional[RetryCallback] = None,
    reraise: bool = False,
    config: Optional[StreamLeaseConfig] = None
) -> Callable[[F], F]:
    """
    Decorator that adds exponential backoff retry logic to a coroutine function.

    Args:
        max_attempts: Maximum number of attempts (defaults to 5)
        base_delay_ms: Base delay in milliseconds (defaults to config or 100)
        max_delay_ms: Maximum delay in milliseconds (defaults to config or 30000)
        jitter: Whether to apply jitter (defaults to True)
        retry_on: Exception types to retry on (defaults to all exceptions)
        timeout_total_s: Total time budget for all attempts in seconds
        on_retry: Callback called on each retry attempt
        reraise: Raise the last error itself once attempts are exhausted
        config: StreamLeaseConfig instance for default values

    Returns:
        Decorated coroutine function with backoff retry logic

    Example:
        @with_backoff(max_attempts=3, base_delay_ms=200, retry_on=[StorageConnectionError])
        async def put_checkpoint(...):
            ...
    """

    def decorator(func: F) -> F:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"with_backoff requires a coroutine function, got {func!r}")

        _max_attempts = max_attempts if max_attempts is not None else 5
        _base_delay_ms = base_delay_ms if base_delay_ms is not None else (config.default_base_delay_ms if config else 100)
        _max_delay_ms = max_delay_ms if max_delay_ms is not None else (config.default_max_delay_ms if config else 30000)
        _jitter = jitter if jitter is not None else True
        _retry_on = tuple(retry_on) if retry_on else (Exception,)

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            deadline = time.monotonic() + timeout_total_s if timeout_total_s else None
            return await retry_async(
                lambda: func(*args, **kwargs),
                max_attempts=_max_attempts,
                base_delay_ms=_base_delay_ms,
                max_delay_ms=_max_delay_ms,
                jitter=_jitter,
                retry_on=_retry_on,
                deadline=deadline,
                on_retry=on_retry,
                reraise=reraise,
            )

        return async_wrapper

    return decorator


def create_retry_callback(logger, operation_name: str, **context: Any) -> RetryCallback:
    """
    Create a retry callback that logs retry attempts with context.

    Args:
        logger: Logger instance for logging retry attempts
        operation_name: Name of the operation being retried
        **context: Extra fields attached to every retry record

    Returns:
        Callback function for use with with_backoff / retry_async
    """
    def retry_callback(attempt: int, delay_ms: float, error: BaseException):
        log_backoff_retry(
            logger=logger,
            operation=operation_name,
            attempt=attempt,
            delay_ms=delay_ms,
            error=error,
            **context
        )

    return retry_callback
