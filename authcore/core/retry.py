"""Retry utilities with exponential backoff for best-effort side writes."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from sqlalchemy.exc import IntegrityError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0  # Base delay in seconds
    max_delay: float = 30.0  # Maximum delay in seconds
    exponential_base: float = 2.0  # Exponential backoff multiplier
    jitter: bool = True  # Add random jitter to delays
    retryable_exceptions: tuple = (
        OperationalError,
        IntegrityError,
        httpx.TimeoutException,
        httpx.NetworkError,
        ConnectionError,
        TimeoutError,
    )


def calculate_backoff_delay(
    attempt: int,
    config: RetryConfig,
) -> float:
    """Calculate delay for exponential backoff with optional jitter."""
    delay = config.base_delay * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add random jitter (0.5 to 1.5 times the delay)
        delay = delay * (0.5 + random.random())

    return delay


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    config: RetryConfig | None = None,
    operation: str | None = None,
    **kwargs,
) -> T:
    """Execute an async function with retry logic.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        operation: Human-readable name used in log lines
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        The last exception if all retries fail
    """
    config = config or RetryConfig()
    name = operation or getattr(func, "__name__", "operation")
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            result = await func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"{name} succeeded on attempt {attempt + 1}")
            return result

        except Exception as e:
            last_exception = e
            is_retryable = isinstance(e, config.retryable_exceptions)

            if not is_retryable or attempt >= config.max_retries:
                logger.warning(f"{name} failed after {attempt + 1} attempts: {e}")
                raise

            delay = calculate_backoff_delay(attempt, config)
            logger.info(
                f"{name} retry {attempt + 1}/{config.max_retries} after {delay:.2f}s delay: {e}"
            )
            await asyncio.sleep(delay)

    # Should not reach here, but just in case
    if last_exception:
        raise last_exception
    raise RuntimeError("Retry logic error")


async def run_best_effort(
    operation: str,
    func: Callable[..., Awaitable[Any]],
    *args,
    config: RetryConfig | None = None,
    on_failure: Callable[[str, Exception], Awaitable[None]] | None = None,
    **kwargs,
) -> bool:
    """Run a side write with retries; never raise.

    Returns True on success. On final failure the error is logged and
    ``on_failure`` (typically an operator alert) is awaited.
    """
    try:
        await retry_async(func, *args, config=config, operation=operation, **kwargs)
        return True
    except Exception as e:
        logger.error(f"{operation} failed permanently: {e}", exc_info=True)
        if on_failure is not None:
            try:
                await on_failure(operation, e)
            except Exception as alert_error:
                logger.warning(f"Failure callback for {operation} raised: {alert_error}")
        return False
