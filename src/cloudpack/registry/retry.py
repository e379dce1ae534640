"""Bounded retry with exponential backoff for registry calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from cloudpack.config import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_MAX_RETRIES,
)
from cloudpack.exceptions import (
    IntegrityMismatchError,
    TransferFailedError,
    TransientNetworkError,
)
from cloudpack.utils.backoff import get_backoff_delay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Decides whether and when a failed registry call is attempted again.

    Only transient failures (timeouts, transport errors, 5xx, 408, 429) and
    integrity mismatches are retried. Everything else, including 4xx
    responses, surfaces immediately.
    """

    max_attempts: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BACKOFF_BASE
    max_delay: float = DEFAULT_BACKOFF_MAX
    jitter: float = 0.2

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, (TransientNetworkError, IntegrityMismatchError))

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """``attempt`` is zero-based: the first call is attempt 0."""
        return self.is_retryable(error) and attempt < self.max_attempts - 1

    def delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        return get_backoff_delay(
            attempt,
            self.base_delay,
            self.max_delay,
            jitter=self.jitter,
            retry_after=getattr(error, "retry_after", None),
        )


NO_RETRY = RetryPolicy(max_attempts=1)


async def retry_with_backoff(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    operation: Optional[str] = None,
    **kwargs: Any,
) -> Any:
    """Execute async function with retry and exponential backoff.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        policy: Retry policy (default: RetryPolicy())
        operation: Label used in logs and errors (default: func.__name__)
        **kwargs: Keyword arguments for func

    Returns:
        Result from successful function call

    Raises:
        TransferFailedError: If transient failures exhaust all attempts
        IntegrityMismatchError: If every attempt received corrupt content
        Exception: Any non-retryable exception, unchanged
    """
    policy = policy or RetryPolicy()
    label = operation or getattr(func, "__name__", "operation")

    attempt = 0
    while True:
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if not policy.is_retryable(e):
                logger.debug(f"Non-retryable {type(e).__name__} in {label}: {e}")
                raise

            if not policy.should_retry(attempt, e):
                logger.warning(
                    f"Max retries ({policy.max_attempts}) exhausted for {label}: {e}"
                )
                if isinstance(e, TransientNetworkError):
                    raise TransferFailedError(
                        f"{label} failed after {attempt + 1} attempts: {e}"
                    ) from e
                raise

            delay = policy.delay(attempt, e)
            logger.debug(
                f"Retry {attempt + 1}/{policy.max_attempts} for {label} "
                f"after {delay:.2f}s ({type(e).__name__}: {e})"
            )
            await asyncio.sleep(delay)
            attempt += 1
            continue

        if attempt > 0:
            logger.info(
                f"{label} succeeded on attempt {attempt + 1}/{policy.max_attempts}"
            )
        return result
