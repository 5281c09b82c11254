"""
Job Retry Wrapper

Re-runs a whole ingestion attempt when the provider reports a transient
overload. Delays double from ``initial_delay_ms`` (5s, 10s, 20s with the
defaults). Any other error propagates on first occurrence.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from .error_handler import TransientOverloadError, is_transient_overload
from .metrics import IngestionMetrics
from .models import RetryAttempt

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_MS = 5000

__all__ = [
    "run_with_retry",
    "is_transient_overload",
    "TransientOverloadError",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_INITIAL_DELAY_MS",
]


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[Callable[[RetryAttempt], None]] = None,
    context: str = ""
) -> T:
    """
    Run ``operation`` with exponential backoff on transient overload

    Args:
        operation: Zero-argument coroutine function performing one attempt
        max_retries: Retries after the initial attempt
        initial_delay_ms: Delay before the first retry; doubles each time
        sleep: Awaitable sleep (seconds), injectable for tests
        on_retry: Called with a RetryAttempt before each backoff sleep
        context: Log prefix (e.g. the entity id)

    Returns:
        The operation's result

    Raises:
        The last error once retries are exhausted, or any non-transient
        error immediately
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    prefix = f"[{context}] " if context else ""

    def before_sleep(retry_state: RetryCallState):
        attempt = RetryAttempt(
            attempt_number=retry_state.attempt_number,
            delay_ms=int(round(retry_state.next_action.sleep * 1000)),
        )
        error = retry_state.outcome.exception()
        logger.warning(
            f"{prefix}Provider overloaded, retrying "
            f"(attempt {attempt.attempt_number}/{max_retries}, retry after {attempt.delay_ms}ms): {error}"
        )
        IngestionMetrics.record_overload_retry(attempt.attempt_number)
        if on_retry is not None:
            on_retry(attempt)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay_ms / 1000, exp_base=2),
        retry=retry_if_exception(is_transient_overload),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )

    return await retrying(operation)
