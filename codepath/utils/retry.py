"""
Deadline + retry wrapper for external provider calls (embedding, LLM).

Every attempt runs behind asyncio.wait_for; a timeout cancels only that
attempt and surfaces as ProviderTimeoutError. Transient failures are retried
with exponential backoff, everything else propagates on the first attempt.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from typing import Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from codepath.config import settings
from codepath.core.exceptions import TransientProviderError, classify_provider_error

logger = logging.getLogger(__name__)


async def _run_once(func: Callable[..., Any], timeout: float, *args: Any, **kwargs: Any) -> Any:
    try:
        if inspect.iscoroutinefunction(func):
            return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
        # Blocking providers (local models, sync HTTP) go to a worker thread
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
    except Exception as e:
        classified = classify_provider_error(e)
        if classified is e:
            raise
        raise classified from e


async def call_with_retry(
    func: Callable[..., Any],
    *args: Any,
    operation: str = "provider call",
    timeout: float | None = None,
    max_attempts: int | None = None,
    **kwargs: Any,
) -> Any:
    """
    Call a provider function with a per-attempt deadline and bounded retries.

    Args:
        func: Sync or async callable doing the external call
        operation: Label used in log lines
        timeout: Seconds per attempt (defaults to settings.provider_timeout_seconds)
        max_attempts: Total attempts (defaults to settings.provider_max_attempts)

    Returns:
        Whatever func returns

    Raises:
        TransientProviderError: When every attempt failed transiently
    """
    timeout = timeout if timeout is not None else settings.provider_timeout_seconds
    attempts = max(1, max_attempts or settings.provider_max_attempts)
    start_time = time.time()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(
            multiplier=settings.provider_backoff_seconds,
            max=settings.provider_backoff_max_seconds,
        ),
        retry=retry_if_exception_type(TransientProviderError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await _run_once(func, timeout, *args, **kwargs)
    except TransientProviderError as e:
        duration = time.time() - start_time
        logger.error(f"❌ {operation} failed after {attempts} attempts in {duration:.2f}s: {e}")
        raise

    logger.debug(f"   {operation} finished in {time.time() - start_time:.3f}s")
    return result
