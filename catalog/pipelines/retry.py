"""Bounded exponential-backoff retry shared by the embedding and vector stages."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from catalog.config import PipelineConfig
from catalog.errors import RetriesExhaustedError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        f"Attempt {retry_state.attempt_number} failed with retryable error: {exc}; "
        f"retrying in {wait:.2f}s"
    )


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    config: PipelineConfig,
    operation: str,
    sleep: Sleeper = asyncio.sleep,
) -> T:
    """Run ``fn`` with up to ``config.max_attempts`` attempts.

    Retryable failures wait ``base_delay * 2 ** (attempt - 1)`` before the next
    attempt. Non-retryable failures propagate unchanged after the first
    attempt; running out of attempts raises ``RetriesExhaustedError``.

    Args:
        fn: Zero-argument coroutine factory performing one attempt
        config: Retry limits and backoff base
        operation: Verb phrase used in the exhaustion message
        sleep: Awaitable sleep, injectable for tests

    Returns:
        Whatever ``fn`` returns on the first successful attempt
    """
    attempts = 0

    async def attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await fn()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(multiplier=config.base_delay_seconds, exp_base=2, min=0),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        return await retrying(attempt)
    except Exception as e:
        if is_retryable(e):
            logger.error(f"Giving up on '{operation}' after {attempts} attempts: {e}")
            raise RetriesExhaustedError(operation, attempts, e) from e
        raise
