"""Exponential backoff with jitter for calls to flaky external services."""

import asyncio
import random
from typing import TypeVar
from collections.abc import Awaitable, Callable

from loguru import logger
from pydantic import BaseModel

T = TypeVar("T")


class RetryPolicy(BaseModel):
    max_retries: int = 3  # retries after the first attempt
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.5

    def delay_for(self, attempt: int) -> float:
        """Wait before retry number `attempt + 1`; capped at `max_delay_seconds` including jitter."""
        delay = min(self.base_delay_seconds * (2**attempt), self.max_delay_seconds)
        jitter = random.uniform(0, delay * self.jitter_ratio)
        return min(delay + jitter, self.max_delay_seconds)


class RetriesExhausted(Exception):
    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_transient: Callable[[BaseException], bool],
    description: str,
) -> T:
    """Run `operation`, retrying transient failures per `policy`.

    Non-transient errors propagate unchanged on the first occurrence. When every attempt failed
    transiently, raises RetriesExhausted wrapping the last error.
    """
    attempts = policy.max_retries + 1
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as e:
            if not is_transient(e):
                raise
            if attempt == attempts - 1:
                raise RetriesExhausted(e, attempts) from e
            wait_time = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed ({type(e).__name__}: {e}), "
                f"attempt {attempt + 1}/{attempts}, retrying in {wait_time:.1f}s"
            )
            await asyncio.sleep(wait_time)
    raise AssertionError("unreachable")
