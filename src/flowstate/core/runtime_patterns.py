"""
Runtime primitives used by the orchestrator and session manager.

- Bounded retries with exponential backoff and jitter
- Single-flight deduplication of concurrent work sharing a key
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetriesExhausted(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def retry(
    op: Callable[[int], Awaitable[T]],
    *,
    attempts: int = 3,
    base: float = 0.01,
    max_backoff: float = 0.5,
    is_retryable: Callable[[Exception], bool] = lambda e: False,
    on_retry: Callable[[Exception, int], None] | None = None,
) -> T:
    """
    Run ``op(attempt)`` until it succeeds, a non-retryable error escapes, or
    ``attempts`` is used up (then ``RetriesExhausted``). ``attempt`` starts at 1.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await op(attempt)
        except Exception as e:
            if not is_retryable(e):
                raise
            if on_retry:
                on_retry(e, attempt)
            if attempt == attempts:
                raise RetriesExhausted(attempts, e) from e

            backoff = min(max_backoff, base * (2 ** (attempt - 1))) * (0.5 + random.random())
            logger.debug(f"Retrying after {backoff:.3f}s (attempt {attempt}/{attempts}): {e}")
            if backoff > 0:
                await asyncio.sleep(backoff)

    raise RuntimeError("retry called with attempts < 1")


class SingleFlight:
    """Concurrent callers with the same key share one execution."""

    def __init__(self):
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    def in_flight(self, key: str) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def run(self, key: str, coro_factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(coro_factory())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        # shield: one caller going away must not cancel the shared work
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
