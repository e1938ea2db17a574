"""
Async utility helpers for DPM Finder.

Provides:
- AsyncSemaphore: Bounded concurrency control with metrics
- GenerationCounter: Monotonic run tags for discarding stale results
- async_retry: Retry decorator with exponential backoff
- cancel_tasks: Cancel and drain a set of tasks
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Optional,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AsyncSemaphore:
    """
    Async semaphore with usage metrics.

    Example:
        semaphore = AsyncSemaphore(max_concurrent=4, name="prom1")

        async with semaphore:
            await executor.execute(...)
    """

    def __init__(self, max_concurrent: int = 10, name: str = ""):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._max_concurrent = max_concurrent
        self.name = name
        self._current_count = 0
        self._peak_count = 0
        self._total_acquisitions = 0
        self._total_wait_time = 0.0

    async def __aenter__(self) -> "AsyncSemaphore":
        start = time.monotonic()
        await self._semaphore.acquire()

        # No await between acquire and bookkeeping, so no lock needed
        self._current_count += 1
        self._peak_count = max(self._peak_count, self._current_count)
        self._total_acquisitions += 1
        self._total_wait_time += time.monotonic() - start
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self._current_count -= 1
        self._semaphore.release()

    @property
    def current_usage(self) -> int:
        """Current number of acquired permits."""
        return self._current_count

    @property
    def peak_usage(self) -> int:
        """Highest number of permits held at once."""
        return self._peak_count

    @property
    def available(self) -> int:
        """Number of available permits."""
        return self._max_concurrent - self._current_count

    def get_metrics(self) -> Dict[str, Any]:
        """Get semaphore metrics."""
        return {
            "name": self.name,
            "max_concurrent": self._max_concurrent,
            "current_usage": self._current_count,
            "peak_usage": self._peak_count,
            "available": self.available,
            "total_acquisitions": self._total_acquisitions,
            "avg_wait_time": (
                self._total_wait_time / self._total_acquisitions
                if self._total_acquisitions > 0
                else 0.0
            ),
        }


class GenerationCounter:
    """
    Monotonically increasing run tag.

    Each restart calls ``advance()``; in-flight work captured the old value
    and checks ``is_current()`` before publishing anything.

    Example:
        generation = counter.advance()
        ...
        if counter.is_current(generation):
            publish(result)
    """

    def __init__(self) -> None:
        self._value = 0

    @property
    def current(self) -> int:
        return self._value

    def advance(self) -> int:
        self._value += 1
        return self._value

    def is_current(self, generation: int) -> bool:
        return generation == self._value


def async_retry(
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
) -> Callable:
    """
    Decorator for async retry with exponential backoff.

    ``attempts`` counts the first call. Exceptions outside ``exceptions``
    propagate immediately.

    Example:
        @async_retry(attempts=3, delay=1.0, exceptions=(TransportError,))
        async def fetch():
            ...
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_exception: Optional[BaseException] = None

            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < attempts - 1:
                        wait_time = delay * (backoff ** attempt)
                        logger.warning(
                            f"Retry {attempt + 1}/{attempts - 1} for "
                            f"{getattr(func, '__name__', 'call')} after {wait_time:.1f}s: {e}"
                        )
                        await asyncio.sleep(wait_time)

            raise last_exception

        return wrapper

    return decorator


async def cancel_tasks(tasks: Iterable["asyncio.Task[Any]"]) -> None:
    """Cancel tasks and wait for them to unwind."""
    pending = [t for t in tasks if not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
