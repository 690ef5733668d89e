"""Async utilities for bridging blocking vault/Drive calls into the engine."""

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Sequence,
    TypeVar,
)

T = TypeVar("T")
R = TypeVar("R")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    The vault adapter and Drive client are plain blocking code; the engine
    awaits them through this bridge so batch members overlap on I/O.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        content = await run_sync(store.read_text, file_id)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_in_batches(
    items: Sequence[T],
    func: Callable[[T], Awaitable[R]],
    batch_size: int = 5,
) -> list[R]:
    """Apply an async function to items in sequential fixed-size batches.

    Members of one batch run concurrently via ``asyncio.gather``; batch N+1
    starts only after every member of batch N has finished. Results keep
    input order. Exceptions propagate from the first failing member, so
    callers that want per-item tolerance must catch inside ``func``.

    Args:
        items: Items to process.
        func: Coroutine function applied to each item.
        batch_size: Maximum simultaneous operations (must be >= 1).

    Returns:
        List of results in the same order as ``items``.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    results: list[R] = []
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        results.extend(await asyncio.gather(*(func(item) for item in batch)))
    return results


def spawn_background(
    coro: Coroutine[Any, Any, Any],
    name: str,
    registry: set[asyncio.Task] | None = None,
) -> asyncio.Task:
    """Start a fire-and-forget task whose failure is logged, never raised.

    Args:
        coro: Coroutine to schedule on the running loop.
        name: Task name used in log messages.
        registry: Optional set holding strong task references until done.

    Returns:
        The scheduled task.
    """
    task = asyncio.create_task(coro, name=name)
    if registry is not None:
        registry.add(task)

    def _done(t: asyncio.Task) -> None:
        if registry is not None:
            registry.discard(t)
        if t.cancelled():
            logger.debug("Background task %s cancelled", name)
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("Background task %s failed: %s", name, exc)

    task.add_done_callback(_done)
    return task
