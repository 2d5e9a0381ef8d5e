"""
Batched Fan-out

Run one coroutine per item with bounded concurrency: items are split into
fixed-size batches, each batch runs concurrently, and the caller sleeps for
`pause` seconds between batches to stay under exchange rate limits.
"""

import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    """
    Split a sequence into consecutive chunks.

    Example:
        >>> chunked([1, 2, 3, 4, 5], 2)
        [[1, 2], [3, 4], [5]]
    """
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


async def gather_in_batches(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    batch_size: int,
    pause: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[R]:
    """
    Apply `fn` to every item, `batch_size` at a time.

    Exceptions are returned in place of results (asyncio.gather with
    return_exceptions=True), so one failed request never cancels the batch.
    Result order matches item order.
    """
    results: List[R] = []
    batches = chunked(list(items), batch_size)
    for index, batch in enumerate(batches):
        results.extend(await asyncio.gather(*(fn(item) for item in batch), return_exceptions=True))
        if pause > 0 and index + 1 < len(batches):
            await sleep(pause)
    return results
