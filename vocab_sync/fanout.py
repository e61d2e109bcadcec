"""Concurrency-capped fan-out with per-item failure isolation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .const import DEFAULT_CONCURRENCY

T = TypeVar("T")
R = TypeVar("R")

FULFILLED = "fulfilled"
REJECTED = "rejected"


@dataclass(slots=True)
class SettledResult(Generic[R]):
    """Outcome of one item: either a value or the exception it raised."""

    status: str
    value: R | None = None
    reason: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == FULFILLED


async def parallel_map(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY,
) -> list[SettledResult[R]]:
    """Run ``fn`` over ``items`` with at most ``concurrency`` calls in flight.

    Results keep the input order. An exception raised for one item is captured
    in its :class:`SettledResult` and never stops the other workers;
    cancellation still propagates to the caller.
    """

    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    results: list[Any] = [None] * len(items)
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1
            try:
                value = await fn(items[index])
            except Exception as err:
                results[index] = SettledResult(status=REJECTED, reason=err)
            else:
                results[index] = SettledResult(status=FULFILLED, value=value)

    workers = min(concurrency, len(items))
    await asyncio.gather(*(worker() for _ in range(workers)))
    return results


__all__ = ["FULFILLED", "REJECTED", "SettledResult", "parallel_map"]
