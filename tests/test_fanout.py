from __future__ import annotations

import asyncio

import pytest

from vocab_sync.fanout import FULFILLED, REJECTED, parallel_map


@pytest.mark.asyncio
async def test_parallel_map_keeps_order_and_isolates_failures() -> None:
    in_flight = 0
    peak = 0

    async def fn(item: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        # later items finish first
        await asyncio.sleep(0.001 * (6 - item))
        in_flight -= 1
        if item == 3:
            raise ValueError("boom")
        return item * 10

    results = await parallel_map([1, 2, 3, 4, 5], fn, concurrency=2)

    assert [result.status for result in results] == [FULFILLED, FULFILLED, REJECTED, FULFILLED, FULFILLED]
    assert [result.value for result in results if result.ok] == [10, 20, 40, 50]
    assert isinstance(results[2].reason, ValueError)
    assert peak == 2


@pytest.mark.asyncio
async def test_parallel_map_empty_input() -> None:
    async def fn(item: int) -> int:
        raise AssertionError("not called")

    assert await parallel_map([], fn) == []


@pytest.mark.asyncio
async def test_parallel_map_rejects_zero_concurrency() -> None:
    async def fn(item: int) -> int:
        return item

    with pytest.raises(ValueError):
        await parallel_map([1], fn, concurrency=0)


@pytest.mark.asyncio
async def test_parallel_map_propagates_cancellation() -> None:
    started = asyncio.Event()

    async def fn(item: int) -> int:
        started.set()
        await asyncio.sleep(10)
        return item

    task = asyncio.create_task(parallel_map([1, 2], fn, concurrency=2))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
