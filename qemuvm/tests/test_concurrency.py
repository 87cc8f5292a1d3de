"""Tests for the parallel operation gate."""
from __future__ import annotations

import asyncio

import pytest

from qemuvm.concurrency import ParallelGate
from qemuvm.errors import SettleTimeoutError


def test_gate_lazily_initializes_semaphore() -> None:
    """Don't bind asyncio.Semaphore in __init__."""
    gate = ParallelGate(limit=2)
    assert gate._semaphore is None


def test_gate_rejects_zero_limit() -> None:
    with pytest.raises(ValueError):
        ParallelGate(limit=0)


@pytest.mark.asyncio
async def test_slot_marks_task_as_holding():
    gate = ParallelGate(limit=1)
    assert not gate.held()

    async with gate.slot("test"):
        assert gate.held()
        assert gate.in_use == 1

    assert not gate.held()
    assert gate.in_use == 0


@pytest.mark.asyncio
async def test_slot_released_on_error():
    gate = ParallelGate(limit=1)

    with pytest.raises(RuntimeError):
        async with gate.slot("failing"):
            raise RuntimeError("boom")

    assert gate.in_use == 0
    async with gate.slot("next"):
        assert gate.in_use == 1


@pytest.mark.asyncio
async def test_at_most_limit_tasks_in_flight():
    gate = ParallelGate(limit=2)
    peak = 0

    async def worker():
        nonlocal peak
        async with gate.slot("worker"):
            peak = max(peak, gate.in_use)
            await asyncio.sleep(0.01)

    await asyncio.gather(*(worker() for _ in range(6)))

    assert peak == 2
    assert gate.in_use == 0


@pytest.mark.asyncio
async def test_held_is_per_gate():
    gate = ParallelGate(limit=1)
    other = ParallelGate(limit=1)

    async with gate.slot("outer"):
        assert not other.held()


@pytest.mark.asyncio
async def test_acquire_timeout():
    gate = ParallelGate(limit=1, acquire_timeout=0.05)

    async with gate.slot("holder"):
        with pytest.raises(SettleTimeoutError, match="parallel slot"):
            async with gate.slot("waiter"):
                pass

    assert gate.in_use == 0


@pytest.mark.asyncio
async def test_cancelled_holder_releases_slot():
    gate = ParallelGate(limit=1, acquire_timeout=0.1)
    entered = asyncio.Event()

    async def holder():
        async with gate.slot("holder"):
            entered.set()
            await asyncio.sleep(30)

    task = asyncio.create_task(holder())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert gate.in_use == 0
    async with gate.slot("next"):
        assert gate.in_use == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_leak_a_slot():
    gate = ParallelGate(limit=1)

    async def waiter():
        async with gate.slot("waiter"):
            pass

    async with gate.slot("holder"):
        task = asyncio.create_task(waiter())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert gate.in_use == 0
    async with gate.slot("next"):
        assert gate.in_use == 1
