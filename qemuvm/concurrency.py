"""Concurrency gate limiting in-flight hypervisor operations.

A ``ParallelGate`` is created once and passed to every lifecycle task that
shares the hypervisor. A task holds one slot for the whole span in which it
talks to the hypervisor; the slot is released on every exit path.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from qemuvm.config import settings
from qemuvm.errors import SettleTimeoutError
from qemuvm.metrics import parallel_slots_in_use

logger = logging.getLogger(__name__)

_held_gates: contextvars.ContextVar[tuple[int, ...]] = contextvars.ContextVar("qemuvm_held_gates", default=())


class ParallelGate:
    """Bounded pool of permits for hypervisor operations."""

    def __init__(self, limit: int | None = None, acquire_timeout: float | None = None):
        limit = settings.max_parallel if limit is None else limit
        if limit < 1:
            raise ValueError(f"Parallelism limit must be at least 1, got {limit}")
        self.limit = limit
        self.acquire_timeout = settings.slot_acquire_timeout if acquire_timeout is None else acquire_timeout
        # Created lazily so the semaphore binds to the running loop
        self._semaphore: asyncio.Semaphore | None = None
        self._in_use = 0

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.limit)
        return self._semaphore

    @property
    def in_use(self) -> int:
        """Number of slots currently held."""
        return self._in_use

    def held(self) -> bool:
        """True if the current task holds a slot of this gate."""
        return id(self) in _held_gates.get()

    @asynccontextmanager
    async def slot(self, description: str = "operation") -> AsyncIterator[None]:
        """Hold one slot for the duration of the ``async with`` block.

        Raises:
            SettleTimeoutError: If ``acquire_timeout`` is set and no slot
                became free in time.
        """
        semaphore = self._get_semaphore()
        if self.acquire_timeout is None:
            await semaphore.acquire()
        else:
            try:
                await asyncio.wait_for(semaphore.acquire(), timeout=self.acquire_timeout)
            except asyncio.TimeoutError:
                raise SettleTimeoutError(f"parallel slot for {description}", self.acquire_timeout) from None

        self._in_use += 1
        parallel_slots_in_use.set(self._in_use)
        token = _held_gates.set(_held_gates.get() + (id(self),))
        logger.debug(f"Acquired slot for {description} ({self._in_use}/{self.limit})")
        try:
            yield
        finally:
            _held_gates.reset(token)
            self._in_use -= 1
            parallel_slots_in_use.set(self._in_use)
            semaphore.release()
            logger.debug(f"Released slot for {description} ({self._in_use}/{self.limit})")
