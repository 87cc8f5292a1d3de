"""Bounded polling for eventually-consistent hypervisor state.

Every mutating call is followed by a settle step that re-reads remote state
until a readiness predicate holds. Waits back off exponentially and are
bounded; exceeding the bound raises ``SettleTimeoutError`` so the dependent
call is never issued against unsettled state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from qemuvm.config import settings
from qemuvm.errors import HypervisorError, SettleTimeoutError
from qemuvm.schemas import VmRef

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def wait_for(
    poll_fn: Callable[[], Awaitable[T]],
    ready_check: Callable[[T], bool],
    *,
    timeout: float | None = None,
    interval: float | None = None,
    backoff: float | None = None,
    max_interval: float | None = None,
    description: str = "resource",
    ref: VmRef | None = None,
) -> T:
    """Poll until ``ready_check(poll_fn())`` holds.

    Args:
        poll_fn: Async function that fetches the remote state.
        ready_check: Returns True once the state is settled.
        timeout: Maximum time to wait in seconds.
        interval: Initial delay between polls in seconds.
        backoff: Factor applied to the delay after each poll.
        max_interval: Upper bound for the delay.
        description: Description for log and error messages.
        ref: VM the wait belongs to, attached to the timeout error.

    Returns:
        The first polled value that passed ``ready_check``.

    Raises:
        SettleTimeoutError: If the state did not settle within ``timeout``.
    """
    timeout = settings.settle_timeout if timeout is None else timeout
    delay = settings.settle_interval if interval is None else interval
    backoff = settings.settle_backoff if backoff is None else backoff
    max_interval = settings.settle_interval_max if max_interval is None else max_interval

    loop = asyncio.get_running_loop()
    start = loop.time()
    attempt = 0

    while True:
        attempt += 1
        try:
            result = await poll_fn()
        except HypervisorError as e:
            # Objects are briefly unreadable while the hypervisor holds a lock
            logger.debug(f"Polling {description} failed (attempt {attempt}): {e}")
        else:
            if ready_check(result):
                logger.debug(f"{description} settled after {attempt} poll(s)")
                return result

        elapsed = loop.time() - start
        if elapsed >= timeout:
            logger.warning(f"Timeout after {timeout}s: {description}")
            raise SettleTimeoutError(description, timeout, ref=ref)

        await asyncio.sleep(min(delay, timeout - elapsed))
        delay = min(delay * backoff, max_interval)
