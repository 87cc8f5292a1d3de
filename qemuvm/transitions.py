"""Lifecycle states and per-operation tracking.

Every lifecycle operation runs inside a ``TrackedOperation``, which hands
out the operation's ``Transition`` and, on exit, settles the outcome:

    async with TrackedOperation("create", spec.name) as t:
        t.bind(ref)
        t.advance(VmState.PROVISIONING)
        ...

A failure moves the transition to FAILED, counts the error, attaches the
state history to lifecycle errors and logs once. Duration is recorded
under the final outcome either way. Metric failures never break the
wrapped operation.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from qemuvm.errors import LifecycleError
from qemuvm.metrics import operation_duration, operation_errors
from qemuvm.schemas import VmRef

logger = logging.getLogger(__name__)


class VmState(str, Enum):
    """Lifecycle state of a managed VM."""
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    UPDATING = "updating"
    DELETED = "deleted"
    FAILED = "failed"


class VmStateMachine:
    """Valid lifecycle transitions.

    absent -> provisioning -> running (create, clone or recycle)
    running -> updating -> running
    running -> deleted
    any -> failed
    """

    VALID_TRANSITIONS: dict[VmState, set[VmState]] = {
        VmState.ABSENT: {VmState.PROVISIONING},
        VmState.PROVISIONING: {VmState.RUNNING},
        VmState.RUNNING: {VmState.UPDATING, VmState.DELETED},
        VmState.UPDATING: {VmState.RUNNING},
        VmState.DELETED: {VmState.ABSENT},
        VmState.FAILED: set(),
    }

    @classmethod
    def can_transition(cls, current: VmState, target: VmState) -> bool:
        if target == VmState.FAILED:
            return current != VmState.FAILED
        return target in cls.VALID_TRANSITIONS.get(current, set())


@dataclass
class Transition:
    """State tracking for one lifecycle operation."""
    operation: str
    vm_name: str
    state: VmState = VmState.ABSENT
    ref: VmRef | None = None
    history: list[VmState] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.history.append(self.state)

    def bind(self, ref: VmRef) -> None:
        self.ref = ref

    def advance(self, target: VmState) -> None:
        if not VmStateMachine.can_transition(self.state, target):
            raise RuntimeError(
                f"Invalid transition {self.state.value} -> {target.value} "
                f"during {self.operation} of {self.vm_name}"
            )
        logger.info(f"VM {self.vm_name}: {self.state.value} -> {target.value} ({self.operation})")
        self.state = target
        self.history.append(target)


class TrackedOperation:
    """Async context manager that times one operation and settles its outcome."""

    def __init__(
        self,
        operation: str,
        vm_name: str,
        initial: VmState = VmState.ABSENT,
        *,
        histogram=operation_duration,
        errors=operation_errors,
    ):
        self.transition = Transition(operation, vm_name, initial)
        self.histogram = histogram
        self.errors = errors
        self.duration_ms: int = 0
        self._start: float = 0.0

    async def __aenter__(self) -> Transition:
        self._start = time.monotonic()
        return self.transition

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self._start
        self.duration_ms = int(elapsed * 1000)
        t = self.transition
        success = exc_val is None

        if not success:
            failed_in = t.state
            t.advance(VmState.FAILED)
            if isinstance(exc_val, LifecycleError):
                exc_val.history = list(t.history)
                if exc_val.ref is None:
                    exc_val.ref = t.ref
            logger.error(
                f"{t.operation} of VM {t.vm_name} failed in state {failed_in.value}: "
                f"{exc_type.__name__}: {exc_val}; "
                f"hypervisor-side changes already made are not rolled back"
            )

        try:
            status = "success" if success else "error"
            self.histogram.labels(operation=t.operation, status=status).observe(elapsed)
            if not success:
                self.errors.labels(operation=t.operation, error_type=exc_type.__name__).inc()
        except Exception as e:
            logger.warning("Failed to record metric: %s", e)

        logger.info(
            "vm_operation completed",
            extra={
                "event": "vm_operation",
                "operation": t.operation,
                "vm": t.vm_name,
                "ref": str(t.ref) if t.ref is not None else None,
                "state": t.state.value,
                "duration_ms": self.duration_ms,
                "success": success,
            },
        )
        return False
