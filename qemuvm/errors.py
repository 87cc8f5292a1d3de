"""Error taxonomy for VM lifecycle operations.

Adapter-level failures (``HypervisorError``) are raised by hypervisor
clients. The orchestrator wraps them into ``LifecycleError`` subclasses so
callers can tell lookup failures from failed mutations and settle timeouts.
No error here implies a rollback: a failed transition may leave the VM
partially mutated on the hypervisor.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from qemuvm.schemas import VmRef


class HypervisorError(Exception):
    """Base exception for hypervisor API errors."""
    def __init__(self, message: str, status_code: int | None = None, retriable: bool = False):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retriable = retriable


class AlreadyInStateError(HypervisorError):
    """VM is already in the requested power state (already stopped/running)."""


class LifecycleError(Exception):
    """Base exception for lifecycle orchestration errors."""
    def __init__(self, message: str, ref: VmRef | None = None, retriable: bool = False):
        super().__init__(message)
        self.message = message
        self.ref = ref
        self.retriable = retriable
        # Lifecycle states the failed operation passed through
        self.history: list = []


class ConfigurationError(LifecycleError):
    """Desired state cannot be acted upon (e.g. neither clone nor iso set)."""


class DuplicateConflictError(LifecycleError):
    """A VM with the desired name exists and force_create forbids recycling."""


class NodeMismatchError(LifecycleError):
    """A VM with the desired name exists on a different node."""


class LookupFailureError(LifecycleError):
    """Looking up a VM or its live state failed."""


class MutationFailureError(LifecycleError):
    """A mutating remote call failed.

    ``cause`` keeps the adapter error verbatim.
    """
    def __init__(self, operation: str, cause: Exception, ref: VmRef | None = None):
        super().__init__(f"{operation} failed: {cause}", ref=ref)
        self.operation = operation
        self.cause = cause


class SettleTimeoutError(LifecycleError, TimeoutError):
    """Hypervisor did not reach the expected state within the poll bound."""
    def __init__(self, description: str, timeout: float, ref: VmRef | None = None):
        super().__init__(f"Timeout waiting for {description} after {timeout:.1f}s", ref=ref, retriable=True)
        self.description = description
        self.timeout = timeout


class UnknownProvisioningKindError(LifecycleError):
    """No post-boot provisioner is registered for the requested os_type."""
    def __init__(self, os_type: str, ref: VmRef | None = None):
        super().__init__(f"Unknown os_type: {os_type}", ref=ref)
        self.os_type = os_type
