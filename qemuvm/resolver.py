"""Duplicate-name resolution.

Before creating a VM the orchestrator asks whether the desired name is
already taken. An existing VM on the target node is recycled; anything else
is either new or a conflict. Resolution only ever performs the lookup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from qemuvm.errors import (
    DuplicateConflictError,
    HypervisorError,
    LookupFailureError,
    NodeMismatchError,
)
from qemuvm.providers.base import HypervisorClient
from qemuvm.schemas import VmRef

logger = logging.getLogger(__name__)


class ResolutionKind(str, Enum):
    NEW = "new"
    RECYCLE = "recycle"


@dataclass(frozen=True)
class Resolution:
    """Outcome of duplicate resolution."""
    kind: ResolutionKind
    ref: VmRef | None = None


class DuplicateResolver:
    """Classify a desired VM name as new, recyclable or conflicting."""

    def __init__(self, client: HypervisorClient):
        self.client = client

    async def resolve(self, name: str, target_node: str, force_create: bool) -> Resolution:
        """Resolve ``name`` against the VMs the hypervisor knows.

        Raises:
            LookupFailureError: The lookup itself failed.
            DuplicateConflictError: A VM with this name exists and
                ``force_create`` is set, whatever node it lives on.
            NodeMismatchError: A VM with this name exists on another node.
        """
        logger.debug(f"Checking for duplicate VM name {name}")
        try:
            existing = await self.client.lookup_by_name(name)
        except HypervisorError as e:
            raise LookupFailureError(f"Lookup of VM {name} failed: {e}") from e

        if existing is None:
            return Resolution(ResolutionKind.NEW)

        if force_create:
            raise DuplicateConflictError(
                f"Duplicate VM name ({name}) with vmId: {existing.vmid}. "
                f"Set force_create=false to recycle",
                ref=existing,
            )
        if existing.node != target_node:
            raise NodeMismatchError(
                f"Duplicate VM name ({name}) with vmId: {existing.vmid} "
                f"on different target_node={existing.node}",
                ref=existing,
            )

        logger.info(f"VM {name} already exists as {existing}; recycling")
        return Resolution(ResolutionKind.RECYCLE, existing)
