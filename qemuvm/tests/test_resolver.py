"""Tests for duplicate name resolution."""
from __future__ import annotations

import pytest

from qemuvm.errors import (
    DuplicateConflictError,
    HypervisorError,
    LookupFailureError,
    NodeMismatchError,
)
from qemuvm.resolver import DuplicateResolver, ResolutionKind
from qemuvm.schemas import VmRef


@pytest.mark.asyncio
async def test_unknown_name_is_new(hypervisor):
    resolution = await DuplicateResolver(hypervisor).resolve("web1", "pve1", False)

    assert resolution.kind is ResolutionKind.NEW
    assert resolution.ref is None


@pytest.mark.asyncio
async def test_same_node_is_recycled(hypervisor):
    hypervisor.add_vm("pve1", 101, "web1")

    resolution = await DuplicateResolver(hypervisor).resolve("web1", "pve1", False)

    assert resolution.kind is ResolutionKind.RECYCLE
    assert resolution.ref == VmRef(node="pve1", vmid=101)


@pytest.mark.asyncio
async def test_other_node_is_mismatch(hypervisor):
    hypervisor.add_vm("pve1", 101, "web1")

    with pytest.raises(NodeMismatchError) as exc_info:
        await DuplicateResolver(hypervisor).resolve("web1", "pve2", False)

    assert exc_info.value.ref == VmRef(node="pve1", vmid=101)
    assert hypervisor.mutating_calls() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("target_node", ["pve1", "pve2"])
async def test_force_create_conflicts_on_any_node(hypervisor, target_node):
    hypervisor.add_vm("pve1", 101, "web1")

    with pytest.raises(DuplicateConflictError, match="vmId: 101"):
        await DuplicateResolver(hypervisor).resolve("web1", target_node, True)

    assert hypervisor.mutating_calls() == []


@pytest.mark.asyncio
async def test_lookup_error_is_lookup_failure(hypervisor):
    hypervisor.fail_on["lookup_by_name"] = HypervisorError("cluster unreachable")

    with pytest.raises(LookupFailureError, match="cluster unreachable"):
        await DuplicateResolver(hypervisor).resolve("web1", "pve1", False)
