"""Hypervisor clients for qemuvm."""

from qemuvm.providers.base import HypervisorClient, VmPowerState
from qemuvm.providers.proxmox import ProxmoxClient

__all__ = [
    # Base classes and types
    "HypervisorClient",
    "VmPowerState",
    # Client implementations
    "ProxmoxClient",
]
