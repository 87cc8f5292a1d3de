"""Base hypervisor client interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from qemuvm.schemas import DiskCollection, LiveState, NetworkCollection, VmRef, VmSpec


class VmPowerState:
    """Power states reported by ``get_status``."""
    RUNNING = "running"
    STOPPED = "stopped"


class HypervisorClient(ABC):
    """Abstract client for the remote operations the lifecycle needs.

    Implementations raise ``HypervisorError`` for remote failures and
    ``AlreadyInStateError`` when a start/stop finds the VM already in the
    requested state. They may retry idempotent reads; mutations must not
    be retried.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Client name (e.g., 'proxmox')."""
        ...

    @abstractmethod
    async def lookup_by_name(self, name: str) -> VmRef | None:
        """Find a VM by name.

        Returns:
            The first matching VmRef, or None if no VM has that name
        """
        ...

    @abstractmethod
    async def next_vm_id(self) -> int:
        """Allocate the next free numeric VM id cluster-wide."""
        ...

    @abstractmethod
    async def create_vm(self, ref: VmRef, spec: VmSpec, iso: str = "") -> None:
        """Create a new VM from scratch, optionally booting from an ISO."""
        ...

    @abstractmethod
    async def clone_vm(self, source: VmRef, dest: VmRef, spec: VmSpec) -> None:
        """Clone ``source`` into ``dest`` and apply the scalar settings of ``spec``.

        Disks come from the source; networks are applied from ``spec``.
        """
        ...

    @abstractmethod
    async def update_config(
        self,
        ref: VmRef,
        spec: VmSpec,
        disks: DiskCollection,
        networks: NetworkCollection,
    ) -> None:
        """Apply ``spec`` with the given device payloads."""
        ...

    @abstractmethod
    async def resize_disk(self, ref: VmRef, device: str, delta_gb: float) -> None:
        """Grow ``device`` by ``delta_gb`` gigabytes."""
        ...

    @abstractmethod
    async def start_vm(self, ref: VmRef) -> None:
        ...

    @abstractmethod
    async def stop_vm(self, ref: VmRef) -> None:
        ...

    @abstractmethod
    async def delete_vm(self, ref: VmRef) -> None:
        ...

    @abstractmethod
    async def fetch_live_config(self, ref: VmRef) -> LiveState:
        """Read the hypervisor's current configuration of the VM."""
        ...

    @abstractmethod
    async def get_status(self, ref: VmRef) -> str:
        """Return the power state (see ``VmPowerState``)."""
        ...

    @abstractmethod
    async def ssh_forward(self, ref: VmRef) -> int:
        """Expose the guest's SSH port on the node and return the host port."""
        ...

    async def close(self) -> None:
        """Release client resources. Default is a no-op."""
        return None
