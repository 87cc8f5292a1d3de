"""VM lifecycle orchestration.

Converges a desired ``VmSpec`` onto the hypervisor:

    create:  resolve name -> new (clone | iso) or recycle -> start
    update:  fetch live -> MAC/volume-preserving payload -> update -> start
    read:    fetch live -> reconcile with declared baseline -> persist
    delete:  stop -> delete

Each operation is one sequential task holding a single ``ParallelGate``
slot for all of its hypervisor calls. Every mutating call is followed by a
bounded settle poll before the next dependent call. The first failure
aborts the operation; nothing is rolled back, so the VM may be left
partially changed on the hypervisor.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from qemuvm.concurrency import ParallelGate
from qemuvm.config import settings
from qemuvm.devices import preserve_disk_volumes, preserve_mac_addresses, reconcile_devices
from qemuvm.errors import (
    AlreadyInStateError,
    ConfigurationError,
    HypervisorError,
    LookupFailureError,
    MutationFailureError,
    NodeMismatchError,
)
from qemuvm.naming import parse_resource_id, resource_id_for
from qemuvm.nic_model import parse_nic_model
from qemuvm.providers.base import HypervisorClient, VmPowerState
from qemuvm.provisioning import ConnectionInfo, Provisioner, ProvisionerRegistry
from qemuvm.resolver import DuplicateResolver, ResolutionKind
from qemuvm.schemas import (
    LifecycleFlags,
    LiveState,
    NetworkCollection,
    ResourceState,
    VmRef,
    VmSpec,
)
from qemuvm.settle import wait_for
from qemuvm.store import ResourceStore
from qemuvm.transitions import TrackedOperation, Transition, VmState, VmStateMachine

__all__ = [
    "LifecycleResult",
    "ReadResult",
    "Transition",
    "VmLifecycle",
    "VmState",
    "VmStateMachine",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LifecycleResult:
    """Outcome of a mutating lifecycle operation."""
    ref: VmRef
    resource_id: str
    state: VmState
    history: list[VmState] = field(default_factory=list)
    connection: ConnectionInfo | None = None


@dataclass
class ReadResult:
    """Live state of a VM with its reconciled declared baseline."""
    ref: VmRef
    resource_id: str
    live: LiveState
    state: ResourceState


def _config_applied(live: LiveState, spec: VmSpec, networks: NetworkCollection) -> bool:
    if live.lock is not None:
        return False
    if (live.name, live.memory, live.cores, live.sockets) != (spec.name, spec.memory, spec.cores, spec.sockets):
        return False
    for index, network in networks.items():
        current = live.networks.get(index)
        if current is None:
            return False
        sent_mac = parse_nic_model(network.model).mac
        if sent_mac is not None and current.model != network.model:
            return False
    return True


class VmLifecycle:
    """Orchestrates create/update/read/delete of VMs on one hypervisor."""

    def __init__(
        self,
        client: HypervisorClient,
        gate: ParallelGate,
        *,
        store: ResourceStore | None = None,
        provisioners: ProvisionerRegistry | None = None,
        settle_timeout: float | None = None,
        settle_interval: float | None = None,
        boot_timeout: float | None = None,
    ):
        self.client = client
        self.gate = gate
        self.store = store or ResourceStore()
        self.provisioners = provisioners or ProvisionerRegistry()
        self.resolver = DuplicateResolver(client)
        self.settle_timeout = settings.settle_timeout if settle_timeout is None else settle_timeout
        self.settle_interval = settings.settle_interval if settle_interval is None else settle_interval
        self.boot_timeout = settings.boot_timeout if boot_timeout is None else boot_timeout

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, spec: VmSpec, flags: LifecycleFlags | None = None) -> LifecycleResult:
        """Create, clone or recycle the VM described by ``spec`` and start it."""
        flags = flags or LifecycleFlags()
        async with TrackedOperation("create", spec.name) as t:
            async with self.gate.slot(f"create {spec.name}"):
                resolution = await self.resolver.resolve(spec.name, spec.target_node, flags.force_create)
                if resolution.kind is ResolutionKind.RECYCLE:
                    ref = await self._recycle(t, resolution.ref, spec)
                else:
                    ref = await self._provision_new(t, spec, flags)

                await self._start(t, ref)
                t.advance(VmState.RUNNING)
                provisioning = await self._prepare_provisioning(t, ref, flags)

            # Done with the hypervisor; guest provisioning runs without a slot
            if provisioning is not None:
                await self._run_provisioner(ref, flags, *provisioning)

            return LifecycleResult(
                ref=ref,
                resource_id=resource_id_for(ref),
                state=t.state,
                history=list(t.history),
                connection=provisioning[1] if provisioning else None,
            )

    async def update(
        self,
        resource_id: str,
        spec: VmSpec,
        flags: LifecycleFlags | None = None,
    ) -> LifecycleResult:
        """Apply a changed ``spec`` to an already managed VM."""
        flags = flags or LifecycleFlags()
        stored = parse_resource_id(resource_id)
        if spec.target_node != stored.node:
            raise NodeMismatchError(
                f"VM {spec.name} is bound to node {stored.node}; "
                f"refusing to move it to {spec.target_node}",
                ref=stored,
            )

        async with TrackedOperation("update", spec.name, VmState.RUNNING) as t:
            async with self.gate.slot(f"update {spec.name}"):
                ref = await self._call(stored, "lookup_by_name", self.client.lookup_by_name, spec.name)
                if ref is None:
                    raise LookupFailureError(f"VM {spec.name} not found", ref=stored)
                if ref.node != stored.node:
                    raise NodeMismatchError(
                        f"VM {spec.name} was found on node {ref.node}, expected {stored.node}",
                        ref=ref,
                    )
                if ref.vmid != stored.vmid:
                    logger.warning(f"VM {spec.name} now has vmid {ref.vmid} (recorded {stored.vmid})")

                t.bind(ref)
                t.advance(VmState.UPDATING)
                await self._apply_config(t, ref, spec)
                await self._save(ref, spec)
                if ref.vmid != stored.vmid:
                    await self.store.delete(resource_id)
                await self._grow_primary_disk(t, ref, spec)
                await self._start(t, ref)
                t.advance(VmState.RUNNING)
                # Guest provisioning happens once, at create; update only re-exposes SSH
                connection = await self._forward_ssh(t, ref, flags) if flags.preprovision else None

            return LifecycleResult(
                ref=ref,
                resource_id=resource_id_for(ref),
                state=t.state,
                history=list(t.history),
                connection=connection,
            )

    async def read(self, target: str, declared: ResourceState | None = None) -> ReadResult:
        """Read the VM back and persist the reconciled declared baseline.

        ``target`` is either a resource id ("node/qemu/vmid") or a VM name.
        ``declared`` defaults to the stored baseline for ``target``.
        """
        try:
            ref = parse_resource_id(target)
        except ValueError:
            ref = None

        if declared is None:
            if ref is not None:
                declared = await self.store.load(target)
            else:
                declared = await self.store.find_by_name(target)

        async with TrackedOperation("read", target, VmState.RUNNING):
            async with self.gate.slot(f"read {target}"):
                if ref is None:
                    ref = await self._call(None, "lookup_by_name", self.client.lookup_by_name, target)
                    if ref is None:
                        raise LookupFailureError(f"VM {target} not found")
                live = await self._call(ref, "fetch_live_config", self.client.fetch_live_config, ref)

            return await self._read_back(ref, live, declared)

    async def import_vm(self, resource_id: str) -> ReadResult:
        """Adopt an existing VM by resource id, with no declared baseline."""
        ref = parse_resource_id(resource_id)
        async with TrackedOperation("import", resource_id, VmState.RUNNING):
            async with self.gate.slot(f"import {resource_id}"):
                live = await self._call(ref, "fetch_live_config", self.client.fetch_live_config, ref)

            return await self._read_back(ref, live, None)

    async def delete(self, resource_id: str) -> LifecycleResult:
        """Stop and delete the VM recorded under ``resource_id``."""
        ref = parse_resource_id(resource_id)
        async with TrackedOperation("delete", resource_id, VmState.RUNNING) as t:
            t.bind(ref)
            async with self.gate.slot(f"delete {resource_id}"):
                await self._stop(t, ref)
                await self._mutate(t, "delete_vm", self.client.delete_vm, ref)
                t.advance(VmState.DELETED)

            await self.store.delete(resource_id)
            return LifecycleResult(
                ref=ref,
                resource_id=resource_id,
                state=t.state,
                history=list(t.history),
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _provision_new(self, t: Transition, spec: VmSpec, flags: LifecycleFlags) -> VmRef:
        if bool(flags.clone) == bool(flags.iso):
            raise ConfigurationError(f"VM {spec.name}: exactly one of clone or iso must be set")

        vmid = await self._call(None, "next_vm_id", self.client.next_vm_id)
        ref = VmRef(node=spec.target_node, vmid=vmid)
        t.bind(ref)
        t.advance(VmState.PROVISIONING)

        if flags.iso:
            logger.info(f"Creating VM {spec.name} ({ref}) from {flags.iso}")
            await self._mutate(t, "create_vm", self.client.create_vm, ref, spec, flags.iso)
            await self._save(ref, spec)
            return ref

        source = await self._call(ref, "lookup_by_name", self.client.lookup_by_name, flags.clone)
        if source is None:
            raise LookupFailureError(f"Clone source {flags.clone} not found", ref=ref)

        logger.info(f"Cloning VM {flags.clone} ({source}) to {spec.name} ({ref})")
        await self._mutate(t, "clone_vm", self.client.clone_vm, source, ref, spec)
        await self._settle(
            ref,
            "clone",
            lambda: self.client.fetch_live_config(ref),
            lambda live: live.lock is None and live.name == spec.name,
        )
        await self._save(ref, spec)
        await self._grow_primary_disk(t, ref, spec)
        return ref

    async def _recycle(self, t: Transition, ref: VmRef, spec: VmSpec) -> VmRef:
        logger.info(f"Recycling VM {spec.name} ({ref})")
        t.bind(ref)
        t.advance(VmState.PROVISIONING)
        await self._stop(t, ref)
        await self._apply_config(t, ref, spec)
        await self._save(ref, spec)
        await self._grow_primary_disk(t, ref, spec)
        return ref

    async def _apply_config(self, t: Transition, ref: VmRef, spec: VmSpec) -> None:
        """Send ``spec`` without disturbing MACs or existing volumes."""
        live = await self._call(ref, "fetch_live_config", self.client.fetch_live_config, ref)
        disks = preserve_disk_volumes(live.disks, spec.disks)
        networks = preserve_mac_addresses(live.networks, spec.networks)

        await self._mutate(t, "update_config", self.client.update_config, ref, spec, disks, networks)
        await self._settle(
            ref,
            "config update",
            lambda: self.client.fetch_live_config(ref),
            lambda current: _config_applied(current, spec, networks),
        )

    async def _grow_primary_disk(self, t: Transition, ref: VmRef, spec: VmSpec) -> None:
        """Grow the primary disk up to ``spec.disk_gb``; never shrink."""
        if spec.disk_gb is None:
            return

        device = spec.primary_disk
        live = await self._call(ref, "fetch_live_config", self.client.fetch_live_config, ref)
        if device not in live.disk_sizes:
            raise ConfigurationError(f"VM {ref} has no disk {device} to resize", ref=ref)
        current = live.disk_size(device)
        delta = spec.disk_gb - current
        if delta <= 0:
            logger.debug(
                f"VM {ref}: {device} is {current:g}G, requested {spec.disk_gb:g}G; not resizing"
            )
            return

        logger.info(f"Resizing {device} of VM {ref} from {current:g}G by +{delta:g}G")
        await self._mutate(t, "resize_disk", self.client.resize_disk, ref, device, delta)
        await self._settle(
            ref,
            f"resize of {device}",
            lambda: self.client.fetch_live_config(ref),
            lambda settled: settled.disk_size(device) >= spec.disk_gb,
        )

    async def _stop(self, t: Transition, ref: VmRef) -> None:
        self._require_slot("stop_vm")
        try:
            await self.client.stop_vm(ref)
        except AlreadyInStateError:
            logger.debug(f"VM {ref} already stopped")
        except HypervisorError as e:
            raise MutationFailureError("stop_vm", e, ref=ref) from e

        await self._settle(
            ref,
            "stop",
            lambda: self.client.get_status(ref),
            lambda status: status == VmPowerState.STOPPED,
        )

    async def _start(self, t: Transition, ref: VmRef) -> None:
        self._require_slot("start_vm")
        logger.info(f"Starting VM {ref}")
        try:
            await self.client.start_vm(ref)
        except AlreadyInStateError:
            logger.debug(f"VM {ref} already running")
        except HypervisorError as e:
            raise MutationFailureError("start_vm", e, ref=ref) from e

        await self._settle(
            ref,
            "start",
            lambda: self.client.get_status(ref),
            lambda status: status == VmPowerState.RUNNING,
            timeout=self.boot_timeout,
        )

    async def _prepare_provisioning(
        self,
        t: Transition,
        ref: VmRef,
        flags: LifecycleFlags,
    ) -> tuple[Provisioner, ConnectionInfo] | None:
        if not flags.preprovision:
            return None

        provisioner = self.provisioners.get(flags.os_type)
        return provisioner, await self._forward_ssh(t, ref, flags)

    async def _forward_ssh(self, t: Transition, ref: VmRef, flags: LifecycleFlags) -> ConnectionInfo:
        logger.debug(f"Setting up SSH forward for VM {ref}")
        port = await self._mutate(t, "ssh_forward", self.client.ssh_forward, ref)
        return ConnectionInfo(
            host=flags.ssh_forward_ip,
            port=port,
            user=flags.ssh_user,
            private_key=flags.ssh_private_key,
        )

    async def _run_provisioner(
        self,
        ref: VmRef,
        flags: LifecycleFlags,
        provisioner: Provisioner,
        connection: ConnectionInfo,
    ) -> None:
        logger.info(f"Provisioning VM {ref} as {flags.os_type} via {connection.host}:{connection.port}")
        await provisioner.provision(ref, connection)

    async def _read_back(
        self,
        ref: VmRef,
        live: LiveState,
        declared: ResourceState | None,
    ) -> ReadResult:
        disks = reconcile_devices(live.disks, declared.disks if declared else {})
        networks = reconcile_devices(live.networks, declared.networks if declared else {})
        primary_disk = declared.primary_disk if declared else settings.primary_disk

        state = ResourceState(
            resource_id=resource_id_for(ref),
            name=live.name or (declared.name if declared else ""),
            target_node=ref.node,
            desc=live.desc,
            onboot=live.onboot,
            memory=live.memory or None,
            cores=live.cores,
            sockets=live.sockets,
            qemu_os=live.qemu_os,
            disk_gb=live.disk_size(primary_disk) or None,
            primary_disk=primary_disk,
            disks=disks,
            networks=networks,
        )
        await self.store.save(state)
        if declared is not None and declared.resource_id != state.resource_id:
            await self.store.delete(declared.resource_id)

        return ReadResult(ref=ref, resource_id=state.resource_id, live=live, state=state)

    async def _save(self, ref: VmRef, spec: VmSpec) -> None:
        await self.store.save(
            ResourceState(
                resource_id=resource_id_for(ref),
                name=spec.name,
                target_node=ref.node,
                desc=spec.desc,
                onboot=spec.onboot,
                memory=spec.memory,
                cores=spec.cores,
                sockets=spec.sockets,
                qemu_os=spec.qemu_os,
                disk_gb=spec.disk_gb,
                primary_disk=spec.primary_disk,
                disks=spec.disks,
                networks=spec.networks,
            )
        )

    # ------------------------------------------------------------------
    # Call discipline
    # ------------------------------------------------------------------

    def _require_slot(self, operation: str) -> None:
        if not self.gate.held():
            raise RuntimeError(f"{operation} issued outside a concurrency slot")

    async def _mutate(
        self,
        t: Transition,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        """Issue a mutating call; adapter errors become MutationFailureError."""
        self._require_slot(operation)
        logger.debug(f"VM {t.vm_name}: {operation}")
        try:
            return await func(*args)
        except HypervisorError as e:
            raise MutationFailureError(operation, e, ref=t.ref) from e

    async def _call(
        self,
        ref: VmRef | None,
        operation: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        """Issue a read; adapter errors become LookupFailureError."""
        self._require_slot(operation)
        try:
            return await func(*args)
        except HypervisorError as e:
            raise LookupFailureError(f"{operation} failed: {e}", ref=ref) from e

    async def _settle(
        self,
        ref: VmRef,
        description: str,
        poll_fn: Callable[[], Awaitable[T]],
        ready_check: Callable[[T], bool],
        timeout: float | None = None,
    ) -> T:
        self._require_slot(description)
        return await wait_for(
            poll_fn,
            ready_check,
            timeout=self.settle_timeout if timeout is None else timeout,
            interval=self.settle_interval,
            description=f"{description} of VM {ref}",
            ref=ref,
        )
