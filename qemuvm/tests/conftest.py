from __future__ import annotations

import pytest

from qemuvm.concurrency import ParallelGate
from qemuvm.config import settings
from qemuvm.errors import AlreadyInStateError, HypervisorError
from qemuvm.lifecycle import VmLifecycle
from qemuvm.nic_model import format_nic_model, parse_nic_model
from qemuvm.providers.base import HypervisorClient, VmPowerState
from qemuvm.providers.proxmox_config import disk_key, parse_size_gb
from qemuvm.provisioning import ProvisionerRegistry
from qemuvm.schemas import LiveState, NetworkDevice, VmRef
from qemuvm.store import ResourceStore

MUTATING_CALLS = {
    "create_vm",
    "clone_vm",
    "update_config",
    "resize_disk",
    "start_vm",
    "stop_vm",
    "delete_vm",
    "ssh_forward",
}


@pytest.fixture(autouse=True)
def _isolate_workspace(monkeypatch, tmp_path):
    """Keep persisted state out of /var/lib/qemuvm."""
    monkeypatch.setattr(settings, "workspace_path", str(tmp_path / "workspace"))
    yield


def _generated_mac(vmid: int, index: int) -> str:
    return f"BC:24:11:{vmid // 256 % 256:02X}:{vmid % 256:02X}:{index:02X}"


class FakeHypervisor(HypervisorClient):
    """In-memory hypervisor that records every call.

    ``gate`` is checked on each call; calls made without a slot are
    collected in ``unslotted``. ``fail_on`` maps a method name to the
    exception it raises.
    """

    def __init__(self, gate: ParallelGate | None = None):
        self.gate = gate
        self.vms: dict[int, LiveState] = {}
        self.power: dict[int, str] = {}
        self.calls: list[tuple] = []
        self.unslotted: list[str] = []
        self.fail_on: dict[str, Exception] = {}
        self.update_payloads: list[dict] = []
        self.resizes: list[tuple[str, float]] = []
        self.strict_power = False
        self.stuck_power: str | None = None
        self.lock_polls = 0
        self._next_id = 100

    @property
    def name(self) -> str:
        return "fake"

    # Test helpers

    def add_vm(self, node: str, vmid: int, name: str, *, status: str = VmPowerState.RUNNING, **live) -> VmRef:
        self.vms[vmid] = LiveState(node=node, vmid=vmid, name=name, **live)
        self.power[vmid] = status
        return VmRef(node=node, vmid=vmid)

    def mutating_calls(self) -> list[str]:
        return [call[0] for call in self.calls if call[0] in MUTATING_CALLS]

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if self.gate is not None and not self.gate.held():
            self.unslotted.append(method)
        error = self.fail_on.get(method)
        if error is not None:
            raise error

    def _live(self, ref: VmRef) -> LiveState:
        live = self.vms.get(ref.vmid)
        if live is None or live.node != ref.node:
            raise HypervisorError(f"VM {ref} does not exist", status_code=500)
        return live

    def _with_macs(self, vmid: int, networks: dict[int, NetworkDevice]) -> dict[int, NetworkDevice]:
        assigned = {}
        for index, network in networks.items():
            nic = parse_nic_model(network.model)
            if nic.mac is None:
                network = network.with_attributes(model=format_nic_model(nic.type, _generated_mac(vmid, index)))
            assigned[index] = network
        return assigned

    # HypervisorClient

    async def lookup_by_name(self, name: str) -> VmRef | None:
        self._record("lookup_by_name", name)
        for vmid, live in sorted(self.vms.items()):
            if live.name == name:
                return VmRef(node=live.node, vmid=vmid)
        return None

    async def next_vm_id(self) -> int:
        self._record("next_vm_id")
        self._next_id += 1
        while self._next_id in self.vms:
            self._next_id += 1
        return self._next_id

    async def create_vm(self, ref, spec, iso=""):
        self._record("create_vm", ref, spec, iso)
        disks = {
            index: disk.with_attributes(volume=f"vm-{ref.vmid}-disk-{index}")
            for index, disk in spec.disks.items()
        }
        self.vms[ref.vmid] = LiveState(
            node=ref.node,
            vmid=ref.vmid,
            name=spec.name,
            memory=spec.memory,
            cores=spec.cores,
            sockets=spec.sockets,
            disks=disks,
            networks=self._with_macs(ref.vmid, spec.networks),
            disk_sizes={disk_key(i, d): parse_size_gb(d.size) for i, d in disks.items()},
        )
        self.power[ref.vmid] = VmPowerState.STOPPED

    async def clone_vm(self, source, dest, spec):
        self._record("clone_vm", source, dest, spec)
        template = self._live(source)
        self.vms[dest.vmid] = template.model_copy(
            update={
                "node": dest.node,
                "vmid": dest.vmid,
                "name": spec.name,
                "memory": spec.memory,
                "cores": spec.cores,
                "sockets": spec.sockets,
                "networks": self._with_macs(dest.vmid, spec.networks),
            }
        )
        self.power[dest.vmid] = VmPowerState.STOPPED

    async def update_config(self, ref, spec, disks, networks):
        self._record("update_config", ref, spec, disks, networks)
        self.update_payloads.append({"disks": disks, "networks": networks})
        live = self._live(ref)
        merged_disks = {**live.disks, **disks}
        sizes = dict(live.disk_sizes)
        for index, disk in disks.items():
            sizes.setdefault(disk_key(index, disk), parse_size_gb(disk.size))
        self.vms[ref.vmid] = live.model_copy(
            update={
                "name": spec.name,
                "memory": spec.memory,
                "cores": spec.cores,
                "sockets": spec.sockets,
                "disks": merged_disks,
                "networks": self._with_macs(ref.vmid, networks),
                "disk_sizes": sizes,
            }
        )

    async def resize_disk(self, ref, device, delta_gb):
        self._record("resize_disk", ref, device, delta_gb)
        live = self._live(ref)
        self.resizes.append((device, delta_gb))
        sizes = dict(live.disk_sizes)
        sizes[device] = sizes.get(device, 0.0) + delta_gb
        self.vms[ref.vmid] = live.model_copy(update={"disk_sizes": sizes})

    async def start_vm(self, ref):
        self._record("start_vm", ref)
        self._live(ref)
        if self.strict_power and self.power[ref.vmid] == VmPowerState.RUNNING:
            raise AlreadyInStateError("VM already running", status_code=500)
        self.power[ref.vmid] = VmPowerState.RUNNING

    async def stop_vm(self, ref):
        self._record("stop_vm", ref)
        self._live(ref)
        if self.strict_power and self.power[ref.vmid] == VmPowerState.STOPPED:
            raise AlreadyInStateError("VM not running", status_code=500)
        self.power[ref.vmid] = VmPowerState.STOPPED

    async def delete_vm(self, ref):
        self._record("delete_vm", ref)
        self._live(ref)
        del self.vms[ref.vmid]
        del self.power[ref.vmid]

    async def fetch_live_config(self, ref):
        self._record("fetch_live_config", ref)
        live = self._live(ref)
        if self.lock_polls > 0:
            self.lock_polls -= 1
            return live.model_copy(update={"lock": "clone"})
        return live

    async def get_status(self, ref):
        self._record("get_status", ref)
        self._live(ref)
        if self.stuck_power is not None:
            return self.stuck_power
        return self.power[ref.vmid]

    async def ssh_forward(self, ref):
        self._record("ssh_forward", ref)
        self._live(ref)
        return 22000 + ref.vmid


@pytest.fixture
def gate():
    return ParallelGate(limit=2)


@pytest.fixture
def hypervisor(gate):
    return FakeHypervisor(gate)


@pytest.fixture
def store(tmp_path):
    return ResourceStore(tmp_path / "state")


@pytest.fixture
def provisioners():
    return ProvisionerRegistry()


@pytest.fixture
def lifecycle(hypervisor, gate, store, provisioners):
    return VmLifecycle(
        hypervisor,
        gate,
        store=store,
        provisioners=provisioners,
        settle_timeout=0.3,
        settle_interval=0.01,
        boot_timeout=0.3,
    )
