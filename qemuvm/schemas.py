"""Desired-state, live-state and persisted-state models.

Devices are tagged per kind (disk vs network) and validated when they are
built. An attribute counts as *present* on a device only when it was set
explicitly; reconciliation relies on that distinction, so device
attributes are always read through ``attributes()``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from qemuvm.config import settings
from qemuvm.nic_model import parse_nic_model


class VmRef(BaseModel):
    """A provisioned VM: (node, numeric id)."""
    model_config = ConfigDict(frozen=True)

    node: str = Field(min_length=1)
    vmid: int = Field(gt=0)

    def __str__(self) -> str:
        return f"{self.node}/{self.vmid}"


class DiskType(str, Enum):
    """Disk bus types accepted by the hypervisor."""
    VIRTIO = "virtio"
    SCSI = "scsi"
    IDE = "ide"
    SATA = "sata"


_DeviceT = TypeVar("_DeviceT", bound="BaseDevice")


class BaseDevice(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", use_enum_values=True)

    kind: str

    def attributes(self) -> dict[str, Any]:
        """Attributes explicitly present on this device."""
        return self.model_dump(exclude_unset=True, exclude={"kind"})

    def with_attributes(self: _DeviceT, **updates: Any) -> _DeviceT:
        """Return a validated copy with ``updates`` set."""
        return type(self).model_validate({**self.attributes(), **updates})

    def without_attributes(self: _DeviceT, *keys: str) -> _DeviceT:
        attrs = {k: v for k, v in self.attributes().items() if k not in keys}
        return type(self).model_validate(attrs)


class DiskDevice(BaseDevice):
    kind: Literal["disk"] = "disk"

    type: DiskType
    storage: str = Field(min_length=1)
    size: str = Field(pattern=r"^\d+(\.\d+)?[KMGTkmgt]?$")  # e.g. "32G"
    cache: str | None = None
    backup: int | None = None
    iothread: int | None = None
    replicate: int | None = None
    # Hypervisor-generated volume name; only ever sourced from live state
    volume: str | None = None


class NetworkDevice(BaseDevice):
    kind: Literal["network"] = "network"

    model: str
    bridge: str | None = None
    tag: int | None = None
    firewall: int | None = None
    rate: float | None = None
    queues: int | None = None
    link_down: int | None = None

    @field_validator("model")
    @classmethod
    def _valid_model(cls, value: str) -> str:
        parse_nic_model(value)
        return value


DiskCollection = dict[int, DiskDevice]
NetworkCollection = dict[int, NetworkDevice]


def _check_indices(value: dict[int, Any]) -> dict[int, Any]:
    for index in value:
        if index < 0:
            raise ValueError(f"Device index must be non-negative, got {index}")
    return value


class VmSpec(BaseModel):
    """Desired state of one VM for a single convergence pass."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    target_node: str = Field(min_length=1)
    desc: str = ""
    onboot: bool = True
    storage: str = ""
    memory: int = Field(gt=0)  # MB
    cores: int = Field(gt=0)
    sockets: int = Field(gt=0)
    qemu_os: str = "l26"
    disk_gb: float | None = Field(default=None, ge=0)
    primary_disk: str = Field(default_factory=lambda: settings.primary_disk)
    disks: DiskCollection = Field(default_factory=dict)
    networks: NetworkCollection = Field(default_factory=dict)

    @field_validator("desc")
    @classmethod
    def _strip_desc(cls, value: str) -> str:
        return value.strip()

    @field_validator("disks", "networks")
    @classmethod
    def _non_negative_indices(cls, value: dict[int, Any]) -> dict[int, Any]:
        return _check_indices(value)


class LifecycleFlags(BaseModel):
    """Per-resource switches that steer the create/update path."""
    model_config = ConfigDict(frozen=True)

    force_create: bool = False
    preprovision: bool = True
    clone: str = ""  # name of the VM/template to clone from
    iso: str = ""  # ISO volume, e.g. "local:iso/debian.iso"
    os_type: str = ""  # post-boot provisioner selector
    ssh_forward_ip: str = ""
    ssh_user: str = ""
    ssh_private_key: str = Field(default="", repr=False)


class LiveState(BaseModel):
    """Hypervisor-reported configuration snapshot."""
    model_config = ConfigDict(frozen=True)

    node: str
    vmid: int
    name: str = ""
    desc: str = ""
    onboot: bool = False
    memory: int = 0
    cores: int = 1
    sockets: int = 1
    qemu_os: str = ""
    lock: str | None = None
    digest: str = ""
    disks: DiskCollection = Field(default_factory=dict)
    networks: NetworkCollection = Field(default_factory=dict)
    # device name (e.g. "virtio0") -> allocated size in GB
    disk_sizes: dict[str, float] = Field(default_factory=dict)

    def disk_size(self, device: str) -> float:
        return self.disk_sizes.get(device, 0.0)


class ResourceState(BaseModel):
    """Persisted identity and declared baseline of one managed VM."""

    resource_id: str
    name: str
    target_node: str
    desc: str = ""
    onboot: bool | None = None
    memory: int | None = None
    cores: int | None = None
    sockets: int | None = None
    qemu_os: str = ""
    disk_gb: float | None = None
    primary_disk: str = Field(default_factory=lambda: settings.primary_disk)
    disks: DiskCollection = Field(default_factory=dict)
    networks: NetworkCollection = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("disks", "networks")
    def _present_attributes(self, devices: dict[int, BaseDevice]) -> dict[int, dict[str, Any]]:
        # Unset attributes must stay absent after a save/load cycle
        return {index: device.attributes() for index, device in devices.items()}
