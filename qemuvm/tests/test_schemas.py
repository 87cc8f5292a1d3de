from __future__ import annotations

import pytest
from pydantic import ValidationError

from qemuvm.schemas import DiskDevice, LiveState, NetworkDevice, VmRef, VmSpec


def _spec(**kwargs) -> VmSpec:
    defaults = {"name": "web1", "target_node": "pve1", "memory": 2048, "cores": 2, "sockets": 1}
    return VmSpec(**{**defaults, **kwargs})


def test_vm_ref_str():
    assert str(VmRef(node="pve1", vmid=101)) == "pve1/101"


def test_vm_ref_requires_positive_id():
    with pytest.raises(ValidationError):
        VmRef(node="pve1", vmid=0)


def test_spec_strips_description():
    assert _spec(desc="\n  web server \n").desc == "web server"


def test_spec_primary_disk_defaults_to_setting():
    assert _spec().primary_disk == "virtio0"


@pytest.mark.parametrize("field,value", [("memory", 0), ("cores", -1), ("disk_gb", -5)])
def test_spec_rejects_invalid_sizes(field, value):
    with pytest.raises(ValidationError):
        _spec(**{field: value})


def test_spec_rejects_negative_device_index():
    with pytest.raises(ValidationError):
        _spec(networks={-1: NetworkDevice(model="virtio")})


def test_network_model_validated():
    with pytest.raises(ValidationError):
        NetworkDevice(model="virtio=not-a-mac")


def test_disk_rejects_unknown_type_and_size():
    with pytest.raises(ValidationError):
        DiskDevice(type="floppy", storage="local", size="1G")
    with pytest.raises(ValidationError):
        DiskDevice(type="virtio", storage="local", size="large")


def test_device_rejects_unknown_attribute():
    with pytest.raises(ValidationError):
        NetworkDevice(model="virtio", mtu=9000)


def test_attributes_only_reports_present():
    nic = NetworkDevice(model="virtio", bridge="vmbr0")

    assert nic.attributes() == {"model": "virtio", "bridge": "vmbr0"}
    assert nic.with_attributes(tag=10).attributes() == {"model": "virtio", "bridge": "vmbr0", "tag": 10}
    assert nic.without_attributes("bridge").attributes() == {"model": "virtio"}


def test_devices_are_immutable():
    nic = NetworkDevice(model="virtio")

    with pytest.raises(ValidationError):
        nic.bridge = "vmbr0"


def test_live_disk_size_defaults_to_zero():
    live = LiveState(node="pve1", vmid=101, disk_sizes={"virtio0": 32.0})

    assert live.disk_size("virtio0") == 32.0
    assert live.disk_size("scsi0") == 0.0
