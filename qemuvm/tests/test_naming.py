from __future__ import annotations

import pytest

from qemuvm.naming import encode_id, parse_resource_id, resource_id, resource_id_for
from qemuvm.schemas import VmRef


def test_resource_id_format():
    assert resource_id("pve1", 101) == "pve1/qemu/101"
    assert resource_id_for(VmRef(node="pve1", vmid=101)) == "pve1/qemu/101"


def test_parse_resource_id():
    assert parse_resource_id("pve1/qemu/101") == VmRef(node="pve1", vmid=101)


@pytest.mark.parametrize(
    "value",
    [
        "pve1/101",
        "pve1/lxc/101",
        "pve1/qemu/abc",
        "/qemu/101",
        "pve1/qemu/101/extra",
        "pve1/qemu/0",
    ],
)
def test_parse_resource_id_rejects_malformed(value):
    with pytest.raises(ValueError):
        parse_resource_id(value)


def test_encode_id_escapes_separators():
    assert encode_id("pve1/qemu/101") == "pve1_2fqemu_2f101"
    assert encode_id("web-1") == "web-1"


def test_encode_id_keeps_distinct_ids_distinct():
    encoded = {encode_id(f"{node}/qemu/101") for node in ("pve.local", "pvelocal", "pve_local", "pve-local")}
    assert len(encoded) == 4
