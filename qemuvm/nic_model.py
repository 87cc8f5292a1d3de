"""Parse and format the NIC ``model`` string.

The hypervisor reports a network device's model together with its MAC
address as ``"<type>=<MAC>"`` (e.g. ``"virtio=AA:BB:CC:00:11:22"``) and
accepts a bare ``"<type>"`` when it should generate a new MAC. Nothing
outside this module splits or joins that string.
"""

from __future__ import annotations

import re
from typing import NamedTuple

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")
_TYPE_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class NicModel(NamedTuple):
    """NIC model type with the optional hypervisor-assigned MAC."""
    type: str
    mac: str | None = None


def parse_nic_model(value: str) -> NicModel:
    """Split ``"<type>[=<MAC>]"`` into its parts.

    Raises:
        ValueError: If the type or MAC address is malformed.
    """
    nic_type, sep, mac = value.strip().partition("=")
    if not _TYPE_RE.match(nic_type):
        raise ValueError(f"Invalid NIC model type in {value!r}")
    if not sep:
        return NicModel(nic_type)
    if not _MAC_RE.match(mac):
        raise ValueError(f"Invalid MAC address in NIC model {value!r}")
    return NicModel(nic_type, mac)


def format_nic_model(nic_type: str, mac: str | None = None) -> str:
    """Build the model string sent to the hypervisor."""
    if not _TYPE_RE.match(nic_type):
        raise ValueError(f"Invalid NIC model type {nic_type!r}")
    if mac is None:
        return nic_type
    if not _MAC_RE.match(mac):
        raise ValueError(f"Invalid MAC address {mac!r}")
    return f"{nic_type}={mac}"
