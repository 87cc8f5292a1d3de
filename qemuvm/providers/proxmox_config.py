"""Proxmox VE QEMU config codec.

Converts desired state into API parameters and parses ``GET .../config``
responses into ``LiveState``.

Wire formats:
    virtio0: "local-lvm:32,cache=none,backup=1"           (allocate 32 GB)
    virtio0: "local-lvm:vm-101-disk-0,cache=none,size=32G" (existing volume)
    net0:    "virtio=AA:BB:CC:00:11:22,bridge=vmbr0,tag=10,firewall=1"
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any

from pydantic import ValidationError

from qemuvm.schemas import (
    DiskCollection,
    DiskDevice,
    DiskType,
    LiveState,
    NetworkCollection,
    NetworkDevice,
    VmRef,
    VmSpec,
)

logger = logging.getLogger(__name__)

_DISK_KEY_RE = re.compile(r"^(" + "|".join(t.value for t in DiskType) + r")(\d+)$")
_NET_KEY_RE = re.compile(r"^net(\d+)$")
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT]?)$", re.IGNORECASE)

# Size suffix -> multiplier to GB
_SIZE_UNITS = {
    "": 1 / 1024 ** 3,  # bare number is bytes
    "K": 1 / 1024 ** 2,
    "M": 1 / 1024,
    "G": 1.0,
    "T": 1024.0,
}

_DISK_OPTIONS = ("cache", "backup", "iothread", "replicate")
_NETWORK_OPTIONS = ("bridge", "tag", "firewall", "rate", "queues", "link_down")


def parse_size_gb(value: str) -> float:
    """Parse a size such as "32G", "512M" or "1T" into gigabytes.

    Raises:
        ValueError: If the size is malformed.
    """
    match = _SIZE_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid disk size {value!r}")
    number, unit = match.groups()
    return float(number) * _SIZE_UNITS[unit.upper()]


def format_size_delta(delta_gb: float) -> str:
    """Format a resize increment, e.g. 8 -> "+8G", 0.5 -> "+512M"."""
    if delta_gb <= 0:
        raise ValueError(f"Resize increment must be positive, got {delta_gb}")
    if float(delta_gb).is_integer():
        return f"+{int(delta_gb)}G"
    return f"+{math.ceil(delta_gb * 1024)}M"


def _format_number(value: float) -> str:
    return f"{value:g}"


def _split_options(value: str) -> tuple[str, dict[str, str]]:
    head, *rest = value.split(",")
    options: dict[str, str] = {}
    for item in rest:
        key, sep, val = item.partition("=")
        if sep:
            options[key.strip()] = val.strip()
    return head.strip(), options


def _join_options(head: str, device: Any, names: tuple[str, ...]) -> str:
    attrs = device.attributes()
    parts = [head]
    for name in names:
        value = attrs.get(name)
        if value is None:
            continue
        if isinstance(value, float):
            value = _format_number(value)
        parts.append(f"{name}={value}")
    return ",".join(parts)


def disk_key(index: int, disk: DiskDevice) -> str:
    return f"{disk.type}{index}"


def format_disk(disk: DiskDevice) -> str:
    """Format a disk for the config API.

    Disks with a known volume are re-attached; others are allocated with
    their declared size in GB.
    """
    if disk.volume:
        head = f"{disk.storage}:{disk.volume}"
    else:
        head = f"{disk.storage}:{_format_number(parse_size_gb(disk.size))}"
    return _join_options(head, disk, _DISK_OPTIONS)


def format_network(network: NetworkDevice) -> str:
    return _join_options(network.model, network, _NETWORK_OPTIONS)


def config_params(
    spec: VmSpec,
    disks: DiskCollection | None = None,
    networks: NetworkCollection | None = None,
) -> dict[str, Any]:
    """Scalar settings of ``spec`` plus the given device payloads."""
    params: dict[str, Any] = {
        "name": spec.name,
        "memory": spec.memory,
        "cores": spec.cores,
        "sockets": spec.sockets,
        "ostype": spec.qemu_os,
        "onboot": int(spec.onboot),
    }
    if spec.desc:
        params["description"] = spec.desc
    for index, disk in sorted((disks or {}).items()):
        params[disk_key(index, disk)] = format_disk(disk)
    for index, network in sorted((networks or {}).items()):
        params[f"net{index}"] = format_network(network)
    return params


def create_params(ref: VmRef, spec: VmSpec, iso: str = "") -> dict[str, Any]:
    params = {"vmid": ref.vmid, **config_params(spec, spec.disks, spec.networks)}
    if iso:
        params["ide2"] = f"{iso},media=cdrom"
    return params


def clone_params(dest: VmRef, spec: VmSpec) -> dict[str, Any]:
    params: dict[str, Any] = {
        "newid": dest.vmid,
        "name": spec.name,
        "target": dest.node,
        "full": 1,
    }
    if spec.storage:
        params["storage"] = spec.storage
    if spec.desc:
        params["description"] = spec.desc
    return params


def _int_option(options: dict[str, str], key: str, device: str) -> int | None:
    raw = options.get(key)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.debug(f"Ignoring non-integer {key}={raw!r} on {device}")
        return None


def _parse_disk(key: str, value: str) -> DiskDevice | None:
    match = _DISK_KEY_RE.match(key)
    head, options = _split_options(value)
    if options.get("media") == "cdrom":
        return None
    storage, sep, volume = head.partition(":")
    if not sep:
        # "none" or a passthrough path
        return None

    attrs: dict[str, Any] = {
        "type": match.group(1),
        "storage": storage,
        "volume": volume,
    }
    if "size" in options:
        attrs["size"] = options["size"]
    if "cache" in options:
        attrs["cache"] = options["cache"]
    for name in ("backup", "iothread", "replicate"):
        parsed = _int_option(options, name, key)
        if parsed is not None:
            attrs[name] = parsed

    try:
        return DiskDevice.model_validate(attrs)
    except ValidationError as e:
        logger.warning(f"Skipping unparseable disk {key}={value!r}: {e}")
        return None


def _parse_network(key: str, value: str) -> NetworkDevice | None:
    model, options = _split_options(value)
    attrs: dict[str, Any] = {"model": model}
    if "bridge" in options:
        attrs["bridge"] = options["bridge"]
    for name in ("tag", "firewall", "queues", "link_down"):
        parsed = _int_option(options, name, key)
        if parsed is not None:
            attrs[name] = parsed
    if "rate" in options:
        try:
            attrs["rate"] = float(options["rate"])
        except ValueError:
            logger.debug(f"Ignoring non-numeric rate={options['rate']!r} on {key}")

    try:
        return NetworkDevice.model_validate(attrs)
    except ValidationError as e:
        logger.warning(f"Skipping unparseable network {key}={value!r}: {e}")
        return None


def parse_live_config(ref: VmRef, data: dict[str, Any]) -> LiveState:
    """Build a LiveState from a ``GET /nodes/{node}/qemu/{vmid}/config`` payload."""
    disks: DiskCollection = {}
    networks: NetworkCollection = {}
    disk_sizes: dict[str, float] = {}

    for key in sorted(data):
        value = data[key]
        if not isinstance(value, str):
            continue

        if match := _DISK_KEY_RE.match(key):
            disk = _parse_disk(key, value)
            if disk is None:
                continue
            disk_sizes[key] = parse_size_gb(disk.size)
            index = int(match.group(2))
            if index in disks:
                logger.warning(
                    f"VM {ref}: {key} shares index {index} with "
                    f"{disk_key(index, disks[index])}, which is kept"
                )
                continue
            disks[index] = disk
        elif match := _NET_KEY_RE.match(key):
            network = _parse_network(key, value)
            if network is not None:
                networks[int(match.group(1))] = network

    return LiveState(
        node=ref.node,
        vmid=ref.vmid,
        name=str(data.get("name", "")),
        desc=str(data.get("description", "")).strip(),
        onboot=bool(int(data.get("onboot", 0))),
        memory=int(data.get("memory", 0)),
        cores=int(data.get("cores", 1)),
        sockets=int(data.get("sockets", 1)),
        qemu_os=str(data.get("ostype", "")),
        lock=data.get("lock"),
        digest=str(data.get("digest", "")),
        disks=disks,
        networks=networks,
        disk_sizes=disk_sizes,
    )
