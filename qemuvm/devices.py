"""Device collection reconciliation.

Merges a declared device collection with the hypervisor's live collection
(disks and networks are reconciled independently) and builds the outgoing
update payloads that keep hypervisor-generated attributes stable:

- ``reconcile_devices`` is the read-back merge. Live is authoritative; the
  declared side only fills in what live does not report.
- ``preserve_mac_addresses`` keeps each existing NIC's MAC when the model
  type is (re)sent, so a convergence pass never churns guest MACs.
- ``preserve_disk_volumes`` re-attaches existing volumes instead of
  allocating new ones.

All functions are pure: inputs are never mutated.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from qemuvm.nic_model import format_nic_model, parse_nic_model
from qemuvm.schemas import BaseDevice, DiskDevice, NetworkDevice

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=BaseDevice)


def _check_single_kind(*collections: Mapping[int, BaseDevice]) -> None:
    kinds = {type(device) for devices in collections for device in devices.values()}
    if len(kinds) > 1:
        names = ", ".join(sorted(k.__name__ for k in kinds))
        raise TypeError(f"Cannot reconcile device collections of different kinds: {names}")


def reconcile_devices(live: Mapping[int, D], configured: Mapping[int, D]) -> dict[int, D]:
    """Merge ``configured`` into ``live`` without overriding live attributes.

    - Indices only in ``configured`` are copied unchanged.
    - Indices in both get every attribute ``configured`` has and ``live``
      lacks; attributes present in ``live`` are kept as reported.
    - Indices only in ``live`` are carried through.

    Reconciling the result again with the same ``configured`` is a no-op.
    """
    _check_single_kind(live, configured)

    merged: dict[int, D] = dict(live)
    for index, declared in configured.items():
        current = live.get(index)
        if current is None:
            merged[index] = declared
            continue

        present = current.attributes()
        missing = {k: v for k, v in declared.attributes().items() if k not in present}
        if missing:
            merged[index] = current.with_attributes(**missing)

    return dict(sorted(merged.items()))


def preserve_mac_addresses(
    live: Mapping[int, NetworkDevice],
    configured: Mapping[int, NetworkDevice],
) -> dict[int, NetworkDevice]:
    """Build the network payload for an update.

    For every declared NIC that already exists live, the model is sent as
    ``"<declared type>=<live MAC>"``. NICs not yet present live are sent
    with a bare type so the hypervisor assigns a MAC.
    """
    payload: dict[int, NetworkDevice] = {}
    for index, declared in sorted(configured.items()):
        nic_type = parse_nic_model(declared.model).type
        mac = None

        current = live.get(index)
        if current is not None:
            mac = parse_nic_model(current.model).mac
            if mac is None:
                logger.warning(
                    f"Live NIC net{index} reports model {current.model!r} without a MAC; "
                    f"hypervisor will assign a new one"
                )

        payload[index] = declared.with_attributes(model=format_nic_model(nic_type, mac))
    return payload


def preserve_disk_volumes(
    live: Mapping[int, DiskDevice],
    configured: Mapping[int, DiskDevice],
) -> dict[int, DiskDevice]:
    """Build the disk payload for an update.

    A declared disk that exists live keeps the live bus type, storage,
    volume and size, taking only its options from the declaration; size
    changes go through grow-only resize instead. New disks are sent as
    declared and allocated by the hypervisor.
    """
    payload: dict[int, DiskDevice] = {}
    for index, declared in sorted(configured.items()):
        current = live.get(index)
        if current is None or current.volume is None:
            payload[index] = declared
            continue

        if declared.type != current.type or declared.storage != current.storage:
            logger.warning(
                f"Disk {index} is declared as {declared.type} on {declared.storage} but lives as "
                f"{current.type} on {current.storage}; keeping the existing volume"
            )

        payload[index] = declared.with_attributes(
            type=current.type,
            storage=current.storage,
            size=current.size,
            volume=current.volume,
        )
    return payload


def devices_from_list(items: Iterable[Mapping[str, Any]], device_type: type[D]) -> dict[int, D]:
    """Build a collection from a list of device dicts carrying an ``id`` key.

    Raises:
        ValueError: If two devices share an id.
    """
    devices: dict[int, D] = {}
    for item in items:
        attrs = dict(item)
        index = int(attrs.pop("id"))
        if index in devices:
            raise ValueError(f"Duplicate {device_type.__name__} id {index}")
        devices[index] = device_type.model_validate(attrs)
    return dict(sorted(devices.items()))


def devices_to_list(devices: Mapping[int, BaseDevice]) -> list[dict[str, Any]]:
    """Inverse of ``devices_from_list``: present attributes plus ``id``."""
    return [{"id": index, **device.attributes()} for index, device in sorted(devices.items())]
