"""Resource identifiers for provisioned VMs.

A provisioned VM is recorded as ``"<node>/qemu/<vmid>"``. The id is produced
once the VM ref is known and parsed back on every later operation against
the same declared resource.
"""

import re

from qemuvm.schemas import VmRef

RESOURCE_KIND = "qemu"


def encode_id(value: str) -> str:
    """Encode a string for use as a file name.

    Alphanumerics and dashes pass through; every other character becomes
    ``_xx`` per UTF-8 byte. Distinct inputs never share an encoding.
    """
    return re.sub(
        r"[^a-zA-Z0-9-]",
        lambda m: "".join(f"_{b:02x}" for b in m.group().encode()),
        value,
    )


def resource_id(node: str, vmid: int, kind: str = RESOURCE_KIND) -> str:
    """Format the persisted identity of a VM.

    Format: {node}/{kind}/{vmid}
    """
    return f"{node}/{kind}/{vmid}"


def resource_id_for(ref: VmRef) -> str:
    return resource_id(ref.node, ref.vmid)


def parse_resource_id(value: str) -> VmRef:
    """Parse a persisted resource id back into a VmRef.

    Raises:
        ValueError: If the id is not of the form node/qemu/vmid.
    """
    parts = value.split("/")
    if len(parts) != 3 or not parts[0]:
        raise ValueError(f"Invalid resource id {value!r}: expected node/{RESOURCE_KIND}/vmid")
    node, kind, vmid = parts
    if kind != RESOURCE_KIND:
        raise ValueError(f"Invalid resource id {value!r}: unsupported kind {kind!r}")
    if not vmid.isdigit():
        raise ValueError(f"Invalid resource id {value!r}: vmid must be numeric")
    return VmRef(node=node, vmid=int(vmid))
