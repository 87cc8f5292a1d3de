"""Post-boot provisioner registry.

In-guest configuration is delegated to provisioners selected by the
resource's ``os_type``. qemuvm ships none itself; they are registered in
code or discovered through the ``qemuvm.provisioners`` entry point group:

    [project.entry-points."qemuvm.provisioners"]
    ubuntu = "mypackage.provisioning:UbuntuProvisioner"
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib.metadata import entry_points

from qemuvm.errors import UnknownProvisioningKindError
from qemuvm.schemas import VmRef

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "qemuvm.provisioners"


@dataclass(frozen=True)
class ConnectionInfo:
    """How a provisioner reaches the guest."""
    host: str
    port: int
    user: str = ""
    private_key: str = field(default="", repr=False)
    type: str = "ssh"


class Provisioner(ABC):
    """Configures a guest once it has booted."""

    @abstractmethod
    async def provision(self, ref: VmRef, connection: ConnectionInfo) -> None:
        ...


class ProvisionerRegistry:
    """Maps ``os_type`` selectors to provisioners."""

    def __init__(self) -> None:
        self._provisioners: dict[str, Provisioner] = {}

    def register(self, os_type: str, provisioner: Provisioner) -> None:
        self._provisioners[os_type] = provisioner

    def get(self, os_type: str) -> Provisioner:
        """Return the provisioner for ``os_type``.

        Raises:
            UnknownProvisioningKindError: If nothing is registered for it.
        """
        provisioner = self._provisioners.get(os_type)
        if provisioner is None:
            raise UnknownProvisioningKindError(os_type)
        return provisioner

    def list_os_types(self) -> list[str]:
        return sorted(self._provisioners)

    def load_entrypoints(self, group: str = ENTRY_POINT_GROUP) -> list[str]:
        """Register provisioner classes published as entry points.

        Returns:
            os_type names that were registered
        """
        loaded = []
        for ep in entry_points(group=group):
            if ep.name in self._provisioners:
                logger.debug(f"Skipping duplicate provisioner: {ep.name}")
                continue
            try:
                provisioner_class = ep.load()
                self.register(ep.name, provisioner_class())
            except Exception as e:
                logger.warning(f"Failed to load provisioner entry point {ep.name}: {e}")
                continue
            loaded.append(ep.name)
            logger.info(f"Loaded provisioner: {ep.name}")
        return loaded
