"""Persisted state of managed VMs.

One JSON file per resource under ``<workspace>/resources``. Writes go to a
temp file first and are renamed into place so a crash never leaves a
truncated record.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from qemuvm.config import settings
from qemuvm.naming import encode_id
from qemuvm.schemas import ResourceState

logger = logging.getLogger(__name__)

RESOURCES_DIR = "resources"


class ResourceStore:
    """Durable record of resource ids and declared device baselines."""

    def __init__(self, workspace: Path | str | None = None):
        self.root = Path(workspace or settings.workspace_path) / RESOURCES_DIR

    def _path(self, resource_id: str) -> Path:
        return self.root / f"{encode_id(resource_id)}.json"

    async def save(self, state: ResourceState) -> None:
        path = self._path(state.resource_id)
        tmp_path = path.with_suffix(".tmp")

        def write_state() -> None:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(state.model_dump_json(indent=2))
            tmp_path.replace(path)

        await asyncio.to_thread(write_state)
        logger.debug(f"Saved state of {state.name} ({state.resource_id})")

    async def load(self, resource_id: str) -> ResourceState | None:
        path = self._path(resource_id)

        def read_state() -> ResourceState | None:
            if not path.exists():
                return None
            return ResourceState.model_validate_json(path.read_text())

        return await asyncio.to_thread(read_state)

    async def find_by_name(self, name: str) -> ResourceState | None:
        """Return the most recently updated record for ``name``."""

        def scan() -> ResourceState | None:
            if not self.root.exists():
                return None
            matches = []
            for path in self.root.glob("*.json"):
                try:
                    state = ResourceState.model_validate_json(path.read_text())
                except (ValidationError, OSError) as e:
                    logger.warning(f"Skipping unreadable state file {path.name}: {e}")
                    continue
                if state.name == name:
                    matches.append(state)
            if not matches:
                return None
            return max(matches, key=lambda s: s.updated_at)

        return await asyncio.to_thread(scan)

    async def delete(self, resource_id: str) -> bool:
        path = self._path(resource_id)

        def remove() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        removed = await asyncio.to_thread(remove)
        if removed:
            logger.debug(f"Removed state of {resource_id}")
        return removed
