from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

from cryptography.fernet import Fernet

from flowbridge.logging import get_logger
from flowbridge.storage.errors import ConstraintViolation, StorageError
from flowbridge.storage.files import JsonFileStore, safe_filename
from flowbridge.storage.models import InstanceConfig, utcnow


class InstanceConfigStore(JsonFileStore):
    """One (optionally encrypted) JSON file per instance under ``data/instances``."""

    def __init__(self, root: str | Path, *, cipher: Optional[Fernet] = None) -> None:
        super().__init__(root, cipher=cipher)
        self.logger = get_logger(__name__)

    def _path(self, instance_id: str) -> Path:
        return self.root / f"{safe_filename(instance_id)}.json"

    def _read(self, instance_id: str) -> Optional[InstanceConfig]:
        path = self._path(instance_id)
        try:
            data = self.read_file(path)
        except (StorageError, ValueError, OSError) as exc:
            self.logger.error(
                "instance_config_unreadable", instance_id=instance_id, error=str(exc)
            )
            return None
        if data is None:
            return None
        try:
            return InstanceConfig.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.error(
                "instance_config_malformed", instance_id=instance_id, error=str(exc)
            )
            return None

    def _write(self, config: InstanceConfig) -> InstanceConfig:
        config.updated_at = utcnow()
        self.write_file(self._path(config.instance_id), config.to_dict())
        return config

    async def get(self, instance_id: str) -> Optional[InstanceConfig]:
        return await asyncio.to_thread(self._read, instance_id)

    async def exists(self, instance_id: str) -> bool:
        return await asyncio.to_thread(self._path(instance_id).exists)

    async def create(self, config: InstanceConfig) -> InstanceConfig:
        if await self.exists(config.instance_id):
            raise ConstraintViolation(
                f"Instance with ID {config.instance_id} already exists",
                {"instance_id": config.instance_id},
            )
        saved = await asyncio.to_thread(self._write, config)
        self.logger.info("instance_config_created", instance_id=config.instance_id)
        return saved

    async def save(self, config: InstanceConfig) -> InstanceConfig:
        return await asyncio.to_thread(self._write, config)

    async def update_status(self, instance_id: str, status: str) -> bool:
        """Persist a new lifecycle status; returns False when no config exists."""
        config = await self.get(instance_id)
        if config is None:
            return False
        config.status = status
        await self.save(config)
        return True

    async def delete(self, instance_id: str) -> bool:
        removed = await asyncio.to_thread(self.delete_file, self._path(instance_id))
        if removed:
            self.logger.info("instance_config_deleted", instance_id=instance_id)
        return removed

    def _list_ids(self) -> List[str]:
        ids: List[str] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                data = self.read_file(path)
            except (StorageError, ValueError, OSError) as exc:
                self.logger.error(
                    "instance_config_unreadable", file=path.name, error=str(exc)
                )
                continue
            if data and data.get("instanceId"):
                ids.append(data["instanceId"])
        return ids

    async def list_ids(self) -> List[str]:
        return await asyncio.to_thread(self._list_ids)

    async def list_all(self) -> List[InstanceConfig]:
        configs: List[InstanceConfig] = []
        for instance_id in await self.list_ids():
            config = await self.get(instance_id)
            if config is not None:
                configs.append(config)
        return configs
