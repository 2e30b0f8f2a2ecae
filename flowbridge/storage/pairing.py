from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Optional

from flowbridge.storage.files import safe_filename


class PairingStore:
    """Session directories and the transient pairing code written while waiting for a scan."""

    FILENAME = "qrcode.txt"

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def session_dir(self, instance_id: str) -> Path:
        return self.root / safe_filename(instance_id)

    def _path(self, instance_id: str) -> Path:
        return self.session_dir(instance_id) / self.FILENAME

    def _save(self, instance_id: str, code: str) -> None:
        path = self._path(instance_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(code, encoding="utf-8")

    def _load(self, instance_id: str) -> Optional[str]:
        try:
            return self._path(instance_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _delete(self, instance_id: str) -> bool:
        try:
            self._path(instance_id).unlink()
            return True
        except FileNotFoundError:
            return False

    async def save(self, instance_id: str, code: str) -> None:
        await asyncio.to_thread(self._save, instance_id, code)

    async def load(self, instance_id: str) -> Optional[str]:
        return await asyncio.to_thread(self._load, instance_id)

    async def delete(self, instance_id: str) -> bool:
        return await asyncio.to_thread(self._delete, instance_id)

    async def purge(self, instance_id: str) -> None:
        """Remove the whole session directory, pairing code included."""
        await asyncio.to_thread(
            shutil.rmtree, self.session_dir(instance_id), ignore_errors=True
        )
