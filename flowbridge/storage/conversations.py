from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet

from flowbridge.logging import get_logger
from flowbridge.storage.errors import StorageError
from flowbridge.storage.files import JsonFileStore, safe_filename
from flowbridge.storage.models import ConversationKey, ConversationRecord, utcnow


class ConversationStore(JsonFileStore):
    """Bounded message logs, one file per (instance, peer) conversation key.

    Files live at ``<root>/<instance>/<peer>.json``; both path components are
    sanitized so group and user ids with ``@`` or ``.`` map to safe names.
    """

    def __init__(self, root: str | Path, *, cipher: Optional[Fernet] = None) -> None:
        super().__init__(root, cipher=cipher)
        self.logger = get_logger(__name__)

    def _instance_dir(self, instance_id: str) -> Path:
        return self.root / safe_filename(instance_id)

    def _path(self, key: ConversationKey) -> Path:
        return self._instance_dir(key.instance_id) / f"{safe_filename(key.peer_id)}.json"

    def _load(self, key: ConversationKey) -> ConversationRecord:
        try:
            data = self.read_file(self._path(key))
            if data is not None:
                return ConversationRecord.from_dict(data)
        except (StorageError, ValueError, KeyError, TypeError, OSError) as exc:
            self.logger.error(
                "conversation_unreadable", conversation_key=str(key), error=str(exc)
            )
        return ConversationRecord(key=key)

    def _save(self, record: ConversationRecord, max_length: int) -> ConversationRecord:
        record.trim(max_length)
        record.updated_at = utcnow()
        self.write_file(self._path(record.key), record.to_dict())
        return record

    def _prune(self, older_than_days: int) -> int:
        cutoff = time.time() - older_than_days * 86400
        removed = 0
        for path in self.root.glob("*/*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        return removed

    async def load(self, key: ConversationKey) -> ConversationRecord:
        """Return the stored conversation, or a fresh empty record when absent."""
        return await asyncio.to_thread(self._load, key)

    async def save(self, record: ConversationRecord, max_length: int) -> ConversationRecord:
        """Trim to ``max_length`` most recent messages, stamp and overwrite."""
        return await asyncio.to_thread(self._save, record, max_length)

    async def delete(self, key: ConversationKey) -> bool:
        return await asyncio.to_thread(self.delete_file, self._path(key))

    async def delete_instance(self, instance_id: str) -> None:
        await asyncio.to_thread(
            shutil.rmtree, self._instance_dir(instance_id), ignore_errors=True
        )

    async def prune(self, older_than_days: int) -> int:
        """Remove conversation files not modified within ``older_than_days``."""
        removed = await asyncio.to_thread(self._prune, older_than_days)
        self.logger.info(
            "conversations_pruned", removed=removed, older_than_days=older_than_days
        )
        return removed
