"""Encrypted JSON file persistence shared by the config and conversation stores.

Every record is one file, rewritten in full on each save. When an encryption
secret is configured the JSON payload is wrapped in a Fernet token; the same
secret is used for every record.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from flowbridge.logging import get_logger
from flowbridge.storage.errors import StorageError

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def safe_filename(identifier: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_-]`` with ``_``."""
    return _UNSAFE_CHARS.sub("_", identifier) or "_"


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_cipher(key_material: Optional[str]) -> Optional[Fernet]:
    if not key_material:
        return None
    try:
        return Fernet(derive_cipher_key(key_material))
    except Exception as exc:
        raise RuntimeError("Unable to initialize storage cipher") from exc


class JsonFileStore:
    """Read, write and delete JSON records as individual (optionally encrypted) files."""

    def __init__(self, root: str | Path, *, cipher: Optional[Fernet] = None) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.cipher = cipher

    def _encode(self, data: Dict[str, Any]) -> bytes:
        payload = json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")
        if self.cipher is None:
            return payload
        return self.cipher.encrypt(payload)

    def _decode(self, raw: bytes) -> Dict[str, Any]:
        if self.cipher is not None:
            try:
                raw = self.cipher.decrypt(raw.strip())
            except InvalidToken as exc:
                raise StorageError("record could not be decrypted") from exc
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            raise StorageError("record is not a JSON object")
        return data

    def read_file(self, path: Path) -> Optional[Dict[str, Any]]:
        """Return the decoded record, or ``None`` when the file does not exist."""
        if not path.exists():
            return None
        return self._decode(path.read_bytes())

    def write_file(self, path: Path, data: Dict[str, Any]) -> None:
        """Overwrite ``path`` atomically: temp file in the same directory, then rename."""
        path.parent.mkdir(parents=True, exist_ok=True)
        encoded = self._encode(data)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(encoded)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            logger.error("record_write_failed", path=str(path), error=str(exc))
            raise StorageError(f"unable to write {path.name}") from exc

    def delete_file(self, path: Path) -> bool:
        """Remove ``path`` if present; returns whether a file was removed."""
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
