"""
Key-addressed blob storage for document metadata, templates and uploads.

Keys are slash-separated paths such as "legal-documents/law/zozpp.json";
they map onto files under a root directory (DOCUMENT_STORAGE_DIR).
"""

import json
import logging
from pathlib import Path, PurePosixPath
from typing import Optional

from .config import StorageConfig
from .errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Filesystem-backed object store."""

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig()
        self.root = Path(self.config.root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        if not key or key.startswith("/"):
            raise ValidationError(f"Invalid storage key: {key!r}")
        parts = PurePosixPath(key).parts
        if any(part in ("..", ".") for part in parts):
            raise ValidationError(f"Invalid storage key: {key!r}")
        return self.root.joinpath(*parts)

    def put_bytes(self, key: str, data: bytes) -> str:
        """Store raw bytes under key. Returns the key."""
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as e:
            logger.error(f"Failed to store object {key}: {e}")
            raise PersistenceError(f"Failed to store object {key}: {e}", original=e) from e
        logger.debug(f"Stored object {key} ({len(data)} bytes)")
        return key

    def get_bytes(self, key: str) -> Optional[bytes]:
        """Return stored bytes, or None if the key does not exist."""
        path = self._path_for(key)
        if not path.is_file():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            raise PersistenceError(f"Failed to read object {key}: {e}", original=e) from e

    def put_json(self, key: str, payload: dict) -> str:
        data = json.dumps(payload, ensure_ascii=False, indent=2, default=str).encode("utf-8")
        return self.put_bytes(key, data)

    def get_json(self, key: str) -> Optional[dict]:
        data = self.get_bytes(key)
        if data is None:
            return None
        return json.loads(data.decode("utf-8"))

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def list_keys(self, prefix: str = "") -> list[str]:
        """List keys under a prefix, sorted."""
        base = self._path_for(prefix.rstrip("/")) if prefix.strip("/") else self.root
        if not base.exists():
            return []
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in base.rglob("*")
            if p.is_file() and not p.name.endswith(".tmp")
        )
