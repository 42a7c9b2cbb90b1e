import os
import logging
from typing import Dict, Any, Optional
from pathlib import Path

from docjobs.exceptions import ServiceUnavailable
from .abstract_storage import AbstractStorage

logger = logging.getLogger(__name__)


class FileSystemStorage(AbstractStorage):
    """
    File system implementation of the storage backend

    Stores job inputs and outputs in the local file system.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize filesystem storage

        Args:
            config: Storage configuration dictionary with at least:
                   - path: Base path for storage
        """
        self.config = config
        self.base_path = Path(config.get('path', 'storage'))
        self.ensure_storage_exists()

    def ensure_storage_exists(self) -> None:
        """Ensure storage directory exists"""
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_path(self, key: str) -> Path:
        """
        Get full path for a storage key with path traversal protection

        Raises:
            ValueError: If path traversal is detected or key is invalid
        """
        if not key:
            raise ValueError("Storage key cannot be empty")

        if '..' in key or os.path.isabs(key):
            raise ValueError(f"Invalid storage key: {key} - path traversal detected")

        normalized_key = os.path.normpath(key)
        if normalized_key.startswith('..') or os.path.isabs(normalized_key):
            raise ValueError(f"Invalid storage key: {key} - path traversal detected")

        full_path = (self.base_path / normalized_key).resolve()

        # Resolved path must stay inside base_path
        try:
            full_path.relative_to(self.base_path.resolve())
        except ValueError:
            raise ValueError(f"Invalid storage key: {key} - path outside storage directory")

        return full_path

    def put(self, key: str, data: bytes) -> str:
        path = self.get_path(key)

        # No symlinks anywhere between base_path and the target
        current_path = path
        base = self.base_path.resolve()
        while current_path != base and current_path != current_path.parent:
            if current_path.exists() and current_path.is_symlink():
                raise ValueError(f"Invalid storage key: {key} - symlinks not allowed in path")
            current_path = current_path.parent

        # Write to a temp file and rename, readers never see a partial object
        temp_path = path.with_suffix(path.suffix + '.tmp')
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open('wb') as f:
                f.write(data)
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            logger.error(f"Failed to write {key}: {e}")
            raise ServiceUnavailable("Object storage unavailable") from e

        logger.debug(f"Stored {len(data)} bytes at {key}")
        return f"file://{path}"

    def get(self, key: str) -> bytes:
        path = self.get_path(key)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {key}")
        try:
            return path.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read {key}: {e}")
            raise ServiceUnavailable("Object storage unavailable") from e

    def delete(self, key: str) -> bool:
        path = self.get_path(key)
        if not path.exists():
            return False
        path.unlink()
        logger.debug(f"Deleted {key}")
        return True

    def exists(self, key: str) -> bool:
        return self.get_path(key).is_file()

    def get_url(self, key: str, expires_in: Optional[int] = None) -> str:
        """
        Get a URL for accessing the file

        Args:
            key: Storage key
            expires_in: Ignored for filesystem storage
        """
        return f"file://{self.get_path(key)}"
