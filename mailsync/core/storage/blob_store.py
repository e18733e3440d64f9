"""
Blob storage for attachment bytes.

Keys are slash-separated relative paths ("{owner}/{message id}/{filename}").
The database only stores the key; the bytes live behind a BlobStore.
"""
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union
import logging
import os
import re
import tempfile

from mailsync.core.config import get_settings
from mailsync.core.errors import StorageError

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 200

_UNSAFE_FILENAME_CHARS = re.compile(r'[\x00-\x1f\\/:*?"<>|]')


def safe_filename(filename: Optional[str], fallback: str = "attachment") -> str:
    """
    Reduce an attachment filename to a single safe path segment.

    Strips directory components, control and reserved characters, and
    leading dots; keeps the extension when truncating.
    """
    name = (filename or "").replace('\\', '/').split('/')[-1]
    name = _UNSAFE_FILENAME_CHARS.sub('_', name).strip().lstrip('.')
    if not name:
        return fallback

    if len(name) > MAX_FILENAME_LENGTH:
        stem, ext = os.path.splitext(name)
        ext = ext[:20]
        name = stem[:MAX_FILENAME_LENGTH - len(ext)] + ext
    return name


def attachment_key(owner_id: str, message_id: str, filename: str) -> str:
    """Blob key of an attachment: {owner}/{message id}/{filename}"""
    return f"{safe_filename(owner_id, fallback='owner')}/{message_id}/{safe_filename(filename)}"


class BlobStore(ABC):
    """Opaque put/get object store"""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """
        Store bytes under key, replacing any existing object.

        Returns:
            The key the object was stored under

        Raises:
            StorageError: If the write fails
        """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """
        Raises:
            StorageError: If the object is missing or unreadable
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass


class LocalBlobStore(BlobStore):
    """Filesystem-backed store rooted at one directory"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()

    @classmethod
    def from_settings(cls) -> "LocalBlobStore":
        return cls(get_settings().attachment_storage_dir)

    def _path(self, key: str) -> Path:
        if not key or key.startswith('/') or '\x00' in key:
            raise StorageError(f"Invalid blob key: {key!r}")
        path = (self.root / key).resolve()
        # Keys must not escape the storage root
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"Blob key escapes storage root: {key!r}")
        return path

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a temp file and rename so readers never see partial content
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix='.upload-')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Failed to store blob {key}: {e}") from e

        logger.debug(f"Stored blob {key} ({len(data)} bytes)")
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read blob {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete blob {key}: {e}") from e
