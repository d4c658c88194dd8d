"""
Local filesystem blob store for uploaded files, thumbnails and screenshots.

Blobs are addressed by an opaque id (uuid hex plus extension). The content
type travels in a sidecar ``.type`` file so ``read`` can return it.
"""

from __future__ import annotations

import logging
import mimetypes
import uuid
from pathlib import Path

import config

log = logging.getLogger(__name__)


class LocalBlobStore:
    def __init__(self, root_dir: Path | str | None = None, public_base_url: str | None = None):
        self.root = Path(root_dir or config.BLOB_STORAGE_DIR)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (
            public_base_url if public_base_url is not None else config.BLOB_PUBLIC_BASE_URL
        ).rstrip("/")

    def _path(self, blob_id: str) -> Path:
        path = (self.root / blob_id).resolve()
        if path.parent != self.root.resolve():
            raise ValueError(f"Invalid blob id: {blob_id}")
        return path

    def store(self, data: bytes, content_type: str) -> str:
        ext = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".bin"
        blob_id = f"{uuid.uuid4().hex}{ext}"
        self._path(blob_id).write_bytes(data)
        self._path(blob_id + ".type").write_text(content_type)
        log.info("[BLOB] Stored %s (%d bytes, %s)", blob_id, len(data), content_type)
        return blob_id

    def get_url(self, blob_id: str) -> str | None:
        path = self._path(blob_id)
        if not path.exists():
            return None
        if self.public_base_url:
            return f"{self.public_base_url}/{blob_id}"
        return path.as_uri()

    def read(self, blob_id: str) -> tuple[bytes, str] | None:
        path = self._path(blob_id)
        if not path.exists():
            return None
        type_path = self._path(blob_id + ".type")
        content_type = type_path.read_text() if type_path.exists() else "application/octet-stream"
        return path.read_bytes(), content_type

    def delete(self, blob_id: str) -> None:
        """Remove a blob. Missing blobs raise FileNotFoundError."""
        self._path(blob_id).unlink()
        self._path(blob_id + ".type").unlink(missing_ok=True)
        log.info("[BLOB] Deleted %s", blob_id)
