"""Object storage for generated and uploaded media.

Objects live under ``users/<uid>/<kind>/<timestamp>[_<name>].<ext>`` below
STORAGE_DIR and are served by the app at ``/storage``; upload functions return
that public URL.
"""

import logging
import re
import threading
from pathlib import Path

import aiofiles
from fastapi import UploadFile

from stryp.config import STORAGE_DIR, PUBLIC_BASE_URL
from stryp.errors import UploadError
from stryp.models import now_ms
from stryp.services.media import decode_data_uri, extension_for

logger = logging.getLogger(__name__)

STORAGE_ROUTE = "/storage"

# Path kinds
CHARACTERS = "characters"
PANELS = "panels"
PANEL_AUDIO = "panel_audio"
LOCATIONS = "locations"


class ObjectStorage:
    def __init__(self, root: Path = STORAGE_DIR, base_url: str = PUBLIC_BASE_URL):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self._lock = threading.Lock()
        self._last_ts = 0

    def _timestamp(self) -> int:
        """Millisecond timestamp, strictly increasing within this process."""
        with self._lock:
            ts = max(now_ms(), self._last_ts + 1)
            self._last_ts = ts
            return ts

    def _object_path(self, user_id: str, kind: str, ext: str, name: str = "") -> str:
        safe_name = re.sub(r"[^a-zA-Z0-9.]", "", name)
        stem = f"{self._timestamp()}_{safe_name}" if safe_name else str(self._timestamp())
        if safe_name and "." in safe_name:
            return f"users/{user_id}/{kind}/{stem}"
        return f"users/{user_id}/{kind}/{stem}.{ext}"

    def url_for(self, rel_path: str) -> str:
        return f"{self.base_url}{STORAGE_ROUTE}/{rel_path}"

    def path_for_url(self, url: str) -> Path | None:
        prefix = f"{self.base_url}{STORAGE_ROUTE}/"
        if not url.startswith(prefix):
            return None
        rel = url[len(prefix):]
        path = (self.root / rel).resolve()
        if self.root.resolve() not in path.parents:
            return None
        return path

    async def upload_bytes(self, user_id: str, kind: str, data: bytes, mime_type: str, name: str = "") -> str:
        rel_path = self._object_path(user_id, kind, extension_for(mime_type), name)
        dest = self.root / rel_path
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(dest, "wb") as out:
                await out.write(data)
        except OSError as e:
            logger.error("[storage] Upload failed for %s: %s", rel_path, e)
            raise UploadError(f"Upload failed: {e}") from e
        logger.info("[storage] Stored %s (%d bytes)", rel_path, len(data))
        return self.url_for(rel_path)

    async def upload_data_uri(self, user_id: str, kind: str, data_uri: str) -> str:
        """Decode a base64 data URI and store the binary payload."""
        try:
            mime_type, data = decode_data_uri(data_uri)
        except ValueError as e:
            raise UploadError(f"Upload failed: {e}") from e
        return await self.upload_bytes(user_id, kind, data, mime_type)

    async def upload_file(self, user_id: str, kind: str, upload: UploadFile) -> str:
        data = await upload.read()
        return await self.upload_bytes(
            user_id, kind, data, upload.content_type or "application/octet-stream",
            name=upload.filename or "",
        )

    async def delete(self, url: str):
        path = self.path_for_url(url)
        if path is None or not path.exists():
            logger.warning("[storage] Could not delete %s: not a stored object", url)
            return
        try:
            path.unlink()
        except OSError as e:
            logger.warning("[storage] Could not delete %s: %s", url, e)


object_storage = ObjectStorage()
