"""
Blob storage for audio assets with public, time-limited URLs.
"""

import asyncio
import json
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class StoredBlob:
    key: str
    url: str
    size: int
    content_type: str
    expires_at: Optional[datetime]


class BlobStore(ABC):
    """Object store interface."""

    @abstractmethod
    async def put_bytes(
        self, key: str, data: bytes, content_type: str, ttl_seconds: Optional[int] = None
    ) -> StoredBlob:
        pass

    @abstractmethod
    async def put_file(
        self, key: str, path: Path, content_type: str, ttl_seconds: Optional[int] = None
    ) -> StoredBlob:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def cleanup_expired(self) -> int:
        pass


class LocalBlobStore(BlobStore):
    """
    Filesystem blob store served under ``public_base_url``.

    Expiry times are kept in a JSON index next to the blobs and enforced by
    ``cleanup_expired``.
    """

    INDEX_NAME = ".expiry.json"

    def __init__(self, root: Path, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)
        self._index_lock = asyncio.Lock()

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Invalid blob key: {key}")
        return path

    def _read_index(self) -> Dict[str, str]:
        index_path = self.root / self.INDEX_NAME
        if not index_path.exists():
            return {}
        return json.loads(index_path.read_text(encoding="utf-8"))

    def _write_index(self, index: Dict[str, str]) -> None:
        (self.root / self.INDEX_NAME).write_text(json.dumps(index), encoding="utf-8")

    async def _register(self, key: str, ttl_seconds: Optional[int]) -> Optional[datetime]:
        if ttl_seconds is None:
            return None
        expires_at = datetime.utcnow() + timedelta(seconds=ttl_seconds)
        async with self._index_lock:
            index = await asyncio.to_thread(self._read_index)
            index[key] = expires_at.isoformat()
            await asyncio.to_thread(self._write_index, index)
        return expires_at

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def put_bytes(
        self, key: str, data: bytes, content_type: str, ttl_seconds: Optional[int] = None
    ) -> StoredBlob:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        expires_at = await self._register(key, ttl_seconds)
        logger.debug(f"Stored blob {key} ({len(data)} bytes)")
        return StoredBlob(key, self.url_for(key), len(data), content_type, expires_at)

    async def put_file(
        self, key: str, path: Path, content_type: str, ttl_seconds: Optional[int] = None
    ) -> StoredBlob:
        target = self._path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, path, target)
        expires_at = await self._register(key, ttl_seconds)
        size = target.stat().st_size
        logger.debug(f"Stored blob {key} from {path} ({size} bytes)")
        return StoredBlob(key, self.url_for(key), size, content_type, expires_at)

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)
        existed = path.exists()
        if existed:
            await asyncio.to_thread(path.unlink)
        async with self._index_lock:
            index = await asyncio.to_thread(self._read_index)
            if index.pop(key, None) is not None:
                await asyncio.to_thread(self._write_index, index)
        return existed

    async def cleanup_expired(self) -> int:
        """Delete blobs whose expiry has passed. Returns the number removed."""
        now = datetime.utcnow()
        async with self._index_lock:
            index = await asyncio.to_thread(self._read_index)
            expired = [k for k, ts in index.items() if datetime.fromisoformat(ts) <= now]
            for key in expired:
                path = self._path_for(key)
                if path.exists():
                    await asyncio.to_thread(path.unlink)
                index.pop(key, None)
            if expired:
                await asyncio.to_thread(self._write_index, index)
        if expired:
            logger.info(f"Removed {len(expired)} expired blobs")
        return len(expired)
