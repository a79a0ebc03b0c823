from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Protocol, Tuple
from urllib.parse import quote

import jwt

from ..domain.errors import ObjectNotFound, StorageError

LOG = logging.getLogger("codecanvas.storage")


class ObjectStorage(Protocol):
    async def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:  # pragma: no cover - interface
        ...

    async def get(self, key: str) -> bytes:  # pragma: no cover - interface
        ...

    async def presign(self, key: str, ttl: int) -> str:  # pragma: no cover - interface
        ...

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        ...


@dataclass
class UrlSigner:
    """HS256 download tokens scoped to one object key."""

    secret: str
    base_url: str = ""
    algorithm: str = "HS256"

    def sign(self, key: str, ttl: int) -> Tuple[str, int]:
        expires = int(time.time()) + int(ttl)
        token = jwt.encode({"key": key, "exp": expires}, self.secret, algorithm=self.algorithm)
        return token, expires

    def url_for(self, key: str, ttl: int) -> str:
        token, _ = self.sign(key, ttl)
        return f"{self.base_url}/files/{quote(key)}?token={token}"

    def verify(self, token: str, key: str) -> bool:
        try:
            data = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            return False
        except jwt.InvalidTokenError:
            return False
        return data.get("key") == key


class InMemoryObjectStorage:
    """Dict-backed storage for tests and single-process development."""

    def __init__(self, signer: Optional[UrlSigner] = None) -> None:
        self.signer = signer or UrlSigner(secret="codecanvas-dev-secret")
        self._objects: Dict[str, Tuple[bytes, Dict[str, str]]] = {}
        self._lock = RLock()
        self.puts = 0

    async def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._objects[key] = (bytes(data), dict(metadata or {}))
            self.puts += 1

    async def get(self, key: str) -> bytes:
        with self._lock:
            item = self._objects.get(key)
        if item is None:
            raise ObjectNotFound(key)
        return item[0]

    async def presign(self, key: str, ttl: int) -> str:
        return self.signer.url_for(key, ttl)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def metadata(self, key: str) -> Dict[str, str]:
        with self._lock:
            item = self._objects.get(key)
        return dict(item[1]) if item else {}

    def keys(self) -> list:
        with self._lock:
            return sorted(self._objects)


class LocalObjectStorage:
    """Filesystem storage rooted at ``base_dir``; blocking I/O runs in a worker thread."""

    def __init__(self, base_dir: Path, signer: UrlSigner) -> None:
        self.base_dir = Path(base_dir)
        self.signer = signer
        self.puts = 0

    def _path(self, key: str) -> Path:
        root = self.base_dir.resolve()
        path = (root / key).resolve()
        if root != path and root not in path.parents:
            raise StorageError(f"key escapes storage root: {key}")
        return path

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)

    async def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        try:
            await asyncio.to_thread(self._write, key, bytes(data))
        except OSError as exc:
            LOG.error("storage_put_failed", extra={"key": key, "err": str(exc)})
            raise StorageError(str(exc)) from exc
        self.puts += 1

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise ObjectNotFound(key) from exc
        except OSError as exc:
            raise StorageError(str(exc)) from exc

    async def presign(self, key: str, ttl: int) -> str:
        return self.signer.url_for(key, ttl)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            raise StorageError(str(exc)) from exc
