from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..domain.artifact_models import StoredArtifact
from ..domain.errors import StorageError
from ..infrastructure.object_storage import ObjectStorage
from ..observability.metrics import CACHE_LOOKUPS
from .language_rules import content_type_for, extension_for

LOG = logging.getLogger("codecanvas.cache")

HASH_LENGTH = 16

_BLANK_RUNS = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")
_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)


def compact_source(code: str) -> str:
    """Strip trailing whitespace and collapse runs of blank lines to one."""
    return _BLANK_RUNS.sub("\n\n", _TRAILING_WS.sub("", code))


def storage_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:HASH_LENGTH]


@dataclass
class _Entry:
    value: Any
    size: int
    stored_at: float


class LRUCache:
    """Size- and count-bounded LRU with a per-entry TTL."""

    def __init__(
        self,
        max_entries: int = 1000,
        max_bytes: int = 100 * 1024 * 1024,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.ttl = ttl
        self._clock = clock
        self._data: "OrderedDict[str, _Entry]" = OrderedDict()
        self._bytes = 0
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Any:
        entry = self._data.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() - entry.stored_at > self.ttl:
            self._drop(key, "expired")
            self.misses += 1
            return None
        self._data.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, size: int) -> None:
        if key in self._data:
            self._bytes -= self._data.pop(key).size
        self._data[key] = _Entry(value=value, size=size, stored_at=self._clock())
        self._bytes += size
        while self._data and (len(self._data) > self.max_entries or self._bytes > self.max_bytes):
            oldest = next(iter(self._data))
            self._drop(oldest, "capacity")

    def replace(self, key: str, value: Any) -> None:
        entry = self._data.get(key)
        if entry is not None:
            entry.value = value

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [key for key, entry in self._data.items() if now - entry.stored_at > self.ttl]
        for key in stale:
            self._drop(key, "expired")
        return len(stale)

    def _drop(self, key: str, reason: str) -> None:
        entry = self._data.pop(key, None)
        if entry is None:
            return
        self._bytes -= entry.size
        self.evictions += 1
        LOG.debug("cache_evicted", extra={"key": key, "reason": reason, "size": entry.size})

    def clear(self) -> None:
        self._data.clear()
        self._bytes = 0

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    @property
    def total_bytes(self) -> int:
        return self._bytes


class ContentAddressedCache:
    """Store artifact sources once per content hash.

    Lookup order is memory LRU, then the hash index, then any in-flight
    upload for the same hash. Only a miss on all three writes to storage, and
    the in-flight entry is registered before the first suspension point.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        prefix: str = "code-artifacts/",
        presign_ttl: int = 3600,
        refresh_margin: float = 600.0,
        lru: Optional[LRUCache] = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.prefix = prefix
        self.presign_ttl = presign_ttl
        self.refresh_margin = refresh_margin
        self.lru = lru or LRUCache()
        self._now = wall_clock
        self._index: "OrderedDict[str, StoredArtifact]" = OrderedDict()
        self._pending: Dict[str, "asyncio.Future[StoredArtifact]"] = {}
        self.uploads = 0

    def key_for(self, digest: str, language: str) -> str:
        day = datetime.fromtimestamp(self._now(), tz=timezone.utc).strftime("%Y-%m-%d")
        return f"{self.prefix}code/{day}/{digest}{extension_for(language)}"

    async def store(
        self,
        code: str,
        language: str,
        compression: bool = False,
        tags: Optional[Dict[str, str]] = None,
    ) -> StoredArtifact:
        payload = compact_source(code) if compression else code
        data = payload.encode("utf-8")
        digest = storage_hash(data)

        cached = self.lru.get(digest)
        if cached is not None:
            CACHE_LOOKUPS.labels(result="hit").inc()
            return await self._fresh(digest, cached)
        indexed = self._index.get(digest)
        if indexed is not None:
            CACHE_LOOKUPS.labels(result="index").inc()
            self._index.move_to_end(digest)
            self.lru.set(digest, indexed, indexed.size)
            return await self._fresh(digest, indexed)
        pending = self._pending.get(digest)
        if pending is not None:
            CACHE_LOOKUPS.labels(result="pending").inc()
            return await asyncio.shield(pending)

        CACHE_LOOKUPS.labels(result="miss").inc()
        task = asyncio.ensure_future(self._upload(digest, data, payload, language, tags or {}))
        self._pending[digest] = task
        task.add_done_callback(lambda _t, d=digest: self._pending.pop(d, None))
        return await asyncio.shield(task)

    async def store_many(
        self,
        items: Sequence[Tuple[str, str]],
        compression: bool = False,
        tags: Optional[Dict[str, str]] = None,
        concurrency: int = 5,
    ) -> List[StoredArtifact]:
        """Store ``(code, language)`` pairs, one upload per distinct source.

        Results follow the first occurrence of each source. Uploads run in
        groups of ``concurrency``; a failing upload raises ``StorageError``.
        """
        unique: "OrderedDict[str, Tuple[str, str]]" = OrderedDict()
        for code, language in items:
            unique.setdefault(storage_hash(code.encode("utf-8")), (code, language))
        LOG.info("artifact_batch_started", extra={"unique": len(unique), "total": len(items)})

        pending = list(unique.values())
        step = max(1, concurrency)
        results: List[StoredArtifact] = []
        for start in range(0, len(pending), step):
            group = pending[start : start + step]
            stores = [self.store(code, lang, compression=compression, tags=tags) for code, lang in group]
            results.extend(await asyncio.gather(*stores))
        LOG.info("artifact_batch_finished", extra={"stored": len(results)})
        return results

    def _remember(self, digest: str, stored: StoredArtifact) -> None:
        self._index[digest] = stored
        self._index.move_to_end(digest)
        limit = max(1, self.lru.max_entries)
        while len(self._index) > limit:
            self._index.popitem(last=False)

    async def _upload(
        self, digest: str, data: bytes, payload: str, language: str, tags: Dict[str, str]
    ) -> StoredArtifact:
        key = self.key_for(digest, language)
        content_type = content_type_for(language)
        metadata = {"hash": digest, "language": language, "content-type": content_type}
        metadata.update({f"tag-{k}": str(v) for k, v in tags.items()})
        try:
            await self.storage.put(key, data, metadata)
            url = await self.storage.presign(key, self.presign_ttl)
        except StorageError:
            LOG.error("artifact_upload_failed", extra={"key": key, "hash": digest})
            raise
        except Exception as exc:
            LOG.error("artifact_upload_failed", extra={"key": key, "hash": digest, "err": str(exc)})
            raise StorageError(str(exc)) from exc
        self.uploads += 1
        stored = StoredArtifact(
            key=key,
            url=url,
            hash=digest,
            size=len(data),
            content_type=content_type,
            url_expires_at=self._now() + self.presign_ttl,
        )
        self._remember(digest, stored)
        self.lru.set(digest, stored, len(data))
        self.lru.set(f"retrieve:{key}", payload, len(data))
        LOG.info("artifact_stored", extra={"key": key, "hash": digest, "size": len(data)})
        return stored

    async def _fresh(self, digest: str, stored: StoredArtifact) -> StoredArtifact:
        expires = stored.url_expires_at or 0.0
        if expires - self._now() > self.refresh_margin:
            return stored
        url = await self.storage.presign(stored.key, self.presign_ttl)
        refreshed = stored.model_copy(update={"url": url, "url_expires_at": self._now() + self.presign_ttl})
        self._remember(digest, refreshed)
        self.lru.replace(digest, refreshed)
        LOG.debug("artifact_url_refreshed", extra={"key": stored.key})
        return refreshed

    async def retrieve(self, key: str) -> str:
        cache_key = f"retrieve:{key}"
        cached = self.lru.get(cache_key)
        if cached is not None:
            return cached
        data = await self.storage.get(key)
        code = data.decode("utf-8")
        self.lru.set(cache_key, code, len(data))
        return code

    def lookup(self, digest: str) -> Optional[StoredArtifact]:
        return self._index.get(digest)

    def purge_stale(self) -> int:
        removed = self.lru.purge_expired()
        if removed:
            LOG.info("cache_purged", extra={"removed": removed})
        return removed

    def stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self.lru),
            "bytes": self.lru.total_bytes,
            "hits": self.lru.hits,
            "misses": self.lru.misses,
            "evictions": self.lru.evictions,
            "pending_uploads": len(self._pending),
            "index_size": len(self._index),
            "uploads": self.uploads,
        }

    def clear(self) -> None:
        self.lru.clear()
        self._index.clear()
