"""
Response cache keyed by the question and the context it was answered from
"""

import json
import hashlib
import logging
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from lessonchat.core.config import settings
from lessonchat.deps.kv_store import KeyValueStore, chunked, get_kv_store

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")

# Hit/miss counters roll over monthly
STATS_WINDOW_SECONDS = 30 * 24 * 60 * 60


@dataclass
class CachedResponse:
    content: str
    video_references: List[Dict[str, Any]] = field(default_factory=list)
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    cached_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CachedResponse":
        data = json.loads(raw)
        return cls(**{name: data[name] for name in cls.__dataclass_fields__ if name in data})


def normalize_query(query: str) -> str:
    """Lowercase, trim and collapse whitespace"""
    return _WHITESPACE.sub(" ", query.strip().lower())


class ResponseCache:
    """
    Best-effort cache for batch answers.

    Every store failure degrades to a miss (reads) or a no-op (writes);
    the cache never fails a chat request.
    """

    def __init__(self, store: Optional[KeyValueStore] = None, prefix: Optional[str] = None, ttl: Optional[int] = None):
        self._store = store
        self.prefix = prefix if prefix is not None else settings.kv_prefix
        self.ttl = ttl or settings.cache_ttl_seconds

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            self._store = get_kv_store()
        return self._store

    def make_key(self, query: str, chunk_ids: Iterable[str]) -> str:
        """
        Deterministic key over the normalized question and the retrieved chunk set.
        Chunk order does not matter; chunk membership does.
        """
        fingerprint = normalize_query(query) + "::" + "|".join(sorted(str(c) for c in chunk_ids))
        digest = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()
        return f"{self.prefix}response:{digest}"

    def _tag_key(self, video_id: str) -> str:
        return f"{self.prefix}video:{video_id}"

    def _stats_key(self, name: str) -> str:
        return f"{self.prefix}cache:stats:{name}"

    async def get(self, key: str) -> Optional[CachedResponse]:
        try:
            raw = await self.store.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None

        if raw is None:
            await self._count("misses")
            return None

        try:
            value = CachedResponse.from_json(raw)
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            await self._count("misses")
            return None

        await self._count("hits")
        return value

    async def put(self, key: str, value: CachedResponse, ttl: Optional[int] = None, video_ids: Iterable[str] = ()) -> bool:
        """
        Store an answer and tag it with every video whose chunks were in its context.

        Returns:
            True if the entry was written
        """
        ttl = ttl or self.ttl
        try:
            await self.store.set(key, value.to_json(), ttl=ttl)
            for video_id in sorted(set(video_ids)):
                await self.store.add_to_set(self._tag_key(video_id), key, ttl=ttl)
            return True
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def invalidate_by_video(self, video_id: str) -> int:
        """
        Delete every cached answer built from this video's chunks.

        Returns:
            Number of cache entries removed
        """
        tag_key = self._tag_key(video_id)
        try:
            keys = sorted(await self.store.set_members(tag_key))
            removed = 0
            for batch in chunked(keys):
                removed += await self.store.delete(*batch)
            await self.store.delete(tag_key)
        except Exception as e:
            logger.error(f"Cache invalidation failed for video {video_id}: {e}")
            return 0

        logger.info(f"Invalidated {removed} cached responses for video {video_id}")
        return removed

    async def _count(self, name: str) -> None:
        try:
            await self.store.increment(self._stats_key(name), STATS_WINDOW_SECONDS)
        except Exception as e:
            logger.debug(f"Cache stats update skipped: {e}")

    async def stats(self) -> Dict[str, Any]:
        try:
            hits = int(await self.store.get(self._stats_key("hits")) or 0)
            misses = int(await self.store.get(self._stats_key("misses")) or 0)
            entries = len(await self.store.scan_keys(f"{self.prefix}response:*"))
        except Exception as e:
            logger.warning(f"Cache stats unavailable: {e}")
            return {"available": False, "hits": 0, "misses": 0, "hit_rate": 0.0, "entries": 0}

        total = hits + misses
        return {
            "available": True,
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / total, 4) if total else 0.0,
            "entries": entries,
        }


# Global response cache instance
response_cache = ResponseCache()
