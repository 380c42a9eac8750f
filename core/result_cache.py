"""
Transcript cache.

Provider transcripts are kept per source so a repeat request skips download and
dispatch. Platform media is shared across callers and cached for a fixed
period; stored uploads and remote URLs are scoped to their owner and cached for
a tier-dependent period, which is zero (not cached) on the free tier.

Keys also carry every option that changes the provider output: language hint,
preview window, diarization and accuracy.
"""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete

from .database import DatabaseManager, TranscriptCacheEntry
from .models import JobOptions, SourceDescriptor, SourceKind, Tier, TranscriptionResult

logger = logging.getLogger(__name__)

PLATFORM_ID_PATTERN = re.compile(r"(?:[?&]v=|youtu\.be/|/shorts/|/embed/)([A-Za-z0-9_-]{11})")


def _digest(value: str, length: int = 32) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def platform_media_id(reference: str) -> str:
    """Stable id for a platform page: the video id when recognizable, else a hash of the URL."""
    match = PLATFORM_ID_PATTERN.search(reference)
    if match:
        return match.group(1)
    return _digest(reference.strip().rstrip("/"))


def options_variant(options: JobOptions) -> str:
    parts = [
        (options.language or "auto").lower(),
        str(options.preview_seconds or 0),
        f"{options.offset_seconds:g}" if options.preview_seconds else "0",
        "diarize" if options.diarize else "plain",
        options.accuracy.value,
    ]
    return _digest("|".join(parts), 12)


@dataclass
class CacheEntry:
    key: str
    owner: Optional[str]
    result: Dict[str, Any]
    created_at: datetime
    expires_at: datetime
    access_count: int = 0
    last_accessed: Optional[datetime] = None


class CacheStore(ABC):
    """Storage for cache entries."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        pass

    @abstractmethod
    async def touch(self, key: str, at: datetime) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        pass

    @abstractmethod
    async def delete_owner(self, owner: str) -> int:
        pass


class InMemoryCacheStore(CacheStore):
    """Process-local cache for tests and single-process runs."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def put(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    async def touch(self, key: str, at: datetime) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.access_count += 1
            entry.last_accessed = at

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_expired(self, now: datetime) -> int:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def delete_owner(self, owner: str) -> int:
        owned = [k for k, e in self._entries.items() if e.owner == owner]
        for key in owned:
            del self._entries[key]
        return len(owned)


class SqlCacheStore(CacheStore):
    """Cache entries in the relational store, shared by every worker process."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def get(self, key: str) -> Optional[CacheEntry]:
        async with self.db_manager.get_session() as session:
            row = await session.get(TranscriptCacheEntry, key)
            if row is None:
                return None
            return CacheEntry(
                key=row.cache_key,
                owner=row.owner,
                result=dict(row.result or {}),
                created_at=row.created_at,
                expires_at=row.expires_at,
                access_count=row.access_count or 0,
                last_accessed=row.last_accessed,
            )

    async def put(self, entry: CacheEntry) -> None:
        async with self.db_manager.get_session() as session:
            await session.merge(TranscriptCacheEntry(
                cache_key=entry.key,
                owner=entry.owner,
                result=entry.result,
                access_count=entry.access_count,
                created_at=entry.created_at,
                expires_at=entry.expires_at,
            ))

    async def touch(self, key: str, at: datetime) -> None:
        async with self.db_manager.get_session() as session:
            row = await session.get(TranscriptCacheEntry, key)
            if row is not None:
                row.access_count = (row.access_count or 0) + 1
                row.last_accessed = at

    async def delete(self, key: str) -> None:
        async with self.db_manager.get_session() as session:
            await session.execute(delete(TranscriptCacheEntry).where(TranscriptCacheEntry.cache_key == key))

    async def delete_expired(self, now: datetime) -> int:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                delete(TranscriptCacheEntry).where(TranscriptCacheEntry.expires_at <= now)
            )
            return result.rowcount or 0

    async def delete_owner(self, owner: str) -> int:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                delete(TranscriptCacheEntry).where(TranscriptCacheEntry.owner == owner)
            )
            return result.rowcount or 0


class TranscriptionCache:
    """
    Looks up and stores provider transcripts keyed on the source descriptor.

    Attributes:
        platform_ttl: Lifetime of platform entries
        upload_ttl_days: Lifetime in days of owner-scoped entries per tier;
            zero disables caching for that tier
    """

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        platform_ttl_days: int = 90,
        upload_ttl_days: Optional[Dict[str, int]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store or InMemoryCacheStore()
        self.platform_ttl = timedelta(days=platform_ttl_days)
        self.upload_ttl_days = upload_ttl_days if upload_ttl_days is not None else {
            "free": 0, "basic": 7, "pro": 30, "premium": 90,
        }
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self.stores = 0

    @classmethod
    def from_settings(cls, settings, store: Optional[CacheStore] = None) -> Optional["TranscriptionCache"]:
        if not settings.cache_enabled:
            return None
        return cls(
            store,
            platform_ttl_days=settings.cache_platform_ttl_days,
            upload_ttl_days=dict(settings.cache_upload_ttl_days),
        )

    def key_for(self, source: SourceDescriptor, options: JobOptions, owner: Optional[str]) -> str:
        """
        Cache key for a source and the options that shape its transcript.

        Platform keys are shared by every caller; other sources are scoped to
        the owner.
        """
        variant = options_variant(options)
        if source.kind == SourceKind.PLATFORM:
            return f"platform:{platform_media_id(source.reference)}:{variant}"
        return f"user:{owner or 'anonymous'}:{source.kind.value}:{_digest(source.reference)}:{variant}"

    def ttl_for(self, source: SourceDescriptor, tier: Tier) -> Optional[timedelta]:
        """Entry lifetime, or None when the source must not be cached for this tier."""
        if source.kind == SourceKind.PLATFORM:
            return self.platform_ttl if self.platform_ttl.total_seconds() > 0 else None
        days = self.upload_ttl_days.get(tier.value, 0)
        return timedelta(days=days) if days > 0 else None

    async def get(self, key: str) -> Optional[TranscriptionResult]:
        """Cached transcript for a key, or None when absent or expired."""
        entry = await self.store.get(key)
        now = self._clock()
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= now:
            await self.store.delete(key)
            self.misses += 1
            return None
        await self.store.touch(key, now)
        self.hits += 1
        logger.info(f"Transcript cache hit for {key}")
        return TranscriptionResult.from_dict(entry.result)

    async def put(
        self,
        source: SourceDescriptor,
        options: JobOptions,
        owner: Optional[str],
        tier: Tier,
        result: TranscriptionResult,
    ) -> bool:
        """
        Store a provider transcript.

        Returns:
            True when stored, False when the tier or source kind is not cached
        """
        ttl = self.ttl_for(source, tier)
        if ttl is None:
            return False
        now = self._clock()
        key = self.key_for(source, options, owner)
        await self.store.put(CacheEntry(
            key=key,
            owner=None if source.kind == SourceKind.PLATFORM else owner,
            result=result.to_dict(),
            created_at=now,
            expires_at=now + ttl,
        ))
        self.stores += 1
        logger.debug(f"Cached transcript under {key} until {now + ttl:%Y-%m-%d}")
        return True

    async def cleanup(self) -> int:
        removed = await self.store.delete_expired(self._clock())
        if removed:
            logger.info(f"Removed {removed} expired transcript cache entries")
        return removed

    async def clear_owner(self, owner: str) -> int:
        return await self.store.delete_owner(owner)

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stores": self.stores,
            "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
        }
