import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, NonNegativeInt, ValidationError

from mindscript.worker.hashing import calculate_voice_hash

log = logging.getLogger(__name__)

AUDIO_SUFFIX = ".audio"
META_SUFFIX = ".json"


class CacheConfig(BaseModel):
    path: Path | str = ".cache/voice"
    max_size_mb: float = 500
    ttl_seconds: int | None = 7 * 24 * 3600  # None means entries never expire
    enabled: bool = True


class EntryMeta(BaseModel):
    """Bookkeeping stored next to each payload as `{key}.json`."""

    key: str
    metadata: dict[str, Any]  # caller-supplied, returned verbatim
    created_at: float
    expires_at: float | None
    size_bytes: NonNegativeInt
    access_count: NonNegativeInt
    last_accessed_at: float


@dataclass
class CacheEntry:
    key: str
    data: bytes
    metadata: dict[str, Any]
    created_at: float
    expires_at: float | None
    size_bytes: int
    access_count: int
    last_accessed_at: float


@dataclass(frozen=True)
class CacheStatistics:
    total_entries: int
    total_size_bytes: int
    hit_rate: float
    miss_rate: float
    eviction_count: int
    average_entry_size: float
    oldest_entry: float | None
    newest_entry: float | None


class VoiceCache:
    """File-backed, content-addressed cache of synthesized speech with LRU eviction.

    Each entry is a pair of files: `{key}.audio` holds the payload, `{key}.json` the bookkeeping.
    The byte budget covers payloads only. None of the methods await, so tasks sharing one cache
    on the event loop cannot interleave inside an operation.
    """

    def __init__(self, config: CacheConfig, *, clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self.directory = Path(config.path)
        self._max_size_bytes = int(config.max_size_mb * 1024 * 1024)
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def generate_key(
        *,
        text: str,
        voice: str,
        model: str | None,
        provider: str,
        speed: float = 1.0,
        pitch: float = 1.0,
        fmt: str = "mp3",
    ) -> str:
        return calculate_voice_hash(text, voice, model, provider, speed=speed, pitch=pitch, fmt=fmt)

    async def initialize(self) -> int:
        """Create the cache directory and drop entries that expired while the worker was down."""
        self.directory.mkdir(parents=True, exist_ok=True)
        now = self._clock()
        removed = 0
        for key, meta in list(self._scan()):
            if meta is None or (meta.expires_at is not None and meta.expires_at <= now):
                self._remove(key)
                removed += 1
        if removed:
            log.info(f"Voice cache: removed {removed} expired or corrupt entries from {self.directory}")
        return removed

    async def get(self, key: str) -> CacheEntry | None:
        if not self.config.enabled:
            return None

        meta = self._read_meta(key)
        audio_path = self._audio_path(key)
        if meta is None or not audio_path.exists():
            if audio_path.exists() or self._meta_path(key).exists():
                log.warning(f"Voice cache entry {key} is incomplete, discarding")
                self._remove(key)
            self._misses += 1
            return None

        now = self._clock()
        if meta.expires_at is not None and meta.expires_at <= now:
            self._remove(key)
            self._misses += 1
            return None

        try:
            data = audio_path.read_bytes()
        except OSError as e:
            log.warning(f"Voice cache entry {key} unreadable ({e}), discarding")
            self._remove(key)
            self._misses += 1
            return None
        if len(data) != meta.size_bytes:
            log.warning(f"Voice cache entry {key} has {len(data)} bytes, expected {meta.size_bytes}, discarding")
            self._remove(key)
            self._misses += 1
            return None

        meta.access_count += 1
        meta.last_accessed_at = now
        self._write_meta(key, meta)
        self._hits += 1
        return CacheEntry(
            key=key,
            data=data,
            metadata=meta.metadata,
            created_at=meta.created_at,
            expires_at=meta.expires_at,
            size_bytes=meta.size_bytes,
            access_count=meta.access_count,
            last_accessed_at=meta.last_accessed_at,
        )

    async def set(self, key: str, data: bytes, metadata: dict[str, Any] | None = None) -> bool:
        """Store `data` under `key`, evicting least-recently-accessed entries to stay within budget.

        Returns False when caching is disabled or the payload alone exceeds the budget.
        """
        if not self.config.enabled:
            return False
        size = len(data)
        if size > self._max_size_bytes:
            log.warning(f"Voice cache: {size} byte payload exceeds budget of {self._max_size_bytes}, not caching")
            return False

        self.directory.mkdir(parents=True, exist_ok=True)
        self._remove(key)  # replacing an entry must not count its old payload against the budget
        self._evict_for(size)

        now = self._clock()
        meta = EntryMeta(
            key=key,
            metadata=metadata or {},
            created_at=now,
            expires_at=now + self.config.ttl_seconds if self.config.ttl_seconds else None,
            size_bytes=size,
            access_count=0,
            last_accessed_at=now,
        )
        try:
            _atomic_write(self._audio_path(key), data)
            self._write_meta(key, meta)
        except OSError as e:
            log.error(f"Voice cache: failed to write entry {key}: {e}")
            self._remove(key)
            return False
        return True

    async def delete(self, key: str) -> bool:
        existed = self._audio_path(key).exists() or self._meta_path(key).exists()
        self._remove(key)
        return existed

    async def clear(self) -> None:
        for key, _ in list(self._scan()):
            self._remove(key)
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get_statistics(self) -> CacheStatistics:
        entries = [meta for _, meta in self._scan() if meta is not None]
        total_size = sum(meta.size_bytes for meta in entries)
        lookups = self._hits + self._misses
        created = [meta.created_at for meta in entries]
        return CacheStatistics(
            total_entries=len(entries),
            total_size_bytes=total_size,
            hit_rate=self._hits / lookups if lookups else 0.0,
            miss_rate=self._misses / lookups if lookups else 0.0,
            eviction_count=self._evictions,
            average_entry_size=total_size / len(entries) if entries else 0.0,
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )

    def _evict_for(self, incoming: int) -> None:
        entries = []
        for key, meta in list(self._scan()):
            if meta is None:
                self._remove(key)
                continue
            entries.append((meta.last_accessed_at, meta.created_at, key, meta.size_bytes))

        total = sum(size for *_, size in entries)
        if total + incoming <= self._max_size_bytes:
            return

        entries.sort()
        for _, _, key, size in entries:
            if total + incoming <= self._max_size_bytes:
                break
            self._remove(key)
            total -= size
            self._evictions += 1
            log.debug(f"Voice cache: evicted {key} ({size} bytes)")

    def _scan(self):
        """Yield `(key, meta)` for every entry on disk; meta is None for corrupt or orphaned entries."""
        if not self.directory.exists():
            return
        for meta_path in self.directory.glob(f"*{META_SUFFIX}"):
            key = meta_path.name.removesuffix(META_SUFFIX)
            yield key, self._read_meta(key)
        # audio files without bookkeeping are leftovers from interrupted writes
        for audio_path in self.directory.glob(f"*{AUDIO_SUFFIX}"):
            key = audio_path.name.removesuffix(AUDIO_SUFFIX)
            if not self._meta_path(key).exists():
                yield key, None

    def _read_meta(self, key: str) -> EntryMeta | None:
        path = self._meta_path(key)
        try:
            return EntryMeta.model_validate_json(path.read_bytes())
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            log.warning(f"Voice cache metadata {path.name} is corrupt: {e}")
            return None

    def _write_meta(self, key: str, meta: EntryMeta) -> None:
        _atomic_write(self._meta_path(key), meta.model_dump_json().encode("utf-8"))

    def _remove(self, key: str) -> None:
        for path in (self._audio_path(key), self._meta_path(key)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                log.warning(f"Voice cache: could not remove {path}: {e}")

    def _audio_path(self, key: str) -> Path:
        return self.directory / f"{key}{AUDIO_SUFFIX}"

    def _meta_path(self, key: str) -> Path:
        return self.directory / f"{key}{META_SUFFIX}"


def _atomic_write(path: Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)
