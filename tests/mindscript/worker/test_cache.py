"""Tests for the file-backed voice cache."""

import json

import pytest

from mindscript.worker.cache import CacheConfig, VoiceCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def cache(tmp_path, clock):
    cache = VoiceCache(CacheConfig(path=tmp_path / "voice", ttl_seconds=60), clock=clock)
    await cache.initialize()
    yield cache


def test_key_is_deterministic_and_canonical():
    a = VoiceCache.generate_key(text="Breathe in", voice="alloy", model="tts-1", provider="openai", speed=1)
    b = VoiceCache.generate_key(text="Breathe in", voice="alloy", model="tts-1", provider="openai", speed=1.0)
    assert a == b
    assert len(a) == 64


@pytest.mark.parametrize(
    "change",
    [
        {"text": "Breathe out"},
        {"voice": "nova"},
        {"model": "tts-1-hd"},
        {"provider": "elevenlabs"},
        {"speed": 1.25},
        {"pitch": 0.9},
        {"fmt": "wav"},
    ],
)
def test_key_changes_with_any_parameter(change):
    base = {"text": "Breathe in", "voice": "alloy", "model": "tts-1", "provider": "openai"}
    assert VoiceCache.generate_key(**base) != VoiceCache.generate_key(**(base | change))


class TestVoiceCache:
    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        assert await cache.set("k1", b"audio-bytes", {"voice": "alloy"})

        entry = await cache.get("k1")
        assert entry is not None
        assert entry.data == b"audio-bytes"
        assert entry.metadata == {"voice": "alloy"}
        assert entry.size_bytes == len(b"audio-bytes")
        assert entry.access_count == 1

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, cache):
        assert await cache.get("missing") is None
        stats = await cache.get_statistics()
        assert stats.miss_rate == 1.0

    @pytest.mark.asyncio
    async def test_expired_entry_is_removed(self, cache, clock):
        await cache.set("k1", b"data")
        clock.now += 61
        assert await cache.get("k1") is None
        assert (await cache.get_statistics()).total_entries == 0

    @pytest.mark.asyncio
    async def test_entries_without_ttl_never_expire(self, tmp_path, clock):
        cache = VoiceCache(CacheConfig(path=tmp_path / "forever", ttl_seconds=None), clock=clock)
        await cache.set("k1", b"data")
        clock.now += 10 * 365 * 24 * 3600
        assert (await cache.get("k1")).data == b"data"

    @pytest.mark.asyncio
    async def test_evicts_least_recently_accessed(self, cache, clock):
        cache._max_size_bytes = 30
        await cache.set("old", b"a" * 10)
        clock.now += 1
        await cache.set("middle", b"b" * 10)
        clock.now += 1
        await cache.set("newest", b"c" * 10)
        clock.now += 1
        await cache.get("old")  # now the most recently used

        clock.now += 1
        await cache.set("incoming", b"d" * 10)

        assert await cache.get("middle") is None
        assert await cache.get("old") is not None
        stats = await cache.get_statistics()
        assert stats.total_size_bytes <= 30
        assert stats.eviction_count == 1

    @pytest.mark.asyncio
    async def test_payload_over_budget_is_rejected(self, cache):
        cache._max_size_bytes = 8
        assert not await cache.set("big", b"x" * 9)
        assert await cache.get("big") is None

    @pytest.mark.asyncio
    async def test_replacing_entry_does_not_double_count(self, cache):
        cache._max_size_bytes = 20
        await cache.set("a", b"1" * 10)
        await cache.set("b", b"2" * 10)
        await cache.set("a", b"3" * 10)

        stats = await cache.get_statistics()
        assert stats.eviction_count == 0
        assert stats.total_entries == 2
        assert (await cache.get("a")).data == b"3" * 10

    @pytest.mark.asyncio
    async def test_corrupt_metadata_is_a_miss(self, cache):
        await cache.set("k1", b"data")
        (cache.directory / "k1.json").write_text("{not json")
        assert await cache.get("k1") is None
        assert not (cache.directory / "k1.audio").exists()

    @pytest.mark.asyncio
    async def test_mistyped_metadata_is_a_miss(self, cache):
        await cache.set("k1", b"abc")
        meta_path = cache.directory / "k1.json"
        meta = json.loads(meta_path.read_text())
        meta["access_count"] = "oops"
        meta_path.write_text(json.dumps(meta))

        assert await cache.get("k1") is None
        assert not (cache.directory / "k1.audio").exists()
        assert not meta_path.exists()
        assert (await cache.get_statistics()).miss_rate == 1.0

    @pytest.mark.asyncio
    async def test_mistyped_metadata_does_not_break_eviction(self, tmp_path, clock):
        cache = VoiceCache(CacheConfig(path=tmp_path / "voice"), clock=clock)
        cache._max_size_bytes = 10
        await cache.set("a", b"1" * 6)
        meta_path = cache.directory / "a.json"
        meta = json.loads(meta_path.read_text())
        meta["last_accessed_at"] = "yesterday"
        meta_path.write_text(json.dumps(meta))

        assert await cache.set("b", b"2" * 6)
        assert (await cache.get("b")).data == b"2" * 6
        assert not meta_path.exists()

    @pytest.mark.asyncio
    async def test_truncated_payload_is_a_miss(self, cache):
        await cache.set("k1", b"0123456789")
        (cache.directory / "k1.audio").write_bytes(b"0123")
        assert await cache.get("k1") is None

    @pytest.mark.asyncio
    async def test_initialize_drops_expired_and_orphaned_entries(self, tmp_path, clock):
        directory = tmp_path / "voice"
        cache = VoiceCache(CacheConfig(path=directory, ttl_seconds=60), clock=clock)
        clock.now -= 100
        await cache.set("stale", b"data")
        clock.now += 100
        await cache.set("fresh", b"data")
        (directory / "orphan.audio").write_bytes(b"leftover")

        restarted = VoiceCache(CacheConfig(path=directory, ttl_seconds=60), clock=clock)
        assert await restarted.initialize() == 2
        assert await restarted.get("fresh") is not None
        assert await restarted.get("stale") is None

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, cache):
        await cache.set("a", b"1")
        await cache.set("b", b"2")
        assert await cache.delete("a")
        assert not await cache.delete("a")

        await cache.clear()
        stats = await cache.get_statistics()
        assert stats.total_entries == 0
        assert stats.hit_rate == 0.0

    @pytest.mark.asyncio
    async def test_disabled_cache_is_a_no_op(self, tmp_path):
        cache = VoiceCache(CacheConfig(path=tmp_path / "off", enabled=False))
        assert not await cache.set("k", b"data")
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_statistics(self, cache, clock):
        await cache.set("a", b"1" * 4)
        clock.now += 5
        await cache.set("b", b"2" * 8)
        await cache.get("a")
        await cache.get("zzz")

        stats = await cache.get_statistics()
        assert stats.total_entries == 2
        assert stats.total_size_bytes == 12
        assert stats.average_entry_size == 6
        assert stats.hit_rate == 0.5
        assert stats.oldest_entry == clock.now - 5
        assert stats.newest_entry == clock.now
