"""
Unit tests for the file-backed response cache.

Tests JSON and binary entries, expiry, corrupt files and statistics.
"""

import json
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path

import pytest

from api_cache_guard.config.cache_config import CacheConfig
from api_cache_guard.core.cache_store import CacheStore
from api_cache_guard.core.keys import generate_cache_key


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


class TestJsonEntries:
    """Test get_cached / set_cached."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.store = CacheStore(
            base_dir=self.temp_dir,
            config=CacheConfig.from_env(environ={}),
            clock=self.clock
        )

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_round_trip(self):
        """A value is readable right after it is written."""
        value = {"places": [{"name": "Torre de Belém", "rating": 4.6}], "next": None}
        self.store.set_cached("k1", value, partition="places", ttl=60_000)
        assert self.store.get_cached("k1", partition="places") == value

    def test_entry_layout_on_disk(self):
        """Entries are <partition>/<key>.json with data, timestamp and expiresAt."""
        self.store.set_cached("k1", [1, 2, 3], partition="searches", ttl=1000)
        path = Path(self.temp_dir) / "searches" / "k1.json"
        entry = json.loads(path.read_text(encoding="utf-8"))
        assert entry == {
            "data": [1, 2, 3],
            "timestamp": self.clock.now,
            "expiresAt": self.clock.now + 1000,
        }

    def test_default_ttl_comes_from_partition(self):
        """Without ttl the partition's configured TTL applies."""
        store = CacheStore(
            base_dir=self.temp_dir,
            config=CacheConfig.from_env(environ={"CACHE_SEARCHES_TTL_HOURS": "1"}),
            clock=self.clock
        )
        store.set_cached("abc", {"x": 1}, partition="searches")
        entry = json.loads((Path(self.temp_dir) / "searches" / "abc.json").read_text())
        assert entry["expiresAt"] - entry["timestamp"] == 60 * 60 * 1000
        assert store.get_cached("abc", partition="searches") == {"x": 1}

    def test_root_partition(self):
        """partition=None stores at the cache root."""
        self.store.set_cached("rootkey", "value")
        assert (Path(self.temp_dir) / "rootkey.json").exists()
        assert self.store.get_cached("rootkey") == "value"

    def test_partitions_are_isolated(self):
        """The same key in another partition is a miss."""
        self.store.set_cached("k", 1, partition="places")
        assert self.store.get_cached("k", partition="searches") is None

    def test_missing_key_is_a_quiet_miss(self):
        """Misses return None repeatedly without raising."""
        for _ in range(3):
            assert self.store.get_cached("nope", partition="places") is None

    def test_expired_entry_is_deleted_on_read(self):
        """Past expiresAt the entry is a miss and is removed."""
        self.store.set_cached("old", {"v": 1}, partition="places", ttl=10)
        self.clock.now += 11
        assert self.store.get_cached("old", partition="places") is None
        assert not (Path(self.temp_dir) / "places" / "old.json").exists()

    def test_entry_valid_until_expiry_instant(self):
        """An entry read exactly at expiresAt is still a hit."""
        self.store.set_cached("edge", 1, partition="places", ttl=10)
        self.clock.now += 10
        assert self.store.get_cached("edge", partition="places") == 1

    def test_expiry_with_real_clock(self):
        """A 1ms TTL is gone a few milliseconds later."""
        store = CacheStore(base_dir=self.temp_dir, config=CacheConfig.from_env(environ={}))
        store.set_cached("k", {"v": 1}, partition="places", ttl=1)
        time.sleep(0.005)
        assert store.get_cached("k", partition="places") is None

    def test_corrupt_entry_is_a_miss(self, caplog):
        """Unparseable files read as a miss and log a warning."""
        directory = Path(self.temp_dir) / "places"
        directory.mkdir(parents=True)
        (directory / "bad.json").write_text("{not json", encoding="utf-8")
        with caplog.at_level(logging.WARNING):
            assert self.store.get_cached("bad", partition="places") is None
        assert "Cache read error" in caplog.text

    def test_entry_without_expiry_is_a_miss(self):
        """Valid JSON that isn't a cache entry reads as a miss."""
        directory = Path(self.temp_dir) / "places"
        directory.mkdir(parents=True)
        (directory / "odd.json").write_text(json.dumps({"data": 1}), encoding="utf-8")
        assert self.store.get_cached("odd", partition="places") is None

    def test_unserializable_value_is_not_written(self, caplog):
        """Write failures are logged, never raised."""
        with caplog.at_level(logging.WARNING):
            self.store.set_cached("k", {"handle": object()}, partition="places")
        assert self.store.get_cached("k", partition="places") is None
        assert "Cache write error" in caplog.text

    def test_unwritable_directory_does_not_raise(self, caplog):
        """A cache root that can't be created degrades to skipped writes."""
        blocker = Path(self.temp_dir) / "file"
        blocker.write_text("x")
        store = CacheStore(base_dir=blocker, config=CacheConfig.from_env(environ={}))
        with caplog.at_level(logging.WARNING):
            store.set_cached("k", 1, partition="places")
        assert store.get_cached("k", partition="places") is None

    def test_overwrite_replaces_entry(self):
        """Setting a key again replaces the value."""
        self.store.set_cached("k", 1, partition="places")
        self.store.set_cached("k", 2, partition="places")
        assert self.store.get_cached("k", partition="places") == 2

    def test_no_temp_files_left_behind(self):
        """Atomic writes clean up their temp files."""
        self.store.set_cached("k", 1, partition="places")
        assert [p.name for p in (Path(self.temp_dir) / "places").iterdir()] == ["k.json"]

    def test_unknown_partition_rejected(self):
        with pytest.raises(ValueError, match="Unknown cache partition"):
            self.store.set_cached("k", 1, partition="videos")

    @pytest.mark.parametrize("key", ["../../escaped", "a/b", "a\\b", "..", "."])
    def test_path_like_keys_rejected(self, key):
        """Keys can't address files outside their partition."""
        with pytest.raises(ValueError, match="Invalid cache key"):
            self.store.set_cached(key, {"x": 1}, partition="searches")
        with pytest.raises(ValueError, match="Invalid cache key"):
            self.store.get_cached(key, partition="searches")
        assert not (Path(self.temp_dir).parent / "escaped.json").exists()
        assert list(Path(self.temp_dir).rglob("*.json")) == []

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError, match="Invalid cache key"):
            self.store.set_cached("", 1, partition="places")

    def test_generated_key_round_trip(self):
        """Keys from generate_cache_key work as file names."""
        key = generate_cache_key({"query": "cafés", "locationBias": {"lat": 1.0, "lng": 2.0}})
        self.store.set_cached(key, ["Café A"], partition="searches")
        assert self.store.get_cached(key, partition="searches") == ["Café A"]


class TestBinaryEntries:
    """Test get_cached_binary / set_cached_binary."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.store = CacheStore(
            base_dir=self.temp_dir,
            config=CacheConfig.from_env(environ={}),
            clock=self.clock
        )
        self.images = Path(self.temp_dir) / "images"

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_round_trip(self):
        blob = b"\xff\xd8\xff\xe0" + os.urandom(64)
        self.store.set_cached_binary("photo", blob, "jpg", ttl=60_000)
        assert self.store.get_cached_binary("photo", "jpg") == blob

    def test_sidecar_layout(self):
        """Metadata and blob are sibling files keyed by the same hash."""
        self.store.set_cached_binary("photo", b"12345", "png", ttl=500)
        meta = json.loads((self.images / "photo.meta.json").read_text())
        assert meta == {
            "size": 5,
            "extension": "png",
            "timestamp": self.clock.now,
            "expiresAt": self.clock.now + 500,
        }
        assert (self.images / "photo.png").read_bytes() == b"12345"

    def test_missing_blob_is_a_miss(self):
        """Metadata without its blob reads as a miss."""
        self.store.set_cached_binary("photo", b"data", "jpg")
        (self.images / "photo.jpg").unlink()
        assert self.store.get_cached_binary("photo", "jpg") is None

    def test_missing_metadata_is_a_miss(self):
        """A blob without metadata reads as a miss."""
        self.store.set_cached_binary("photo", b"data", "jpg")
        (self.images / "photo.meta.json").unlink()
        assert self.store.get_cached_binary("photo", "jpg") is None

    def test_size_mismatch_is_a_miss(self):
        """A truncated blob doesn't agree with its metadata."""
        self.store.set_cached_binary("photo", b"full-image", "jpg")
        (self.images / "photo.jpg").write_bytes(b"full")
        assert self.store.get_cached_binary("photo", "jpg") is None

    def test_expired_removes_both_files(self):
        self.store.set_cached_binary("photo", b"data", "jpg", ttl=5)
        self.clock.now += 6
        assert self.store.get_cached_binary("photo", "jpg") is None
        assert not (self.images / "photo.jpg").exists()
        assert not (self.images / "photo.meta.json").exists()

    def test_wrong_extension_is_a_miss(self):
        self.store.set_cached_binary("photo", b"data", "jpg")
        assert self.store.get_cached_binary("photo", "png") is None

    def test_invalid_extension_rejected(self):
        with pytest.raises(ValueError, match="Invalid cache file extension"):
            self.store.set_cached_binary("photo", b"data", "../x")

    def test_path_like_binary_key_rejected(self):
        with pytest.raises(ValueError, match="Invalid cache key"):
            self.store.set_cached_binary("../photo", b"data", "jpg")
        with pytest.raises(ValueError, match="Invalid cache key"):
            self.store.get_cached_binary("../photo", "jpg")
        assert not (Path(self.temp_dir) / "photo.jpg").exists()


class TestMaintenance:
    """Test clear_expired_cache, get_cache_stats and configuration reporting."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.store = CacheStore(
            base_dir=self.temp_dir,
            config=CacheConfig.from_env(environ={}),
            clock=self.clock
        )

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_clear_expired_removes_only_expired(self):
        self.store.set_cached("fresh", 1, partition="places", ttl=1000)
        self.store.set_cached("stale", 2, partition="searches", ttl=10)
        self.clock.now += 100
        assert self.store.clear_expired_cache() == 1
        assert (Path(self.temp_dir) / "places" / "fresh.json").exists()
        assert not (Path(self.temp_dir) / "searches" / "stale.json").exists()

    def test_clear_expired_keeps_corrupt_files(self):
        """Entries whose expiry can't be read are left alone."""
        directory = Path(self.temp_dir) / "places"
        directory.mkdir(parents=True)
        corrupt = directory / "corrupt.json"
        corrupt.write_text("{{{", encoding="utf-8")
        self.clock.now += 10 ** 12
        assert self.store.get_cached("corrupt", partition="places") is None
        assert self.store.clear_expired_cache() == 0
        assert corrupt.exists()

    def test_clear_expired_skips_binary_metadata(self):
        """Image sidecars are expired on read, not by the sweep."""
        self.store.set_cached_binary("photo", b"data", "jpg", ttl=1)
        self.clock.now += 10
        assert self.store.clear_expired_cache() == 0
        assert (Path(self.temp_dir) / "images" / "photo.meta.json").exists()

    def test_clear_expired_on_empty_cache(self):
        assert self.store.clear_expired_cache() == 0

    def test_stats_per_partition(self):
        self.store.set_cached("a", {"v": "x" * 100}, partition="places")
        self.store.set_cached("b", {"v": 1}, partition="places")
        self.store.set_cached_binary("photo", b"0123456789", "jpg")

        stats = self.store.get_cache_stats()
        assert stats.by_partition["places"].files == 2
        assert stats.by_partition["images"].files == 2
        assert stats.by_partition["searches"].files == 0
        assert stats.total_files == 4
        places_dir = Path(self.temp_dir) / "places"
        assert stats.by_partition["places"].size == sum(p.stat().st_size for p in places_dir.iterdir())
        assert stats.total_size == sum(s.size for s in stats.by_partition.values())

    def test_stats_to_dict(self):
        self.store.set_cached("a", 1, partition="searches")
        data = self.store.get_cache_stats().to_dict()
        assert data["totalFiles"] == 1
        assert data["byPartition"]["searches"]["files"] == 1
        assert data["totalSizeMB"] == "0.00"

    def test_configuration_report(self):
        config = self.store.get_cache_configuration()
        assert config["base_dir"] == self.temp_dir
        assert config["is_custom_dir"] is True
        assert config["ttls"] == {"places": 8760, "images": 8760, "searches": 8760}

    def test_base_dir_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CACHE_BASE_DIR", str(tmp_path / "env-cache"))
        store = CacheStore(config=CacheConfig.from_env(environ={}))
        store.set_cached("k", 1, partition="places")
        assert (tmp_path / "env-cache" / "places" / "k.json").exists()
        assert store.is_custom_dir is True
