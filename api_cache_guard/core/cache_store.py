"""
File-backed response cache.

Stores JSON payloads and binary blobs (images) per key under named
partitions, with the expiry instant embedded in each entry. Every failure
degrades to a miss or a skipped write; the cache never breaks the caller.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from ..config.cache_config import (
    BASE_DIR_ENV_VAR,
    PARTITIONS,
    CacheConfig,
    resolve_cache_base_dir,
)


IMAGES_PARTITION = "images"
META_SUFFIX = ".meta.json"

_MB = 1024 * 1024


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PartitionStats:
    """File count and byte size of one partition."""
    files: int = 0
    size: int = 0


@dataclass
class CacheStats:
    """Aggregate cache footprint."""
    total_files: int = 0
    total_size: int = 0
    by_partition: Dict[str, PartitionStats] = field(default_factory=dict)

    def add(self, partition: str, stats: PartitionStats) -> None:
        self.by_partition[partition] = stats
        self.total_files += stats.files
        self.total_size += stats.size

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form with megabyte sizes for display."""
        return {
            "totalFiles": self.total_files,
            "totalSize": self.total_size,
            "totalSizeMB": f"{self.total_size / _MB:.2f}",
            "byPartition": {
                name: {
                    "files": stats.files,
                    "size": stats.size,
                    "sizeMB": f"{stats.size / _MB:.2f}",
                }
                for name, stats in self.by_partition.items()
            },
        }


class CacheStore:
    """Key-value cache persisted as one file per entry.

    JSON entries live at ``<base>/<partition>/<key>.json`` and hold
    ``{data, timestamp, expiresAt}`` (epoch milliseconds). Binary entries
    are split into ``<key>.meta.json`` and ``<key>.<ext>`` in the images
    partition. Expired entries are deleted lazily when read.
    """

    def __init__(
        self,
        base_dir: Optional[Union[str, Path]] = None,
        config: Optional[CacheConfig] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        """Initialize the store.

        Args:
            base_dir: Cache root (defaults to CACHE_BASE_DIR or ./.cache)
            config: TTL configuration (defaults to environment overrides)
            logger: Logger receiving hit/miss and failure records
            clock: Returns the current time in epoch milliseconds
        """
        self.is_custom_dir = base_dir is not None or bool(os.environ.get(BASE_DIR_ENV_VAR))
        self.base_dir = Path(base_dir) if base_dir is not None else resolve_cache_base_dir()
        self.log = logger or logging.getLogger(__name__)
        self.config = config or CacheConfig.from_env(log=self.log)
        self._clock = clock or _now_ms

    # ------------------------------------------------------------------ #
    # JSON entries
    # ------------------------------------------------------------------ #
    def get_cached(self, key: str, partition: Optional[str] = None) -> Optional[Any]:
        """Read a cached payload.

        Args:
            key: Cache key (see generate_cache_key)
            partition: One of places, images, searches, or None for the root

        Returns:
            The cached data, or None on a miss, an unreadable entry, or expiry

        Raises:
            ValueError: If the key is not a plain file name or the partition is unknown
        """
        path = self._partition_dir(partition) / f"{_check_key(key)}.json"
        entry = self._read_entry(path, key)
        if entry is None:
            return None

        if self._clock() > entry["expiresAt"]:
            self.log.info("Cache expired for key: %s", key)
            self._remove(path)
            return None

        self.log.debug("Cache hit for key: %s", key)
        return entry.get("data")

    def set_cached(
        self,
        key: str,
        data: Any,
        partition: Optional[str] = None,
        ttl: Optional[int] = None
    ) -> None:
        """Store a payload with an expiry instant.

        Write failures are logged and swallowed.

        Args:
            key: Cache key
            data: JSON-serializable payload
            partition: Target partition, or None for the root
            ttl: Time to live in milliseconds (defaults to the partition TTL)

        Raises:
            ValueError: If the key is not a plain file name or the partition is unknown
        """
        directory = self._partition_dir(partition)
        _check_key(key)
        ttl_ms = self.config.ttl_ms(partition) if ttl is None else ttl
        now = self._clock()
        entry = {"data": data, "timestamp": now, "expiresAt": now + ttl_ms}
        try:
            content = json.dumps(entry, indent=2)
            self._atomic_write(directory / f"{key}.json", content.encode("utf-8"))
        except (OSError, TypeError, ValueError):
            self.log.warning("Cache write error for key: %s", key, exc_info=True)
            return
        self.log.debug("Cache set for key: %s, expires in %sms", key, ttl_ms)

    # ------------------------------------------------------------------ #
    # Binary entries
    # ------------------------------------------------------------------ #
    def get_cached_binary(self, key: str, extension: str = "jpg") -> Optional[bytes]:
        """Read a cached blob.

        Both the metadata sidecar and the blob must exist, the metadata must
        be unexpired, and the blob size must match what the metadata
        recorded; anything else is a miss.

        Args:
            key: Cache key
            extension: Blob file extension

        Returns:
            The blob bytes, or None
        """
        directory = self._partition_dir(IMAGES_PARTITION)
        meta_path = directory / f"{_check_key(key)}{META_SUFFIX}"
        blob_path = directory / f"{key}.{_check_extension(extension)}"

        meta = self._read_entry(meta_path, key)
        if meta is None:
            return None

        if self._clock() > meta["expiresAt"]:
            self.log.info("Image cache expired for key: %s", key)
            self._remove(meta_path)
            self._remove(blob_path)
            return None

        try:
            blob = blob_path.read_bytes()
        except FileNotFoundError:
            self.log.debug("Image cache blob missing for key: %s", key)
            return None
        except OSError:
            self.log.warning("Binary cache read error for key: %s", key, exc_info=True)
            return None

        if meta.get("size") is not None and meta["size"] != len(blob):
            self.log.warning(
                "Image cache size mismatch for key: %s (%s != %s)", key, meta["size"], len(blob)
            )
            return None

        self.log.debug("Image cache hit for key: %s", key)
        return blob

    def set_cached_binary(
        self,
        key: str,
        data: bytes,
        extension: str = "jpg",
        ttl: Optional[int] = None
    ) -> None:
        """Store a blob plus its metadata sidecar.

        The blob is written before the metadata, so a sidecar never points
        at a blob that was not fully written.

        Args:
            key: Cache key
            data: Raw bytes
            extension: Blob file extension
            ttl: Time to live in milliseconds (defaults to the images TTL)
        """
        directory = self._partition_dir(IMAGES_PARTITION)
        ext = _check_extension(extension)
        _check_key(key)
        ttl_ms = self.config.ttl_ms(IMAGES_PARTITION) if ttl is None else ttl
        now = self._clock()
        meta = {
            "size": len(data),
            "extension": ext,
            "timestamp": now,
            "expiresAt": now + ttl_ms,
        }
        try:
            self._atomic_write(directory / f"{key}.{ext}", bytes(data))
            self._atomic_write(
                directory / f"{key}{META_SUFFIX}",
                json.dumps(meta, indent=2).encode("utf-8")
            )
        except (OSError, TypeError):
            self.log.warning("Binary cache write error for key: %s", key, exc_info=True)
            return
        self.log.debug("Image cached for key: %s, expires in %sms", key, ttl_ms)

    # ------------------------------------------------------------------ #
    # Maintenance and reporting
    # ------------------------------------------------------------------ #
    def clear_expired_cache(self) -> int:
        """Delete expired JSON entries from every partition.

        Entries that can't be parsed are left in place.

        Returns:
            Number of entries removed
        """
        removed = 0
        now = self._clock()
        for partition in PARTITIONS:
            directory = self.base_dir / partition
            try:
                files = sorted(directory.iterdir())
            except FileNotFoundError:
                continue
            except OSError:
                self.log.warning("Cannot scan cache partition %s", partition, exc_info=True)
                continue

            for path in files:
                if not path.name.endswith(".json") or path.name.endswith(META_SUFFIX):
                    continue
                try:
                    entry = json.loads(path.read_text(encoding="utf-8"))
                    expires_at = entry["expiresAt"]
                except (OSError, ValueError, TypeError, KeyError):
                    continue
                if not isinstance(expires_at, (int, float)) or expires_at >= now:
                    continue
                try:
                    path.unlink()
                except OSError:
                    self.log.warning("Could not remove expired cache file %s", path, exc_info=True)
                    continue
                removed += 1
                self.log.info("Removed expired cache: %s/%s", partition, path.name)
        return removed

    def get_cache_stats(self) -> CacheStats:
        """Count files and bytes per partition."""
        stats = CacheStats()
        for partition in PARTITIONS:
            partition_stats = PartitionStats()
            directory = self.base_dir / partition
            try:
                for path in directory.iterdir():
                    if path.is_file():
                        partition_stats.files += 1
                        partition_stats.size += path.stat().st_size
            except FileNotFoundError:
                partition_stats = PartitionStats()
            except OSError:
                self.log.warning("Cannot read cache partition %s", partition, exc_info=True)
                partition_stats = PartitionStats()
            stats.add(partition, partition_stats)
        return stats

    def get_cache_configuration(self) -> Dict[str, Any]:
        """Report the cache directory and the TTL hours in effect."""
        return {
            "base_dir": str(self.base_dir),
            "is_custom_dir": self.is_custom_dir,
            "ttls": {name: self.config.get(name).hours for name in PARTITIONS},
        }

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _partition_dir(self, partition: Optional[str]) -> Path:
        if partition is None:
            return self.base_dir
        if partition not in PARTITIONS:
            raise ValueError(f"Unknown cache partition: {partition}")
        return self.base_dir / partition

    def _read_entry(self, path: Path, key: str) -> Optional[Dict[str, Any]]:
        try:
            entry = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            self.log.debug("Cache miss for key: %s", key)
            return None
        except (OSError, ValueError):
            self.log.warning("Cache read error for key: %s", key, exc_info=True)
            return None

        if not isinstance(entry, dict) or not isinstance(entry.get("expiresAt"), (int, float)):
            self.log.warning("Malformed cache entry for key: %s", key)
            return None
        return entry

    def _remove(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            self.log.debug("Could not remove cache file %s", path, exc_info=True)

    @staticmethod
    def _atomic_write(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "wb") as fp:
                fp.write(content)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)


def _check_extension(extension: str) -> str:
    ext = extension.lstrip(".")
    if not ext or not ext.isalnum():
        raise ValueError(f"Invalid cache file extension: {extension!r}")
    return ext.lower()


def _check_key(key: str) -> str:
    if not key or key in (".", "..") or "/" in key or "\\" in key or "\0" in key:
        raise ValueError(f"Invalid cache key: {key!r}")
    return key

