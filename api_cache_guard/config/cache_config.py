"""
Cache TTL configuration.

Resolves per-partition time-to-live values from environment overrides,
defaulting to one year for maximum cost savings.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 8760  # 365 days
LONG_TTL_WARNING_HOURS = DEFAULT_TTL_HOURS * 10

PARTITIONS = ("places", "images", "searches")
DEFAULT_PARTITION = "default"

TTL_ENV_VARS = {
    "places": "CACHE_PLACES_TTL_HOURS",
    "images": "CACHE_IMAGES_TTL_HOURS",
    "searches": "CACHE_SEARCHES_TTL_HOURS",
}

BASE_DIR_ENV_VAR = "CACHE_BASE_DIR"


def hours_to_ms(hours: int) -> int:
    """Convert hours to milliseconds."""
    return hours * 60 * 60 * 1000


@dataclass(frozen=True)
class PartitionTTL:
    """TTL setting for one cache partition."""
    hours: int
    description: str

    @property
    def ttl_ms(self) -> int:
        """TTL in milliseconds."""
        return hours_to_ms(self.hours)


@dataclass(frozen=True)
class CacheConfig:
    """Resolved TTLs for every cache partition."""
    places: PartitionTTL
    images: PartitionTTL
    searches: PartitionTTL
    default: PartitionTTL

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        log: Optional[logging.Logger] = None
    ) -> "CacheConfig":
        """Build the configuration from environment overrides.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            log: Logger receiving validation warnings

        Returns:
            Resolved CacheConfig
        """
        env = os.environ if environ is None else environ
        log = log or logger
        hours = {
            name: _read_hours(env, var, name, log)
            for name, var in TTL_ENV_VARS.items()
        }
        return cls(
            places=PartitionTTL(hours["places"], "Place details (name, rating, address, etc.)"),
            images=PartitionTTL(hours["images"], "Place photos and images"),
            searches=PartitionTTL(hours["searches"], "Search results and geocoding"),
            default=PartitionTTL(DEFAULT_TTL_HOURS, "General cache default"),
        )

    @classmethod
    def from_hours(cls, **hours: int) -> "CacheConfig":
        """Build a configuration from explicit hours per partition.

        Partitions not given keep the default TTL.
        """
        unknown = set(hours) - set(PARTITIONS)
        if unknown:
            raise ValueError(f"Unknown cache partitions: {unknown}")
        base = cls.from_env(environ={})
        return cls(
            places=PartitionTTL(
                validate_cache_ttl(hours.get("places", DEFAULT_TTL_HOURS), "places"),
                base.places.description
            ),
            images=PartitionTTL(
                validate_cache_ttl(hours.get("images", DEFAULT_TTL_HOURS), "images"),
                base.images.description
            ),
            searches=PartitionTTL(
                validate_cache_ttl(hours.get("searches", DEFAULT_TTL_HOURS), "searches"),
                base.searches.description
            ),
            default=base.default,
        )

    def get(self, partition: Optional[str]) -> PartitionTTL:
        """Get the TTL setting for a partition (None means default)."""
        name = partition or DEFAULT_PARTITION
        if name not in PARTITIONS and name != DEFAULT_PARTITION:
            raise ValueError(f"Unknown cache partition: {partition}")
        return getattr(self, name)

    def ttl_ms(self, partition: Optional[str]) -> int:
        """Get the TTL of a partition in milliseconds."""
        return self.get(partition).ttl_ms


def _read_hours(env: Mapping[str, str], var: str, kind: str, log: logging.Logger) -> int:
    raw = env.get(var)
    if raw is None or raw.strip() == "":
        return DEFAULT_TTL_HOURS
    try:
        hours = int(raw.strip())
    except ValueError:
        log.warning("Invalid %s cache TTL %r in %s. Using default.", kind, raw, var)
        return DEFAULT_TTL_HOURS
    return validate_cache_ttl(hours, kind, log)


def validate_cache_ttl(hours: int, kind: str, log: Optional[logging.Logger] = None) -> int:
    """Validate a TTL in hours.

    Negative values are replaced by the default. Values above ten years are
    kept but flagged.

    Args:
        hours: TTL in hours
        kind: Partition name for the warning message
        log: Logger receiving warnings

    Returns:
        The hours to use
    """
    log = log or logger
    if hours < 0:
        log.warning("Invalid %s cache TTL: %s. Must be positive. Using default.", kind, hours)
        return DEFAULT_TTL_HOURS
    if hours > LONG_TTL_WARNING_HOURS:
        log.warning("Very long %s cache TTL: %s hours. Consider if this is intentional.", kind, hours)
    return hours


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'}"


def format_ttl(hours: int) -> str:
    """Render a TTL in hours as "N hours", "N days" or "N years N days"."""
    if hours < 24:
        return _plural(hours, "hour")
    days = hours // 24
    if days < 365:
        return _plural(days, "day")
    years, remaining_days = divmod(days, 365)
    if remaining_days == 0:
        return _plural(years, "year")
    return f"{_plural(years, 'year')} {_plural(remaining_days, 'day')}"


def get_cache_config_info(config: CacheConfig) -> Dict[str, Dict[str, str]]:
    """Human-readable TTL per partition, for reporting."""
    return {
        name: {
            "ttl": format_ttl(config.get(name).hours),
            "description": config.get(name).description,
        }
        for name in PARTITIONS
    }


def resolve_cache_base_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Cache root from CACHE_BASE_DIR, or ./.cache under the working directory."""
    env = os.environ if environ is None else environ
    custom = env.get(BASE_DIR_ENV_VAR)
    if custom:
        return Path(custom).expanduser().resolve()
    return Path.cwd() / ".cache"


@dataclass(frozen=True)
class CachePreset:
    """Suggested TTL hours per partition for an environment."""
    places: int
    images: int
    searches: int
    description: str

    def to_config(self) -> CacheConfig:
        """Build a CacheConfig using this preset's hours."""
        return CacheConfig.from_hours(
            places=self.places,
            images=self.images,
            searches=self.searches
        )


# Suggestions only, never applied automatically
CACHE_PRESETS: Dict[str, CachePreset] = {
    "development": CachePreset(
        places=1,
        images=24,
        searches=1,
        description="Short cache for development/testing"
    ),
    "staging": CachePreset(
        places=168,
        images=720,
        searches=24,
        description="Medium cache for staging environment"
    ),
    "production": CachePreset(
        places=8760,
        images=8760,
        searches=8760,
        description="Long cache for production (maximum cost savings)"
    ),
    "production-conservative": CachePreset(
        places=720,
        images=2160,
        searches=168,
        description="Conservative production cache with regular refreshes"
    ),
}
