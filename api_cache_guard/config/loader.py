"""
Configuration file loading.

Reads service quotas and cache settings from a YAML file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

import yaml

from .cache_config import PARTITIONS, CacheConfig

if TYPE_CHECKING:
    from ..core.quota import QuotaTracker


@dataclass(frozen=True)
class ServiceLimitConfig:
    """Daily limit and kill-switch for one service."""
    daily_limit: int
    enabled: bool = True

    def __post_init__(self):
        """Validate the limit is not negative."""
        if self.daily_limit < 0:
            raise ValueError("daily_limit must be >= 0")


@dataclass(frozen=True)
class CacheFileSettings:
    """Cache settings from the file; None means use the environment."""
    base_dir: Optional[str] = None
    ttl_hours: Dict[str, int] = field(default_factory=dict)

    def to_cache_config(self) -> CacheConfig:
        """Build a CacheConfig, environment overrides for partitions not listed."""
        if not self.ttl_hours:
            return CacheConfig.from_env()
        env = CacheConfig.from_env()
        hours = {name: env.get(name).hours for name in PARTITIONS}
        hours.update(self.ttl_hours)
        return CacheConfig.from_hours(**hours)


@dataclass(frozen=True)
class QuotaFileConfig:
    """Complete file configuration."""
    services: Dict[str, ServiceLimitConfig]
    cache: CacheFileSettings

    def get_service_config(self, service: str) -> Optional[ServiceLimitConfig]:
        """Get the configured limit for a service, if the file lists it."""
        return self.services.get(service)


def load_quota_config(path: str) -> QuotaFileConfig:
    """Load and validate quota configuration from YAML file.

    Strict validation ensures a typo can't silently leave a service
    unlimited or a cache without its intended TTL.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated QuotaFileConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Quota config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'services', 'cache'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    # Parse and validate services
    services_data = raw_config.get('services') or {}
    if not isinstance(services_data, dict):
        raise ValueError("'services' must be a dictionary")

    services = {}
    for service_name, service_data in services_data.items():
        if not isinstance(service_data, dict):
            raise ValueError(f"Service '{service_name}' must be a dictionary")
        services[str(service_name)] = _parse_service_config(service_data, f"services.{service_name}")

    # Parse and validate cache
    cache_data = raw_config.get('cache') or {}
    if not isinstance(cache_data, dict):
        raise ValueError("'cache' must be a dictionary")

    return QuotaFileConfig(
        services=services,
        cache=_parse_cache_settings(cache_data)
    )


def _parse_service_config(data: Dict, path: str) -> ServiceLimitConfig:
    """Parse and validate one service's limit configuration.

    Args:
        data: Service configuration data
        path: Path for error messages

    Returns:
        Validated ServiceLimitConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'daily_limit', 'enabled'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'daily_limit' not in data:
        raise ValueError(f"Missing required 'daily_limit' in {path}")

    daily_limit = data['daily_limit']
    if isinstance(daily_limit, bool) or not isinstance(daily_limit, int) or daily_limit < 0:
        raise ValueError(f"'daily_limit' in {path} must be an integer >= 0")

    enabled = data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ValueError(f"'enabled' in {path} must be a boolean")

    return ServiceLimitConfig(daily_limit=daily_limit, enabled=enabled)


def _parse_cache_settings(data: Dict) -> CacheFileSettings:
    """Parse and validate the cache section.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'base_dir', 'ttl_hours'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in cache: {unknown_keys}")

    base_dir = data.get('base_dir')
    if base_dir is not None and not isinstance(base_dir, str):
        raise ValueError("'base_dir' in cache must be a string")

    ttl_data = data.get('ttl_hours') or {}
    if not isinstance(ttl_data, dict):
        raise ValueError("'ttl_hours' in cache must be a dictionary")

    unknown_partitions = set(ttl_data.keys()) - set(PARTITIONS)
    if unknown_partitions:
        valid_partitions: List[str] = list(PARTITIONS)
        raise ValueError(f"Unknown cache partitions {unknown_partitions}, expected: {valid_partitions}")

    ttl_hours = {}
    for partition, hours in ttl_data.items():
        if isinstance(hours, bool) or not isinstance(hours, int) or hours < 0:
            raise ValueError(f"'ttl_hours.{partition}' in cache must be an integer >= 0")
        ttl_hours[partition] = hours

    return CacheFileSettings(base_dir=base_dir, ttl_hours=ttl_hours)


def apply_service_limits(tracker: "QuotaTracker", config: QuotaFileConfig) -> None:
    """Store every service limit from the file through the tracker.

    Args:
        tracker: Tracker whose repository receives the configs
        config: Loaded file configuration
    """
    for service, limits in config.services.items():
        tracker.update_config(service, daily_limit=limits.daily_limit, enabled=limits.enabled)
