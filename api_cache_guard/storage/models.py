"""
Data models for storage layer.

Defines the quota counter and per-service configuration records.
"""

from dataclasses import dataclass
from typing import Optional

DEFAULT_DAILY_LIMIT = 2000


@dataclass(frozen=True)
class ApiUsage:
    """Call counter for one (service, endpoint, date, user) tuple.

    A new date produces a new counter, so there is no rollover logic.
    `user_id` of None means the global counter.
    """
    service: str
    endpoint: str
    date: str
    count: int
    user_id: Optional[str] = None


@dataclass(frozen=True)
class ApiConfig:
    """Daily ceiling and kill-switch for a metered service."""
    service: str
    daily_limit: int = DEFAULT_DAILY_LIMIT
    enabled: bool = True

    def __post_init__(self):
        """Validate the limit is not negative."""
        if self.daily_limit < 0:
            raise ValueError("daily_limit must be >= 0")
