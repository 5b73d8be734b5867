"""
Daily API quota tracking and enforcement.

Counts metered calls per (service, endpoint, day, user) and rejects calls
once a service's daily limit is reached or the service is disabled.

Enforcement Order:
1. Service enabled - A disabled service rejects every call
2. Daily limit - Usage re-read right before the increment must be below the limit
3. Increment - Bookkeeping failures are logged, never raised
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, MutableMapping, Optional

from ..storage.models import DEFAULT_DAILY_LIMIT, ApiConfig, ApiUsage
from ..storage.repository import UsageRepository

GOOGLE_MAPS_SERVICE = "google-maps"
GLOBAL_USER_KEY = "global"


class ApiLimitError(Exception):
    """Raised when a metered call would exceed its daily limit or the service is disabled.

    Carries enough context for the caller to tell the user the feature is
    temporarily unavailable rather than failing generically.
    """
    def __init__(self, service: str, endpoint: str, current_usage: int, daily_limit: int, disabled: bool = False):
        if disabled:
            message = f"API service {service} is disabled"
        else:
            message = f"Daily API limit exceeded for {service}:{endpoint}"
        super().__init__(message)
        self.service = service
        self.endpoint = endpoint
        self.current_usage = current_usage
        self.daily_limit = daily_limit
        self.disabled = disabled

    @property
    def is_disabled(self) -> bool:
        """True when the rejection comes from the kill-switch."""
        return self.disabled

    @property
    def remaining(self) -> int:
        """Calls left today (always 0 when raised for the limit)."""
        return max(0, self.daily_limit - self.current_usage)


@dataclass(frozen=True)
class UsageOptions:
    """Identifies the counter a metered call belongs to."""
    service: str
    endpoint: str
    user_id: Optional[str] = None


@dataclass
class UsageStats:
    """Usage of one service over a trailing window of days."""
    daily_usage: List[ApiUsage] = field(default_factory=list)
    total_usage: int = 0
    config: ApiConfig = field(default_factory=lambda: ApiConfig(service=""))

    def today_usage(self, today: str) -> int:
        """Total calls across endpoints on the given day."""
        return sum(record.count for record in self.daily_usage if record.date == today)

    def remaining(self, today: str) -> int:
        """Calls left on the given day."""
        return max(0, self.config.daily_limit - self.today_usage(today))

    def percent_used(self, today: str) -> int:
        """Share of the daily limit consumed on the given day, rounded."""
        if self.config.daily_limit == 0:
            return 100
        return round(self.today_usage(today) / self.config.daily_limit * 100)

    def daily_breakdown(self) -> List[Dict]:
        """Per-day endpoint counts, newest day first."""
        by_date: Dict[str, Dict] = {}
        for record in self.daily_usage:
            day = by_date.setdefault(
                record.date, {"date": record.date, "endpoints": {}, "total_calls": 0}
            )
            day["endpoints"][record.endpoint] = day["endpoints"].get(record.endpoint, 0) + record.count
            day["total_calls"] += record.count
        return sorted(by_date.values(), key=lambda day: day["date"], reverse=True)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaTracker:
    """Tracks per-day API calls against per-service limits.

    The in-memory usage cache only accelerates reads for `check_limit`;
    `track_api_call` always re-reads the persistent counter before deciding.
    Concurrent callers can still race between that read and the increment,
    so the count may briefly overshoot by the number of racing requests
    minus one. Pass ``strict=True`` to make the increment itself conditional
    on the limit instead.

    One tracker may be shared across threads; access to the usage cache is
    serialized by an internal lock.
    """

    def __init__(
        self,
        repository: UsageRepository,
        *,
        cache: Optional[MutableMapping[str, int]] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
        strict: bool = False
    ):
        """Initialize the tracker.

        Args:
            repository: Persistent store for counters and configs
            cache: Usage read cache keyed by service:endpoint:date:user
            logger: Logger receiving swallowed bookkeeping failures
            clock: Returns the current UTC datetime
            strict: Enforce the limit with an atomic conditional increment
        """
        self.repository = repository
        self.cache: MutableMapping[str, int] = {} if cache is None else cache
        self.log = logger or logging.getLogger(__name__)
        self._clock = clock or _utc_now
        self.strict = strict
        self._lock = threading.Lock()

    def today(self) -> str:
        """Today's date (UTC) in YYYY-MM-DD format."""
        return self._clock().astimezone(timezone.utc).date().isoformat()

    @staticmethod
    def cache_key(service: str, endpoint: str, date: str, user_id: Optional[str] = None) -> str:
        """Usage cache key for a counter."""
        return f"{service}:{endpoint}:{date}:{user_id or GLOBAL_USER_KEY}"

    def get_api_config(self, service: str) -> ApiConfig:
        """Read a service config, storing the defaults on first access.

        Args:
            service: Service name

        Returns:
            The stored config, or the defaults (not stored) if the store fails
        """
        try:
            return self.repository.get_or_create_config(service)
        except sqlite3.Error:
            self.log.error("Error getting API config for %s", service, exc_info=True)
            return ApiConfig(service=service, daily_limit=DEFAULT_DAILY_LIMIT, enabled=True)

    def get_current_usage(
        self,
        service: str,
        endpoint: str,
        date: str,
        user_id: Optional[str] = None
    ) -> int:
        """Read a counter through the usage cache.

        Args:
            service: Service name
            endpoint: Endpoint name
            date: Day in YYYY-MM-DD format
            user_id: Optional user, None for the global counter

        Returns:
            The count, or 0 if absent or unreadable
        """
        key = self.cache_key(service, endpoint, date, user_id)
        with self._lock:
            cached = self.cache.get(key)
        if cached is not None:
            return cached
        return self._read_usage(service, endpoint, date, user_id)

    def check_limit(self, options: UsageOptions) -> bool:
        """Whether a call is allowed right now. Does not record anything.

        Args:
            options: Counter identity

        Returns:
            True if the service is enabled and today's usage is below the limit
        """
        config = self.get_api_config(options.service)
        if not config.enabled:
            return False
        usage = self.get_current_usage(options.service, options.endpoint, self.today(), options.user_id)
        return usage < config.daily_limit

    def track_api_call(self, options: UsageOptions) -> None:
        """Record one metered call.

        Enablement and usage are re-validated against the persistent store
        first; a rejection raises and leaves the counter untouched. A
        failure while incrementing is logged and swallowed.

        Args:
            options: Counter identity

        Raises:
            ApiLimitError: If the service is disabled or the limit is reached
        """
        service, endpoint, user_id = options.service, options.endpoint, options.user_id
        today = self.today()
        key = self.cache_key(service, endpoint, today, user_id)

        config = self.get_api_config(service)
        if not config.enabled:
            raise ApiLimitError(service, endpoint, 0, config.daily_limit, disabled=True)

        current_usage = self._read_usage(service, endpoint, today, user_id)
        if current_usage >= config.daily_limit:
            raise ApiLimitError(service, endpoint, current_usage, config.daily_limit)

        try:
            new_count = self.repository.increment_usage(
                service,
                endpoint,
                today,
                user_id,
                limit=config.daily_limit if self.strict else None
            )
        except sqlite3.Error:
            self.log.error("Error tracking API call for %s:%s", service, endpoint, exc_info=True)
            return

        if new_count is None:
            # Refused by the conditional increment: another caller took the last slot
            current_usage = self._read_usage(service, endpoint, today, user_id)
            raise ApiLimitError(service, endpoint, current_usage, config.daily_limit)

        with self._lock:
            self.cache[key] = new_count

    def update_config(
        self,
        service: str,
        daily_limit: Optional[int] = None,
        enabled: Optional[bool] = None
    ) -> ApiConfig:
        """Create or update a service config.

        Today's cached counters of the service are evicted so the next check
        reads fresh values.

        Args:
            service: Service name
            daily_limit: New daily limit
            enabled: New enabled flag

        Returns:
            The stored config

        Raises:
            ValueError: If daily_limit is negative
            sqlite3.Error: If the store fails (logged first)
        """
        if daily_limit is not None and daily_limit < 0:
            raise ValueError("daily_limit must be >= 0")
        try:
            config = self.repository.upsert_config(service, daily_limit=daily_limit, enabled=enabled)
        except sqlite3.Error:
            self.log.error("Error updating API config for %s", service, exc_info=True)
            raise
        self._evict(service, self.today())
        return config

    def reset_daily_usage(self, service: str, date: Optional[str] = None) -> int:
        """Delete a service's counters for one day (today by default).

        Args:
            service: Service name
            date: Day in YYYY-MM-DD format

        Returns:
            Number of counters deleted

        Raises:
            sqlite3.Error: If the store fails (logged first)
        """
        target_date = date or self.today()
        try:
            deleted = self.repository.delete_usage(service, target_date)
        except sqlite3.Error:
            self.log.error("Error resetting daily usage for %s", service, exc_info=True)
            raise
        self._evict(service, target_date)
        return deleted

    def cleanup_old_records(self, older_than_days: int = 30) -> int:
        """Delete counters older than the cutoff.

        Args:
            older_than_days: Age in days beyond which counters are removed

        Returns:
            Number of counters deleted, 0 on failure
        """
        cutoff = (self._clock() - timedelta(days=older_than_days)).astimezone(timezone.utc).date().isoformat()
        try:
            deleted = self.repository.delete_usage_before(cutoff)
        except sqlite3.Error:
            self.log.error("Error cleaning up old usage records", exc_info=True)
            return 0
        with self._lock:
            self.cache.clear()
        return deleted

    def get_usage_stats(self, service: str, days: int = 7) -> UsageStats:
        """Usage of a service over the trailing window ending today.

        Args:
            service: Service name
            days: Number of days including today

        Returns:
            UsageStats, empty with the default config if the store fails
        """
        end = self._clock().astimezone(timezone.utc).date()
        start = end - timedelta(days=days - 1)
        try:
            records = self.repository.fetch_usage(service, start.isoformat(), end.isoformat())
        except sqlite3.Error:
            self.log.error("Error getting usage stats for %s", service, exc_info=True)
            return UsageStats(config=ApiConfig(service=service))
        return UsageStats(
            daily_usage=records,
            total_usage=sum(record.count for record in records),
            config=self.get_api_config(service)
        )

    def _read_usage(self, service: str, endpoint: str, date: str, user_id: Optional[str]) -> int:
        try:
            usage = self.repository.find_usage(service, endpoint, date, user_id)
        except sqlite3.Error:
            self.log.error("Error getting current usage for %s:%s", service, endpoint, exc_info=True)
            return 0
        count = usage.count if usage else 0
        with self._lock:
            self.cache[self.cache_key(service, endpoint, date, user_id)] = count
        return count

    def _evict(self, service: str, date: str) -> None:
        prefix = f"{service}:"
        with self._lock:
            for key in [key for key in self.cache if key.startswith(prefix) and f":{date}:" in key]:
                self.cache.pop(key, None)


def track_google_maps_call(tracker: QuotaTracker, endpoint: str, user_id: Optional[str] = None) -> None:
    """Record a Google Maps call (see QuotaTracker.track_api_call)."""
    tracker.track_api_call(UsageOptions(service=GOOGLE_MAPS_SERVICE, endpoint=endpoint, user_id=user_id))


def check_google_maps_limit(tracker: QuotaTracker, endpoint: str, user_id: Optional[str] = None) -> bool:
    """Whether a Google Maps call is allowed (see QuotaTracker.check_limit)."""
    return tracker.check_limit(UsageOptions(service=GOOGLE_MAPS_SERVICE, endpoint=endpoint, user_id=user_id))
