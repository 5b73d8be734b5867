"""
Tests for cached, quota-guarded fetches.
"""
import os
import shutil
import tempfile
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from api_cache_guard.config.cache_config import CacheConfig
from api_cache_guard.core.cache_store import CacheStore
from api_cache_guard.core.guarded import fetch_with_cache
from api_cache_guard.core.quota import ApiLimitError, QuotaTracker
from api_cache_guard.storage.repository import UsageRepository

NOW = datetime(2026, 10, 17, 9, tzinfo=timezone.utc)


class TestFetchWithCache:
    """Test the lookup, check, track, fetch and store sequence."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = CacheStore(
            base_dir=os.path.join(self.temp_dir, "cache"),
            config=CacheConfig.from_env(environ={})
        )
        self.repo = UsageRepository(os.path.join(self.temp_dir, "test.db"))
        self.repo.initialize_schema()
        self.tracker = QuotaTracker(self.repo, clock=lambda: NOW)
        self.params = {"placeId": "ChIJ-lisbon", "fields": ["name", "rating"]}

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _fetch(self, fetcher):
        return fetch_with_cache(
            self.store,
            self.tracker,
            self.params,
            fetcher,
            partition="places",
            service="google-maps",
            endpoint="places-details"
        )

    def _usage(self):
        usage = self.repo.find_usage("google-maps", "places-details", "2026-10-17")
        return usage.count if usage else 0

    def test_miss_fetches_tracks_and_caches(self):
        fetcher = Mock(return_value={"name": "Castelo", "rating": 4.6})

        assert self._fetch(fetcher) == {"name": "Castelo", "rating": 4.6}
        assert fetcher.call_count == 1
        assert self._usage() == 1

    def test_hit_skips_fetcher_and_tracker(self):
        """A cached result costs no quota."""
        fetcher = Mock(return_value={"name": "Castelo"})
        self._fetch(fetcher)
        self._fetch(fetcher)
        self._fetch(fetcher)

        assert fetcher.call_count == 1
        assert self._usage() == 1

    def test_exhausted_quota_never_calls_fetcher(self):
        self.tracker.update_config("google-maps", daily_limit=0)
        fetcher = Mock(return_value={"name": "Castelo"})

        with pytest.raises(ApiLimitError) as exc_info:
            self._fetch(fetcher)

        assert not fetcher.called
        assert exc_info.value.daily_limit == 0
        assert not exc_info.value.is_disabled

    def test_disabled_service_never_calls_fetcher(self):
        self.tracker.update_config("google-maps", enabled=False)
        fetcher = Mock()

        with pytest.raises(ApiLimitError) as exc_info:
            self._fetch(fetcher)

        assert not fetcher.called
        assert exc_info.value.is_disabled
        assert exc_info.value.current_usage == 0

    def test_cache_hit_served_even_when_quota_exhausted(self):
        self._fetch(Mock(return_value={"name": "Castelo"}))
        self.tracker.update_config("google-maps", daily_limit=0)

        assert self._fetch(Mock()) == {"name": "Castelo"}

    def test_none_result_not_cached(self):
        fetcher = Mock(return_value=None)
        assert self._fetch(fetcher) is None
        assert self._fetch(fetcher) is None
        assert fetcher.call_count == 2
        assert self._usage() == 2

    def test_fetcher_error_propagates_and_is_counted(self):
        """The call is recorded before the fetch, so failures still consume quota."""
        fetcher = Mock(side_effect=RuntimeError("upstream 500"))

        with pytest.raises(RuntimeError, match="upstream 500"):
            self._fetch(fetcher)
        assert self._usage() == 1
        assert self.store.get_cache_stats().total_files == 0
