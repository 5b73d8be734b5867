"""
Cached, quota-guarded calls to external APIs.

Combines key derivation, the response cache and the quota tracker into the
lookup/check/track/fetch/store sequence used in front of every costly API.
"""

from typing import Any, Callable, Mapping, Optional, Union

from .cache_store import CacheStore
from .keys import generate_cache_key
from .quota import ApiLimitError, QuotaTracker, UsageOptions


def fetch_with_cache(
    store: CacheStore,
    tracker: QuotaTracker,
    key_input: Union[str, Mapping[str, Any]],
    fetcher: Callable[[], Any],
    *,
    partition: str,
    service: str,
    endpoint: str,
    user_id: Optional[str] = None,
    ttl: Optional[int] = None
) -> Any:
    """Return a cached result or fetch, meter and cache a fresh one.

    Cache hits never touch the tracker. On a miss the limit is checked and
    the call recorded before `fetcher` runs, so a rejected call costs
    nothing. A None result is returned but not cached.

    Args:
        store: Response cache
        tracker: Quota tracker
        key_input: Semantic identity of the request
        fetcher: Performs the external call
        partition: Cache partition for the result
        service: Metered service name
        endpoint: Metered endpoint name
        user_id: Optional user the call is attributed to
        ttl: TTL in milliseconds (defaults to the partition TTL)

    Returns:
        The cached or freshly fetched result

    Raises:
        ApiLimitError: If the service is disabled or out of quota
        Exception: Anything raised by `fetcher` propagates unchanged
    """
    key = generate_cache_key(key_input)
    cached = store.get_cached(key, partition=partition)
    if cached is not None:
        return cached

    options = UsageOptions(service=service, endpoint=endpoint, user_id=user_id)
    if not tracker.check_limit(options):
        config = tracker.get_api_config(service)
        usage = tracker.get_current_usage(service, endpoint, tracker.today(), user_id)
        raise ApiLimitError(
            service,
            endpoint,
            0 if not config.enabled else usage,
            config.daily_limit,
            disabled=not config.enabled
        )
    tracker.track_api_call(options)

    result = fetcher()
    if result is not None:
        store.set_cached(key, result, partition=partition, ttl=ttl)
    return result
