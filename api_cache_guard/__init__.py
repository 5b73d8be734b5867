"""
API Cache Guard.

File-backed response caching, daily API quota enforcement and LLM exchange
logging for services that sit in front of costly external APIs.
"""

from .core.cache_store import CacheStore
from .core.exchange_log import ExchangeLog
from .core.keys import generate_cache_key
from .core.quota import ApiLimitError, QuotaTracker, UsageOptions

__version__ = "0.1.0"

__all__ = [
    "ApiLimitError",
    "CacheStore",
    "ExchangeLog",
    "QuotaTracker",
    "UsageOptions",
    "generate_cache_key",
]
