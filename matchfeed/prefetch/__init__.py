"""
Scheduled prefetch of provider data into the cache.
"""
from .models import (
    FetchResult,
    PrefetchHealthRecord,
    PrefetchRunResult,
    ProviderFetchError,
    SourceConfig,
)
from .provider import ProviderFetcher, JSONHTTPFetcher, build_fetchers
from .schedule import Ticker, next_fire_time, parse_cron
from .scheduler import PrefetchScheduler, canonical_fixture

__all__ = [
    # Models
    "FetchResult",
    "PrefetchHealthRecord",
    "PrefetchRunResult",
    "ProviderFetchError",
    "SourceConfig",
    # Providers
    "ProviderFetcher",
    "JSONHTTPFetcher",
    "build_fetchers",
    # Scheduling
    "Ticker",
    "next_fire_time",
    "parse_cron",
    "PrefetchScheduler",
    "canonical_fixture",
]
