"""
Fixture aggregation across provider snapshots.
"""
from .models import (
    LIVE,
    UPCOMING,
    AggregateSummary,
    NormalizedFixture,
    SportCounts,
    WriteResult,
)
from .extract import (
    classify,
    extract_first,
    extract_fixture,
    locate_events,
    normalize_sport,
)
from .aggregator import DEFAULT_PATTERNS, FixtureAggregator, provider_for_key

__all__ = [
    # Models
    "LIVE",
    "UPCOMING",
    "AggregateSummary",
    "NormalizedFixture",
    "SportCounts",
    "WriteResult",
    # Extraction
    "classify",
    "extract_first",
    "extract_fixture",
    "locate_events",
    "normalize_sport",
    # Aggregator
    "DEFAULT_PATTERNS",
    "FixtureAggregator",
    "provider_for_key",
]
