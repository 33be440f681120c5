"""
Key namespaces and TTL configuration.

Each namespace has exactly one logical writer: provider fetchers and the
prefetch scheduler write raw snapshots, the scheduler writes health and
backoff records, the aggregator writes consolidated views.
"""
from enum import Enum
from typing import Any, Dict, Optional


class DataCategory(Enum):
    """Categories of cached data with different lifetimes."""
    TEAMS = "teams"               # Raw team lists per provider/sport
    FIXTURES = "fixtures"         # Raw fixture snapshots per provider/sport
    HEALTH = "health"             # Prefetch health records
    FAILURES = "failures"         # Prefetch failure counters (backoff)
    AGGREGATE = "aggregate"       # Consolidated aggregator output


# TTL Configuration by category (in seconds, None = no expiry)
TTL_CONFIG: Dict[DataCategory, Dict[str, Any]] = {
    DataCategory.TEAMS: {
        "ttl": 300,               # 5 minutes
    },
    DataCategory.FIXTURES: {
        "ttl": 120,               # 2 minutes, stale data expires on its own
    },
    DataCategory.HEALTH: {
        "ttl": 300,
        "min_ttl": 300,           # Never shorter than the default cron period
    },
    DataCategory.FAILURES: {
        "ttl": 60 * 60 * 24,      # Failure streaks forgotten after a day
    },
    DataCategory.AGGREGATE: {
        "ttl": None,              # Overwritten on every aggregation pass
    },
}


def get_ttl_for_category(
    category: DataCategory,
    override: Optional[int] = None,
) -> Optional[int]:
    """
    Get the TTL for a data category.

    Args:
        category: The data category
        override: Configured TTL that replaces the default, if set

    Returns:
        TTL in seconds, or None for keys that never expire
    """
    config = TTL_CONFIG[category]
    ttl = override if override is not None else config["ttl"]
    if ttl is not None and "min_ttl" in config:
        ttl = max(config["min_ttl"], ttl)
    return ttl


def backoff_delay(failures: int, base_seconds: int, max_seconds: int) -> int:
    """
    Delay before a failing source may run again.

    Doubles with every consecutive failure: base, 2*base, 4*base ... max.
    """
    if failures < 1 or base_seconds <= 0:
        return 0
    delay = min(max_seconds, (2 ** (failures - 1)) * base_seconds)
    return max(1, int(delay))


# Prefetch namespaces
PREFETCH_PREFIX = "prefetch"
HEALTH_KEY = "prefetch:health"
UPDATES_CHANNEL = "prefetch:updates"
ERROR_CHANNEL = "prefetch:error"
LOCK_PREFIX = "lock:"


def source_id(provider: str, sport: str) -> str:
    """Identifier of one configured data source."""
    return f"{provider}:{sport}"


def teams_key(provider: str, sport: str) -> str:
    return f"{PREFETCH_PREFIX}:{provider}:teams:{sport}"


def fixtures_key(provider: str, sport: str) -> str:
    return f"{PREFETCH_PREFIX}:{provider}:fixtures:{sport}"


def failures_key(source: str) -> str:
    return f"{PREFETCH_PREFIX}:failures:{source}"


def next_run_key(source: str) -> str:
    return f"{PREFETCH_PREFIX}:next:{source}"


# Aggregator namespaces
AGGREGATE_PREFIX = "fixtures"
AGGREGATE_CHANNEL = "fixtures:updates"


def live_total_key(prefix: str = AGGREGATE_PREFIX) -> str:
    return f"{prefix}:live:total"


def upcoming_total_key(prefix: str = AGGREGATE_PREFIX) -> str:
    return f"{prefix}:upcoming:total"


def live_sport_key(sport: str, prefix: str = AGGREGATE_PREFIX) -> str:
    return f"{prefix}:live:{sport.lower()}"


def upcoming_sport_key(sport: str, prefix: str = AGGREGATE_PREFIX) -> str:
    return f"{prefix}:upcoming:{sport.lower()}"


def fixture_list_key(prefix: str = AGGREGATE_PREFIX) -> str:
    return f"{prefix}:list"


def providers_key(prefix: str = AGGREGATE_PREFIX) -> str:
    return f"{prefix}:providers"


def sports_key(prefix: str = AGGREGATE_PREFIX) -> str:
    """Set of sports seen by the last pass, so readers can find the per-sport counters."""
    return f"{prefix}:sports"
