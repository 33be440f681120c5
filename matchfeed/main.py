"""
Matchfeed - read-only status API
Serves prefetch health and the consolidated fixture view straight from the cache
"""
import json
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query

from matchfeed.aggregator import LIVE, UPCOMING, FixtureAggregator
from matchfeed.cache import CacheClient, CacheError, get_cache_client
from matchfeed.cache.ttl_policies import HEALTH_KEY
from matchfeed.prefetch import PrefetchHealthRecord
from config.settings import settings

logger = logging.getLogger("matchfeed.api")

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Matchfeed"
APP_STAGE = "Beta"

app = FastAPI(
    title=f"{APP_NAME} ({APP_STAGE})",
    description="Prefetch health and aggregated fixtures from the shared cache",
    version=APP_VERSION
)


def get_cache() -> CacheClient:
    return get_cache_client()


def get_aggregator(cache: CacheClient = Depends(get_cache)) -> FixtureAggregator:
    return FixtureAggregator(cache, cap=settings.aggregator_cap)


@app.get("/health")
def health_check(cache: CacheClient = Depends(get_cache)):
    """Health check endpoint."""
    return {"status": "ok", "cache": cache.mode.value}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "stage": APP_STAGE,
        "full": f"{APP_NAME} {APP_VERSION} ({APP_STAGE})"
    }


@app.get("/cache/stats")
def cache_stats(cache: CacheClient = Depends(get_cache)):
    """Get cache mode, fuse state and call counters."""
    return cache.get_stats()


@app.get("/prefetch/health")
def prefetch_health(cache: CacheClient = Depends(get_cache)):
    """Latest prefetch outcome per source."""
    try:
        raw = cache.hgetall(HEALTH_KEY) or {}
    except CacheError as e:
        raise HTTPException(status_code=503, detail=f"Cache unavailable: {e}")

    sources = {}
    for source_id, value in sorted(raw.items()):
        try:
            sources[source_id] = PrefetchHealthRecord.from_dict(json.loads(value)).to_dict()
        except (TypeError, ValueError):
            logger.debug(f"Ignoring unreadable health record for {source_id}")
    failing = [source_id for source_id, record in sources.items() if record["errorReason"]]
    return {"count": len(sources), "failing": failing, "sources": sources}


@app.get("/fixtures/summary")
def fixtures_summary(aggregator: FixtureAggregator = Depends(get_aggregator)):
    """Live/upcoming totals by sport and provider, from the last aggregation pass."""
    try:
        return aggregator.read_summary()
    except CacheError as e:
        raise HTTPException(status_code=503, detail=f"Cache unavailable: {e}")


@app.get("/fixtures")
def fixtures_list(
    sport: Optional[str] = Query(None, description="Sport name, e.g. soccer"),
    type: Optional[str] = Query(None, description="live or upcoming"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum fixtures returned"),
    aggregator: FixtureAggregator = Depends(get_aggregator),
):
    """Consolidated fixture list from the last aggregation pass."""
    if type is not None and type.lower() not in (LIVE, UPCOMING):
        raise HTTPException(status_code=400, detail="type must be 'live' or 'upcoming'")
    try:
        fixtures = aggregator.read_fixtures(sport=sport, fixture_type=type, limit=limit)
    except CacheError as e:
        raise HTTPException(status_code=503, detail=f"Cache unavailable: {e}")
    return {"count": len(fixtures), "fixtures": [fixture.to_dict() for fixture in fixtures]}
