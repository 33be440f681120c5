"""
Cross-provider fixture aggregation.

Reads every raw provider snapshot in the cache, normalizes the events,
removes duplicates reported by more than one provider, and writes a
consolidated view: live/upcoming totals, per-sport and per-provider
counters, and a capped fixture list.

Aggregation takes no locks. Each pass only reads snapshot keys and
overwrites its own output keys, so concurrent passes are harmless (last
writer wins). Every output is recomputed from scratch on each pass.
"""
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from matchfeed.cache import CacheClient, CacheError
from matchfeed.cache.ttl_policies import (
    AGGREGATE_CHANNEL,
    AGGREGATE_PREFIX,
    fixture_list_key,
    live_sport_key,
    live_total_key,
    providers_key,
    sports_key,
    upcoming_sport_key,
    upcoming_total_key,
)
from matchfeed.utils.helpers import safe_int, utcnow

from .extract import extract_fixture, locate_events, normalize_sport
from .models import AggregateSummary, NormalizedFixture, WriteResult

logger = logging.getLogger("aggregator")

# Snapshot key patterns, visited in this order
DEFAULT_PATTERNS: List[str] = [
    "prefetch:*:fixtures:*",
    "prefetch:sportsmonks:live",
    "prefetch:sportsmonks:fixtures",
    "prefetch:sgo:events:*",
    "prefetch:openligadb:recent:*",
    "prefetch:scorebat:free",
    "rapidapi:scores:sport:*",
    "rapidapi:odds:sport:*",
    "rapidapi:*:fixtures:*",
]

DEFAULT_CAP = 1000

# Key substrings that identify a provider when the payload does not name it
PROVIDER_KEY_HINTS: Sequence[Tuple[str, str]] = (
    ("sportsmonks", "SportMonks"),
    ("footballdata", "FootballData"),
    ("heisenbug", "Heisenbug"),
    ("odds", "OddsAPI"),
)

WILDCARD_CHARS = ("*", "?", "[")


def provider_for_key(key: str, payload: Any) -> str:
    """
    Name the provider a snapshot came from.

    The payload's own ``apiName``/``provider`` wins, then known key
    substrings, then the second segment of the key.
    """
    if isinstance(payload, dict):
        for field_name in ("apiName", "provider"):
            name = payload.get(field_name)
            if isinstance(name, str) and name.strip():
                return name.strip()
    lowered = key.lower()
    for needle, name in PROVIDER_KEY_HINTS:
        if needle in lowered:
            return name
    parts = key.split(":")
    return parts[1] if len(parts) > 1 and parts[1] else "unknown"


def sport_hint_for(payload: Any) -> Optional[str]:
    """Sport declared by the snapshot as a whole, if any."""
    if not isinstance(payload, dict):
        return None
    if payload.get("sportKey"):
        return normalize_sport(payload["sportKey"])
    sport = payload.get("sport")
    if isinstance(sport, str) and sport.strip():
        return sport.strip()
    return None


def decode_snapshot(raw: Any) -> Any:
    """
    Decode a cached snapshot value.

    Raises:
        ValueError: If a string value is not valid JSON
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


class FixtureAggregator:
    """
    Merges provider snapshots into one deduplicated fixture view.

    Usage:
        aggregator = FixtureAggregator(get_cache_client())
        summary = aggregator.aggregate()
        summary.total_live, summary.by_sport["soccer"].upcoming
    """

    def __init__(
        self,
        cache: CacheClient,
        patterns: Optional[Sequence[str]] = None,
        cap: int = DEFAULT_CAP,
        output_prefix: str = AGGREGATE_PREFIX,
        clock: Callable[[], datetime] = utcnow,
        publish: bool = True,
    ):
        """
        Initialize the aggregator.

        Args:
            cache: Cache client holding snapshots and receiving the outputs
            patterns: Snapshot key patterns in visiting order
            cap: Maximum number of fixtures stored in the consolidated list
            output_prefix: Namespace of the output keys
            clock: Current time as an aware UTC datetime
            publish: Announce each pass on the aggregate channel
        """
        if cap < 0:
            raise ValueError("cap must not be negative")
        self.cache = cache
        self.patterns = list(patterns) if patterns is not None else list(DEFAULT_PATTERNS)
        self.cap = cap
        self.output_prefix = output_prefix
        self.publish = publish
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, cache: Optional[CacheClient] = None, **kwargs: Any) -> "FixtureAggregator":
        """Build an aggregator from the application Settings object."""
        from matchfeed.cache import get_cache_client

        patterns = DEFAULT_PATTERNS + settings.split_list(settings.aggregator_extra_patterns)
        return cls(cache=cache or get_cache_client(), patterns=patterns, cap=settings.aggregator_cap, **kwargs)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def discover_keys(self) -> List[str]:
        """
        Expand the patterns into snapshot keys.

        Keys keep the order of the pattern that first reached them; keys
        matched by one wildcard pattern are sorted.
        """
        keys: List[str] = []
        seen = set()
        output_namespace = f"{self.output_prefix}:"

        for pattern in self.patterns:
            if any(char in pattern for char in WILDCARD_CHARS):
                try:
                    matched = sorted(self.cache.keys(pattern))
                except CacheError as e:
                    logger.warning(f"Could not list keys for {pattern}: {e}")
                    continue
            else:
                matched = [pattern]

            for key in matched:
                if key in seen or key.startswith(output_namespace):
                    continue
                seen.add(key)
                keys.append(key)
        return keys

    def read_snapshot(self, key: str) -> Any:
        """
        Decoded snapshot at key, or None if the key does not exist.

        Raises:
            CacheError: If the key holds a non-string value
            ValueError: If the value is not valid JSON
        """
        raw = self.cache.get(key)
        if raw is None:
            return None
        return decode_snapshot(raw)

    def collect(self, now: Optional[datetime] = None) -> AggregateSummary:
        """Read, normalize and deduplicate all snapshots, without writing anything."""
        now = now or self._clock()
        fixtures: List[NormalizedFixture] = []
        seen = set()
        scanned = 0
        skipped = 0
        duplicates = 0

        for key in self.discover_keys():
            try:
                payload = self.read_snapshot(key)
            except (CacheError, ValueError) as e:
                # Undecodable JSON, or a non-string key matched by a wildcard
                logger.debug(f"Skipping {key}: {e}")
                skipped += 1
                continue
            if payload is None:
                continue
            scanned += 1

            events = locate_events(payload)
            if not events:
                continue
            provider = provider_for_key(key, payload)
            sport_hint = sport_hint_for(payload)
            for event in events:
                fixture = extract_fixture(event, provider, now, sport_hint)
                if fixture is None:
                    continue
                dedup_key = fixture.dedup_key
                if dedup_key in seen:
                    duplicates += 1
                    continue
                seen.add(dedup_key)
                fixtures.append(fixture)

        summary = AggregateSummary.from_fixtures(fixtures)
        summary.keys_scanned = scanned
        summary.keys_skipped = skipped
        summary.duplicates_dropped = duplicates
        return summary

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def aggregate(self) -> AggregateSummary:
        """
        Run one full aggregation pass and persist the results.

        Every output write is attempted independently; failures are logged
        and reported in ``summary.write_results`` rather than raised.
        """
        summary = self.collect()
        summary.write_results = self.persist(summary)

        failed = summary.failed_writes
        logger.info(
            f"Aggregated {len(summary.fixtures)} fixtures from {summary.keys_scanned} keys "
            f"({summary.total_live} live, {summary.total_upcoming} upcoming, "
            f"{summary.duplicates_dropped} duplicates, {len(failed)} failed writes)"
        )
        return summary

    def persist(self, summary: AggregateSummary) -> List[WriteResult]:
        prefix = self.output_prefix
        results = [
            self._write(live_total_key(prefix), lambda: self.cache.set(live_total_key(prefix), summary.total_live)),
            self._write(
                upcoming_total_key(prefix),
                lambda: self.cache.set(upcoming_total_key(prefix), summary.total_upcoming),
            ),
        ]

        # Sports seen last pass but not in this one are reset to zero
        sports = sorted(summary.by_sport)
        for sport in sorted(set(sports) | set(self._previous_sports())):
            counts = summary.by_sport.get(sport)
            live = counts.live if counts else 0
            upcoming = counts.upcoming if counts else 0
            live_key = live_sport_key(sport, prefix)
            upcoming_key = upcoming_sport_key(sport, prefix)
            results.append(self._write(live_key, lambda k=live_key, v=live: self.cache.set(k, v)))
            results.append(self._write(upcoming_key, lambda k=upcoming_key, v=upcoming: self.cache.set(k, v)))

        results.append(self._write(sports_key(prefix), lambda: self.cache.set_json(sports_key(prefix), sports)))

        capped = [fixture.to_dict() for fixture in summary.fixtures[: self.cap]]
        results.append(
            self._write(fixture_list_key(prefix), lambda: self.cache.set_json(fixture_list_key(prefix), capped))
        )

        providers = {name: counts.to_dict() for name, counts in summary.providers.items()}
        results.append(
            self._write(providers_key(prefix), lambda: self.cache.set_json(providers_key(prefix), providers))
        )

        if self.publish:
            message = json.dumps({
                "type": "aggregate",
                "live": summary.total_live,
                "upcoming": summary.total_upcoming,
                "ts": self._clock().isoformat(),
            })
            results.append(self._write(AGGREGATE_CHANNEL, lambda: self.cache.publish(AGGREGATE_CHANNEL, message)))
        return results

    def _previous_sports(self) -> List[str]:
        try:
            previous = self.cache.get_json(sports_key(self.output_prefix), default=[])
        except CacheError as e:
            logger.debug(f"Could not read previous sports list: {e}")
            return []
        return [sport for sport in previous if isinstance(sport, str)] if isinstance(previous, list) else []

    def _write(self, key: str, action: Callable[[], Any]) -> WriteResult:
        try:
            action()
        except Exception as e:
            logger.warning(f"Aggregator write to {key} failed: {e}")
            return WriteResult(key=key, ok=False, error=str(e))
        return WriteResult(key=key, ok=True)

    # ------------------------------------------------------------------
    # Reading the consolidated view
    # ------------------------------------------------------------------

    def read_summary(self) -> Dict[str, Any]:
        """Counters from the last persisted pass, for read-only consumers."""
        prefix = self.output_prefix
        sports = self.cache.get_json(sports_key(prefix), default=[]) or []
        by_sport = {}
        for sport in sports:
            by_sport[sport] = {
                "live": safe_int(self.cache.get(live_sport_key(sport, prefix))),
                "upcoming": safe_int(self.cache.get(upcoming_sport_key(sport, prefix))),
            }
        return {
            "totalLiveMatches": safe_int(self.cache.get(live_total_key(prefix))),
            "totalUpcomingFixtures": safe_int(self.cache.get(upcoming_total_key(prefix))),
            "bySport": by_sport,
            "providers": self.cache.get_json(providers_key(prefix), default={}) or {},
        }

    def read_fixtures(
        self,
        sport: Optional[str] = None,
        fixture_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[NormalizedFixture]:
        """Fixtures from the last persisted list, optionally filtered."""
        raw = self.cache.get_json(fixture_list_key(self.output_prefix), default=[]) or []
        fixtures = [NormalizedFixture.from_dict(item) for item in raw if isinstance(item, dict)]
        if sport:
            wanted = normalize_sport(sport)
            fixtures = [fixture for fixture in fixtures if fixture.sport == wanted]
        if fixture_type:
            fixtures = [fixture for fixture in fixtures if fixture.type == fixture_type.lower()]
        if limit is not None:
            fixtures = fixtures[: max(0, limit)]
        return fixtures
