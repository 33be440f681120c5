"""
Scheduled, lock-guarded prefetch of provider data.

Each pass acquires an advisory lock, then fetches teams and the next few
days of fixtures for every configured source, one source at a time.
Results are cached with short TTLs so stale data expires on its own, and
every attempt leaves a health record behind, success or failure.

A failure in one source never aborts the pass: it is recorded in that
source's health record, published on the error channel, and the source is
backed off exponentially before it is tried again.
"""
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from matchfeed.aggregator.extract import (
    STATUS_CHAIN,
    as_name,
    as_text,
    extract_first,
    extract_fixture,
)
from matchfeed.cache import CacheClient, CacheError, LockCoordinator
from matchfeed.cache.ttl_policies import (
    ERROR_CHANNEL,
    HEALTH_KEY,
    UPDATES_CHANNEL,
    DataCategory,
    backoff_delay,
    failures_key,
    fixtures_key,
    get_ttl_for_category,
    next_run_key,
    teams_key,
)
from matchfeed.utils.helpers import iso_now, utcnow

from .models import (
    FetchResult,
    PrefetchHealthRecord,
    PrefetchRunResult,
    ProviderFetchError,
    SourceConfig,
)
from .provider import ProviderFetcher
from .schedule import Ticker

logger = logging.getLogger("prefetch.scheduler")

EVENT_ID_CHAIN = (
    (("eventId",), as_text),
    (("id",), as_text),
    (("event_id",), as_text),
    (("fixture_id",), as_text),
)

VENUE_CHAIN = (
    (("venue",), as_name),
    (("stadium",), as_name),
)


def canonical_fixture(
    event: Dict[str, Any],
    provider: str,
    sport: str,
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """
    Reduce a raw provider event to the fixture shape the aggregator writes.

    The raw status, event id and venue are kept alongside, so the
    aggregator classifies the stored item the same way on its next pass.

    Returns:
        The fixture dict, or None if either team is missing
    """
    fixture = extract_fixture(event, provider, now or utcnow(), sport_hint=sport)
    if fixture is None:
        return None
    item = fixture.to_dict()
    item["eventId"] = extract_first(event, EVENT_ID_CHAIN)
    item["venue"] = extract_first(event, VENUE_CHAIN)
    item["status"] = extract_first(event, STATUS_CHAIN)
    return item


class PrefetchScheduler:
    """
    Periodic prefetch runner for a set of (provider, sport) sources.

    Usage:
        scheduler = PrefetchScheduler.from_settings(settings)
        scheduler.start()       # immediate pass, then every cron tick
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        cache: CacheClient,
        fetchers: Dict[str, ProviderFetcher],
        sources: Sequence[SourceConfig],
        lock: Optional[LockCoordinator] = None,
        cron: str = "*/5 * * * *",
        days: int = 2,
        ttl_fixtures: int = 120,
        ttl_teams: int = 300,
        lock_ttl: int = 300,
        job_name: str = "sources",
        date_pause_seconds: float = 0.15,
        backoff_base_seconds: int = 60,
        max_backoff_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        on_complete: Optional[Callable[[PrefetchRunResult], Any]] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            cache: Cache client receiving snapshots and health records
            fetchers: Provider fetchers keyed by provider name
            sources: Sources to prefetch, in order
            lock: Lock coordinator (defaults to one over the same cache)
            cron: 5-field cron expression for recurring passes (UTC)
            days: Number of days after today to fetch fixtures for
            ttl_fixtures: TTL of fixture snapshots in seconds
            ttl_teams: TTL of team snapshots in seconds
            lock_ttl: TTL of the pass lock in seconds
            job_name: Name of the lock guarding the pass
            date_pause_seconds: Pause between per-date fixture requests
            backoff_base_seconds: First backoff delay after a failure (0 disables backoff)
            max_backoff_seconds: Longest backoff delay
            clock: Current time as an aware UTC datetime
            sleep: Sleep function used between date requests
            on_complete: Called with the result after each non-skipped pass
        """
        if days < 0:
            raise ValueError("days must not be negative")

        self.cache = cache
        self.fetchers = dict(fetchers)
        self.sources = list(sources)
        self.lock = lock or LockCoordinator(cache)
        self.days = days
        self.ttl_fixtures = ttl_fixtures
        self.ttl_teams = ttl_teams
        self.lock_ttl = lock_ttl
        self.lock_key = f"prefetch:{job_name}"
        self.date_pause_seconds = date_pause_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.on_complete = on_complete
        self._clock = clock
        self._sleep = sleep

        # Validates the cron expression up front
        self.ticker = Ticker(self.run_once, cron, clock=clock, name="prefetch")

        self.last_result: Optional[PrefetchRunResult] = None
        self.runs = 0

    @classmethod
    def from_settings(
        cls,
        settings,
        cache: Optional[CacheClient] = None,
        fetchers: Optional[Dict[str, ProviderFetcher]] = None,
        **kwargs: Any,
    ) -> "PrefetchScheduler":
        """Build a scheduler from the application Settings object."""
        from matchfeed.cache import get_cache_client
        from .provider import build_fetchers

        return cls(
            cache=cache or get_cache_client(),
            fetchers=fetchers if fetchers is not None else build_fetchers(settings),
            sources=SourceConfig.parse_sources(settings.prefetch_sources, settings.provider_name),
            cron=settings.prefetch_cron,
            days=settings.prefetch_days,
            ttl_fixtures=settings.prefetch_ttl_fixtures,
            ttl_teams=settings.prefetch_ttl_teams,
            lock_ttl=settings.prefetch_lock_ttl,
            date_pause_seconds=settings.prefetch_date_pause_seconds,
            backoff_base_seconds=settings.prefetch_backoff_base_seconds,
            max_backoff_seconds=settings.prefetch_max_backoff_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run a pass immediately, then on every cron tick."""
        logger.info(
            f"Starting prefetch for {len(self.sources)} sources "
            f"(cron '{self.ticker.expression}', {self.days} days ahead)"
        )
        self.ticker.start(run_immediately=True)

    def stop(self) -> None:
        """Stop future ticks. A pass in progress runs to completion."""
        self.ticker.stop()

    def get_status(self) -> Dict[str, Any]:
        next_run = self.ticker.next_run_time()
        return {
            "running": self.ticker.running,
            "cron": self.ticker.expression,
            "sources": [source.id for source in self.sources if source.enabled],
            "runs": self.runs,
            "nextRun": next_run.isoformat() if next_run else None,
            "lastRun": self.last_result.to_dict() if self.last_result else None,
        }

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def run_once(self) -> PrefetchRunResult:
        """
        Run one prefetch pass over all sources.

        Skips the whole pass if another runner holds the lock.
        """
        result = PrefetchRunResult(started_at=iso_now())

        with self.lock.hold(self.lock_key, self.lock_ttl) as acquired:
            if not acquired:
                logger.info("Another runner holds the prefetch lock; skipping this pass")
                result.skipped = True
                result.finished_at = iso_now()
                self.last_result = result
                return result

            for source in self.sources:
                if not source.enabled:
                    continue
                if self._in_backoff(source):
                    result.backed_off.append(source.id)
                    continue
                result.records.append(self.prefetch_source(source))

        result.finished_at = iso_now()
        self.last_result = result
        self.runs += 1

        failed = len(result.failed)
        logger.info(
            f"Prefetch pass done: {len(result.records) - failed} ok, {failed} failed, "
            f"{len(result.backed_off)} backed off"
        )

        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception as e:
                logger.error(f"Post-prefetch hook failed: {e}", exc_info=True)
        return result

    def prefetch_source(self, source: SourceConfig) -> PrefetchHealthRecord:
        """Fetch, normalize and store one source, then record its health."""
        record = PrefetchHealthRecord(
            provider=source.provider,
            sport=source.sport,
            last_updated=iso_now(),
        )
        fetcher = self.fetchers.get(source.provider)

        if fetcher is None:
            logger.warning(f"No fetcher registered for provider {source.provider}")
            record.error_reason = "no_fetcher"
        else:
            try:
                self._fetch_into(fetcher, source, record)
            except Exception as e:
                message = str(e) or type(e).__name__
                logger.error(f"Prefetch {source.id} failed: {message}")
                record.error_reason = message
                record.teams_count = 0
                record.fixtures_count = 0
                if isinstance(e, ProviderFetchError):
                    record.http_status = e.http_status or record.http_status
                    record.path_used = e.path_used or record.path_used
                self._publish(ERROR_CHANNEL, {
                    "type": source.provider,
                    "sport": source.sport,
                    "ts": int(time.time() * 1000),
                    "error": message,
                })
            record.last_updated = iso_now()

        self._write_health(record)
        self._update_backoff(source, record)
        return record

    def _fetch_into(self, fetcher: ProviderFetcher, source: SourceConfig, record: PrefetchHealthRecord) -> None:
        teams_result = fetcher.fetch_teams(source.sport)
        teams = list(teams_result.items)
        self.cache.set_json(
            teams_key(source.provider, source.sport),
            self._snapshot(source, teams),
            ex=get_ttl_for_category(DataCategory.TEAMS, self.ttl_teams),
        )
        record.teams_count = len(teams)
        record.http_status = teams_result.http_status
        record.path_used = teams_result.path_used
        record.error_reason = teams_result.error_reason

        now = self._clock()
        fixtures: List[Dict[str, Any]] = []
        last_meta = FetchResult()
        for index, day in enumerate(self._dates()):
            if index and self.date_pause_seconds > 0:
                self._sleep(self.date_pause_seconds)
            try:
                day_result = fetcher.fetch_fixtures(source.sport, day)
            except Exception as e:
                logger.warning(f"Fetch fixtures {source.id} {day} failed: {e}")
                last_meta.error_reason = str(e) or type(e).__name__
                continue
            for event in day_result.items:
                fixture = canonical_fixture(event, source.provider, source.sport, now)
                if fixture is not None:
                    fixtures.append(fixture)
            last_meta = FetchResult(
                http_status=day_result.http_status or last_meta.http_status,
                path_used=day_result.path_used or last_meta.path_used,
                error_reason=day_result.error_reason or last_meta.error_reason,
            )

        if fixtures:
            self.cache.set_json(
                fixtures_key(source.provider, source.sport),
                self._snapshot(source, fixtures),
                ex=get_ttl_for_category(DataCategory.FIXTURES, self.ttl_fixtures),
            )
        record.fixtures_count = len(fixtures)

        # Fixture metadata is more recent than the teams request
        if last_meta.http_status:
            record.http_status = last_meta.http_status
        if last_meta.path_used:
            record.path_used = last_meta.path_used
        if last_meta.error_reason and not record.error_reason:
            record.error_reason = last_meta.error_reason

        self._publish(UPDATES_CHANNEL, {
            "type": source.provider,
            "sport": source.sport,
            "ts": int(time.time() * 1000),
            "fixtures": record.fixtures_count,
            "teams": record.teams_count,
        })
        logger.info(f"Prefetched {source.id}: {record.teams_count} teams, {record.fixtures_count} fixtures")

    def _dates(self) -> List[str]:
        """Today and the following days, as UTC dates."""
        today = self._clock().date()
        return [(today + timedelta(days=offset)).isoformat() for offset in range(self.days + 1)]

    def _snapshot(self, source: SourceConfig, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "fetchedAt": iso_now(),
            "apiName": source.provider,
            "sport": source.sport,
            "items": items,
        }

    # ------------------------------------------------------------------
    # Health and backoff
    # ------------------------------------------------------------------

    def _write_health(self, record: PrefetchHealthRecord) -> None:
        try:
            self.cache.hset(HEALTH_KEY, record.source_id, json.dumps(record.to_dict()))
            self.cache.expire(HEALTH_KEY, get_ttl_for_category(DataCategory.HEALTH, self.ttl_fixtures))
        except CacheError as e:
            logger.warning(f"Failed to write prefetch health for {record.source_id}: {e}")

    def _publish(self, channel: str, message: Dict[str, Any]) -> None:
        try:
            self.cache.publish(channel, json.dumps(message))
        except CacheError as e:
            logger.debug(f"Publish to {channel} failed: {e}")

    def _in_backoff(self, source: SourceConfig) -> bool:
        if self.backoff_base_seconds <= 0:
            return False
        try:
            raw = self.cache.get(next_run_key(source.id))
        except CacheError as e:
            logger.warning(f"Could not read backoff for {source.id}: {e}")
            return False
        if raw is None:
            return False
        try:
            next_at = float(raw)
        except (TypeError, ValueError):
            return False
        remaining = next_at - self._clock().timestamp()
        if remaining > 0:
            logger.info(f"Skipping {source.id}: backing off for another {remaining:.0f}s")
            return True
        return False

    def _update_backoff(self, source: SourceConfig, record: PrefetchHealthRecord) -> None:
        """
        A source fails when it reports an error and fetched nothing.
        Failures push its next run out exponentially; a success resets it.
        """
        if self.backoff_base_seconds <= 0:
            return
        failed = record.error_reason is not None and record.teams_count == 0 and record.fixtures_count == 0
        try:
            if not failed:
                self.cache.delete(failures_key(source.id), next_run_key(source.id))
                return
            failures = self.cache.incr(failures_key(source.id))
            self.cache.expire(failures_key(source.id), get_ttl_for_category(DataCategory.FAILURES))
            delay = backoff_delay(failures, self.backoff_base_seconds, self.max_backoff_seconds)
            next_at = self._clock().timestamp() + delay
            self.cache.set(next_run_key(source.id), str(next_at), ex=delay)
            logger.warning(f"{source.id} failed {failures} time(s) in a row; next attempt in {delay}s")
        except CacheError as e:
            logger.warning(f"Failed to update backoff for {source.id}: {e}")
