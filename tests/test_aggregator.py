"""
Tests for cross-provider fixture aggregation.

Snapshots are seeded straight into a memory-mode cache the way provider
fetchers and the prefetch scheduler would write them.
"""
import json

import pytest

from matchfeed.aggregator import FixtureAggregator, provider_for_key
from matchfeed.cache import CacheError


@pytest.fixture
def aggregator(memory_cache, utc_clock):
    return FixtureAggregator(memory_cache, clock=utc_clock)


def seed(cache, key, payload):
    cache.set(key, json.dumps(payload))


def assert_totals_match(summary):
    assert summary.total_live == sum(c.live for c in summary.by_sport.values())
    assert summary.total_upcoming == sum(c.upcoming for c in summary.by_sport.values())


# =============================================================================
# Scenarios
# =============================================================================

class TestScenarios:

    def test_counts_by_sport(self, aggregator, memory_cache):
        """Scenario: 2 basketball and 1 soccer upcoming fixtures."""
        seed(memory_cache, "rapidapi:odds:sport:basketball_nba", {
            "sportKey": "basketball_nba",
            "data": [
                {"home_team": "Lakers", "away_team": "Celtics", "commence_time": "2025-03-02T01:00:00Z"},
                {"home_team": "Bulls", "away_team": "Knicks", "commence_time": "2025-03-02T02:00:00Z"},
            ],
        })
        seed(memory_cache, "prefetch:sportradar:fixtures:soccer", {
            "apiName": "sportradar",
            "sport": "soccer",
            "items": [
                {"homeTeam": "Arsenal", "awayTeam": "Chelsea", "startTime": "2025-03-01T17:30:00Z"},
            ],
        })

        summary = aggregator.aggregate()

        assert summary.by_sport["basketball"].upcoming == 2
        assert summary.by_sport["soccer"].upcoming == 1
        assert summary.total_live == 0
        assert_totals_match(summary)

    def test_live_status_and_future_start(self, aggregator, memory_cache):
        """Scenario: one LIVE fixture and one future fixture for the same sport."""
        seed(memory_cache, "prefetch:sportradar:fixtures:hockey", {
            "sport": "hockey",
            "items": [
                {"homeTeam": "Oilers", "awayTeam": "Flames", "status": "LIVE"},
                {"homeTeam": "Leafs", "awayTeam": "Habs", "startTime": "2025-03-02T00:00:00Z"},
            ],
        })

        summary = aggregator.aggregate()

        assert summary.by_sport["hockey"].to_dict() == {"live": 1, "upcoming": 1}

    def test_invalid_json_key_is_skipped(self, aggregator, memory_cache):
        """Scenario: one undecodable key among valid ones."""
        memory_cache.set("prefetch:broken:fixtures:soccer", "{not valid json")
        seed(memory_cache, "prefetch:good:fixtures:soccer", {
            "items": [{"home": "A", "away": "B", "startTime": "2025-03-02T00:00:00Z"}],
        })

        summary = aggregator.aggregate()

        assert len(summary.fixtures) == 1
        assert summary.keys_skipped == 1


# =============================================================================
# Deduplication and aggregation
# =============================================================================

class TestDeduplication:

    def test_same_fixture_from_two_providers_merges(self, aggregator, memory_cache):
        event = {"home_team": "Arsenal", "away_team": "Chelsea", "commence_time": "2025-03-01T17:30:00Z"}
        seed(memory_cache, "prefetch:alpha:fixtures:soccer", {"items": [event]})
        seed(memory_cache, "rapidapi:scores:sport:soccer_epl", {"data": [dict(event)]})

        summary = aggregator.aggregate()

        assert len(summary.fixtures) == 1
        assert summary.duplicates_dropped == 1
        # First key in enumeration order wins
        assert summary.fixtures[0].provider == "alpha"

    def test_team_name_case_and_spacing_ignored(self, aggregator, memory_cache):
        seed(memory_cache, "prefetch:alpha:fixtures:soccer", {
            "items": [
                {"home": "Arsenal", "away": "Chelsea", "startTime": "2025-03-02T00:00:00Z"},
                {"home": " ARSENAL ", "away": "chelsea", "startTime": "2025-03-02T00:00:00Z"},
            ],
        })
        assert len(aggregator.aggregate().fixtures) == 1

    def test_different_start_times_are_distinct(self, aggregator, memory_cache):
        seed(memory_cache, "prefetch:alpha:fixtures:soccer", {
            "items": [
                {"home": "Arsenal", "away": "Chelsea", "startTime": "2025-03-02T00:00:00Z"},
                {"home": "Arsenal", "away": "Chelsea", "startTime": "2025-04-02T00:00:00Z"},
            ],
        })
        assert len(aggregator.aggregate().fixtures) == 2

    def test_key_matched_by_two_patterns_is_read_once(self, memory_cache, utc_clock):
        seed(memory_cache, "rapidapi:odds:fixtures:x", {"data": [{"home": "A", "away": "B"}]})
        aggregator = FixtureAggregator(
            memory_cache,
            patterns=["rapidapi:*:fixtures:*", "rapidapi:odds:*"],
            clock=utc_clock,
        )
        assert aggregator.discover_keys() == ["rapidapi:odds:fixtures:x"]
        assert aggregator.aggregate().duplicates_dropped == 0


class TestAggregation:

    def test_rerun_is_idempotent(self, aggregator, memory_cache):
        seed(memory_cache, "prefetch:alpha:fixtures:soccer", {
            "items": [
                {"home": "A", "away": "B", "status": "LIVE"},
                {"home": "C", "away": "D", "startTime": "2025-03-02T00:00:00Z"},
            ],
        })

        first = aggregator.aggregate().to_dict()
        second = aggregator.aggregate().to_dict()

        assert first == second

    def test_outputs_are_persisted(self, aggregator, memory_cache):
        seed(memory_cache, "prefetch:alpha:fixtures:soccer", {
            "apiName": "alpha",
            "items": [
                {"home": "A", "away": "B", "status": "LIVE"},
                {"home": "C", "away": "D", "startTime": "2025-03-02T00:00:00Z"},
            ],
        })

        summary = aggregator.aggregate()

        assert all(result.ok for result in summary.write_results)
        assert memory_cache.get("fixtures:live:total") == "1"
        assert memory_cache.get("fixtures:upcoming:total") == "1"
        assert memory_cache.get("fixtures:live:soccer") == "1"
        assert memory_cache.get("fixtures:upcoming:soccer") == "1"
        assert memory_cache.get_json("fixtures:providers") == {"alpha": {"live": 1, "upcoming": 1}}
        assert [f["homeTeam"] for f in memory_cache.get_json("fixtures:list")] == ["A", "C"]

    def test_list_is_capped_but_counts_are_not(self, memory_cache, utc_clock):
        items = [
            {"home": f"Home {i}", "away": f"Away {i}", "startTime": "2025-03-02T00:00:00Z"}
            for i in range(5)
        ]
        seed(memory_cache, "prefetch:alpha:fixtures:soccer", {"items": items})
        aggregator = FixtureAggregator(memory_cache, cap=3, clock=utc_clock)

        summary = aggregator.aggregate()

        assert summary.total_upcoming == 5
        assert len(memory_cache.get_json("fixtures:list")) == 3

    def test_vanished_sport_counters_reset(self, aggregator, memory_cache):
        seed(memory_cache, "prefetch:alpha:fixtures:tennis", {
            "sport": "tennis",
            "items": [{"home": "A", "away": "B", "status": "LIVE"}],
        })
        aggregator.aggregate()
        memory_cache.delete("prefetch:alpha:fixtures:tennis")

        aggregator.aggregate()

        assert memory_cache.get("fixtures:live:tennis") == "0"
        assert memory_cache.get_json("fixtures:sports") == []

    def test_empty_cache_gives_empty_summary(self, aggregator):
        summary = aggregator.aggregate()
        assert summary.to_dict() == {
            "totalLiveMatches": 0,
            "totalUpcomingFixtures": 0,
            "providers": {},
            "bySport": {},
            "fixtures": [],
        }

    def test_outputs_are_not_reaggregated(self, memory_cache, utc_clock):
        seed(memory_cache, "prefetch:alpha:fixtures:soccer", {"items": [{"home": "A", "away": "B"}]})
        aggregator = FixtureAggregator(memory_cache, patterns=["*"], clock=utc_clock)

        aggregator.aggregate()
        summary = aggregator.aggregate()

        assert len(summary.fixtures) == 1

    def test_read_back_for_consumers(self, aggregator, memory_cache):
        seed(memory_cache, "prefetch:alpha:fixtures:soccer", {
            "items": [
                {"home": "A", "away": "B", "status": "LIVE"},
                {"home": "C", "away": "D", "startTime": "2025-03-02T00:00:00Z"},
            ],
        })
        aggregator.aggregate()

        summary = aggregator.read_summary()
        assert summary["totalLiveMatches"] == 1
        assert summary["bySport"] == {"soccer": {"live": 1, "upcoming": 1}}
        assert [f.home_team for f in aggregator.read_fixtures(fixture_type="live")] == ["A"]
        assert aggregator.read_fixtures(sport="basketball") == []


# =============================================================================
# Write failures
# =============================================================================

class FailingListWrites:
    """Delegates to a real cache but refuses to write the fixture list."""

    def __init__(self, cache):
        self._cache = cache

    def __getattr__(self, name):
        return getattr(self._cache, name)

    def set_json(self, key, value, ex=None):
        if key.endswith(":list"):
            raise CacheError("OOM command not allowed when used memory > 'maxmemory'")
        return self._cache.set_json(key, value, ex=ex)


def test_write_failure_is_reported_not_raised(memory_cache, utc_clock):
    seed(memory_cache, "prefetch:alpha:fixtures:soccer", {"items": [{"home": "A", "away": "B", "status": "LIVE"}]})
    aggregator = FixtureAggregator(FailingListWrites(memory_cache), clock=utc_clock)

    summary = aggregator.aggregate()

    assert summary.total_live == 1
    assert [result.key for result in summary.failed_writes] == ["fixtures:list"]
    assert memory_cache.get("fixtures:live:total") == "1"


# =============================================================================
# Provider naming
# =============================================================================

@pytest.mark.parametrize("key,payload,expected", [
    ("prefetch:x:fixtures:soccer", {"apiName": "SportRadar"}, "SportRadar"),
    ("prefetch:sportsmonks:live", {}, "SportMonks"),
    ("rapidapi:odds:sport:basketball_nba", [], "OddsAPI"),
    ("prefetch:sgo:events:nba", {}, "sgo"),
    ("standalone", None, "unknown"),
])
def test_provider_for_key(key, payload, expected):
    assert provider_for_key(key, payload) == expected
