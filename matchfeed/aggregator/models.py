"""
Data models for fixture aggregation.

These dataclasses represent the canonical shape of fixtures, independent of
which provider snapshot they were read from.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from matchfeed.utils.helpers import safe_strip


LIVE = "live"
UPCOMING = "upcoming"


@dataclass
class NormalizedFixture:
    """A single live or upcoming fixture, normalized from any provider."""
    provider: str
    sport: str
    home_team: str
    away_team: str
    start_time: Optional[Any] = None  # As given by the provider (ISO string or epoch)
    league: Optional[str] = None
    type: str = UPCOMING
    odds: Optional[Any] = None

    @property
    def is_live(self) -> bool:
        return self.type == LIVE

    @property
    def dedup_key(self) -> str:
        """Identity used to collapse the same fixture reported by several providers."""
        start = "" if self.start_time is None else safe_strip(self.start_time)
        return (
            f"{safe_strip(self.home_team).casefold()}::"
            f"{safe_strip(self.away_team).casefold()}::{start}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "provider": self.provider,
            "sport": self.sport,
            "league": self.league,
            "type": self.type,
            "homeTeam": self.home_team,
            "awayTeam": self.away_team,
            "startTime": self.start_time,
            "odds": self.odds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedFixture":
        """Create from dictionary."""
        return cls(
            provider=data.get("provider", "unknown"),
            sport=data.get("sport", "soccer"),
            home_team=data.get("homeTeam", data.get("home_team", "")),
            away_team=data.get("awayTeam", data.get("away_team", "")),
            start_time=data.get("startTime", data.get("start_time")),
            league=data.get("league"),
            type=data.get("type", UPCOMING),
            odds=data.get("odds"),
        )


@dataclass
class SportCounts:
    """Live/upcoming counter pair."""
    live: int = 0
    upcoming: int = 0

    def add(self, fixture: NormalizedFixture) -> None:
        if fixture.is_live:
            self.live += 1
        else:
            self.upcoming += 1

    @property
    def total(self) -> int:
        return self.live + self.upcoming

    def to_dict(self) -> Dict[str, int]:
        return {"live": self.live, "upcoming": self.upcoming}


@dataclass
class WriteResult:
    """Outcome of one best-effort persistence step."""
    key: str
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "ok": self.ok, "error": self.error}


@dataclass
class AggregateSummary:
    """
    Result of one aggregation pass.

    Always recomputed from the deduplicated fixture list, never updated
    incrementally, so total_live equals the sum of by_sport live counts
    (and likewise for upcoming).
    """
    total_live: int = 0
    total_upcoming: int = 0
    by_sport: Dict[str, SportCounts] = field(default_factory=dict)
    providers: Dict[str, SportCounts] = field(default_factory=dict)
    fixtures: List[NormalizedFixture] = field(default_factory=list)
    write_results: List[WriteResult] = field(default_factory=list)
    keys_scanned: int = 0
    keys_skipped: int = 0
    duplicates_dropped: int = 0

    @classmethod
    def from_fixtures(cls, fixtures: List[NormalizedFixture]) -> "AggregateSummary":
        """Compute every counter from a deduplicated fixture list."""
        summary = cls(fixtures=list(fixtures))
        for fixture in summary.fixtures:
            summary.by_sport.setdefault(fixture.sport, SportCounts()).add(fixture)
            summary.providers.setdefault(fixture.provider, SportCounts()).add(fixture)
            if fixture.is_live:
                summary.total_live += 1
            else:
                summary.total_upcoming += 1
        return summary

    @property
    def failed_writes(self) -> List[WriteResult]:
        return [result for result in self.write_results if not result.ok]

    def to_dict(self, include_fixtures: bool = True) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        result = {
            "totalLiveMatches": self.total_live,
            "totalUpcomingFixtures": self.total_upcoming,
            "providers": {name: counts.to_dict() for name, counts in self.providers.items()},
            "bySport": {sport: counts.to_dict() for sport, counts in self.by_sport.items()},
        }
        if include_fixtures:
            result["fixtures"] = [fixture.to_dict() for fixture in self.fixtures]
        return result
