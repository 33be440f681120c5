"""
Data models for scheduled prefetch.

These dataclasses describe configured sources, what a provider fetcher
returns, and the health record written after every attempt.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from matchfeed.utils.helpers import safe_lower, safe_strip


class ProviderFetchError(Exception):
    """Raised by a fetcher when a provider cannot be read at all."""

    def __init__(self, message: str, http_status: Optional[int] = None, path_used: Optional[str] = None):
        super().__init__(message)
        self.http_status = http_status
        self.path_used = path_used


@dataclass
class SourceConfig:
    """One configured data source: a provider and a sport."""
    provider: str
    sport: str
    enabled: bool = True

    @property
    def id(self) -> str:
        return f"{self.provider}:{self.sport}"

    @classmethod
    def parse(cls, entry: str, default_provider: str = "sportradar") -> Optional["SourceConfig"]:
        """
        Parse a "provider:sport" entry. A bare "sport" uses the default provider
        and a leading "!" marks the source as disabled.
        """
        text = safe_strip(entry)
        if not text:
            return None
        enabled = not text.startswith("!")
        text = text.lstrip("!").strip()
        provider, _, sport = text.rpartition(":")
        sport = safe_lower(sport).strip()
        if not sport:
            return None
        return cls(provider=safe_lower(provider).strip() or default_provider, sport=sport, enabled=enabled)

    @classmethod
    def parse_sources(cls, value: str, default_provider: str = "sportradar") -> List["SourceConfig"]:
        """Parse a comma-separated source list, dropping blanks and duplicates."""
        sources: List[SourceConfig] = []
        seen = set()
        for entry in (value or "").split(","):
            source = cls.parse(entry, default_provider)
            if source is None or source.id in seen:
                continue
            seen.add(source.id)
            sources.append(source)
        return sources


@dataclass
class FetchResult:
    """What a provider fetcher returns for one request."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    http_status: Optional[int] = None
    path_used: Optional[str] = None
    error_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_reason is None


@dataclass
class PrefetchHealthRecord:
    """
    Outcome of the latest prefetch attempt for one source.

    Serialized with every field present, so readers never have to guess
    whether a missing field means zero or unknown.
    """
    provider: str
    sport: str
    last_updated: str
    teams_count: int = 0
    fixtures_count: int = 0
    http_status: Optional[int] = None
    error_reason: Optional[str] = None
    path_used: Optional[str] = None

    @property
    def source_id(self) -> str:
        return f"{self.provider}:{self.sport}"

    @property
    def ok(self) -> bool:
        return self.error_reason is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "provider": self.provider,
            "sport": self.sport,
            "lastUpdated": self.last_updated,
            "teamsCount": self.teams_count,
            "fixturesCount": self.fixtures_count,
            "httpStatus": self.http_status,
            "errorReason": self.error_reason,
            "pathUsed": self.path_used,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrefetchHealthRecord":
        """Create from dictionary."""
        return cls(
            provider=data.get("provider", ""),
            sport=data.get("sport", ""),
            last_updated=data.get("lastUpdated", ""),
            teams_count=data.get("teamsCount") or 0,
            fixtures_count=data.get("fixturesCount") or 0,
            http_status=data.get("httpStatus"),
            error_reason=data.get("errorReason"),
            path_used=data.get("pathUsed"),
        )


@dataclass
class PrefetchRunResult:
    """Summary of one scheduler pass."""
    started_at: str
    finished_at: Optional[str] = None
    skipped: bool = False  # Lock held by another runner
    records: List[PrefetchHealthRecord] = field(default_factory=list)
    backed_off: List[str] = field(default_factory=list)

    @property
    def failed(self) -> List[PrefetchHealthRecord]:
        return [record for record in self.records if not record.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "skipped": self.skipped,
            "records": [record.to_dict() for record in self.records],
            "backedOff": list(self.backed_off),
        }
