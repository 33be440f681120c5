"""
Field extraction for heterogeneous provider payloads.

Providers name the same field differently (``home_team``, ``homeTeam.name``,
``teams[0]`` ...). Each canonical field is read through an ordered chain of
``(path, extractor)`` pairs; the first pair that yields a non-empty value wins.
Everything here is pure and has no cache access.
"""
import re
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, Union

from matchfeed.utils.helpers import parse_timestamp, safe_lower, safe_strip

from .models import LIVE, UPCOMING, NormalizedFixture


PathPart = Union[str, int]
Extractor = Callable[[Any], Any]
FieldChain = Sequence[Tuple[Tuple[PathPart, ...], Extractor]]

# Fields that may hold the event array, in priority order
EVENT_ARRAY_FIELDS = ("data", "fixtures", "events", "items", "matches", "list")

LIVE_STATUS_PATTERN = re.compile(r"live|in[-_ ]?play|running", re.IGNORECASE)

DEFAULT_SPORT = "soccer"


# ============================================================================
# Path walking and extractors
# ============================================================================

def dig(value: Any, path: Iterable[PathPart]) -> Any:
    """Follow dict keys and list indexes, returning None on any miss."""
    current = value
    for part in path:
        if isinstance(part, int):
            if not isinstance(current, list) or not -len(current) <= part < len(current):
                return None
            current = current[part]
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
        if current is None:
            return None
    return current


def as_text(value: Any) -> Optional[str]:
    """Non-empty string (numbers allowed), stripped."""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    text = safe_strip(value)
    return text or None


def as_name(value: Any) -> Optional[str]:
    """A plain string, or the ``name`` of an object."""
    if isinstance(value, dict):
        return as_text(value.get("name"))
    return as_text(value)


def as_status(value: Any) -> Optional[str]:
    """A status string, or the short/long/type form of a status object."""
    if isinstance(value, dict):
        for field_name in ("short", "long", "type", "name", "description"):
            text = as_text(value.get(field_name))
            if text:
                return text
        return None
    return as_text(value)


def as_live_flag(value: Any) -> Optional[str]:
    """Boolean live flags become the status LIVE."""
    return "LIVE" if value is True else None


def as_time(value: Any) -> Optional[Union[str, int, float]]:
    """Keep a start time as given, provided it is a non-empty string or a number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)):
        return value
    return None


def as_present(value: Any) -> Any:
    """Any value that is not empty."""
    if value in ("", [], {}):
        return None
    return value


# ============================================================================
# Field chains
# ============================================================================

HOME_TEAM_CHAIN: FieldChain = (
    (("home_team",), as_name),
    (("home",), as_text),
    (("homeTeam",), as_text),
    (("homeTeam", "name"), as_text),
    (("team1",), as_name),
    (("teams", 0), as_name),
    (("home", "name"), as_text),
    (("competitors", 0, "name"), as_text),
)

AWAY_TEAM_CHAIN: FieldChain = (
    (("away_team",), as_name),
    (("away",), as_text),
    (("awayTeam",), as_text),
    (("awayTeam", "name"), as_text),
    (("team2",), as_name),
    (("teams", 1), as_name),
    (("away", "name"), as_text),
    (("competitors", 1, "name"), as_text),
)

START_TIME_CHAIN: FieldChain = tuple(
    ((name,), as_time)
    for name in (
        "commence_time",
        "commence",
        "startTime",
        "start",
        "date",
        "kickoff",
        "scheduled",
        "utcDate",
        "startTimeISO",
    )
)

LEAGUE_CHAIN: FieldChain = (
    (("league",), as_name),
    (("competition",), as_text),
    (("competition_name",), as_text),
    (("competition", "name"), as_text),
)

ODDS_CHAIN: FieldChain = (
    (("odds",), as_present),
    (("bookmakers",), as_present),
    (("markets",), as_present),
)

STATUS_CHAIN: FieldChain = (
    (("status",), as_status),
    (("matchStatus",), as_status),
    (("is_live",), as_live_flag),
)

SPORT_CHAIN: FieldChain = (
    (("sport",), as_name),
    (("sport_key",), as_text),
    (("sportKey",), as_text),
)


def extract_first(event: Any, chain: FieldChain) -> Any:
    """Return the first non-empty value produced by the chain, or None."""
    for path, extractor in chain:
        value = extractor(dig(event, path))
        if value is not None:
            return value
    return None


# ============================================================================
# Normalization
# ============================================================================

def normalize_sport(value: Any) -> str:
    """
    Map a provider sport key to a simple sport name.

    Examples:
        "basketball_nba" -> "basketball"
        "icehockey_nhl" -> "hockey"
        "americanfootball_nfl" -> "american_football"
        "soccer_epl" -> "soccer"
    """
    key = safe_lower(value).strip()
    if not key:
        return DEFAULT_SPORT
    if "basketball" in key or "nba" in key:
        return "basketball"
    if "baseball" in key or "mlb" in key:
        return "baseball"
    if "hockey" in key or "nhl" in key:
        return "hockey"
    if "americanfootball" in key or "american_football" in key or "nfl" in key:
        return "american_football"
    if "tennis" in key:
        return "tennis"
    if "volleyball" in key:
        return "volleyball"
    if "soccer" in key or "football" in key:
        return "soccer"
    if "rugby" in key:
        return "rugby"
    if "cricket" in key:
        return "cricket"
    if "golf" in key:
        return "golf"
    return key.split("_")[0]


def locate_events(value: Any, depth: int = 1) -> Optional[List[Any]]:
    """
    Find the event array inside a snapshot.

    Checks the value itself, then the well-known array fields, then the same
    fields one level inside ``data`` when it is an object.
    """
    if isinstance(value, list):
        return value
    if not isinstance(value, dict):
        return None
    for field_name in EVENT_ARRAY_FIELDS:
        candidate = value.get(field_name)
        if isinstance(candidate, list):
            return candidate
    nested = value.get("data")
    if depth > 0 and isinstance(nested, dict):
        return locate_events(nested, depth - 1)
    return None


def classify(status: Optional[str], start_time: Any, now: datetime) -> str:
    """
    Decide whether a fixture is live or upcoming.

    A status wins when present. Without one, a fixture whose start time has
    passed is considered live.
    """
    if status:
        return LIVE if LIVE_STATUS_PATTERN.search(status) else UPCOMING
    started = parse_timestamp(start_time)
    if started is not None and started <= now:
        return LIVE
    return UPCOMING


def extract_fixture(
    event: Any,
    provider: str,
    now: datetime,
    sport_hint: Optional[str] = None,
) -> Optional[NormalizedFixture]:
    """
    Normalize one raw event.

    Args:
        event: Raw provider event
        provider: Provider name the snapshot belongs to
        now: Current time, for classifying events without a status
        sport_hint: Sport of the whole snapshot, used when the event has none

    Returns:
        The fixture, or None if either team cannot be found
    """
    if not isinstance(event, dict):
        return None

    home = extract_first(event, HOME_TEAM_CHAIN)
    away = extract_first(event, AWAY_TEAM_CHAIN)
    if not home or not away:
        return None

    event_sport = extract_first(event, SPORT_CHAIN)
    sport = normalize_sport(event_sport or sport_hint or DEFAULT_SPORT)
    start_time = extract_first(event, START_TIME_CHAIN)
    status = extract_first(event, STATUS_CHAIN)

    return NormalizedFixture(
        provider=provider,
        sport=sport,
        home_team=home,
        away_team=away,
        start_time=start_time,
        league=extract_first(event, LEAGUE_CHAIN),
        type=classify(status, start_time, now),
        odds=extract_first(event, ODDS_CHAIN),
    )
