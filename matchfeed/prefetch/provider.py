"""
Provider fetcher interface and a configurable JSON-over-HTTP implementation.

The scheduler only depends on the ProviderFetcher protocol, so a provider
with its own client library can be plugged in without touching the
scheduling, persistence or health logic.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from matchfeed.aggregator.extract import locate_events

from .models import FetchResult

logger = logging.getLogger("prefetch.provider")

# Network errors worth a quick second attempt; HTTP error statuses are not retried
TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout)

# Checked before the generic event fields when fetching teams
TEAM_ARRAY_FIELDS = ("teams", "competitors")


class ProviderFetcher(Protocol):
    """
    Interface for external data providers.

    Implementations return errors as data (``FetchResult.error_reason``) for
    expected failures such as HTTP errors. Raising is reserved for failures
    the scheduler should record as an exception.
    """

    def fetch_teams(self, sport: str) -> FetchResult:
        """Get the team list for a sport."""
        ...

    def fetch_fixtures(self, sport: str, date: str) -> FetchResult:
        """
        Get fixtures for a sport on one day.

        Args:
            sport: Sport name as configured (e.g. "soccer")
            date: Day in YYYY-MM-DD format (UTC)
        """
        ...


class JSONHTTPFetcher:
    """
    Fetches JSON arrays from a REST API.

    Each kind of request has an ordered list of candidate path templates
    with ``{sport}`` and ``{date}`` placeholders. Candidates are tried in
    order until one answers HTTP 200 with a recognizable event array.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        teams_paths: Sequence[str],
        fixtures_paths: Sequence[str],
        api_key: Optional[str] = None,
        api_key_header: str = "x-api-key",
        timeout: float = 15.0,
        retry_attempts: int = 2,
        retry_wait: Optional[Any] = None,
        session: Optional[requests.Session] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.teams_paths = list(teams_paths)
        self.fixtures_paths = list(fixtures_paths)
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=4)
        self._session = session or requests.Session()
        self._headers: Dict[str, str] = {"Accept": "application/json"}
        if api_key:
            self._headers[api_key_header] = api_key

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> "JSONHTTPFetcher":
        return cls(
            name=settings.provider_name,
            base_url=settings.provider_base_url,
            teams_paths=settings.split_list(settings.provider_teams_paths),
            fixtures_paths=settings.split_list(settings.provider_fixtures_paths),
            api_key=settings.provider_api_key,
            api_key_header=settings.provider_api_key_header,
            timeout=settings.provider_timeout,
            session=session,
        )

    def fetch_teams(self, sport: str) -> FetchResult:
        return self._fetch_first(self.teams_paths, sport=sport, date="", array_fields=TEAM_ARRAY_FIELDS)

    def fetch_fixtures(self, sport: str, date: str) -> FetchResult:
        return self._fetch_first(self.fixtures_paths, sport=sport, date=date)

    def _fetch_first(
        self,
        templates: List[str],
        sport: str,
        date: str,
        array_fields: Sequence[str] = (),
    ) -> FetchResult:
        """Try each candidate path; return the first success or the last failure."""
        result = FetchResult(error_reason="no_paths_configured")
        for template in templates:
            path = template.replace("{sport}", sport).replace("{date}", date)
            result = self._get(path, array_fields)
            if result.ok:
                return result
            logger.debug(f"{self.name} {path} failed: {result.error_reason}")
        return result

    def _get(self, path: str, array_fields: Sequence[str] = ()) -> FetchResult:
        url = f"{self.base_url}/{path.lstrip('/')}"
        retrying = Retrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            reraise=True,
        )
        try:
            response = retrying(self._session.get, url, headers=self._headers, timeout=self.timeout)
        except requests.Timeout:
            return FetchResult(path_used=path, error_reason="timeout")
        except requests.RequestException as e:
            return FetchResult(path_used=path, error_reason=f"request_failed: {e}")

        if response.status_code != 200:
            return FetchResult(
                http_status=response.status_code,
                path_used=path,
                error_reason=f"http_{response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError:
            return FetchResult(http_status=200, path_used=path, error_reason="invalid_json")

        events = None
        if isinstance(payload, dict):
            events = next((payload[name] for name in array_fields if isinstance(payload.get(name), list)), None)
        if events is None:
            events = locate_events(payload)
        if events is None:
            return FetchResult(http_status=200, path_used=path, error_reason="no_event_array")

        items = [event for event in events if isinstance(event, dict)]
        return FetchResult(items=items, http_status=200, path_used=path)


def build_fetchers(settings) -> Dict[str, ProviderFetcher]:
    """Fetchers available from configuration, keyed by provider name."""
    if not settings.provider_base_url:
        logger.warning("No provider_base_url configured; prefetch sources will report no_fetcher")
        return {}
    fetcher = JSONHTTPFetcher.from_settings(settings)
    return {fetcher.name: fetcher}
