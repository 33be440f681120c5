"""Configuration management using pydantic-settings."""
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis connection (unset = in-memory store)
    redis_url: Optional[str] = None
    use_memory_cache: bool = False
    allow_memory_fallback: bool = True
    redis_connect_timeout: float = 10.0
    redis_socket_timeout: float = 5.0

    # Retry backoff for connectivity errors
    cache_retry_base_delay: float = 0.1
    cache_retry_max_delay: float = 5.0
    cache_retry_jitter: float = 0.3

    # Fuse: switch to the in-memory store after sustained failure
    fuse_error_threshold: int = 10
    fuse_error_window_seconds: float = 60.0
    fuse_reconnect_threshold: int = 20
    fuse_reconnect_window_seconds: float = 60.0
    reconnect_log_window_seconds: float = 30.0

    # Prefetch scheduling
    prefetch_cron: str = "*/5 * * * *"
    prefetch_days: int = 2
    prefetch_ttl_fixtures: int = 120
    prefetch_ttl_teams: int = 300
    prefetch_lock_ttl: int = 300
    prefetch_date_pause_seconds: float = 0.15
    prefetch_backoff_base_seconds: int = 60
    prefetch_max_backoff_seconds: int = 3600
    # Comma separated provider:sport pairs
    prefetch_sources: str = "sportradar:soccer,sportradar:basketball"

    # Generic JSON provider used by the worker
    provider_name: str = "sportradar"
    provider_base_url: Optional[str] = None
    provider_api_key: Optional[str] = None
    provider_api_key_header: str = "x-api-key"
    provider_teams_paths: str = "/{sport}/teams"
    provider_fixtures_paths: str = "/{sport}/schedule/{date},/{sport}/fixtures?date={date}"
    provider_timeout: float = 15.0

    # Aggregation
    aggregator_cap: int = 1000
    aggregator_extra_patterns: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @staticmethod
    def split_list(value: Optional[str]) -> List[str]:
        """Split a comma separated setting into trimmed, non-empty parts."""
        if not value:
            return []
        return [part.strip() for part in value.split(",") if part.strip()]


settings = Settings()
