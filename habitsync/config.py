"""Configuration settings for habitsync."""

from functools import lru_cache

import httpx
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Hosts the API key may be sent to over plaintext http (a local Supabase stack)
_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})


class Settings(BaseSettings):
    """Settings loaded from ``HABITSYNC_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="HABITSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars not in model
    )

    # Supabase
    supabase_url: str
    supabase_publishable_key: str | None = None  # Client/public access
    supabase_anon_key: str | None = None  # Legacy key name
    schema_name: str = "public"

    # Read cache (5 minutes)
    cache_ttl_seconds: float = 300.0
    # Optimistic updates older than this are swept
    pending_max_age_seconds: float = 30.0
    housekeeping_interval_seconds: float = 10.0

    # Connectivity
    connectivity_probe_interval_seconds: float = 15.0
    connectivity_timeout_seconds: float = 5.0

    # Realtime
    subscribe_timeout_seconds: float = 10.0

    @field_validator("supabase_url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        v = v.strip()
        try:
            url = httpx.URL(v)
        except httpx.InvalidURL as e:
            raise ValueError(f"supabase_url is not a valid URL: {e}") from e
        if url.scheme not in ("https", "http") or not url.host:
            raise ValueError("supabase_url must be an http(s) URL with a host")
        if url.scheme == "http" and url.host not in _LOCAL_HOSTS:
            raise ValueError("supabase_url must use https unless it points at localhost")
        return v.rstrip("/")

    @property
    def api_key(self) -> str:
        # Prefer the new publishable key, fall back to the legacy anon key
        key = self.supabase_publishable_key or self.supabase_anon_key
        if not key:
            raise ValueError(
                "Either HABITSYNC_SUPABASE_PUBLISHABLE_KEY or HABITSYNC_SUPABASE_ANON_KEY must be set"
            )
        return key

    @property
    def health_url(self) -> str:
        return f"{self.supabase_url}/auth/v1/health"


@lru_cache
def get_settings() -> Settings:
    """Settings read once per process; call ``cache_clear()`` to reload."""
    return Settings()
