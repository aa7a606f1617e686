"""
todo-sync configuration — all environment variables in one place.

Read from environment at runtime. Never hardcode secrets.
"""

from __future__ import annotations

import os


class Settings:
    """Client settings from environment variables."""

    # Remote store (PostgREST / Supabase)
    SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "")
    SUPABASE_ANON_KEY: str = os.environ.get("SUPABASE_ANON_KEY", "")
    SUPABASE_ACCESS_TOKEN: str = os.environ.get("SUPABASE_ACCESS_TOKEN", "")
    REQUEST_TIMEOUT: float = float(os.environ.get("REQUEST_TIMEOUT", "30"))

    # Push feed
    FEED_URL: str = os.environ.get("FEED_URL", "")
    FEED_RECONNECT_DELAY: float = float(os.environ.get("FEED_RECONNECT_DELAY", "2"))
    FEED_MAX_RECONNECTS: int = int(os.environ.get("FEED_MAX_RECONNECTS", "10"))
    DEDUP_WINDOW: int = int(os.environ.get("DEDUP_WINDOW", "1000"))  # remembered deliveries

    # Views
    DEFAULT_PAGE_SIZE: int = int(os.environ.get("DEFAULT_PAGE_SIZE", "20"))

    # Application
    ENVIRONMENT: str = os.environ.get("ENVIRONMENT", "development")

    @property
    def REST_URL(self) -> str:
        url = os.environ.get("REST_URL")
        if url:
            return url
        return f"{self.SUPABASE_URL.rstrip('/')}/rest/v1" if self.SUPABASE_URL else ""


# Singleton instance
settings = Settings()


def require_remote_settings() -> None:
    """Validate the settings the HTTP collaborators need."""
    if not settings.SUPABASE_URL:
        raise RuntimeError("SUPABASE_URL environment variable is required")
    if not settings.SUPABASE_ANON_KEY:
        raise RuntimeError("SUPABASE_ANON_KEY environment variable is required")
