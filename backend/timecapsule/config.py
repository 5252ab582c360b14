"""Configuration from environment (no hardcoded secrets)."""

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Backend settings from env."""

    model_config = SettingsConfigDict(env_prefix="TIMECAPSULE_", extra="ignore")

    # Key-value store (sessions, encrypted tokens, counters)
    db_path: Path = Path("/data/timecapsule.db")

    # Master key for tokens at rest: 64 hex chars (AES-256)
    encryption_key: str = ""

    # OAuth apps
    github_client_id: str = ""
    github_client_secret: str = ""
    gmail_client_id: str = ""
    gmail_client_secret: str = ""

    # Public base URLs (magic links point at the frontend, content URLs at this API)
    frontend_url: str = "http://localhost:5173"
    worker_url: str = "http://localhost:8080"

    # Per-repository storage budget (GitHub free LFS tier)
    storage_limit_bytes: int = 1024 * 1024 * 1024

    # Seconds to wait after creating a repository before the first commit
    repo_ready_delay_seconds: float = 1.0

    # Capsules still locked this long after their unlock time count as failed
    unlock_grace_seconds: int = 2 * 60 * 60

    # pip requirement the scheduled workflow installs to run the unlock job
    unlock_package: str = "memory-time-capsule"

    # Per-IP request limits (slowapi)
    rate_limit_enabled: bool = True

    # CORS: comma-separated string in env so pydantic-settings does not JSON-decode it
    cors_origins: str = ""

    @property
    def cors_origins_list(self) -> List[str]:
        """CORS origins as a list (split on comma); falls back to the frontend URL."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or [
            self.frontend_url.rstrip("/")
        ]

    # Server
    port: int = 8080

    # Logging (empty log_file = stderr only; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""


def get_settings() -> Settings:
    """Return application settings."""
    return Settings()
