"""Environment-driven engine configuration."""

import os

from pydantic import BaseModel


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


class EngineConfig(BaseModel):
    """Process-wide settings read once at startup.

    Tenant-level behavior (grouping interval, follow-ups, business hours, model)
    lives in the tenant settings document, not here.
    """

    anthropic_api_key: str | None = None
    groq_api_key: str | None = None
    cron_token: str | None = None
    tenants_file: str | None = None

    media_storage_dir: str = "./media"
    media_base_url: str = "http://localhost:8000/media"

    max_reasoning_turns: int = 6
    history_limit: int = 30
    busy_retry_seconds: float = 5.0

    composing_delay: float = 1.0
    between_chunks_delay: float = 0.5

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build configuration from environment variables."""
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            groq_api_key=os.getenv("GROQ_API_KEY"),
            cron_token=os.getenv("CRON_TOKEN") or None,
            tenants_file=os.getenv("TENANTS_FILE") or None,
            media_storage_dir=os.getenv("MEDIA_STORAGE_DIR", "./media"),
            media_base_url=os.getenv("MEDIA_BASE_URL", "http://localhost:8000/media"),
            max_reasoning_turns=_env_int("MAX_REASONING_TURNS", 6),
            history_limit=_env_int("HISTORY_LIMIT", 30),
            busy_retry_seconds=_env_float("BUSY_RETRY_SECONDS", 5.0),
            composing_delay=_env_float("COMPOSING_DELAY_SECONDS", 1.0),
            between_chunks_delay=_env_float("BETWEEN_CHUNKS_DELAY_SECONDS", 0.5),
        )
