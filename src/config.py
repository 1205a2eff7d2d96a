from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # Dify LLM platform
    dify_api_url: str = "http://localhost/v1"
    dify_api_key: str = ""
    dify_connect_timeout: float = 10.0
    # Seconds without a byte from the provider before the stream is abandoned.
    # None disables the limit.
    dify_read_timeout: float | None = 300.0

    # Question answering over stored decision items
    anthropic_api_key: str = ""
    llm_model: str = "claude-sonnet-4-20250514"

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]


settings = get_settings()
