"""
Application configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.

Every field can be overridden with a DOCDIGEST_-prefixed variable, e.g.
DOCDIGEST_OVERLAP_RATIO=0.15 or DOCDIGEST_CACHE_DATABASE_URL=sqlite+aiosqlite:///...
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_cache_url() -> str:
    cache_dir = Path.home() / ".docdigest"
    return f"sqlite+aiosqlite:///{cache_dir / 'cache.db'}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DOCDIGEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Text processing: token estimation and chunk sizing
    # ------------------------------------------------------------------
    chars_per_token:        float = 3.5    # empirical average for English prose
    token_overhead_ratio:   float = 0.1    # pessimism margin on top of the ratio
    prompt_overhead_tokens: int   = 500    # reserved for prompt scaffolding
    chunk_size_ratio:       float = 0.8    # share of the remainder given to content
    overlap_ratio:          float = Field(default=0.1, ge=0.0, lt=1.0)

    default_batch_size:       int = 3
    max_batch_size:           int = 10
    default_max_input_tokens: int = 4000   # used when the model does not advertise one
    fallback_excerpt_chars:   int = 1000

    # ------------------------------------------------------------------
    # Retry / model calls
    # ------------------------------------------------------------------
    retry_max_attempts:            int   = 2      # one retry
    retry_backoff_seconds:         float = 1.0    # doubles each retry
    retry_max_backoff_seconds:     float = 30.0
    model_request_timeout_seconds: float = 120.0

    # ------------------------------------------------------------------
    # Document cache (SQLite through SQLAlchemy asyncio)
    # ------------------------------------------------------------------
    cache_database_url:    str  = Field(default_factory=_default_cache_url)
    cache_max_entries:     int  = 100   # per artifact kind
    cache_ttl_days:        int  = 7
    cache_memory_capacity: int  = 32    # in-process LRU in front of SQLite
    cache_echo_sql:        bool = False

    # ------------------------------------------------------------------
    # Source watcher
    # ------------------------------------------------------------------
    watcher_poll_interval_seconds: float = 2.0

    # ------------------------------------------------------------------
    # LLM
    # ------------------------------------------------------------------
    openai_api_key:       str   = ""
    llm_model:            str   = "gpt-4o-mini"
    llm_temperature:      float = 0.0
    llm_max_input_tokens: int   = 128_000

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    langsmith_api_key: str = ""
    langsmith_project: str = "docdigest"

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    log_level: str  = "INFO"
    debug:     bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
