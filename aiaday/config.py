"""Process configuration: environment variables and compiled-in constants.

The launcher merges a `.env` file into the environment before calling
`load_settings()`. Nothing else in the package reads the environment.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel

from aiaday.errors import ConfigError

CHAT_MODEL = "gpt-4o-2024-08-06"
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSION = 1536

DEFAULT_LLM_BASE_URL = "https://api.openai.com"
DEFAULT_DB_NAME = "aiaday"
DEFAULT_LLM_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 1.0


class Settings(BaseModel):
    open_ai_api_key: str = ""
    database_url: str = ""
    chat_model: str = CHAT_MODEL
    embedding_model: str = EMBEDDING_MODEL
    embedding_dimension: int = EMBEDDING_DIMENSION
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_timeout: float = DEFAULT_LLM_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    log_level: str = "INFO"

    def require_api_key(self) -> str:
        if not self.open_ai_api_key:
            raise ConfigError("OPEN_AI_API_KEY is not set")
        return self.open_ai_api_key


def _database_url(env: Mapping[str, str]) -> str:
    explicit = env.get("DATABASE_URL", "").strip()
    if explicit:
        return explicit
    user = env.get("DB_USER", "").strip()
    host = env.get("DB_HOST", "").strip()
    if not user or not host:
        return ""
    password = env.get("DB_PASSWORD", "").strip()
    name = env.get("DB_NAME", DEFAULT_DB_NAME).strip() or DEFAULT_DB_NAME
    return f"postgres://{user}:{password}@{host}/{name}"


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from e


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build settings from `env` (defaults to os.environ)."""
    if env is None:
        env = os.environ
    return Settings(
        open_ai_api_key=env.get("OPEN_AI_API_KEY", "").strip(),
        database_url=_database_url(env),
        llm_base_url=(env.get("OPEN_AI_BASE_URL", "").strip() or DEFAULT_LLM_BASE_URL).rstrip("/"),
        llm_timeout=_float(env, "LLM_TIMEOUT", DEFAULT_LLM_TIMEOUT),
        poll_interval=_float(env, "WORKER_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        log_level=env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def validate_settings(settings: Settings) -> list[str]:
    """Return warnings for settings that will make the worker fail later."""
    warnings: list[str] = []
    if not settings.open_ai_api_key:
        warnings.append("OPEN_AI_API_KEY is empty; LLM and embedding calls will be rejected")
    if not settings.database_url:
        warnings.append("No database configured; set DATABASE_URL or DB_USER/DB_PASSWORD/DB_HOST")
    return warnings
