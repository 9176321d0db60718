"""
Environment-driven settings for the ingestion pipelines.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Tuple

from src.services.errors import ConfigurationError
from src.services.extraction import DEFAULT_MODEL_CASCADE

LOGGER = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("datasets/civic/civic.sqlite")
# Nominatim usage policy: at most one request per second.
MIN_GEOCODE_INTERVAL = 1.0

# Logical credential name -> environment variable.
CREDENTIAL_ENV = {
    "openrouter": "OPENROUTER_API_KEY",
    "newsapi": "NEWSAPI_AI_KEY",
    "brave": "BRAVE_SEARCH_API_KEY",
    "user_agent": "CIVIC_USER_AGENT",
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError([name], f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError([name], f"{name} must be a number, got {raw!r}") from exc


@dataclass
class PipelineConfig:
    openrouter_api_key: str | None = None
    newsapi_key: str | None = None
    brave_api_key: str | None = None
    user_agent: str | None = None
    models: Tuple[str, ...] = DEFAULT_MODEL_CASCADE
    db_path: Path = DEFAULT_DB_PATH
    app_url: str = "https://civicmatch.com"
    # Pacing, in seconds.
    geocode_interval: float = 1.1
    item_delay: float = 0.1
    category_delay: float = 0.5
    event_item_delay: float = 0.2
    query_delay: float = 1.0
    directory_store_delay: float = 1.1
    directory_delay: float = 2.0
    directory_max_pages: int = 30
    # Thresholds.
    batch_size: int = 40
    min_batch_score: int = 55
    min_event_relevance: int = 60
    max_items_per_category: int = 30
    challenge_ttl_days: int = 30
    fuzzy_window_days: int = 3
    fuzzy_prefix_chars: int = 20

    @classmethod
    def from_env(cls, require: Iterable[str] = (), db_path: Path | None = None) -> "PipelineConfig":
        """Build settings from the environment; missing `require` credentials raise ConfigurationError."""
        models_raw = os.getenv("OPENROUTER_MODELS_CASCADE", "")
        models = tuple(model.strip() for model in models_raw.split(",") if model.strip()) or DEFAULT_MODEL_CASCADE
        config = cls(
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
            newsapi_key=os.getenv("NEWSAPI_AI_KEY") or None,
            brave_api_key=os.getenv("BRAVE_SEARCH_API_KEY") or None,
            user_agent=os.getenv("CIVIC_USER_AGENT") or os.getenv("NOMINATIM_USER_AGENT") or None,
            models=models,
            db_path=db_path or Path(os.getenv("CIVIC_DB_PATH") or DEFAULT_DB_PATH),
            app_url=os.getenv("APP_URL") or "https://civicmatch.com",
            geocode_interval=_env_float("GEOCODE_MIN_INTERVAL", 1.1),
            directory_delay=_env_float("DIRECTORY_DELAY_SECONDS", 2.0),
            directory_max_pages=_env_int("DIRECTORY_MAX_PAGES", 30),
            batch_size=_env_int("DIRECTORY_BATCH_SIZE", 40),
            min_batch_score=_env_int("DIRECTORY_MIN_RELEVANCE", 55),
            min_event_relevance=_env_int("EVENT_MIN_RELEVANCE", 60),
            challenge_ttl_days=_env_int("CHALLENGE_TTL_DAYS", 30),
            fuzzy_window_days=_env_int("CIVIC_FUZZY_WINDOW_DAYS", 3),
            fuzzy_prefix_chars=_env_int("CIVIC_FUZZY_PREFIX_CHARS", 20),
        )
        config.validate(require)
        LOGGER.debug("Loaded pipeline config (db=%s, models=%s)", config.db_path, ", ".join(config.models))
        return config

    def validate(self, require: Iterable[str]) -> None:
        values = {
            "openrouter": self.openrouter_api_key,
            "newsapi": self.newsapi_key,
            "brave": self.brave_api_key,
            "user_agent": self.user_agent,
        }
        missing = []
        for name in require:
            if name not in CREDENTIAL_ENV:
                raise ValueError(f"Unknown credential {name!r}")
            if not values[name]:
                missing.append(CREDENTIAL_ENV[name])
        if missing:
            raise ConfigurationError(missing)
        if self.batch_size < 1:
            raise ConfigurationError(["DIRECTORY_BATCH_SIZE"], "DIRECTORY_BATCH_SIZE must be at least 1")
        if self.geocode_interval < MIN_GEOCODE_INTERVAL:
            raise ConfigurationError(
                ["GEOCODE_MIN_INTERVAL"],
                f"GEOCODE_MIN_INTERVAL must be at least {MIN_GEOCODE_INTERVAL} seconds",
            )
        if self.fuzzy_window_days < 0:
            raise ConfigurationError(["CIVIC_FUZZY_WINDOW_DAYS"], "CIVIC_FUZZY_WINDOW_DAYS must not be negative")
