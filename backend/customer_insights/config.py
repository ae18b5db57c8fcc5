"""
config.py
=========
Application settings for the Customer Insights API.

Every value can be overridden via environment variables or a `.env` file in the
working directory. List settings (keyword sets) are given as JSON arrays:

    SOFT_COMPLAINT_KEYWORDS='["problem", "error", "slow"]'
    HARD_COMPLAINT_KEYWORDS='["lawsuit", "regulator"]'
    DATABASE_URL=postgresql+psycopg://app:app@db:5432/app
"""

from __future__ import annotations

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration object.

    Attributes:
        DATABASE_URL: SQLAlchemy URL. Defaults to a local SQLite file.
        ECHO_SQL: Log every SQL statement (debug only).
        SEED_ON_START: Populate demo data with Faker on startup.
        LOG_LEVEL: Level applied to every logger from `get_logger`.
        EMAIL_HISTORY_ENABLED: When false the communication-history reader
            reports `enabled=False` and its signal is ignored.
        SOFT_COMPLAINT_KEYWORDS: Terms that raise a summary to `warning`.
        HARD_COMPLAINT_KEYWORDS: Terms that, together with an overdue invoice,
            raise a summary to `critical`.
        HIGH_REQUEST_RATIO / CRITICAL_REQUEST_RATIO: requests-per-pageview
            levels for the `high_request_ratio` anomaly.
        HEAVY_ASSETS_BYTES_PER_10K: bandwidth (bytes) per 10k pageviews above
            which `heavy_assets` fires.
        USAGE_DROP_PCT / USAGE_SPIKE_PCT: pageview change (%) thresholds for
            `usage_drop` and `usage_spike`.
        DEFAULT_USAGE_MONTHS: Usage window when the caller gives none.
        DEFAULT_RISK_INVOICES: Invoice window used by the risk scorer.
    """

    DATABASE_URL: str = "sqlite:///./app.db"
    ECHO_SQL: bool = False
    SEED_ON_START: bool = False
    LOG_LEVEL: str = "INFO"

    EMAIL_HISTORY_ENABLED: bool = True
    SOFT_COMPLAINT_KEYWORDS: List[str] = [
        "problem",
        "error",
        "issue",
        "complaint",
        "failure",
        "problema",
        "erro",
        "falha",
    ]
    HARD_COMPLAINT_KEYWORDS: List[str] = [
        "legal action",
        "lawsuit",
        "lawyer",
        "attorney",
        "regulator",
        "fraud",
        "legal",
        "processo",
        "procon",
        "advogado",
        "cancelamento",
    ]

    HIGH_REQUEST_RATIO: float = 20.0
    CRITICAL_REQUEST_RATIO: float = 50.0
    HEAVY_ASSETS_BYTES_PER_10K: float = 50 * 1024 ** 3
    USAGE_DROP_PCT: float = 25.0
    USAGE_SPIKE_PCT: float = 50.0

    DEFAULT_USAGE_MONTHS: int = 12
    DEFAULT_RISK_INVOICES: int = 6

    APP_TITLE: str = "Customer Insights API"
    APP_VERSION: str = "0.1.0"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
