from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from canvasflow.logging import get_logger

logger = get_logger(__name__)


class SchedulerStrategy(str, Enum):
    """How the wave scheduler derives execution order."""

    AUTO = "auto"
    POSITIONAL = "positional"


# Env names checked, in order, when GOOGLE_GEMINI_API_KEY is not set
GEMINI_KEY_FALLBACKS = ("GEMINI_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow execution service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/canvasflow", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared quota ledger; falls back to the primary store when unset",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    cors_allow_origins: str = env_field("*", "CORS_ALLOW_ORIGINS")

    # Generative backend
    gemini_api_key: str | None = env_field(None, "GOOGLE_GEMINI_API_KEY")
    gemini_model: str = env_field("gemini-2.0-flash", "GEMINI_MODEL")
    gemini_api_base: str = env_field(
        "https://generativelanguage.googleapis.com/v1beta", "GEMINI_API_BASE"
    )
    ai_timeout_seconds: float = env_field(
        120.0,
        "AI_TIMEOUT_SECONDS",
        description="Deadline for the single AI invocation of a run",
    )

    # Admission / quota
    free_tier_monthly_runs: int = env_field(3, "FREE_TIER_MONTHLY_RUNS")
    unlimited_tiers: str = env_field(
        "researcher,clinical",
        "UNLIMITED_TIERS",
        description="Comma separated subscription tiers that are never metered",
    )
    credit_debit_enabled: bool = env_field(True, "CREDIT_DEBIT_ENABLED")
    default_credit_balance: float = env_field(50.0, "DEFAULT_CREDIT_BALANCE")
    quota_reservation_ttl_seconds: int = env_field(
        15 * 60,
        "QUOTA_RESERVATION_TTL_SECONDS",
        description="Expiry for in-flight run reservations a worker never settled",
    )

    # Scheduling
    scheduler_strategy: SchedulerStrategy = env_field(
        SchedulerStrategy.AUTO, "SCHEDULER_STRATEGY"
    )
    wave_max_workers: int = env_field(8, "WAVE_MAX_WORKERS")
    wave_column_gap: float = env_field(150.0, "WAVE_COLUMN_GAP")

    # Content fetching
    article_fetch_enabled: bool = env_field(True, "ARTICLE_FETCH_ENABLED")
    article_fetch_timeout_seconds: float = env_field(
        15.0, "ARTICLE_FETCH_TIMEOUT_SECONDS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        if not merged.get("gemini_api_key"):
            for fallback in GEMINI_KEY_FALLBACKS:
                value = os.environ.get(fallback) or env_file_values.get(fallback)
                if value:
                    merged["gemini_api_key"] = value
                    break
        return cls(**merged)

    @field_validator("redis_url", "gemini_api_key")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("scheduler_strategy")
    @classmethod
    def _validate_strategy(cls, value: SchedulerStrategy) -> SchedulerStrategy:
        return SchedulerStrategy(value)

    @field_validator("wave_max_workers")
    @classmethod
    def _validate_workers(cls, value: int) -> int:
        if value < 1:
            logger.warning("wave_max_workers_invalid", value=value)
            return 1
        return value

    @property
    def unlimited_tier_set(self) -> frozenset[str]:
        return frozenset(
            tier.strip().lower() for tier in self.unlimited_tiers.split(",") if tier.strip()
        )

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
