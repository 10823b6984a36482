"""
Configuration settings for the progress engine.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Database
    # ========================================
    database_url: str = Field(
        default="sqlite:///progress_engine.db",
        description="SQLAlchemy connection string for the progress store",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # Event Coordinator
    # ========================================
    worker_count: int = Field(
        default=4,
        ge=1,
        description="Worker threads draining per-learner queues",
    )
    commit_max_attempts: int = Field(
        default=4,
        ge=1,
        description="Store write attempts before CommitFailed is raised",
    )
    commit_backoff_base_seconds: float = Field(
        default=0.05,
        ge=0.0,
        description="Initial backoff between commit attempts (doubles per attempt)",
    )
    commit_backoff_max_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Upper bound for a single backoff sleep",
    )
    idempotency_cache_size: int = Field(
        default=10_000,
        ge=1,
        description="Committed results kept in memory for duplicate event ids",
    )

    # ========================================
    # Mastery Evaluation
    # ========================================
    mastery_decay: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Per-day decay applied to assessment evidence weights",
    )
    default_mastery_threshold: float = Field(
        default=0.80,
        ge=0.0,
        le=1.0,
        description="Weighted score required for mastery when a unit sets none",
    )
    default_confidence_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Confidence required for mastery when a unit sets none",
    )
    confidence_variance_penalty: float = Field(
        default=10.0,
        ge=0.0,
        description="How strongly score variance reduces confidence",
    )

    # ========================================
    # Adaptation
    # ========================================
    adaptation_window: int = Field(
        default=3,
        ge=1,
        description="Sliding window size K for difficulty adaptation",
    )
    difficulty_min: int = Field(default=1, description="Lowest difficulty level")
    difficulty_max: int = Field(default=5, description="Highest difficulty level")
    difficulty_default: int = Field(default=3, description="Starting difficulty for new sessions")
    slow_response_ratio: float = Field(
        default=1.5,
        gt=0.0,
        description="Response time / expected time above which a correct answer counts as slow",
    )
    fast_response_ratio: float = Field(
        default=1.0,
        gt=0.0,
        description="Response time / expected time at or below which a correct answer counts as fast",
    )
    low_confidence_rating: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Self-reported confidence (1-5) at or below which a fast answer is not a mastery signal",
    )
    recommendation_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="Timeout for content recommendation lookups",
    )
    recommendation_api_url: str | None = Field(
        default=None,
        description="Base URL of the content recommendation service",
    )

    # ========================================
    # Sessions
    # ========================================
    session_idle_threshold_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Gaps shorter than this count as active time",
    )
    session_timeout_seconds: float = Field(
        default=1800.0,
        gt=0.0,
        description="Inactivity after which a session ends implicitly",
    )
    session_event_log_limit: int = Field(
        default=500,
        ge=1,
        description="Maximum pending events buffered per session",
    )
    session_summary_cache_size: int = Field(
        default=1000,
        ge=1,
        description="Finalized session summaries kept in memory (older ones stay in the store)",
    )

    # ========================================
    # Privacy
    # ========================================
    personalization_default: bool = Field(
        default=True,
        description="Personalization consent assumed for learners without explicit flags",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
