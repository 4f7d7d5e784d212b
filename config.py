"""
Configuration settings for drillqueue.

Uses Pydantic Settings for environment variable management with .env file support.
List values (steps, weights) are read from the environment as JSON, e.g.
FSRS_LEARNING_STEPS='[1, 10]'.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
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
    # Storage
    # ========================================
    database_url: str = Field(
        default="sqlite:///~/.drillqueue/state.db",
        description="SQLAlchemy URL for the memory store",
    )
    questions_path: str = Field(
        default="questions",
        description="JSON file or directory of JSON question files",
    )
    default_user_id: str = Field(
        default="local",
        description="Learner id used when the CLI is not given --user",
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
    # Session
    # ========================================
    lookahead_minutes: float = Field(
        default=20.0,
        ge=0,
        description="Cards due within this many minutes join (or stay in) the session",
    )
    reviews_per_new: int = Field(
        default=2,
        ge=0,
        description="Review cards served between two new cards",
    )
    session_limit: int | None = Field(
        default=20,
        ge=1,
        description="Max cards per session (None for no cap)",
    )

    # ========================================
    # FSRS Scheduler
    # ========================================
    fsrs_request_retention: float = Field(
        default=0.9,
        ge=0.7,
        le=0.99,
        description="Target recall probability at the due date",
    )
    fsrs_maximum_interval: int = Field(
        default=36500,
        ge=1,
        description="Longest review interval in days",
    )
    fsrs_enable_fuzz: bool = Field(
        default=True,
        description="Spread review due dates with a small random offset",
    )
    fsrs_learning_steps: list[float] = Field(
        default=[1.0, 10.0],
        description="Learning steps in minutes (each < 1440)",
    )
    fsrs_relearning_steps: list[float] = Field(
        default=[10.0],
        description="Relearning steps in minutes (each < 1440)",
    )
    fsrs_graduating_interval: int = Field(
        default=1,
        ge=1,
        description="Minimum interval in days when a card graduates with Good",
    )
    fsrs_easy_interval: int = Field(
        default=4,
        ge=1,
        description="Minimum interval in days when a card graduates with Easy",
    )
    fsrs_weights: list[float] | None = Field(
        default=None,
        description="Custom FSRS weights (19 values); None uses the defaults",
    )

    @field_validator("database_url")
    @classmethod
    def _expand_sqlite_home(cls, v: str) -> str:
        prefix = "sqlite:///"
        if v.startswith(prefix + "~"):
            return prefix + str(Path(v[len(prefix) :]).expanduser())
        return v

    def get_fsrs_config(self) -> dict[str, object]:
        """Get FSRS scheduler configuration as a dictionary."""
        return {
            "request_retention": self.fsrs_request_retention,
            "maximum_interval": self.fsrs_maximum_interval,
            "enable_fuzz": self.fsrs_enable_fuzz,
            "learning_steps": list(self.fsrs_learning_steps),
            "relearning_steps": list(self.fsrs_relearning_steps),
            "graduating_interval": self.fsrs_graduating_interval,
            "easy_interval": self.fsrs_easy_interval,
            "custom_weights": self.fsrs_weights is not None,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
