"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. The simulation timing
constants live here too: they stand in for real network and consensus
latency, so deployments and tests tune them instead of patching code.

Usage:
    from multisig_escrow.config import get_settings
    settings = get_settings()
    print(settings.required_confirmations)
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the multisig escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Persistence ---
    # Empty means the contract store lives in memory only.
    database_url: str = ""
    db_echo_sql: bool = False

    # --- Store lifecycle ---
    seed_demo_contracts: bool = False
    demo_participant: str = "demo_user"
    demo_participant_is_vendor: bool = False

    # --- Payment watcher ---
    required_confirmations: int = Field(default=2, ge=1)
    detection_delay_seconds: float = Field(default=3.0, ge=0)
    confirmation_interval_seconds: float = Field(default=3.0, ge=0)
    payment_window_seconds: int = Field(default=900, ge=1)  # 15 minutes
    countdown_tick_seconds: float = Field(default=1.0, gt=0)

    # --- Round-robin signing ---
    phase1_duration_seconds: float = Field(default=2.5, ge=0)
    phase2_duration_seconds: float = Field(default=3.0, ge=0)

    # --- Escrow defaults ---
    auto_release_days: int = Field(default=14, ge=1)
    multisig_address_prefix: str = "888"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.database_url)

    @property
    def auto_release_window(self) -> timedelta:
        """Timeout after lock at which funds become eligible for auto-release."""
        return timedelta(days=self.auto_release_days)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
