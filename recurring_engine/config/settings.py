"""
Configuration Management for the Recurring Engine

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Engine settings change what the engine does (global switch, failure
thresholds). Startup settings only change WHEN and HOW NOISILY the
startup wrapper calls the engine; they never change engine semantics.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Auto-apply engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AUTO_APPLY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="Global switch; when off, runs return an empty result"
    )
    default_max_failed_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Failure threshold for new definitions"
    )
    # Statement balances fluctuate, so card payments get more room
    credit_card_max_failed_attempts: int = Field(
        default=5,
        ge=1,
        le=10,
        description="Recommended failure threshold for credit-card payments"
    )


class StartupSettings(BaseSettings):
    """
    Startup wrapper configuration.

    Governs the delayed, single-shot auto-apply check after login.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTO_APPLY_STARTUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(
        default=True,
        description="Run the auto-apply check on startup"
    )
    delay_ms: int = Field(
        default=2000,
        ge=0,
        description="Delay before the check so startup is not blocked"
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries when the run fails before its batch starts"
    )
    retry_delay_ms: int = Field(
        default=5000,
        ge=0,
        description="Delay between retries"
    )
    timeout_ms: int = Field(
        default=30000,
        ge=1,
        description="How long to wait for a run before giving up waiting"
    )
    enable_logging: bool = Field(
        default=True,
        description="Emit startup log lines"
    )
    enable_notifications: bool = Field(
        default=True,
        description="Surface run summaries through the notifier"
    )
    skip_on_error: bool = Field(
        default=True,
        description="Absorb startup errors instead of raising them"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def engine(self) -> EngineSettings:
        return EngineSettings()

    @property
    def startup(self) -> StartupSettings:
        return StartupSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    try:
        _ = settings.engine
        results["engine"] = True
    except Exception as e:
        results["engine"] = False
        results["engine_error"] = str(e)

    try:
        _ = settings.startup
        results["startup"] = True
    except Exception as e:
        results["startup"] = False
        results["startup_error"] = str(e)

    return results
