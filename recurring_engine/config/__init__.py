"""Configuration package."""

from recurring_engine.config.settings import (
    EngineSettings,
    Settings,
    StartupSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "EngineSettings",
    "Settings",
    "StartupSettings",
    "get_settings",
    "validate_all_settings",
]
