"""Configuration helpers for kusto-client."""

from .settings import APP_NAME, ENV_PREFIX, Settings, SettingsManager

__all__ = ["APP_NAME", "ENV_PREFIX", "Settings", "SettingsManager"]
