from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from dotenv import load_dotenv
from platformdirs import user_cache_dir, user_config_dir

if TYPE_CHECKING:  # pragma: no cover - typing only
    from kusto_client.config.connection import ConnectionParameters

APP_NAME = "KustoClient"
ENV_PREFIX = "KUSTO_CLIENT_"
ENV_FILE_NAME = "settings.env"
TOKEN_CACHE_NAME = "msal_token_cache.bin"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 240.0
DEFAULT_ACQUISITION_TIMEOUT_SECONDS = 120.0


def _config_dir() -> Path:
    path = Path(user_config_dir(APP_NAME, roaming=True))
    path.mkdir(parents=True, exist_ok=True)
    return path


def _cache_dir() -> Path:
    path = Path(user_cache_dir(APP_NAME))
    path.mkdir(parents=True, exist_ok=True)
    return path


def config_dir() -> Path:
    return _config_dir()


def cache_dir() -> Path:
    return _cache_dir()


def log_dir() -> Path:
    path = cache_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def default_token_cache_path() -> Path:
    return cache_dir() / TOKEN_CACHE_NAME


def _env_file_path(explicit: Path | None) -> Path:
    if explicit is not None:
        return explicit
    return _config_dir() / ENV_FILE_NAME


@dataclass(slots=True)
class Settings:
    """Cluster, credential and timeout configuration for a Kusto connection.

    Secrets (``client_secret``, ``password``) are only ever read from the
    environment and are never written back by :class:`SettingsManager`.
    """

    cluster_url: str | None = None
    database: str | None = None
    auth_mode: str = "device_code"
    client_id: str | None = None
    authority_id: str | None = None
    client_secret: str | None = None
    certificate_path: Path | None = None
    certificate_thumbprint: str | None = None
    managed_identity_client_id: str | None = None
    user_id: str | None = None
    password: str | None = None
    app_name: str | None = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    acquisition_timeout: float = DEFAULT_ACQUISITION_TIMEOUT_SECONDS
    token_cache_path: Path | None = None

    @property
    def is_configured(self) -> bool:
        """True when a cluster endpoint has been provided."""
        return bool(self.cluster_url)

    def resolved_token_cache_path(self) -> Path:
        return self.token_cache_path or default_token_cache_path()

    def to_connection_parameters(self) -> "ConnectionParameters":
        from kusto_client.config.connection import ConnectionParameters

        return ConnectionParameters.from_settings(self)


class SettingsManager:
    """Load and persist connection settings with environment overrides."""

    def __init__(self, env_file: Path | None = None) -> None:
        self._env_file = _env_file_path(env_file)

    @property
    def env_file(self) -> Path:
        return self._env_file

    def load(self) -> Settings:
        """Load settings from environment, falling back to persisted file."""
        load_dotenv(self._env_file, override=False)

        settings = Settings(
            cluster_url=self._get_env("CLUSTER_URL"),
            database=self._get_env("DATABASE"),
            client_id=self._get_env("CLIENT_ID"),
            authority_id=self._get_env("AUTHORITY_ID"),
            client_secret=self._get_env("CLIENT_SECRET"),
            certificate_thumbprint=self._get_env("CERTIFICATE_THUMBPRINT"),
            managed_identity_client_id=self._get_env("MANAGED_IDENTITY_CLIENT_ID"),
            user_id=self._get_env("USER_ID"),
            password=self._get_env("PASSWORD"),
            app_name=self._get_env("APP_NAME"),
        )

        auth_mode = self._get_env("AUTH_MODE")
        if auth_mode:
            settings.auth_mode = auth_mode.strip().lower()

        certificate_path = self._get_env("CERTIFICATE_PATH")
        if certificate_path:
            settings.certificate_path = Path(certificate_path).expanduser()

        token_cache_override = self._get_env("TOKEN_CACHE_PATH")
        if token_cache_override:
            settings.token_cache_path = Path(token_cache_override).expanduser()

        settings.request_timeout = self._get_float(
            "REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
        )
        settings.acquisition_timeout = self._get_float(
            "ACQUISITION_TIMEOUT", DEFAULT_ACQUISITION_TIMEOUT_SECONDS
        )
        return settings

    def save(self, settings: Settings) -> None:
        """Persist non-secret configuration fields to the managed env file."""
        self._env_file.parent.mkdir(parents=True, exist_ok=True)
        content = [
            f"{ENV_PREFIX}CLUSTER_URL={settings.cluster_url or ''}",
            f"{ENV_PREFIX}DATABASE={settings.database or ''}",
            f"{ENV_PREFIX}AUTH_MODE={settings.auth_mode}",
            f"{ENV_PREFIX}CLIENT_ID={settings.client_id or ''}",
            f"{ENV_PREFIX}AUTHORITY_ID={settings.authority_id or ''}",
            f"{ENV_PREFIX}CERTIFICATE_PATH={settings.certificate_path or ''}",
            f"{ENV_PREFIX}CERTIFICATE_THUMBPRINT={settings.certificate_thumbprint or ''}",
            f"{ENV_PREFIX}MANAGED_IDENTITY_CLIENT_ID={settings.managed_identity_client_id or ''}",
            f"{ENV_PREFIX}REQUEST_TIMEOUT={settings.request_timeout}",
            f"{ENV_PREFIX}ACQUISITION_TIMEOUT={settings.acquisition_timeout}",
        ]
        if settings.token_cache_path is not None:
            content.append(f"{ENV_PREFIX}TOKEN_CACHE_PATH={settings.token_cache_path}")
        self._env_file.write_text("\n".join(content) + "\n", encoding="utf-8")

    def _get_env(self, name: str) -> str | None:
        return os.getenv(f"{ENV_PREFIX}{name}") or None

    def _get_float(self, name: str, default: float) -> float:
        raw = self._get_env(name)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError:
            return default
        return value if value > 0 else default


__all__ = [
    "APP_NAME",
    "ENV_PREFIX",
    "Settings",
    "SettingsManager",
    "cache_dir",
    "config_dir",
    "default_token_cache_path",
    "log_dir",
]
