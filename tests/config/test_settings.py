from __future__ import annotations

from pathlib import Path

import pytest

from kusto_client.config import Settings, SettingsManager
from kusto_client.config.settings import (
    DEFAULT_ACQUISITION_TIMEOUT_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    default_token_cache_path,
)


def test_load_reads_prefixed_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("KUSTO_CLIENT_CLUSTER_URL", "https://help.kusto.windows.net")
    monkeypatch.setenv("KUSTO_CLIENT_DATABASE", "Samples")
    monkeypatch.setenv("KUSTO_CLIENT_AUTH_MODE", " App_Key ")
    monkeypatch.setenv("KUSTO_CLIENT_CLIENT_SECRET", "s3cret")
    monkeypatch.setenv("KUSTO_CLIENT_REQUEST_TIMEOUT", "90")
    monkeypatch.setenv("KUSTO_CLIENT_TOKEN_CACHE_PATH", str(tmp_path / "cache.bin"))

    settings = SettingsManager(tmp_path / "settings.env").load()

    assert settings.cluster_url == "https://help.kusto.windows.net"
    assert settings.database == "Samples"
    assert settings.auth_mode == "app_key"
    assert settings.client_secret == "s3cret"
    assert settings.request_timeout == 90.0
    assert settings.acquisition_timeout == DEFAULT_ACQUISITION_TIMEOUT_SECONDS
    assert settings.resolved_token_cache_path() == tmp_path / "cache.bin"
    assert settings.is_configured


@pytest.mark.parametrize("raw", ["abc", "0", "-5"])
def test_invalid_timeouts_fall_back_to_default(
    monkeypatch: pytest.MonkeyPatch, tmp_path, raw: str
) -> None:
    monkeypatch.setenv("KUSTO_CLIENT_REQUEST_TIMEOUT", raw)

    settings = SettingsManager(tmp_path / "settings.env").load()

    assert settings.request_timeout == DEFAULT_REQUEST_TIMEOUT_SECONDS


def test_save_omits_secrets_and_load_reads_file(tmp_path) -> None:
    env_file = tmp_path / "nested" / "settings.env"
    manager = SettingsManager(env_file)
    manager.save(
        Settings(
            cluster_url="https://help.kusto.windows.net",
            database="Samples",
            auth_mode="app_certificate",
            client_id="app",
            client_secret="s3cret",
            password="hunter2",
            certificate_path=Path("/certs/app.pem"),
        )
    )

    content = env_file.read_text(encoding="utf-8")
    assert "s3cret" not in content
    assert "hunter2" not in content
    assert "KUSTO_CLIENT_CERTIFICATE_PATH=/certs/app.pem" in content

    loaded = manager.load()
    assert loaded.cluster_url == "https://help.kusto.windows.net"
    assert loaded.auth_mode == "app_certificate"
    assert loaded.certificate_path == Path("/certs/app.pem")
    assert loaded.client_secret is None


def test_unconfigured_settings_use_platform_cache() -> None:
    settings = Settings()

    assert not settings.is_configured
    assert settings.resolved_token_cache_path() == default_token_cache_path()
