from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from kusto_client.auth.cloud_info import AAD_AUTHORITY_ENV, DEFAULT_CLOUD, CloudInfoCache
from kusto_client.config.settings import ENV_PREFIX


@pytest.fixture(autouse=True)
def isolated_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> Iterator[Path]:
    """Keep platformdirs paths and KUSTO_CLIENT_* variables local to each test."""

    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv(AAD_AUTHORITY_ENV, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    yield tmp_path


@pytest.fixture
def cluster_url() -> str:
    return "https://help.kusto.windows.net"


@pytest.fixture
def cloud_info_cache(cluster_url: str) -> CloudInfoCache:
    """Cloud info cache pre-seeded so no metadata request is issued."""

    cache = CloudInfoCache(backoff_seconds=0)
    cache.add(cluster_url, DEFAULT_CLOUD)
    return cache
