from __future__ import annotations

import asyncio

import pytest

from kusto_client.auth import DEFAULT_CLOUD, CloudInfo, TokenProvider
from kusto_client.errors import KustoAuthenticationError, KustoClientError

from tests.factories import make_cached_token, make_context
from tests.stubs import FakeIdentityBackend, FrozenClock


CLUSTER = "https://help.kusto.windows.net"


def _provider(
    backend: FakeIdentityBackend,
    clock: FrozenClock | None = None,
    **kwargs,
) -> TokenProvider:
    kwargs.setdefault("context", make_context())
    return TokenProvider(CLUSTER, backend, clock=clock or FrozenClock(), **kwargs)


@pytest.mark.asyncio
async def test_first_call_acquires_new_token() -> None:
    clock = FrozenClock()
    backend = FakeIdentityBackend(new=[make_cached_token("first", now=clock.now)])
    provider = _provider(backend, clock)

    assert await provider.acquire_access_token() == "first"
    assert len(backend.new_calls) == 1
    assert backend.silent_calls == []
    assert provider.cached_token is not None


@pytest.mark.asyncio
async def test_valid_cached_token_is_reused_without_backend_calls() -> None:
    clock = FrozenClock()
    backend = FakeIdentityBackend(new=[make_cached_token("first", now=clock.now)])
    provider = _provider(backend, clock)

    await provider.acquire_access_token()
    clock.advance(minutes=30)
    assert await provider.acquire_access_token() == "first"

    assert len(backend.new_calls) == 1
    assert backend.silent_calls == []


@pytest.mark.asyncio
async def test_token_near_expiry_is_refreshed_silently() -> None:
    clock = FrozenClock()
    initial = make_cached_token("first", now=clock.now, expires_in=3600)
    backend = FakeIdentityBackend(
        new=[initial],
        silent=[make_cached_token("refreshed", now=clock.now, expires_in=7200)],
    )
    provider = _provider(backend, clock)

    await provider.acquire_access_token()
    clock.advance(seconds=3600 - 30)

    assert await provider.acquire_access_token() == "refreshed"
    assert len(backend.silent_calls) == 1
    assert backend.silent_calls[0][1] == initial
    assert len(backend.new_calls) == 1


@pytest.mark.asyncio
async def test_failed_silent_refresh_falls_back_to_new_acquisition() -> None:
    clock = FrozenClock()
    backend = FakeIdentityBackend(
        new=[
            make_cached_token("first", now=clock.now, expires_in=60),
            make_cached_token("second", now=clock.now, expires_in=7200),
        ],
        silent=[RuntimeError("refresh token revoked")],
    )
    provider = _provider(backend, clock)

    assert await provider.acquire_access_token() == "first"
    assert await provider.acquire_access_token() == "second"
    assert len(backend.silent_calls) == 1
    assert len(backend.new_calls) == 2


@pytest.mark.asyncio
async def test_silent_returning_none_triggers_new_acquisition() -> None:
    clock = FrozenClock()
    backend = FakeIdentityBackend(
        new=[
            make_cached_token("first", now=clock.now, expires_in=10),
            make_cached_token("second", now=clock.now, expires_in=7200),
        ],
        silent=[None],
    )
    provider = _provider(backend, clock)

    await provider.acquire_access_token()
    assert await provider.acquire_access_token() == "second"


@pytest.mark.asyncio
async def test_client_errors_from_silent_refresh_propagate() -> None:
    clock = FrozenClock()
    backend = FakeIdentityBackend(
        new=[make_cached_token("first", now=clock.now, expires_in=10)],
        silent=[KustoClientError("bad authority")],
    )
    provider = _provider(backend, clock)

    await provider.acquire_access_token()
    with pytest.raises(KustoClientError):
        await provider.acquire_access_token()


@pytest.mark.asyncio
async def test_failed_acquisition_leaves_cached_token_untouched() -> None:
    clock = FrozenClock()
    initial = make_cached_token("first", now=clock.now, expires_in=10)
    backend = FakeIdentityBackend(
        new=[initial, KustoAuthenticationError("user cancelled")],
    )
    provider = _provider(backend, clock)

    await provider.acquire_access_token()
    with pytest.raises(KustoAuthenticationError):
        await provider.acquire_access_token()

    assert provider.cached_token == initial


@pytest.mark.asyncio
async def test_unexpected_backend_errors_are_wrapped() -> None:
    backend = FakeIdentityBackend(new=[OSError("socket closed")])
    provider = _provider(backend)

    with pytest.raises(KustoAuthenticationError) as excinfo:
        await provider.acquire_access_token()

    assert isinstance(excinfo.value.cause, OSError)
    assert provider.cached_token is None


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_acquisition() -> None:
    clock = FrozenClock()
    backend = FakeIdentityBackend(
        new=[make_cached_token("shared", now=clock.now)],
        delay=0.01,
    )
    provider = _provider(backend, clock)

    tokens = await asyncio.gather(*(provider.acquire_access_token() for _ in range(10)))

    assert tokens == ["shared"] * 10
    assert len(backend.new_calls) == 1


@pytest.mark.asyncio
async def test_acquisition_timeout_raises_authentication_error() -> None:
    backend = FakeIdentityBackend(new=[make_cached_token("late")], delay=0.5)
    provider = _provider(backend, acquisition_timeout=0.01)

    with pytest.raises(KustoAuthenticationError) as excinfo:
        await provider.acquire_access_token()

    assert "timed out" in str(excinfo.value)
    assert excinfo.value.is_permanent is False
    assert provider.cached_token is None


@pytest.mark.asyncio
async def test_initialize_resolves_context_from_cloud_info() -> None:
    lookups: list[str] = []

    async def _lookup(url: str) -> CloudInfo:
        lookups.append(url)
        return DEFAULT_CLOUD

    backend = FakeIdentityBackend(new=[make_cached_token()])
    provider = TokenProvider(
        CLUSTER,
        backend,
        cloud_info=_lookup,
        authority_id="contoso.onmicrosoft.com",
        client_id="my-app",
    )
    assert provider.is_initialized is False

    await provider.acquire_access_token()
    await provider.initialize()

    assert lookups == [CLUSTER]
    context = provider.context
    assert context is not None
    assert context.client_id == "my-app"
    assert context.authority_url == "https://login.microsoftonline.com/contoso.onmicrosoft.com"
    assert context.scopes == frozenset({"https://kusto.kusto.windows.net/.default"})
    assert backend.new_calls == [context]


@pytest.mark.asyncio
async def test_invalidate_forces_new_acquisition() -> None:
    clock = FrozenClock()
    backend = FakeIdentityBackend(
        new=[
            make_cached_token("first", now=clock.now),
            make_cached_token("second", now=clock.now),
        ]
    )
    provider = _provider(backend, clock)

    await provider.acquire_access_token()
    provider.invalidate()

    assert await provider.acquire_access_token() == "second"
    assert backend.silent_calls == []


def test_sync_acquisition_runs_its_own_loop() -> None:
    backend = FakeIdentityBackend(new=[make_cached_token("sync")])
    provider = _provider(backend)

    assert provider.acquire_access_token_sync() == "sync"
