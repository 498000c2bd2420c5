from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable

from kusto_client.errors import KustoAuthenticationError, KustoClientError
from kusto_client.utils import get_logger

from .cloud_info import CloudInfoCache, CloudInfoLookup
from .identity import IdentityBackend
from .types import AuthorityContext, CachedToken


logger = get_logger(__name__)

MIN_VALIDITY_MARGIN = timedelta(seconds=60)
DEFAULT_ACQUISITION_TIMEOUT = 120.0

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenProvider:
    """Hands out bearer tokens for one cluster, keeping at most one cached token.

    A cached token is returned as-is until it is within
    :data:`MIN_VALIDITY_MARGIN` of expiry. After that the backend is asked for
    a silent refresh first and for a new acquisition when the refresh yields
    nothing. Concurrent callers share a single in-flight acquisition. If the
    new acquisition fails, the error propagates and the cached token is left
    as it was.
    """

    def __init__(
        self,
        cluster_url: str,
        backend: IdentityBackend,
        *,
        cloud_info: CloudInfoLookup | None = None,
        authority_id: str | None = None,
        client_id: str | None = None,
        context: AuthorityContext | None = None,
        acquisition_timeout: float = DEFAULT_ACQUISITION_TIMEOUT,
        clock: Clock | None = None,
    ) -> None:
        self._cluster_url = cluster_url
        self._backend = backend
        self._cloud_info = cloud_info or CloudInfoCache().get
        self._authority_id = authority_id
        self._client_id = client_id
        self._context = context
        self._acquisition_timeout = acquisition_timeout
        self._clock = clock or _utc_now
        self._token: CachedToken | None = None
        self._lock = asyncio.Lock()

    @property
    def cluster_url(self) -> str:
        return self._cluster_url

    @property
    def is_initialized(self) -> bool:
        return self._context is not None

    @property
    def context(self) -> AuthorityContext | None:
        return self._context

    @property
    def cached_token(self) -> CachedToken | None:
        return self._token

    async def initialize(self) -> AuthorityContext:
        """Resolve the authority context from the cluster's cloud metadata."""

        if self._context is None:
            cloud = await self._cloud_info(self._cluster_url)
            self._context = cloud.authority_context(self._authority_id, self._client_id)
            logger.info(
                "Initialized token provider",
                cluster=self._cluster_url,
                authority=self._context.authority_url,
                scopes=sorted(self._context.scopes),
            )
        return self._context

    async def acquire_access_token(self) -> str:
        token = self._token
        if token is not None and not self._near_expiry(token):
            return token.access_token

        async with self._lock:
            # another caller may have refreshed while we waited
            token = self._token
            if token is not None and not self._near_expiry(token):
                return token.access_token

            context = await self.initialize()
            try:
                fresh = await asyncio.wait_for(
                    self._refresh_or_acquire(context, token),
                    timeout=self._acquisition_timeout,
                )
            except asyncio.TimeoutError as exc:
                logger.error(
                    "Token acquisition timed out",
                    cluster=self._cluster_url,
                    timeout=self._acquisition_timeout,
                )
                raise KustoAuthenticationError(
                    f"Token acquisition timed out after {self._acquisition_timeout} seconds",
                    cause=exc,
                ) from exc
            self._token = fresh
            return fresh.access_token

    def acquire_access_token_sync(self) -> str:
        """Blocking variant for scripts and tests; not usable inside a running loop."""
        return asyncio.run(self.acquire_access_token())

    def invalidate(self) -> None:
        """Forget the cached token so the next call acquires a new one."""
        self._token = None

    # Internal --------------------------------------------------------

    def _near_expiry(self, token: CachedToken) -> bool:
        return token.expires_within(MIN_VALIDITY_MARGIN, self._clock())

    async def _refresh_or_acquire(
        self,
        context: AuthorityContext,
        current: CachedToken | None,
    ) -> CachedToken:
        if current is not None:
            refreshed = await self._try_silent(context, current)
            if refreshed is not None:
                logger.debug("Refreshed token silently", cluster=self._cluster_url)
                return refreshed

        try:
            token = await self._backend.acquire_new(context)
        except (KustoAuthenticationError, KustoClientError):
            raise
        except Exception as exc:  # noqa: BLE001 - surface unexpected backend issues
            logger.exception("Token acquisition failed", cluster=self._cluster_url)
            raise KustoAuthenticationError(
                f"Failed to acquire a token: {exc}",
                cause=exc,
            ) from exc
        logger.debug("Acquired new token", cluster=self._cluster_url)
        return token

    async def _try_silent(
        self,
        context: AuthorityContext,
        current: CachedToken,
    ) -> CachedToken | None:
        try:
            return await self._backend.acquire_silent(context, current)
        except KustoClientError:
            raise
        except Exception as exc:  # noqa: BLE001 - falls through to a new acquisition
            logger.warning(
                "Silent token refresh failed",
                cluster=self._cluster_url,
                error=str(exc),
            )
            return None


__all__ = ["DEFAULT_ACQUISITION_TIMEOUT", "MIN_VALIDITY_MARGIN", "TokenProvider"]
