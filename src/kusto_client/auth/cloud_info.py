from __future__ import annotations

import asyncio
import json
import os
from typing import Awaitable, Callable, Final
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kusto_client.errors import KustoClientError, KustoErrorCategory, KustoServiceError
from kusto_client.http.responses import create_error_from_response
from kusto_client.utils import get_logger
from kusto_client.utils.errors import is_permanent_transport_error

from .types import ORGANIZATION_TENANT, AuthorityContext


logger = get_logger(__name__)

METADATA_ENDPOINT: Final = "/v1/rest/auth/metadata"
AAD_AUTHORITY_ENV: Final = "AadAuthorityUri"
LOCALHOST: Final = "http://localhost"


class CloudInfo(BaseModel):
    """Identity settings a cluster publishes under ``AzureAD`` in its metadata."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    login_mfa_required: bool = Field(default=False, alias="LoginMfaRequired")
    login_endpoint: str = Field(alias="LoginEndpoint")
    kusto_client_app_id: str = Field(alias="KustoClientAppId")
    kusto_client_redirect_uri: str = Field(alias="KustoClientRedirectUri")
    kusto_service_resource_id: str = Field(alias="KustoServiceResourceId")
    first_party_authority_url: str = Field(alias="FirstPartyAuthorityUrl")

    def determine_scope(self) -> str:
        resource = self.kusto_service_resource_id
        if self.login_mfa_required:
            resource = resource.replace(".kusto.", ".kustomfa.")
        if not resource.endswith("/"):
            resource += "/"
        return resource + ".default"

    def authority_url(self, authority_id: str | None = None) -> str:
        login_endpoint = os.getenv(AAD_AUTHORITY_ENV) or self.login_endpoint
        return f"{login_endpoint.rstrip('/')}/{authority_id or ORGANIZATION_TENANT}"

    def authority_context(
        self,
        authority_id: str | None = None,
        client_id: str | None = None,
    ) -> AuthorityContext:
        """Derive the authority context; ``client_id`` defaults to the cloud's app id."""

        return AuthorityContext(
            authority_url=self.authority_url(authority_id),
            client_id=client_id or self.kusto_client_app_id,
            scopes=frozenset({self.determine_scope()}),
            first_party_authority_url=self.first_party_authority_url,
            redirect_uri=self.kusto_client_redirect_uri,
        )


DEFAULT_CLOUD: Final = CloudInfo(
    login_mfa_required=False,
    login_endpoint="https://login.microsoftonline.com",
    kusto_client_app_id="db662dc1-0cfe-4e1c-a843-19a68e65be58",
    kusto_client_redirect_uri="https://microsoft/kustoclient",
    kusto_service_resource_id="https://kusto.kusto.windows.net",
    first_party_authority_url=(
        "https://login.microsoftonline.com/f8cdef31-a31e-4b4a-93e4-5f571e91255a"
    ),
)

CloudInfoLookup = Callable[[str], Awaitable[CloudInfo]]


def cluster_key(cluster_url: str) -> str:
    """Normalise a cluster URL to ``scheme://host[:port]`` for caching."""

    parts = urlsplit(cluster_url.strip())
    if not parts.scheme or not parts.netloc:
        raise KustoClientError(f"Cluster URL '{cluster_url}' is not absolute", url=cluster_url)
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


class CloudInfoCache:
    """Cluster-to-:class:`CloudInfo` cache filled from each cluster's metadata endpoint.

    Share one instance between clients to avoid fetching the metadata of a
    cluster more than once.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        self._http_client = http_client
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._entries: dict[str, CloudInfo] = {LOCALHOST: DEFAULT_CLOUD}
        self._lock = asyncio.Lock()

    def __contains__(self, cluster_url: str) -> bool:
        return cluster_key(cluster_url) in self._entries

    def add(self, cluster_url: str, info: CloudInfo) -> None:
        self._entries[cluster_key(cluster_url)] = info

    def clear(self) -> None:
        self._entries = {LOCALHOST: DEFAULT_CLOUD}

    async def get(self, cluster_url: str) -> CloudInfo:
        key = cluster_key(cluster_url)
        cached = self._entries.get(key)
        if cached is not None:
            return cached
        async with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                return cached
            info = await self._fetch_with_retry(key)
            self._entries[key] = info
            logger.info(
                "Resolved cloud info",
                cluster=key,
                login_endpoint=info.login_endpoint,
                mfa_required=info.login_mfa_required,
            )
            return info

    __call__ = get

    # Internal --------------------------------------------------------

    async def _fetch_with_retry(self, key: str) -> CloudInfo:
        attempt = 1
        while True:
            try:
                return await self._fetch(key)
            except KustoServiceError as exc:
                if exc.is_permanent or attempt >= self._max_attempts:
                    raise
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Retrying cloud info fetch",
                    cluster=key,
                    attempt=attempt,
                    delay=delay,
                    error=exc.message,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _fetch(self, key: str) -> CloudInfo:
        url = f"{key}{METADATA_ENDPOINT}"
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.get(
                url,
                headers={"Accept": "application/json", "Accept-Encoding": "gzip,deflate"},
                follow_redirects=False,
            )
        except httpx.TransportError as exc:
            raise KustoServiceError(
                f"Failed to fetch cloud info from '{url}': {exc}",
                url=url,
                is_permanent=is_permanent_transport_error(exc),
                cause=exc,
                category=KustoErrorCategory.NETWORK,
            ) from exc
        finally:
            if self._http_client is None:
                await client.aclose()

        if response.status_code == 200:
            return self._parse(url, response.text)
        if response.status_code == 404:
            # older clusters do not expose the metadata endpoint
            return DEFAULT_CLOUD

        error = create_error_from_response(url, response)
        error.is_permanent = response.status_code != 429
        raise error

    def _parse(self, url: str, text: str) -> CloudInfo:
        try:
            payload = json.loads(text) if text.strip() else None
        except ValueError as exc:
            raise KustoServiceError(
                f"Invalid JSON from metadata endpoint '{url}': {exc}",
                url=url,
                is_permanent=True,
                cause=exc,
            ) from exc
        if not payload:
            raise KustoServiceError(
                "Error in metadata endpoint, received no data",
                url=url,
                is_permanent=True,
            )
        azure_ad = payload.get("AzureAD") if isinstance(payload, dict) else None
        if azure_ad is None:
            return DEFAULT_CLOUD
        try:
            return CloudInfo.model_validate(azure_ad)
        except ValidationError as exc:
            raise KustoServiceError(
                f"Malformed AzureAD metadata from '{url}': {exc}",
                url=url,
                is_permanent=True,
                cause=exc,
            ) from exc


__all__ = [
    "CloudInfo",
    "CloudInfoCache",
    "CloudInfoLookup",
    "DEFAULT_CLOUD",
    "METADATA_ENDPOINT",
    "cluster_key",
]
