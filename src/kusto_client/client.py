from __future__ import annotations

import uuid
from datetime import timedelta
from functools import partial
from typing import TYPE_CHECKING, Final

import httpx

from kusto_client.auth.cloud_info import CloudInfoCache
from kusto_client.auth.endpoints import TrustedEndpoints, default_trusted_endpoints
from kusto_client.auth.token_provider import DEFAULT_ACQUISITION_TIMEOUT, TokenProvider
from kusto_client.config.connection import ConnectionParameters
from kusto_client.errors import KustoServiceError
from kusto_client.http.client import HttpClientConfig, KustoHttpClient
from kusto_client.http.request_properties import ClientRequestProperties
from kusto_client.http.tracing import ClientDetails
from kusto_client.results.operation_result import EnvelopeVersion, KustoOperationResult
from kusto_client.utils import get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from kusto_client.config.settings import Settings


logger = get_logger(__name__)

QUERY_ENDPOINT: Final = "/v2/rest/query"
MGMT_ENDPOINT: Final = "/v1/rest/mgmt"
CLIENT_REQUEST_ID_HEADER: Final = "x-ms-client-request-id"
CLIENT_REQUEST_ID_PREFIX: Final = "KPC.execute;"
MGMT_PREFIX: Final = "."

QUERY_TIMEOUT: Final = timedelta(minutes=4)
MGMT_TIMEOUT: Final = timedelta(minutes=10)
CLIENT_SERVER_DELTA: Final = timedelta(seconds=30)
CONNECT_TIMEOUT_SECONDS: Final = 10.0


class KustoClient:
    """Runs queries and management commands against one cluster.

    The client owns whatever it creates (HTTP transport, token provider) and
    releases it on :meth:`close`; injected collaborators are left alone.
    """

    def __init__(
        self,
        connection: ConnectionParameters,
        *,
        http_client: KustoHttpClient | None = None,
        cloud_info_cache: CloudInfoCache | None = None,
        client_details: ClientDetails | None = None,
        token_provider: TokenProvider | None = None,
        request_timeout: timedelta | None = None,
        acquisition_timeout: float = DEFAULT_ACQUISITION_TIMEOUT,
        trusted_endpoints: TrustedEndpoints | None = None,
    ) -> None:
        self._connection = connection
        self._cluster_url = connection.cluster_url
        self._owns_http_client = http_client is None
        self._http_client = http_client or KustoHttpClient(
            HttpClientConfig(client_details=client_details or connection.client_details())
        )
        self._cloud_info_cache = cloud_info_cache or CloudInfoCache()
        self._token_provider = token_provider or TokenProvider(
            connection.cluster_url,
            connection.build_identity_backend(),
            cloud_info=self._cloud_info_cache.get,
            authority_id=connection.authority_id,
            client_id=connection.client_id,
            acquisition_timeout=acquisition_timeout,
        )
        self._trusted_endpoints = trusted_endpoints or default_trusted_endpoints()
        self._login_endpoint: str | None = None
        self._request_timeout = request_timeout
        self._closed = False

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: object) -> "KustoClient":
        """Build a client from loaded :class:`Settings`, honouring its timeouts."""

        return cls(
            settings.to_connection_parameters(),
            request_timeout=timedelta(seconds=settings.request_timeout),
            acquisition_timeout=settings.acquisition_timeout,
            **kwargs,  # type: ignore[arg-type]
        )

    @property
    def cluster_url(self) -> str:
        return self._cluster_url

    @property
    def token_provider(self) -> TokenProvider:
        return self._token_provider

    async def __aenter__(self) -> "KustoClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_http_client:
            await self._http_client.close()

    async def execute(
        self,
        database: str | None,
        command: str,
        properties: ClientRequestProperties | None = None,
    ) -> KustoOperationResult:
        """Dispatch to :meth:`execute_mgmt` for ``.commands``, else :meth:`execute_query`."""

        if command.lstrip().startswith(MGMT_PREFIX):
            return await self.execute_mgmt(database, command, properties)
        return await self.execute_query(database, command, properties)

    async def execute_query(
        self,
        database: str | None,
        query: str,
        properties: ClientRequestProperties | None = None,
    ) -> KustoOperationResult:
        return await self._execute(
            QUERY_ENDPOINT, database, query, properties, QUERY_TIMEOUT, EnvelopeVersion.V2
        )

    async def execute_mgmt(
        self,
        database: str | None,
        command: str,
        properties: ClientRequestProperties | None = None,
    ) -> KustoOperationResult:
        return await self._execute(
            MGMT_ENDPOINT, database, command, properties, MGMT_TIMEOUT, EnvelopeVersion.V1
        )

    # Internal --------------------------------------------------------

    async def _execute(
        self,
        endpoint: str,
        database: str | None,
        text: str,
        properties: ClientRequestProperties | None,
        default_timeout: timedelta,
        version: EnvelopeVersion,
    ) -> KustoOperationResult:
        if self._closed:
            raise RuntimeError("KustoClient is closed")

        url = f"{self._cluster_url}{endpoint}"
        payload: dict[str, str | None] = {"db": database, "csl": text}
        if properties is not None:
            payload["properties"] = properties.to_json()

        login_endpoint = await self._ensure_trusted_endpoint()
        token = await self._token_provider.acquire_access_token()
        request_id = self._client_request_id(properties)
        headers = {
            "Authorization": f"Bearer {token}",
            CLIENT_REQUEST_ID_HEADER: request_id,
        }
        logger.debug(
            "Executing Kusto request",
            endpoint=endpoint,
            database=database,
            client_request_id=request_id,
        )

        try:
            response = await self._http_client.post(
                url,
                payload,
                headers=headers,
                timeout=self._timeout_for(properties, default_timeout),
                redirect_guard=partial(
                    self._trusted_endpoints.validate, login_endpoint=login_endpoint
                ),
            )
        except KustoServiceError as exc:
            if exc.status_code == 401:
                # the service rejected the token; force a new one next time
                self._token_provider.invalidate()
            raise
        return KustoOperationResult(response.content, version)

    async def _ensure_trusted_endpoint(self) -> str:
        """Check the cluster host once per client, against its cloud's login endpoint."""

        if self._login_endpoint is None:
            info = await self._cloud_info_cache.get(self._cluster_url)
            self._trusted_endpoints.validate(self._cluster_url, info.login_endpoint)
            self._login_endpoint = info.login_endpoint
        return self._login_endpoint

    def _client_request_id(self, properties: ClientRequestProperties | None) -> str:
        if properties is not None and properties.client_request_id:
            return properties.client_request_id
        return f"{CLIENT_REQUEST_ID_PREFIX}{uuid.uuid4()}"

    def _timeout_for(
        self,
        properties: ClientRequestProperties | None,
        default_timeout: timedelta,
    ) -> httpx.Timeout:
        server_timeout = properties.server_timeout if properties is not None else None
        if server_timeout is not None:
            total = server_timeout + CLIENT_SERVER_DELTA
        else:
            total = self._request_timeout or default_timeout
        return httpx.Timeout(total.total_seconds(), connect=CONNECT_TIMEOUT_SECONDS)


__all__ = ["KustoClient"]
