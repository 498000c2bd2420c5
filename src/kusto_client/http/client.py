from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Final, Mapping
from urllib.parse import urlsplit

import httpx

from kusto_client.errors import KustoClientError, KustoErrorCategory, KustoServiceError
from kusto_client.utils import get_logger
from kusto_client.utils.errors import is_permanent_transport_error

from .responses import create_error_from_response
from .tracing import ClientDetails


logger = get_logger(__name__)

KUSTO_API_VERSION: Final = "2019-02-13"
JSON_CONTENT_TYPE: Final = "application/json; charset=utf-8"
REDIRECT_STATUS_CODES: Final[frozenset[int]] = frozenset({302, 307})
LOCALHOST_NAMES: Final[frozenset[str]] = frozenset({"localhost", "127.0.0.1", "::1"})

RedirectGuard = Callable[[str], None]


def is_local_url(url: str) -> bool:
    host = urlsplit(url).hostname or ""
    return host.lower() in LOCALHOST_NAMES


def validate_url(url: str) -> str:
    """Reject anything but absolute HTTPS URLs, allowing plain HTTP to localhost."""

    try:
        parts = urlsplit(url.strip())
    except ValueError as exc:
        raise KustoClientError(f"Invalid URL '{url}': {exc}", url=url, cause=exc) from exc
    if not parts.scheme or not parts.netloc:
        raise KustoClientError(f"URL '{url}' is not absolute", url=url)
    if parts.scheme.lower() != "https" and not is_local_url(url):
        raise KustoClientError(
            f"Cannot forward security token to a remote service over an insecure "
            f"channel (http://): '{url}'",
            url=url,
        )
    return url.strip()


@dataclass(slots=True)
class HttpClientConfig:
    timeout: httpx.Timeout = field(
        default_factory=lambda: httpx.Timeout(240.0, connect=10.0)
    )
    client_details: ClientDetails = field(default_factory=ClientDetails)
    proxy: str | None = None
    max_connections: int = 40


class KustoHttpClient:
    """POST-only HTTP transport used for queries and management commands.

    The underlying :class:`httpx.AsyncClient` is either injected (and then
    owned by the caller) or created lazily and closed by :meth:`close`.
    """

    def __init__(
        self,
        config: HttpClientConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or HttpClientConfig()
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def config(self) -> HttpClientConfig:
        return self._config

    async def __aenter__(self) -> "KustoHttpClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def base_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": JSON_CONTENT_TYPE,
            "Accept": "application/json",
            "Accept-Encoding": "gzip,deflate",
            "x-ms-version": KUSTO_API_VERSION,
        }
        headers.update(self._config.client_details.tracing_headers())
        return headers

    async def post(
        self,
        url: str,
        payload: Mapping[str, Any] | str | bytes,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: httpx.Timeout | float | None = None,
        redirect_guard: RedirectGuard | None = None,
    ) -> httpx.Response:
        """POST ``payload`` and return the fully-read 200 response.

        A single 302/307 redirect to a different ``Location`` is followed by
        resubmitting the same body, once ``redirect_guard`` (when given) has
        accepted the new location. Any other non-200 status raises the error
        built by :func:`create_error_from_response`.
        """

        target = validate_url(url)
        body = self._encode(payload)
        request_headers = self.base_headers()
        if headers:
            request_headers.update(headers)

        response = await self._send(target, body, request_headers, timeout)
        if response.status_code in REDIRECT_STATUS_CODES:
            location = response.headers.get("Location")
            if location and location != target:
                logger.info(
                    "Following service redirect",
                    status_code=response.status_code,
                    url=target,
                    location=location,
                )
                if redirect_guard is not None:
                    redirect_guard(location)
                target = validate_url(location)
                response = await self._send(target, body, request_headers, timeout)

        if response.status_code != 200:
            raise create_error_from_response(target, response)
        return response

    async def post_json(
        self,
        url: str,
        payload: Mapping[str, Any] | str | bytes,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: httpx.Timeout | float | None = None,
        redirect_guard: RedirectGuard | None = None,
    ) -> Any:
        response = await self.post(
            url, payload, headers=headers, timeout=timeout, redirect_guard=redirect_guard
        )
        try:
            return response.json()
        except ValueError as exc:
            raise KustoServiceError(
                f"Service returned invalid JSON: {exc}",
                url=url,
                is_permanent=True,
                status_code=response.status_code,
                activity_id=response.headers.get("x-ms-activity-id", ""),
                cause=exc,
            ) from exc

    # Internal --------------------------------------------------------

    def _encode(self, payload: Mapping[str, Any] | str | bytes) -> bytes:
        if isinstance(payload, bytes):
            return payload
        if isinstance(payload, str):
            return payload.encode("utf-8")
        return json.dumps(payload).encode("utf-8")

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            limits = httpx.Limits(max_connections=self._config.max_connections)
            self._http_client = httpx.AsyncClient(
                timeout=self._config.timeout,
                limits=limits,
                proxy=self._config.proxy,
                follow_redirects=False,
            )
            self._owns_client = True
        return self._http_client

    async def _send(
        self,
        url: str,
        body: bytes,
        headers: Mapping[str, str],
        timeout: httpx.Timeout | float | None,
    ) -> httpx.Response:
        client = self._get_http_client()
        request = client.build_request(
            "POST",
            url,
            content=body,
            headers=headers,
            timeout=timeout if timeout is not None else self._config.timeout,
        )
        start = time.perf_counter()
        try:
            response = await client.send(request, follow_redirects=False)
        except httpx.TransportError as exc:
            permanent = is_permanent_transport_error(exc)
            logger.warning(
                "Transport failure sending request",
                url=url,
                error=str(exc),
                permanent=permanent,
            )
            raise KustoServiceError(
                f"Network error communicating with '{url}': {exc}",
                url=url,
                is_permanent=permanent,
                cause=exc,
                category=KustoErrorCategory.NETWORK,
            ) from exc

        duration_ms = (time.perf_counter() - start) * 1000
        await self._close_response(response)
        logger.debug(
            "Kusto request completed",
            url=url,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
            activity_id=response.headers.get("x-ms-activity-id"),
        )
        return response

    async def _close_response(self, response: httpx.Response) -> None:
        try:
            await response.aclose()
        except Exception as exc:  # noqa: BLE001 - body already consumed
            logger.warning("Failed to close response", error=str(exc))


__all__ = [
    "HttpClientConfig",
    "KUSTO_API_VERSION",
    "KustoHttpClient",
    "RedirectGuard",
    "is_local_url",
    "validate_url",
]
