"""HTTP transport, tracing headers and error mapping."""

from .client import HttpClientConfig, KUSTO_API_VERSION, KustoHttpClient, validate_url
from .request_properties import ClientRequestProperties
from .responses import OneApiError, create_error_from_response
from .tracing import ClientDetails

__all__ = [
    "ClientDetails",
    "ClientRequestProperties",
    "HttpClientConfig",
    "KUSTO_API_VERSION",
    "KustoHttpClient",
    "OneApiError",
    "create_error_from_response",
    "validate_url",
]
