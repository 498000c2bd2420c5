"""Async client for Kusto (Azure Data Explorer) clusters."""

from .auth import AuthMode, CloudInfoCache, TokenProvider
from .client import KustoClient
from .config.connection import ConnectionParameters
from .errors import (
    KustoAuthenticationError,
    KustoClientError,
    KustoError,
    KustoServiceError,
    KustoServiceQueryError,
    KustoThrottlingError,
)
from .http import ClientRequestProperties
from .results import KustoOperationResult, KustoResultTable

__version__ = "0.1.0"

__all__ = [
    "AuthMode",
    "ClientRequestProperties",
    "CloudInfoCache",
    "ConnectionParameters",
    "KustoAuthenticationError",
    "KustoClient",
    "KustoClientError",
    "KustoError",
    "KustoOperationResult",
    "KustoResultTable",
    "KustoServiceError",
    "KustoServiceQueryError",
    "KustoThrottlingError",
    "TokenProvider",
    "__version__",
]
