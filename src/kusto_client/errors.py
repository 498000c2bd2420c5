from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:  # pragma: no cover - typing only
    from kusto_client.http.responses import OneApiError


class KustoErrorCategory(str, Enum):
    CLIENT = "client"
    SERVICE = "service"
    QUERY = "query"
    THROTTLING = "throttling"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    UNKNOWN = "unknown"


@dataclass(slots=True, eq=False)
class KustoError(Exception):
    message: str
    category: KustoErrorCategory = KustoErrorCategory.UNKNOWN
    is_permanent: bool = False
    cause: Exception | None = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message

    @property
    def is_retriable(self) -> bool:
        if self.is_permanent:
            return False
        return self.category in {
            KustoErrorCategory.THROTTLING,
            KustoErrorCategory.NETWORK,
            KustoErrorCategory.SERVICE,
            KustoErrorCategory.AUTHENTICATION,
        }


class KustoClientError(KustoError):
    """Raised for problems detected before a request leaves the process."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            message=message,
            category=KustoErrorCategory.CLIENT,
            is_permanent=True,
            cause=cause,
        )
        self.url = url


class KustoServiceError(KustoError):
    """Raised when the service (or the transport to it) rejects a request."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        is_permanent: bool = False,
        status_code: int | None = None,
        activity_id: str | None = None,
        api_error: "OneApiError | None" = None,
        cause: Exception | None = None,
        category: KustoErrorCategory = KustoErrorCategory.SERVICE,
    ) -> None:
        super().__init__(
            message=message,
            category=category,
            is_permanent=is_permanent,
            cause=cause,
        )
        self.url = url
        self.status_code = status_code
        self.activity_id = activity_id
        self.api_error = api_error


class KustoThrottlingError(KustoServiceError):
    def __init__(
        self,
        message: str = "Request was throttled",
        *,
        url: str | None = None,
        activity_id: str | None = None,
        retry_after: str | None = None,
    ) -> None:
        super().__init__(
            message,
            url=url,
            is_permanent=False,
            status_code=429,
            activity_id=activity_id,
            category=KustoErrorCategory.THROTTLING,
        )
        self.retry_after = retry_after


class KustoAuthenticationError(KustoError):
    """Raised when no token could be obtained from the identity backend.

    ``interaction_required`` is set when the backend reported that the caller
    has to sign in again; otherwise the failure is treated as transient.
    """

    def __init__(
        self,
        message: str = "Authentication failed",
        *,
        interaction_required: bool = False,
        error_code: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            message=message,
            category=KustoErrorCategory.AUTHENTICATION,
            is_permanent=interaction_required,
            cause=cause,
        )
        self.interaction_required = interaction_required
        self.error_code = error_code


class KustoServiceQueryError(KustoError):
    """Partial failure reported inline inside a result payload."""

    def __init__(
        self,
        message: str,
        *,
        exceptions: Sequence[Exception] = (),
        is_permanent: bool = False,
    ) -> None:
        super().__init__(
            message=message,
            category=KustoErrorCategory.QUERY,
            is_permanent=is_permanent,
        )
        self.exceptions: list[Exception] = list(exceptions)

    @classmethod
    def from_exceptions(
        cls,
        exceptions: Sequence[Exception],
        *,
        is_permanent: bool = False,
    ) -> "KustoServiceQueryError":
        if len(exceptions) > 1:
            message = "Query execution failed with multiple inner exceptions:\n" + "\n".join(
                str(exc) for exc in exceptions
            )
        elif exceptions:
            message = str(exceptions[0])
        else:
            message = "Query execution failed"
        return cls(message, exceptions=exceptions, is_permanent=is_permanent)


class JsonPropertyMissingError(KustoError):
    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            category=KustoErrorCategory.CLIENT,
            is_permanent=True,
        )


@dataclass(slots=True, eq=False)
class InlineQueryException(Exception):
    """One service-side exception embedded in a result row."""

    message: str
    api_error: "OneApiError | None" = field(default=None)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message


class KustoParseError(ValueError):
    """Raised when a guid, timespan, datetime or type name cannot be parsed."""


class NullValueError(TypeError):
    """A null cell was read through an accessor that cannot return ``None``."""


class ColumnCastError(TypeError):
    """A cell was read through an accessor narrower than its declared type."""


class ColumnNotFoundError(KeyError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Column '{self.name}' is not declared in this table"


__all__ = [
    "ColumnCastError",
    "ColumnNotFoundError",
    "InlineQueryException",
    "JsonPropertyMissingError",
    "KustoAuthenticationError",
    "KustoClientError",
    "KustoError",
    "KustoErrorCategory",
    "KustoParseError",
    "KustoServiceError",
    "KustoServiceQueryError",
    "KustoThrottlingError",
    "NullValueError",
]
