from __future__ import annotations

import asyncio
import errno
import socket
from dataclasses import dataclass
from typing import Final

import httpx

from kusto_client.errors import KustoError, KustoErrorCategory


_PERMANENT_ERRNOS: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(socket, "EAI_NONAME", None),
        getattr(socket, "EAI_FAIL", None),
        getattr(socket, "EAI_NODATA", None),
        getattr(socket, "EAI_SERVICE", None),
        errno.ECONNREFUSED,
    )
    if code is not None
)

_PERMANENT_MARKERS: Final[tuple[str, ...]] = (
    "name or service not known",
    "nodename nor servname provided",
    "no address associated with hostname",
    "getaddrinfo failed",
    "connection refused",
)


@dataclass(slots=True)
class ErrorDescriptor:
    headline: str
    detail: str
    transient: bool = False


def _iter_chain(error: BaseException):
    current: BaseException | None = error
    visited: set[int] = set()
    while current is not None and id(current) not in visited:
        visited.add(id(current))
        yield current
        inner: BaseException | None = None
        if isinstance(current, KustoError) and current.cause is not None:
            inner = current.cause
        elif current.__cause__ is not None:
            inner = current.__cause__
        elif current.__context__ is not None:
            inner = current.__context__
        current = inner


def is_permanent_transport_error(error: BaseException) -> bool:
    """Classify a transport failure: DNS and refused connections are permanent.

    Timeouts (connect, read, write, pool) are always retriable.
    """

    for link in _iter_chain(error):
        if isinstance(link, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return False
        if isinstance(link, (socket.gaierror, ConnectionRefusedError)):
            return True
        if isinstance(link, OSError) and link.errno in _PERMANENT_ERRNOS:
            return True
        text = str(link).lower()
        if any(marker in text for marker in _PERMANENT_MARKERS):
            return True
    return False


def describe_exception(error: Exception) -> ErrorDescriptor:
    """Summarise an exception for CLI output and structured logs."""

    if isinstance(error, KustoError):
        return ErrorDescriptor(
            headline=_headline(error.category),
            detail=error.message,
            transient=error.is_retriable,
        )

    for link in _iter_chain(error):
        if isinstance(link, (httpx.TimeoutException, asyncio.TimeoutError)):
            return ErrorDescriptor(
                headline="Timed out waiting for the service.",
                detail=f"{type(link).__name__}: {link}",
                transient=True,
            )
        if isinstance(link, httpx.TransportError):
            return ErrorDescriptor(
                headline="Network issue contacting the service.",
                detail=f"{type(link).__name__}: {link}",
                transient=not is_permanent_transport_error(link),
            )

    return ErrorDescriptor(
        headline="Operation failed.",
        detail=f"{type(error).__name__}: {error}",
    )


def _headline(category: KustoErrorCategory) -> str:
    match category:
        case KustoErrorCategory.CLIENT:
            return "The request was rejected before it was sent."
        case KustoErrorCategory.THROTTLING:
            return "The service throttled the request."
        case KustoErrorCategory.NETWORK:
            return "Network issue contacting the service."
        case KustoErrorCategory.AUTHENTICATION:
            return "Authentication with the identity provider failed."
        case KustoErrorCategory.QUERY:
            return "The query failed on the service."
        case KustoErrorCategory.SERVICE:
            return "The service returned an error."
        case _:
            return "Operation failed."


__all__ = ["ErrorDescriptor", "describe_exception", "is_permanent_transport_error"]
