from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Final, Iterator

from kusto_client.errors import KustoParseError
from kusto_client.results.values import (
    Timespan,
    format_timespan,
    parse_timespan,
    strip_csl_type,
    to_csl_literal,
)

OPTION_SERVER_TIMEOUT: Final = "servertimeout"
OPTION_CLIENT_REQUEST_ID: Final = "ClientRequestId"
OPTIONS_KEY: Final = "Options"
PARAMETERS_KEY: Final = "Parameters"

MAX_SERVER_TIMEOUT: Final = timedelta(hours=1)


def _coerce_timeout(value: Any) -> timedelta:
    match value:
        case Timespan():
            timeout = value.to_timedelta()
        case timedelta():
            timeout = value
        case int() | float() if not isinstance(value, bool):
            timeout = timedelta(milliseconds=value)
        case str():
            timeout = parse_timespan(strip_csl_type(value, "time")).to_timedelta()
        case _:
            raise ValueError(f"Unsupported server timeout value: {value!r}")
    if timeout < timedelta(0):
        raise ValueError(f"Negative timeouts are invalid. Value: '{value}'")
    return min(timeout, MAX_SERVER_TIMEOUT)


class ClientRequestProperties:
    """Options and query parameters sent alongside a query or command.

    Parameter values are stored as CSL literals (``datetime(...)``,
    ``time(...)``, ``guid(...)``...) so they can be declared with a
    ``declare query_parameters`` statement on the server side.
    """

    def __init__(self) -> None:
        self._options: dict[str, Any] = {}
        self._parameters: dict[str, str] = {}

    def __repr__(self) -> str:
        return f"ClientRequestProperties({self.to_json()})"

    # Options ---------------------------------------------------------

    def set_option(self, name: str, value: Any) -> None:
        if name == OPTION_SERVER_TIMEOUT:
            self.server_timeout = value
            return
        self._options[name] = value

    def get_option(self, name: str, default: Any = None) -> Any:
        return self._options.get(name, default)

    def has_option(self, name: str) -> bool:
        return name in self._options

    def remove_option(self, name: str) -> None:
        self._options.pop(name, None)

    def clear_options(self) -> None:
        self._options.clear()

    def options(self) -> Iterator[tuple[str, Any]]:
        return iter(list(self._options.items()))

    @property
    def server_timeout(self) -> timedelta | None:
        return self._options.get(OPTION_SERVER_TIMEOUT)

    @server_timeout.setter
    def server_timeout(self, value: Any) -> None:
        """Accept a timedelta, milliseconds, or a timespan string; capped at one hour."""
        if value is None:
            self._options.pop(OPTION_SERVER_TIMEOUT, None)
            return
        self._options[OPTION_SERVER_TIMEOUT] = _coerce_timeout(value)

    @property
    def client_request_id(self) -> str | None:
        return self._options.get(OPTION_CLIENT_REQUEST_ID)

    @client_request_id.setter
    def client_request_id(self, value: str | None) -> None:
        if value is None:
            self._options.pop(OPTION_CLIENT_REQUEST_ID, None)
        else:
            self._options[OPTION_CLIENT_REQUEST_ID] = value

    # Parameters ------------------------------------------------------

    def set_parameter(self, name: str, value: Any) -> None:
        if not name:
            raise ValueError("Parameter name must not be empty")
        self._parameters[name] = to_csl_literal(value)

    def get_parameter(self, name: str) -> str | None:
        return self._parameters.get(name)

    def has_parameter(self, name: str) -> bool:
        return name in self._parameters

    def remove_parameter(self, name: str) -> None:
        self._parameters.pop(name, None)

    def clear_parameters(self) -> None:
        self._parameters.clear()

    def parameters(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._parameters.items()))

    # Serialization ---------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self._options:
            options = dict(self._options)
            timeout = options.get(OPTION_SERVER_TIMEOUT)
            if isinstance(timeout, timedelta):
                options[OPTION_SERVER_TIMEOUT] = format_timespan(timeout)
            payload[OPTIONS_KEY] = options
        if self._parameters:
            payload[PARAMETERS_KEY] = dict(self._parameters)
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, text: str | None) -> "ClientRequestProperties | None":
        if text is None or not text.strip():
            return None
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise KustoParseError(f"Invalid client request properties JSON: {exc}") from exc
        properties = cls()
        for name, value in (payload.get(OPTIONS_KEY) or {}).items():
            properties.set_option(name, value)
        for name, value in (payload.get(PARAMETERS_KEY) or {}).items():
            properties._parameters[name] = str(value)
        return properties


__all__ = [
    "ClientRequestProperties",
    "MAX_SERVER_TIMEOUT",
    "OPTION_CLIENT_REQUEST_ID",
    "OPTION_SERVER_TIMEOUT",
]
