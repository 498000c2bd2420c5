from __future__ import annotations

import getpass
import os
import platform
import re
import sys
from dataclasses import dataclass
from functools import lru_cache
from importlib import metadata
from pathlib import Path
from typing import Final, Mapping

NONE: Final = "[none]"
DISTRIBUTION_NAME: Final = "kusto-client"

APP_HEADER: Final = "x-ms-app"
USER_HEADER: Final = "x-ms-user"
CLIENT_VERSION_HEADER: Final = "x-ms-client-version"

_ESCAPE_PATTERN: Final[re.Pattern[str]] = re.compile(r"[\r\n\s{}|]+")


def escape_field(value: str) -> str:
    """Wrap a header field in braces, replacing separators with ``_``."""
    return "{" + _ESCAPE_PATTERN.sub("_", value) + "}"


def format_header(fields: Mapping[str, str | None]) -> str:
    """Render ``key:{value}`` pairs joined by ``|``, skipping empty entries."""
    return "|".join(
        f"{key}:{escape_field(value)}" for key, value in fields.items() if key and value
    )


@lru_cache(maxsize=1)
def package_version() -> str:
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return "0.0.0"


@lru_cache(maxsize=1)
def default_application() -> str:
    script = sys.argv[0] if sys.argv and sys.argv[0] else ""
    return Path(script).name or NONE


@lru_cache(maxsize=1)
def default_user() -> str:
    try:
        user = getpass.getuser()
    except (OSError, KeyError):
        user = os.environ.get("USERNAME", "")
        domain = os.environ.get("USERDOMAIN", "")
        if user and domain:
            user = f"{domain}\\{user}"
    return user or NONE


@lru_cache(maxsize=1)
def default_client_version() -> str:
    runtime = platform.python_implementation() or "UnknownRuntime"
    return format_header(
        {
            "Kusto.Python.Client": package_version(),
            f"Runtime.{escape_field(runtime)}": platform.python_version() or "UnknownVersion",
        }
    )


@dataclass(frozen=True, slots=True)
class ClientDetails:
    """Identification sent with every request through the tracing headers.

    ``None`` fields fall back to the running script, the OS user and the
    library version respectively.
    """

    application_for_tracing: str | None = None
    user_name_for_tracing: str | None = None
    appended_client_version_for_tracing: str | None = None

    @classmethod
    def from_connector_details(
        cls,
        name: str,
        version: str,
        send_user: bool = False,
        override_user: str | None = None,
        app_name: str | None = None,
        app_version: str | None = None,
        additional_fields: Mapping[str, str] | None = None,
    ) -> "ClientDetails":
        """Build details for a connector hosted inside another application.

        The application header reads like
        ``Kusto.MyConnector:{1.0.0}|App.{host}:{0.5.3}``. The user is only
        sent when ``send_user`` is true; otherwise ``[none]`` is sent.
        """

        fields: dict[str, str | None] = {f"Kusto.{name}": version}
        host = app_name if app_name is not None else default_application()
        fields[f"App.{escape_field(host)}"] = app_version if app_version is not None else NONE
        if additional_fields:
            fields.update(additional_fields)

        user = NONE
        if send_user:
            user = override_user if override_user is not None else default_user()

        return cls(application_for_tracing=format_header(fields), user_name_for_tracing=user)

    @property
    def application(self) -> str:
        return self.application_for_tracing or default_application()

    @property
    def user(self) -> str:
        return self.user_name_for_tracing or default_user()

    @property
    def client_version(self) -> str:
        base = default_client_version()
        if self.appended_client_version_for_tracing:
            return f"{base}|{self.appended_client_version_for_tracing}"
        return base

    def tracing_headers(self) -> dict[str, str]:
        return {
            APP_HEADER: self.application,
            USER_HEADER: self.user,
            CLIENT_VERSION_HEADER: self.client_version,
        }


__all__ = [
    "APP_HEADER",
    "CLIENT_VERSION_HEADER",
    "ClientDetails",
    "NONE",
    "USER_HEADER",
    "escape_field",
    "format_header",
]
