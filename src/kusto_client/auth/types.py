"""Authentication type definitions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, NamedTuple

PERSONAL_TENANT_ID = "9188040d-6c67-4c5b-b112-36a304b66dad"
ORGANIZATION_TENANT = "organizations"


class AuthMode(str, Enum):
    """Credential flows a connection can be configured with."""

    USER_PASSWORD = "user_password"
    APP_KEY = "app_key"
    APP_CERTIFICATE = "app_certificate"
    MANAGED_IDENTITY = "managed_identity"
    INTERACTIVE = "interactive"
    DEVICE_CODE = "device_code"
    TOKEN_CALLBACK = "token_callback"


class CachedToken(NamedTuple):
    """An access token held by a token provider.

    Instances are never mutated; a refresh produces a new instance that
    replaces the old one wholesale.
    """

    access_token: str
    """The bearer token string."""

    expires_at: datetime
    """Timezone-aware UTC expiry."""

    refresh_token: str | None = None
    """Refresh credential returned by the identity backend, when any."""

    scopes: frozenset[str] = frozenset()
    """Scopes the token was granted for."""

    def remaining_lifetime(self, now: datetime | None = None) -> timedelta:
        current = now or datetime.now(timezone.utc)
        return self.expires_at - current

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        return self.remaining_lifetime(now) <= margin


@dataclass(frozen=True, slots=True)
class AuthorityContext:
    """Authority, client and scopes resolved once per token provider."""

    authority_url: str
    client_id: str
    scopes: frozenset[str]
    first_party_authority_url: str | None = None
    redirect_uri: str | None = None

    @property
    def resource(self) -> str:
        """The resource URI, i.e. the first scope without ``/.default``."""
        scope = sorted(self.scopes)[0] if self.scopes else ""
        return scope.removesuffix(".default").rstrip("/")

    def authority_for_account(self, account: Mapping[str, Any] | None) -> str:
        """Personal (MSA) accounts sign in through the first-party authority."""

        home_account_id = str((account or {}).get("home_account_id") or "")
        if self.first_party_authority_url and home_account_id.endswith(PERSONAL_TENANT_ID):
            return self.first_party_authority_url
        return self.authority_url


__all__ = [
    "AuthMode",
    "AuthorityContext",
    "CachedToken",
    "ORGANIZATION_TENANT",
    "PERSONAL_TENANT_ID",
]
