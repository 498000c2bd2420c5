"""Identity backends: the pluggable token sources behind :class:`TokenProvider`.

Each backend wraps one MSAL credential flow. Blocking MSAL calls run in a
worker thread so the event loop stays responsive.
"""

from __future__ import annotations

import asyncio
import inspect
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, runtime_checkable

import msal
import requests

from kusto_client.errors import KustoAuthenticationError, KustoClientError
from kusto_client.utils import get_logger

from .token_cache import TokenCacheManager
from .types import AuthMode, AuthorityContext, CachedToken


logger = get_logger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

INTERACTION_REQUIRED_ERRORS = frozenset(
    {"interaction_required", "login_required", "consent_required", "invalid_grant"}
)

TokenCallback = Callable[[], str | Awaitable[str]]
DeviceCodeCallback = Callable[[str], None]


@runtime_checkable
class IdentityBackend(Protocol):
    """Source of tokens for one credential flow."""

    async def acquire_silent(
        self, context: AuthorityContext, cached: CachedToken
    ) -> CachedToken | None:
        """Refresh without user interaction; ``None`` when that is not possible."""
        ...

    async def acquire_new(self, context: AuthorityContext) -> CachedToken:
        """Run the full credential flow."""
        ...


def token_from_msal_result(
    result: Mapping[str, Any] | None,
    scopes: Sequence[str] | frozenset[str],
) -> CachedToken:
    """Convert an MSAL result dict into a :class:`CachedToken`."""

    if not result:
        raise KustoAuthenticationError("Identity provider returned no result")

    if "error" in result:
        error_code = str(result.get("error"))
        error_desc = result.get("error_description") or error_code
        raise KustoAuthenticationError(
            f"MSAL error: {error_desc}",
            interaction_required=error_code in INTERACTION_REQUIRED_ERRORS,
            error_code=error_code,
        )

    access_token = result.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise KustoAuthenticationError("MSAL response missing access token")

    expires_on = result.get("expires_on")
    expires_in = result.get("expires_in")
    if isinstance(expires_on, (int, str)) and str(expires_on).isdigit():
        expires_at = datetime.fromtimestamp(int(expires_on), tz=timezone.utc)
    elif isinstance(expires_in, (int, str)) and str(expires_in).isdigit():
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
    else:
        expires_at = datetime.now(timezone.utc) + DEFAULT_TOKEN_LIFETIME

    granted = result.get("scope")
    granted_scopes = frozenset(granted.split()) if isinstance(granted, str) else frozenset(scopes)
    refresh_token = result.get("refresh_token")
    return CachedToken(
        access_token=access_token,
        expires_at=expires_at,
        refresh_token=refresh_token if isinstance(refresh_token, str) else None,
        scopes=granted_scopes,
    )


def _print_device_code(message: str) -> None:
    print(message, file=sys.stderr, flush=True)


class PublicClientBackend:
    """User sign-in through ``msal.PublicClientApplication``.

    Covers the interactive browser, device code and username/password flows.
    One application is kept per authority so personal accounts can refresh
    against the first-party authority while sharing a single token cache.
    """

    _MODES = frozenset({AuthMode.INTERACTIVE, AuthMode.DEVICE_CODE, AuthMode.USER_PASSWORD})

    def __init__(
        self,
        mode: AuthMode,
        *,
        cache_manager: TokenCacheManager | None = None,
        username: str | None = None,
        password: str | None = None,
        login_hint: str | None = None,
        device_code_callback: DeviceCodeCallback | None = None,
        timeout: float | None = None,
    ) -> None:
        if mode not in self._MODES:
            raise KustoClientError(f"{mode.value} is not a public client flow")
        if mode is AuthMode.USER_PASSWORD and not (username and password):
            raise KustoClientError("Username and password are required for user_password")
        self._mode = mode
        self._cache_manager = cache_manager or TokenCacheManager(persist=False)
        self._username = username
        self._password = password
        self._login_hint = login_hint or username
        self._device_code_callback = device_code_callback or _print_device_code
        self._timeout = timeout
        self._apps: dict[str, msal.PublicClientApplication] = {}
        self._lock = threading.RLock()

    @property
    def mode(self) -> AuthMode:
        return self._mode

    async def acquire_silent(
        self, context: AuthorityContext, cached: CachedToken
    ) -> CachedToken | None:
        return await asyncio.to_thread(self._acquire_silent_sync, context)

    async def acquire_new(self, context: AuthorityContext) -> CachedToken:
        return await asyncio.to_thread(self._acquire_new_sync, context)

    async def sign_out(self) -> None:
        await asyncio.to_thread(self._sign_out_sync)

    # Internal --------------------------------------------------------

    def _application(self, context: AuthorityContext, authority: str) -> msal.PublicClientApplication:
        with self._lock:
            app = self._apps.get(authority)
            if app is not None:
                return app
            try:
                app = msal.PublicClientApplication(
                    client_id=context.client_id,
                    authority=authority,
                    token_cache=self._cache_manager.cache,
                )
            except ValueError as exc:
                logger.error("Invalid MSAL configuration", authority=authority, error=str(exc))
                raise KustoClientError(f"Invalid authority '{authority}': {exc}", cause=exc) from exc
            self._apps[authority] = app
            logger.info("Configured MSAL PublicClientApplication", authority=authority)
            return app

    def _acquire_silent_sync(self, context: AuthorityContext) -> CachedToken | None:
        app = self._application(context, context.authority_url)
        accounts = app.get_accounts(username=self._username) if self._username else app.get_accounts()
        if not accounts:
            return None
        account = accounts[0]
        authority = context.authority_for_account(account)
        if authority != context.authority_url:
            app = self._application(context, authority)
        result = app.acquire_token_silent(list(context.scopes), account=account)
        if not result:
            return None
        if "error" in result:
            logger.info(
                "Silent token acquisition declined",
                error=result.get("error"),
                authority=authority,
            )
            return None
        token = token_from_msal_result(result, context.scopes)
        self._cache_manager.save()
        return token

    def _acquire_new_sync(self, context: AuthorityContext) -> CachedToken:
        # a persisted MSAL cache may still hold a usable refresh token
        token = self._acquire_silent_sync(context)
        if token is not None:
            return token

        app = self._application(context, context.authority_url)
        scopes = list(context.scopes)
        match self._mode:
            case AuthMode.INTERACTIVE:
                result = app.acquire_token_interactive(
                    scopes=scopes,
                    prompt="select_account",
                    login_hint=self._login_hint,
                    timeout=self._timeout,
                )
            case AuthMode.DEVICE_CODE:
                flow = app.initiate_device_flow(scopes=scopes)
                if "user_code" not in flow:
                    raise KustoAuthenticationError(
                        f"Failed to start device code flow: {flow.get('error_description') or flow}",
                        error_code=flow.get("error"),
                    )
                self._device_code_callback(str(flow.get("message")))
                result = app.acquire_token_by_device_flow(flow)
            case AuthMode.USER_PASSWORD:
                result = app.acquire_token_by_username_password(
                    self._username, self._password, scopes=scopes
                )
            case _:  # pragma: no cover - rejected in __init__
                raise KustoClientError(f"Unsupported public client flow {self._mode}")

        token = token_from_msal_result(result, context.scopes)
        self._cache_manager.save()
        logger.info("Acquired token", mode=self._mode.value, expires_at=token.expires_at.isoformat())
        return token

    def _sign_out_sync(self) -> None:
        with self._lock:
            for app in self._apps.values():
                for account in app.get_accounts():
                    app.remove_account(account)
            self._apps.clear()
        self._cache_manager.clear()
        logger.info("Signed out MSAL accounts")


class ConfidentialClientBackend:
    """Application sign-in with a client secret or a certificate."""

    def __init__(
        self,
        *,
        client_secret: str | None = None,
        private_key: str | None = None,
        thumbprint: str | None = None,
        public_certificate: str | None = None,
        cache_manager: TokenCacheManager | None = None,
    ) -> None:
        if client_secret:
            self._credential: str | dict[str, str] = client_secret
        elif private_key and thumbprint:
            credential = {"private_key": private_key, "thumbprint": thumbprint}
            if public_certificate:
                # subject name / issuer authentication
                credential["public_certificate"] = public_certificate
            self._credential = credential
        else:
            raise KustoClientError(
                "Either a client secret or a private key with its thumbprint is required"
            )
        self._cache_manager = cache_manager or TokenCacheManager(persist=False)
        self._app: msal.ConfidentialClientApplication | None = None
        self._lock = threading.Lock()

    async def acquire_silent(
        self, context: AuthorityContext, cached: CachedToken
    ) -> CachedToken | None:
        return await asyncio.to_thread(self._acquire_silent_sync, context)

    async def acquire_new(self, context: AuthorityContext) -> CachedToken:
        return await asyncio.to_thread(self._acquire_new_sync, context)

    def _application(self, context: AuthorityContext) -> msal.ConfidentialClientApplication:
        with self._lock:
            if self._app is None:
                try:
                    self._app = msal.ConfidentialClientApplication(
                        client_id=context.client_id,
                        client_credential=self._credential,
                        authority=context.authority_url,
                        token_cache=self._cache_manager.cache,
                    )
                except ValueError as exc:
                    raise KustoClientError(
                        f"Invalid confidential client configuration: {exc}", cause=exc
                    ) from exc
                logger.info(
                    "Configured MSAL ConfidentialClientApplication",
                    authority=context.authority_url,
                )
            return self._app

    def _acquire_silent_sync(self, context: AuthorityContext) -> CachedToken | None:
        result = self._application(context).acquire_token_silent(list(context.scopes), account=None)
        if not result or "error" in result:
            return None
        return token_from_msal_result(result, context.scopes)

    def _acquire_new_sync(self, context: AuthorityContext) -> CachedToken:
        result = self._application(context).acquire_token_for_client(scopes=list(context.scopes))
        token = token_from_msal_result(result, context.scopes)
        self._cache_manager.save()
        return token


class ManagedIdentityBackend:
    """Tokens from the Azure managed identity endpoint (system or user assigned)."""

    def __init__(self, client_id: str | None = None) -> None:
        self._client_id = client_id
        self._client: msal.ManagedIdentityClient | None = None
        self._lock = threading.Lock()

    async def acquire_silent(
        self, context: AuthorityContext, cached: CachedToken
    ) -> CachedToken | None:
        # ManagedIdentityClient consults its own cache on every call
        return None

    async def acquire_new(self, context: AuthorityContext) -> CachedToken:
        return await asyncio.to_thread(self._acquire_sync, context)

    def _managed_identity_client(self) -> msal.ManagedIdentityClient:
        with self._lock:
            if self._client is None:
                identity = (
                    msal.UserAssignedManagedIdentity(client_id=self._client_id)
                    if self._client_id
                    else msal.SystemAssignedManagedIdentity()
                )
                self._client = msal.ManagedIdentityClient(
                    identity,
                    http_client=requests.Session(),
                )
            return self._client

    def _acquire_sync(self, context: AuthorityContext) -> CachedToken:
        result = self._managed_identity_client().acquire_token_for_client(
            resource=context.resource
        )
        return token_from_msal_result(result, context.scopes)


class CallbackBackend:
    """Tokens supplied by caller code, sync or async.

    Callback tokens carry no expiry, so each acquisition invokes the callback.
    """

    def __init__(self, callback: TokenCallback) -> None:
        self._callback = callback

    async def acquire_silent(
        self, context: AuthorityContext, cached: CachedToken
    ) -> CachedToken | None:
        return None

    async def acquire_new(self, context: AuthorityContext) -> CachedToken:
        value = self._callback()
        if inspect.isawaitable(value):
            value = await value
        if not isinstance(value, str) or not value:
            raise KustoAuthenticationError("Token callback returned an empty token")
        return CachedToken(
            access_token=value,
            expires_at=datetime.now(timezone.utc),
            scopes=context.scopes,
        )


__all__ = [
    "CallbackBackend",
    "ConfidentialClientBackend",
    "DeviceCodeCallback",
    "IdentityBackend",
    "ManagedIdentityBackend",
    "PublicClientBackend",
    "TokenCallback",
    "token_from_msal_result",
]
