from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from kusto_client.auth.identity import (
    CallbackBackend,
    ConfidentialClientBackend,
    DeviceCodeCallback,
    IdentityBackend,
    ManagedIdentityBackend,
    PublicClientBackend,
    TokenCallback,
)
from kusto_client.auth.token_cache import TokenCacheManager
from kusto_client.auth.types import AuthMode
from kusto_client.errors import KustoClientError
from kusto_client.http.client import validate_url
from kusto_client.http.tracing import ClientDetails
from kusto_client.utils import get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from kusto_client.config.settings import Settings


logger = get_logger(__name__)

_APP_MODES = frozenset({AuthMode.APP_KEY, AuthMode.APP_CERTIFICATE})


@dataclass(slots=True)
class ConnectionParameters:
    """Everything needed to authenticate against and talk to one cluster.

    Prefer the ``with_*`` builders over filling fields by hand; each builder
    sets exactly the fields its credential flow reads.
    """

    cluster_url: str
    auth_mode: AuthMode = AuthMode.DEVICE_CODE
    client_id: str | None = None
    client_secret: str | None = None
    certificate_pem: str | None = None
    certificate_thumbprint: str | None = None
    public_certificate: str | None = None
    user_id: str | None = None
    password: str | None = None
    authority_id: str | None = None
    managed_identity_client_id: str | None = None
    token_callback: TokenCallback | None = field(default=None, repr=False)
    device_code_callback: DeviceCodeCallback | None = field(default=None, repr=False)
    application_name_for_tracing: str | None = None
    user_name_for_tracing: str | None = None
    token_cache_path: Path | None = None
    persist_token_cache: bool = False

    def __post_init__(self) -> None:
        self.cluster_url = validate_url(self.cluster_url).rstrip("/")
        if self.auth_mode in _APP_MODES and not self.client_id:
            raise KustoClientError(
                f"{self.auth_mode.value} authentication requires a client id",
                url=self.cluster_url,
            )

    def __repr__(self) -> str:
        return (
            f"ConnectionParameters(cluster_url={self.cluster_url!r}, "
            f"auth_mode={self.auth_mode.value!r}, client_id={self.client_id!r}, "
            f"authority_id={self.authority_id!r})"
        )

    # Builders --------------------------------------------------------

    @classmethod
    def with_user_password(
        cls,
        cluster_url: str,
        user_id: str,
        password: str,
        authority_id: str | None = None,
        *,
        client_id: str | None = None,
    ) -> "ConnectionParameters":
        if not user_id or not password:
            raise KustoClientError("User id and password must not be empty", url=cluster_url)
        return cls(
            cluster_url=cluster_url,
            auth_mode=AuthMode.USER_PASSWORD,
            user_id=user_id,
            password=password,
            authority_id=authority_id,
            client_id=client_id,
        )

    @classmethod
    def with_app_key(
        cls,
        cluster_url: str,
        client_id: str,
        client_secret: str,
        authority_id: str | None = None,
    ) -> "ConnectionParameters":
        if not client_secret:
            raise KustoClientError("Application key must not be empty", url=cluster_url)
        return cls(
            cluster_url=cluster_url,
            auth_mode=AuthMode.APP_KEY,
            client_id=client_id,
            client_secret=client_secret,
            authority_id=authority_id,
        )

    @classmethod
    def with_app_certificate(
        cls,
        cluster_url: str,
        client_id: str,
        certificate_pem: str,
        certificate_thumbprint: str,
        authority_id: str | None = None,
        *,
        public_certificate: str | None = None,
    ) -> "ConnectionParameters":
        """Certificate credential; pass ``public_certificate`` for subject name/issuer auth."""

        if not certificate_pem or not certificate_thumbprint:
            raise KustoClientError(
                "Certificate private key and thumbprint must not be empty",
                url=cluster_url,
            )
        return cls(
            cluster_url=cluster_url,
            auth_mode=AuthMode.APP_CERTIFICATE,
            client_id=client_id,
            certificate_pem=certificate_pem,
            certificate_thumbprint=certificate_thumbprint,
            public_certificate=public_certificate,
            authority_id=authority_id,
        )

    @classmethod
    def with_managed_identity(
        cls,
        cluster_url: str,
        client_id: str | None = None,
    ) -> "ConnectionParameters":
        """System-assigned identity unless a user-assigned ``client_id`` is given."""

        return cls(
            cluster_url=cluster_url,
            auth_mode=AuthMode.MANAGED_IDENTITY,
            managed_identity_client_id=client_id,
        )

    @classmethod
    def with_interactive_login(
        cls,
        cluster_url: str,
        authority_id: str | None = None,
        login_hint: str | None = None,
        *,
        client_id: str | None = None,
    ) -> "ConnectionParameters":
        return cls(
            cluster_url=cluster_url,
            auth_mode=AuthMode.INTERACTIVE,
            authority_id=authority_id,
            user_id=login_hint,
            client_id=client_id,
        )

    @classmethod
    def with_device_code(
        cls,
        cluster_url: str,
        authority_id: str | None = None,
        callback: DeviceCodeCallback | None = None,
        *,
        client_id: str | None = None,
    ) -> "ConnectionParameters":
        return cls(
            cluster_url=cluster_url,
            auth_mode=AuthMode.DEVICE_CODE,
            authority_id=authority_id,
            device_code_callback=callback,
            client_id=client_id,
        )

    @classmethod
    def with_token_callback(
        cls,
        cluster_url: str,
        callback: TokenCallback,
    ) -> "ConnectionParameters":
        if not callable(callback):
            raise KustoClientError("Token callback must be callable", url=cluster_url)
        return cls(
            cluster_url=cluster_url,
            auth_mode=AuthMode.TOKEN_CALLBACK,
            token_callback=callback,
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ConnectionParameters":
        if not settings.cluster_url:
            raise KustoClientError("No cluster URL configured")
        try:
            mode = AuthMode(settings.auth_mode)
        except ValueError as exc:
            raise KustoClientError(
                f"Unknown authentication mode '{settings.auth_mode}'",
                url=settings.cluster_url,
                cause=exc,
            ) from exc

        certificate_pem = None
        if mode is AuthMode.APP_CERTIFICATE and settings.certificate_path is not None:
            try:
                certificate_pem = settings.certificate_path.read_text(encoding="utf-8")
            except OSError as exc:
                raise KustoClientError(
                    f"Unable to read certificate '{settings.certificate_path}': {exc}",
                    cause=exc,
                ) from exc

        return cls(
            cluster_url=settings.cluster_url,
            auth_mode=mode,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            certificate_pem=certificate_pem,
            certificate_thumbprint=settings.certificate_thumbprint,
            user_id=settings.user_id,
            password=settings.password,
            authority_id=settings.authority_id,
            managed_identity_client_id=settings.managed_identity_client_id,
            application_name_for_tracing=settings.app_name,
            token_cache_path=settings.resolved_token_cache_path(),
            persist_token_cache=True,
        )

    # Factories -------------------------------------------------------

    def build_identity_backend(
        self,
        cache_manager: TokenCacheManager | None = None,
    ) -> IdentityBackend:
        """Create the identity backend that implements :attr:`auth_mode`."""

        if cache_manager is None and self.auth_mode not in {
            AuthMode.MANAGED_IDENTITY,
            AuthMode.TOKEN_CALLBACK,
        }:
            cache_manager = TokenCacheManager(
                self.token_cache_path,
                persist=self.persist_token_cache,
            )

        match self.auth_mode:
            case AuthMode.USER_PASSWORD | AuthMode.INTERACTIVE | AuthMode.DEVICE_CODE:
                backend: IdentityBackend = PublicClientBackend(
                    self.auth_mode,
                    cache_manager=cache_manager,
                    username=self.user_id,
                    password=self.password,
                    device_code_callback=self.device_code_callback,
                )
            case AuthMode.APP_KEY:
                backend = ConfidentialClientBackend(
                    client_secret=self.client_secret,
                    cache_manager=cache_manager,
                )
            case AuthMode.APP_CERTIFICATE:
                backend = ConfidentialClientBackend(
                    private_key=self.certificate_pem,
                    thumbprint=self.certificate_thumbprint,
                    public_certificate=self.public_certificate,
                    cache_manager=cache_manager,
                )
            case AuthMode.MANAGED_IDENTITY:
                backend = ManagedIdentityBackend(self.managed_identity_client_id)
            case AuthMode.TOKEN_CALLBACK:
                if self.token_callback is None:
                    raise KustoClientError("No token callback configured", url=self.cluster_url)
                backend = CallbackBackend(self.token_callback)
            case _:  # pragma: no cover - exhaustive over AuthMode
                raise KustoClientError(f"Unsupported authentication mode {self.auth_mode}")

        logger.debug(
            "Built identity backend",
            mode=self.auth_mode.value,
            backend=type(backend).__name__,
        )
        return backend

    def client_details(self) -> ClientDetails:
        return ClientDetails(
            application_for_tracing=self.application_name_for_tracing,
            user_name_for_tracing=self.user_name_for_tracing,
        )


__all__ = ["ConnectionParameters"]
