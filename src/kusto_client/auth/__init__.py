"""Authentication for Kusto clusters: cloud discovery, trusted endpoints, identity backends, token caching."""

from .cloud_info import DEFAULT_CLOUD, CloudInfo, CloudInfoCache
from .endpoints import MatchRule, TrustedEndpoints, set_override_policy
from .identity import (
    CallbackBackend,
    ConfidentialClientBackend,
    IdentityBackend,
    ManagedIdentityBackend,
    PublicClientBackend,
)
from .token_cache import TokenCacheManager
from .token_provider import MIN_VALIDITY_MARGIN, TokenProvider
from .types import AuthMode, AuthorityContext, CachedToken

__all__ = [
    "AuthMode",
    "AuthorityContext",
    "CachedToken",
    "CallbackBackend",
    "CloudInfo",
    "CloudInfoCache",
    "ConfidentialClientBackend",
    "DEFAULT_CLOUD",
    "IdentityBackend",
    "ManagedIdentityBackend",
    "MatchRule",
    "MIN_VALIDITY_MARGIN",
    "PublicClientBackend",
    "TokenCacheManager",
    "TokenProvider",
    "TrustedEndpoints",
    "set_override_policy",
]
