"""Trusted Kusto endpoints.

A bearer token for the Kusto resource is only ever sent to hostnames that the
bundled ``well_known_endpoints.json`` lists for the cluster's login endpoint,
to hosts added with :meth:`TrustedEndpoints.add_trusted_hosts`, or to the
loopback interface.
"""

from __future__ import annotations

import ipaddress
import threading
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from typing import Callable, Final, Iterable
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

from kusto_client.errors import KustoClientError
from kusto_client.utils import get_logger


logger = get_logger(__name__)

DEFAULT_LOGIN_ENDPOINT: Final = "https://login.microsoftonline.com"
WELL_KNOWN_ENDPOINTS_FILE: Final = "well_known_endpoints.json"
TRUSTED_ENDPOINTS_HELP: Final = "https://aka.ms/kustotrustedendpoints"

HostnamePolicy = Callable[[str], bool]


@dataclass(frozen=True, slots=True)
class MatchRule:
    """``suffix`` must end the hostname; with ``exact`` it must be the whole hostname."""

    suffix: str
    exact: bool = False


class SuffixMatcher:
    """Case-insensitive hostname matcher.

    Rules are bucketed by their last ``n`` characters, ``n`` being the length
    of the shortest rule, so a lookup only compares against rules sharing the
    candidate's tail.
    """

    def __init__(self, rules: Iterable[MatchRule]) -> None:
        normalised = tuple(MatchRule(rule.suffix.lower(), rule.exact) for rule in rules)
        if not normalised:
            raise ValueError("SuffixMatcher needs at least one rule")
        if any(not rule.suffix for rule in normalised):
            raise ValueError("Match rules cannot have an empty suffix")
        self._rules = normalised
        self._tail_length = min(len(rule.suffix) for rule in normalised)
        self._buckets: dict[str, list[MatchRule]] = {}
        for rule in normalised:
            self._buckets.setdefault(rule.suffix[-self._tail_length :], []).append(rule)

    def extended(self, rules: Iterable[MatchRule]) -> "SuffixMatcher":
        return SuffixMatcher((*self._rules, *rules))

    def is_match(self, candidate: str) -> bool:
        candidate = candidate.lower()
        if len(candidate) < self._tail_length:
            return False
        for rule in self._buckets.get(candidate[-self._tail_length :], ()):
            if not candidate.endswith(rule.suffix):
                continue
            if not rule.exact or len(candidate) == len(rule.suffix):
                return True
        return False


class AllowedEndpoints(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    allowed_kusto_suffixes: tuple[str, ...] = Field(default=(), alias="AllowedKustoSuffixes")
    allowed_kusto_hostnames: tuple[str, ...] = Field(default=(), alias="AllowedKustoHostnames")

    def rules(self) -> list[MatchRule]:
        return [MatchRule(suffix) for suffix in self.allowed_kusto_suffixes] + [
            MatchRule(hostname, exact=True) for hostname in self.allowed_kusto_hostnames
        ]


class WellKnownEndpoints(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    allowed_endpoints_by_login: dict[str, AllowedEndpoints] = Field(
        default_factory=dict, alias="AllowedEndpointsByLogin"
    )


@lru_cache(maxsize=1)
def load_well_known_endpoints() -> WellKnownEndpoints:
    text = (
        resources.files("kusto_client.auth")
        .joinpath(WELL_KNOWN_ENDPOINTS_FILE)
        .read_text(encoding="utf-8")
    )
    return WellKnownEndpoints.model_validate_json(text)


def normalise_login_endpoint(login_endpoint: str) -> str:
    return login_endpoint.strip().rstrip("/").lower()


def is_local_hostname(hostname: str) -> bool:
    host = hostname.strip("[]").lower()
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class TrustedEndpoints:
    """Decides whether a hostname may receive a Kusto bearer token.

    An override policy, when set, replaces the well-known rules; hosts added
    with :meth:`add_trusted_hosts` are trusted in either case. With
    ``enforce=False`` untrusted hosts are only logged.
    """

    def __init__(
        self,
        endpoints: WellKnownEndpoints | None = None,
        *,
        enforce: bool = True,
    ) -> None:
        data = endpoints if endpoints is not None else load_well_known_endpoints()
        self._matchers: dict[str, SuffixMatcher] = {}
        for login_endpoint, allowed in data.allowed_endpoints_by_login.items():
            rules = allowed.rules()
            if rules:
                self._matchers[normalise_login_endpoint(login_endpoint)] = SuffixMatcher(rules)
        self._additional: SuffixMatcher | None = None
        self._override: HostnamePolicy | None = None
        self._lock = threading.Lock()
        self.enforce = enforce

    def set_override_policy(self, policy: HostnamePolicy | None) -> None:
        """Replace the well-known rules with ``policy``; ``None`` restores them."""

        self._override = policy

    def add_trusted_hosts(self, rules: Iterable[MatchRule], *, replace: bool = False) -> None:
        rules = list(rules)
        with self._lock:
            if replace:
                self._additional = None
            if not rules:
                return
            if self._additional is None:
                self._additional = SuffixMatcher(rules)
            else:
                self._additional = self._additional.extended(rules)

    def is_trusted(self, hostname: str, login_endpoint: str = DEFAULT_LOGIN_ENDPOINT) -> bool:
        if is_local_hostname(hostname):
            return True

        override = self._override
        if override is not None:
            if override(hostname):
                return True
        else:
            matcher = self._matchers.get(normalise_login_endpoint(login_endpoint))
            if matcher is not None and matcher.is_match(hostname):
                return True

        additional = self._additional
        return additional is not None and additional.is_match(hostname)

    def validate(self, url: str, login_endpoint: str = DEFAULT_LOGIN_ENDPOINT) -> None:
        """Raise :class:`KustoClientError` unless ``url``'s host is trusted."""

        try:
            hostname = urlsplit(url.strip()).hostname
        except ValueError as exc:
            raise KustoClientError(f"Invalid URL '{url}': {exc}", url=url, cause=exc) from exc
        if not hostname:
            raise KustoClientError(f"URL '{url}' has no hostname", url=url)

        if self.is_trusted(hostname, login_endpoint):
            return

        if not self.enforce:
            logger.warning(
                "Untrusted Kusto endpoint",
                hostname=hostname,
                login_endpoint=login_endpoint,
            )
            return
        raise KustoClientError(
            f"Can't communicate with '{hostname}' as this hostname is currently not "
            f"trusted; please see {TRUSTED_ENDPOINTS_HELP}",
            url=url,
        )


@lru_cache(maxsize=1)
def default_trusted_endpoints() -> TrustedEndpoints:
    """Process-wide instance used by clients that are not given their own."""

    return TrustedEndpoints()


def set_override_policy(policy: HostnamePolicy | None) -> None:
    default_trusted_endpoints().set_override_policy(policy)


__all__ = [
    "DEFAULT_LOGIN_ENDPOINT",
    "MatchRule",
    "SuffixMatcher",
    "TrustedEndpoints",
    "WellKnownEndpoints",
    "default_trusted_endpoints",
    "is_local_hostname",
    "load_well_known_endpoints",
    "set_override_policy",
]
