"""
Provider Registry

Discovers and holds the client configuration of each enabled OIDC provider.
A registry is built once by an async factory and never mutated; a reload
builds a new registry that replaces the old one wholesale.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import httpx

from registry_auth.config import OIDCProviderSettings, Settings

logger = logging.getLogger(__name__)

AUTH_METHOD_BASIC = "basic"
AUTH_METHOD_POST = "post"
AUTH_METHOD_NONE = "none"

_AUTH_METHODS = {
    "client_secret_basic": AUTH_METHOD_BASIC,
    "basic": AUTH_METHOD_BASIC,
    "client_secret_post": AUTH_METHOD_POST,
    "post": AUTH_METHOD_POST,
    "none": AUTH_METHOD_NONE,
}


def select_auth_method(configured: str | None) -> str:
    """Map a configured token endpoint auth method onto basic, post or none."""
    method = _AUTH_METHODS.get((configured or "").strip().lower())
    if method is None:
        logger.warning(f"Unrecognized token_endpoint_auth_method {configured!r}, using basic")
        return AUTH_METHOD_BASIC
    return method


class DiscoveryError(Exception):
    """Provider metadata could not be fetched or is incomplete."""


@dataclass(frozen=True)
class ProviderConfig:
    """Discovered client configuration of one OIDC provider."""

    name: str
    display_name: str
    issuer: str
    client_id: str
    client_secret: str | None
    auth_method: str
    scope: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str | None = None
    end_session_endpoint: str | None = None
    jwks: Mapping | None = None
    supports_pkce: bool = True
    metadata: Mapping = field(default_factory=dict)

    @property
    def tag(self) -> str:
        """Provider tag stored on users, credentials and tokens."""
        return f"oidc-{self.name}"


async def _fetch_json(http_client: httpx.AsyncClient, url: str, timeout: float, what: str):
    try:
        response = await http_client.get(url, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as e:
        raise DiscoveryError(f"{what} request failed: {e!r}")
    except ValueError as e:
        raise DiscoveryError(f"{what} is not JSON: {e}")


async def discover_provider(
    name: str,
    provider: OIDCProviderSettings,
    http_client: httpx.AsyncClient,
    timeout: float,
) -> ProviderConfig:
    """
    Fetch issuer metadata and signing keys for one provider.

    Raises DiscoveryError on missing fields, HTTP errors, timeouts or a
    malformed discovery document.
    """
    if not provider.issuer or not provider.client_id:
        raise DiscoveryError("issuer and client_id are required")

    discovery_url = f"{provider.issuer.rstrip('/')}/.well-known/openid-configuration"
    metadata = await _fetch_json(http_client, discovery_url, timeout, "discovery document")
    if not isinstance(metadata, dict):
        raise DiscoveryError("discovery document is not an object")
    for required in ("authorization_endpoint", "token_endpoint"):
        if not isinstance(metadata.get(required), str) or not metadata[required]:
            raise DiscoveryError(f"discovery document lacks {required}")

    methods = metadata.get("code_challenge_methods_supported")
    if methods is not None and not isinstance(methods, list):
        raise DiscoveryError("code_challenge_methods_supported is not a list")
    supports_pkce = methods is None or "S256" in methods

    jwks = None
    jwks_uri = metadata.get("jwks_uri")
    if jwks_uri:
        if not isinstance(jwks_uri, str):
            raise DiscoveryError("jwks_uri is not a string")
        jwks = await _fetch_json(http_client, jwks_uri, timeout, "JWKS")
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise DiscoveryError("JWKS document has no keys list")

    return ProviderConfig(
        name=name,
        display_name=provider.display_name or name,
        issuer=metadata.get("issuer") or provider.issuer,
        client_id=provider.client_id,
        client_secret=provider.client_secret,
        auth_method=select_auth_method(provider.token_endpoint_auth_method),
        scope=provider.scope,
        authorization_endpoint=metadata["authorization_endpoint"],
        token_endpoint=metadata["token_endpoint"],
        userinfo_endpoint=metadata.get("userinfo_endpoint"),
        end_session_endpoint=metadata.get("end_session_endpoint"),
        jwks=MappingProxyType(jwks) if jwks is not None else None,
        supports_pkce=supports_pkce,
        metadata=MappingProxyType(metadata),
    )


class ProviderRegistry:
    """Read-only mapping of provider name to discovered configuration."""

    def __init__(self, providers: Mapping[str, ProviderConfig] | None = None):
        self._providers = MappingProxyType(dict(providers or {}))

    @classmethod
    async def initialize(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
    ) -> "ProviderRegistry":
        """
        Discover every enabled provider.

        Disabled providers are skipped; a provider that fails discovery is
        logged and left out without aborting startup.
        """
        providers: dict[str, ProviderConfig] = {}
        for name, provider in settings.oidc_providers.items():
            if not provider.enabled:
                logger.debug(f"OIDC provider {name} is disabled, skipping")
                continue
            try:
                providers[name] = await discover_provider(
                    name,
                    provider,
                    http_client,
                    settings.oidc_http_timeout_seconds,
                )
            except DiscoveryError as e:
                logger.warning(f"OIDC provider {name} excluded: {e}")
                continue
            logger.info(f"OIDC provider {name} registered ({provider.issuer})")
        return cls(providers)

    def get(self, name: str) -> ProviderConfig | None:
        return self._providers.get(name)

    @property
    def providers(self) -> Mapping[str, ProviderConfig]:
        return self._providers

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)
