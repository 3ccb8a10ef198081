"""
External Login Flow

Drives the two-leg OIDC authorization code flow:

    start     Idle -> AwaitingCallback   (state + PKCE verifier stored server-side)
    callback  AwaitingCallback -> Completed | Failed

and the end-session (logout) and refresh-token exchanges against the
provider. Every failure is raised as an AuthError subclass; the HTTP layer
turns those into ``error=`` redirects.
"""

import base64
import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings
from registry_auth.models.user import User
from registry_auth.services.auth import LocalPrincipal
from registry_auth.services.errors import (
    AuthError,
    AuthUrlGenerationFailed,
    NoSessionData,
    OidcExchangeFailed,
    ProviderNotEnabled,
    ProviderNotFound,
    SubjectResolutionFailed,
    TokenInvalid,
)
from registry_auth.services.memberships import MembershipResolver
from registry_auth.services.providers import (
    AUTH_METHOD_BASIC,
    AUTH_METHOD_POST,
    ProviderConfig,
    ProviderRegistry,
)
from registry_auth.services.provisioning import ExternalProfile, ProvisioningEngine
from registry_auth.services.session_store import OIDC_STATE_KEY, SessionStore
from registry_auth.services.tokens import TokenIssuer, resolve_oidc_expiry

logger = logging.getLogger(__name__)

_DN_SUBJECT = (
    re.compile(r"^uid=([^,]+)", re.IGNORECASE),
    re.compile(r"^cn=([^,]+)", re.IGNORECASE),
)
# Allowed clock skew when checking ID token exp/iat
ID_TOKEN_LEEWAY_SECONDS = 60


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: str
    return_url: str | None = None


@dataclass(frozen=True)
class LogoutResult:
    message: str
    redirect_url: str | None = None


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge for a PKCE verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def resolve_subject(claims: dict[str, Any]) -> str:
    """
    Stable external identifier from a claim set.

    Uses ``sub``, else the leading ``uid=`` or ``cn=`` attribute of a
    distinguished name. Raises SubjectResolutionFailed.
    """
    subject = claims.get("sub")
    if isinstance(subject, (str, int)) and str(subject):
        return str(subject)

    dn = claims.get("dn")
    if isinstance(dn, str):
        for pattern in _DN_SUBJECT:
            match = pattern.match(dn.strip())
            if match:
                return match.group(1).strip()
        raise SubjectResolutionFailed(f"Could not parse a subject from dn {dn!r}")

    raise SubjectResolutionFailed()


def profile_from_claims(claims: dict[str, Any]) -> ExternalProfile:
    email = claims.get("email") or claims.get("mail")
    return ExternalProfile(
        subject=resolve_subject(claims),
        email=email if isinstance(email, str) and email else None,
        username=claims.get("preferred_username"),
        name=claims.get("name"),
        claims=dict(claims),
    )


class ExternalLoginFlow:
    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        session_store: SessionStore,
        http_client: httpx.AsyncClient,
    ):
        self.settings = settings
        self.registry = registry
        self.session_store = session_store
        self.http_client = http_client

    @property
    def redirect_uri(self) -> str:
        return (
            f"{self.settings.frontend_origin.rstrip('/')}"
            f"{self.settings.api_prefix}/auth/oidc/callback"
        )

    def provider(self, name: str) -> ProviderConfig:
        """Registered provider config. Raises ProviderNotFound or ProviderNotEnabled."""
        provider = self.registry.get(name)
        if provider is not None:
            return provider
        configured = self.settings.oidc_providers.get(name)
        if configured is not None and not configured.enabled:
            raise ProviderNotEnabled()
        raise ProviderNotFound()

    # ── Leg 1 ─────────────────────────────────────────

    async def start(self, session_id: str, provider_name: str, return_url: str | None = None) -> str:
        """Persist flow state for session_id and return the authorization URL."""
        provider = self.provider(provider_name)

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(16)
        code_verifier = secrets.token_urlsafe(64) if provider.supports_pkce else None
        try:
            params = {
                "response_type": "code",
                "client_id": provider.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": provider.scope,
                "state": state,
                "nonce": nonce,
            }
            if code_verifier:
                params["code_challenge"] = pkce_challenge(code_verifier)
                params["code_challenge_method"] = "S256"
            separator = "&" if "?" in provider.authorization_endpoint else "?"
            url = f"{provider.authorization_endpoint}{separator}{urlencode(params)}"
        except (TypeError, ValueError) as e:
            logger.error(f"Could not build authorization URL for {provider_name}: {e}")
            raise AuthUrlGenerationFailed()

        await self.session_store.set(
            session_id,
            OIDC_STATE_KEY,
            {
                "provider": provider.name,
                "state": state,
                "nonce": nonce,
                "code_verifier": code_verifier,
                "return_url": return_url,
            },
            ttl=self.settings.oidc_session_ttl_seconds,
        )
        logger.info(f"Started OIDC login via {provider.name}")
        return url

    # ── Leg 2 ─────────────────────────────────────────

    async def callback(
        self,
        db: AsyncSession,
        session_id: str | None,
        state: str | None,
        code: str | None,
        error: str | None = None,
    ) -> LoginResult:
        """
        Complete the login for session_id.

        The stored flow state is destroyed whatever the outcome, so a
        callback can never be replayed.
        """
        data = None
        if session_id:
            data = await self.session_store.get(session_id, OIDC_STATE_KEY)
            await self.session_store.destroy(session_id, OIDC_STATE_KEY)

        if not data or not state or not secrets.compare_digest(str(data.get("state", "")), state):
            logger.warning("OIDC callback without matching session state")
            raise NoSessionData()

        if error:
            raise OidcExchangeFailed(f"Provider returned error: {error}")
        if not code:
            raise OidcExchangeFailed("Callback carries no authorization code")

        provider = self.provider(data["provider"])
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        if data.get("code_verifier"):
            form["code_verifier"] = data["code_verifier"]
        tokens = await self._token_request(provider, form)

        claims = await self._identity_claims(provider, tokens, data.get("nonce"))
        profile = profile_from_claims(claims)

        user = await ProvisioningEngine(db, self.settings).handle_external_user(provider.tag, profile)
        organizations = await MembershipResolver(db).claims_for(user.id)

        exp_claim = claims.get("exp") if tokens.get("id_token") else None
        token = TokenIssuer(self.settings).issue(
            LocalPrincipal(user),
            organizations,
            provider=provider.tag,
            oidc_expires_at=resolve_oidc_expiry(self.settings, exp_claim=exp_claim),
            oidc_refresh_token=tokens.get("refresh_token"),
            id_token=tokens.get("id_token"),
        )
        logger.info(f"OIDC login completed for {user.username} via {provider.tag}")
        return LoginResult(user=user, token=token, return_url=data.get("return_url"))

    async def _token_request(self, provider: ProviderConfig, form: dict[str, str]) -> dict:
        """POST to the token endpoint with the provider's client authentication."""
        form = dict(form)
        auth = None
        if provider.auth_method == AUTH_METHOD_BASIC:
            auth = (provider.client_id, provider.client_secret or "")
        elif provider.auth_method == AUTH_METHOD_POST:
            form["client_id"] = provider.client_id
            form["client_secret"] = provider.client_secret or ""
        else:
            form["client_id"] = provider.client_id

        try:
            response = await self.http_client.post(
                provider.token_endpoint,
                data=form,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.settings.oidc_http_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.error(f"Token request to {provider.name} failed: {e!r}")
            raise OidcExchangeFailed()

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_error or not isinstance(payload, dict) or "error" in payload:
            reason = payload.get("error") if isinstance(payload, dict) else None
            logger.error(
                f"Token endpoint of {provider.name} answered {response.status_code}: {reason or 'no body'}"
            )
            raise OidcExchangeFailed(
                f"Token exchange failed: {reason}" if reason else None
            )
        return payload

    async def _identity_claims(
        self,
        provider: ProviderConfig,
        tokens: dict,
        nonce: str | None,
    ) -> dict[str, Any]:
        id_token = tokens.get("id_token")
        access_token = tokens.get("access_token")
        if id_token:
            claims = self.verify_id_token(provider, id_token)
            if nonce and claims.get("nonce") not in (None, nonce):
                raise OidcExchangeFailed("ID token nonce mismatch")
            if not (claims.get("email") or claims.get("mail")) and access_token:
                userinfo = await self._userinfo(provider, access_token, required=False)
                if userinfo and userinfo.get("sub") in (None, claims.get("sub")):
                    claims = {**userinfo, **claims}
            return claims

        if access_token:
            return await self._userinfo(provider, access_token, required=True)
        raise OidcExchangeFailed("Token response carries neither id_token nor access_token")

    async def _userinfo(self, provider: ProviderConfig, access_token: str, required: bool) -> dict | None:
        if not provider.userinfo_endpoint:
            if required:
                raise OidcExchangeFailed("Provider has no userinfo endpoint")
            return None
        try:
            response = await self.http_client.get(
                provider.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.settings.oidc_http_timeout_seconds,
            )
            response.raise_for_status()
            userinfo = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Userinfo request to {provider.name} failed: {e!r}")
            if required:
                raise OidcExchangeFailed()
            return None
        if not isinstance(userinfo, dict):
            if required:
                raise OidcExchangeFailed("Userinfo response is not an object")
            return None
        return userinfo

    def verify_id_token(self, provider: ProviderConfig, id_token: str) -> dict[str, Any]:
        """
        Verify an ID token's signature, audience and issuer.

        HS* tokens are checked with the client secret, everything else
        against the JWKS fetched at discovery.
        """
        try:
            header = jwt.get_unverified_header(id_token)
            algorithm = header.get("alg")
            if not algorithm or algorithm.lower() == "none":
                raise OidcExchangeFailed("ID token is unsigned")

            if algorithm.startswith("HS"):
                if not provider.client_secret:
                    raise OidcExchangeFailed("HMAC-signed ID token but no client secret")
                key = provider.client_secret
            else:
                key = self._signing_key(provider, header.get("kid"))

            return jwt.decode(
                id_token,
                key,
                algorithms=[algorithm],
                audience=provider.client_id,
                issuer=provider.issuer,
                leeway=ID_TOKEN_LEEWAY_SECONDS,
            )
        except jwt.PyJWTError as e:
            logger.warning(f"ID token from {provider.name} rejected: {e}")
            raise OidcExchangeFailed("ID token verification failed")

    @staticmethod
    def _signing_key(provider: ProviderConfig, kid: str | None):
        if not provider.jwks:
            raise OidcExchangeFailed("Provider published no signing keys")
        jwk_set = jwt.PyJWKSet.from_dict(dict(provider.jwks))
        if kid is not None:
            try:
                return jwk_set[kid].key
            except KeyError:
                raise OidcExchangeFailed(f"Unknown signing key {kid}")
        if len(jwk_set.keys) == 1:
            return jwk_set.keys[0].key
        raise OidcExchangeFailed("ID token has no kid and the key set is ambiguous")

    # ── Refresh ───────────────────────────────────────

    async def refresh_external_tokens(self, provider_name: str, refresh_token: str) -> dict:
        """Refresh-token grant against provider_name. Raises an AuthError on failure."""
        provider = self.provider(provider_name)
        return await self._token_request(
            provider,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
        )

    # ── Logout ────────────────────────────────────────

    def logout(self, token: str | None) -> LogoutResult:
        """
        End a session, through the provider's end-session endpoint when the
        token came from an OIDC login that supports it. Anything else is a
        local logout.
        """
        local = LogoutResult(message="Logged out successfully")
        if not token:
            return local

        try:
            claims = TokenIssuer(self.settings).decode(token)
        except TokenInvalid:
            logger.info("Logout with an invalid token, logging out locally")
            return local

        provider_name = claims.oidc_provider_name
        if provider_name is None or not claims.id_token:
            return local

        try:
            provider = self.provider(provider_name)
        except AuthError:
            return local
        if not provider.end_session_endpoint:
            return local

        params = {
            "id_token_hint": claims.id_token,
            "post_logout_redirect_uri": self.settings.frontend_origin,
            "client_id": provider.client_id,
            "state": secrets.token_urlsafe(16),
        }
        separator = "&" if "?" in provider.end_session_endpoint else "?"
        logger.info(f"OIDC logout for user {claims.sub} via {provider.tag}")
        return LogoutResult(
            message="Logged out, continue at the identity provider",
            redirect_url=f"{provider.end_session_endpoint}{separator}{urlencode(params)}",
        )
