"""
Token Issuer

Builds, signs and decodes session tokens (HS256 JWT) carrying identity and
multi-organization claims, and reissues them on refresh.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings
from registry_auth.models.service_account import ServiceAccount
from registry_auth.models.user import User
from registry_auth.services.auth import LocalPrincipal, Principal, ServiceAccountPrincipal
from registry_auth.services.errors import AccountInactive, AuthError, NotFound, RefreshNotAllowed, TokenInvalid

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
LOCAL_PROVIDER = "local"
SERVICE_ACCOUNT_PROVIDER = "service_account"
OIDC_PROVIDER_PREFIX = "oidc-"

STAY_LOGGED_IN_LIFETIME = timedelta(hours=24)
DEFAULT_LIFETIME = timedelta(hours=24)
OIDC_FALLBACK_LIFETIME = timedelta(minutes=30)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
}

ExternalRefresher = Callable[[str, str], Awaitable[dict]]


class OrganizationClaim(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    organization: str
    role: str
    is_primary: bool = Field(default=False, alias="isPrimary")


class SessionClaims(BaseModel):
    """Decoded session token payload (registered claims exp/iat excluded)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    sub: str
    service_account_id: str | None = Field(default=None, alias="serviceAccountId")
    is_service_account: bool = Field(default=False, alias="isServiceAccount")
    stay_logged_in: bool = Field(default=False, alias="stayLoggedIn")
    provider: str = LOCAL_PROVIDER
    organizations: tuple[OrganizationClaim, ...] = ()

    # OIDC sessions only
    oidc_expires_at: int | None = None
    oidc_refresh_token: str | None = None
    id_token: str | None = None

    @property
    def oidc_provider_name(self) -> str | None:
        if self.provider.startswith(OIDC_PROVIDER_PREFIX):
            return self.provider[len(OIDC_PROVIDER_PREFIX):]
        return None

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def parse_duration(value) -> timedelta | None:
    """
    Parse a lifetime such as ``3600``, ``"30m"``, ``"24h"`` or ``"7d"``.

    Returns None for empty, malformed or non-positive values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            return None
        seconds = float(match.group(1)) * _DURATION_UNITS[(match.group(2) or "s").lower()]
    if seconds <= 0:
        return None
    return timedelta(seconds=seconds)


def positive_minutes(value) -> float | None:
    """Interpret a configured minutes value, ignoring non-numeric or non-positive input."""
    if value is None or isinstance(value, bool):
        return None
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        return None
    return minutes if minutes > 0 else None


def resolve_oidc_expiry(
    settings: Settings,
    exp_claim: int | float | None = None,
    expires_in: int | float | None = None,
    now: datetime | None = None,
) -> int:
    """
    Epoch second at which an OIDC-backed session ends.

    Priority: the external token's own exp (or expires_in), then
    token_default_expiry_minutes, then 30 minutes.
    """
    now = now or datetime.now(timezone.utc)
    if isinstance(exp_claim, (int, float)) and not isinstance(exp_claim, bool) and exp_claim > 0:
        return int(exp_claim)
    if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool) and expires_in > 0:
        return int((now + timedelta(seconds=expires_in)).timestamp())
    minutes = positive_minutes(settings.token_default_expiry_minutes)
    lifetime = timedelta(minutes=minutes) if minutes else OIDC_FALLBACK_LIFETIME
    return int((now + lifetime).timestamp())


def principal_to_claims(
    principal: Principal,
    organizations: list[dict] | None = None,
    stay_logged_in: bool = False,
    provider: str | None = None,
) -> SessionClaims:
    """Map an authenticated principal to its session claims."""
    orgs = tuple(OrganizationClaim.model_validate(org) for org in organizations or [])
    if isinstance(principal, LocalPrincipal):
        user = principal.user
        return SessionClaims(
            sub=str(user.id),
            stay_logged_in=stay_logged_in,
            provider=provider or user.auth_provider or LOCAL_PROVIDER,
            organizations=orgs,
        )
    if isinstance(principal, ServiceAccountPrincipal):
        account = principal.account
        return SessionClaims(
            sub=str(account.user_id),
            service_account_id=str(account.id),
            is_service_account=True,
            stay_logged_in=stay_logged_in,
            provider=SERVICE_ACCOUNT_PROVIDER,
            organizations=orgs,
        )
    raise TypeError(f"Unsupported principal: {principal!r}")


async def claims_to_principal(db: AsyncSession, claims: SessionClaims) -> Principal:
    """Load the principal a session token refers to."""
    if claims.is_service_account:
        account = await db.get(ServiceAccount, _uuid(claims.service_account_id))
        if account is None:
            raise NotFound()
        return ServiceAccountPrincipal(account)

    user = await db.get(User, _uuid(claims.sub))
    if user is None:
        raise NotFound()
    if user.suspended:
        raise AccountInactive()
    return LocalPrincipal(user)


def _uuid(value: str | None) -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise TokenInvalid("Malformed subject in token")


class TokenIssuer:
    """Signs and verifies session tokens with the configured secret."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def lifetime(self, stay_logged_in: bool) -> timedelta:
        if stay_logged_in:
            return STAY_LOGGED_IN_LIFETIME
        configured = parse_duration(self.settings.jwt_expiration)
        if configured is None:
            if self.settings.jwt_expiration:
                logger.warning(
                    f"Unparseable jwt_expiration {self.settings.jwt_expiration!r}, using 24h"
                )
            return DEFAULT_LIFETIME
        return configured

    def encode(self, claims: SessionClaims, expires_at: datetime | None = None) -> str:
        now = datetime.now(timezone.utc)
        payload = claims.to_payload()
        payload["iat"] = now
        payload["exp"] = expires_at or now + self.lifetime(claims.stay_logged_in)
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=ALGORITHM)

    def issue(
        self,
        principal: Principal,
        organizations: list[dict] | None = None,
        stay_logged_in: bool = False,
        provider: str | None = None,
        oidc_expires_at: int | None = None,
        oidc_refresh_token: str | None = None,
        id_token: str | None = None,
    ) -> str:
        """
        Issue a signed session token for a principal.

        OIDC sessions pass oidc_expires_at, which also becomes the token's exp.
        """
        claims = principal_to_claims(principal, organizations, stay_logged_in, provider)
        if oidc_expires_at is not None:
            claims = claims.model_copy(
                update={
                    "oidc_expires_at": oidc_expires_at,
                    "oidc_refresh_token": oidc_refresh_token,
                    "id_token": id_token,
                }
            )
            return self.encode(
                claims,
                expires_at=datetime.fromtimestamp(oidc_expires_at, tz=timezone.utc),
            )
        return self.encode(claims)

    def decode(self, token: str) -> SessionClaims:
        """Verify and decode a session token. Raises TokenInvalid."""
        try:
            payload = jwt.decode(token, self.settings.jwt_secret, algorithms=[ALGORITHM])
        except jwt.InvalidTokenError as e:
            raise TokenInvalid(f"Invalid token: {e}")
        return SessionClaims.model_validate(payload)

    async def refresh(
        self,
        claims: SessionClaims,
        organizations: list[dict] | None = None,
        stay_logged_in: bool | None = None,
        provider: str | None = None,
        external_refresh: ExternalRefresher | None = None,
    ) -> str:
        """
        Reissue a token from existing claims.

        stayLoggedIn and provider carry over unless overridden. Service
        account tokens are never refreshed. OIDC sessions close to their
        external expiry are refreshed against the provider first; a failure
        there keeps the previous OIDC claims.
        """
        if claims.is_service_account:
            raise RefreshNotAllowed("Service account tokens cannot be refreshed")

        update: dict = {
            "stay_logged_in": claims.stay_logged_in if stay_logged_in is None else stay_logged_in,
            "provider": provider or claims.provider,
        }
        if organizations is not None:
            update["organizations"] = tuple(
                OrganizationClaim.model_validate(org) for org in organizations
            )
        new_claims = claims.model_copy(update=update)

        if self._needs_external_refresh(new_claims) and external_refresh is not None:
            new_claims = await self._refresh_external(new_claims, external_refresh)

        if new_claims.oidc_expires_at:
            return self.encode(
                new_claims,
                expires_at=datetime.fromtimestamp(new_claims.oidc_expires_at, tz=timezone.utc),
            )
        return self.encode(new_claims)

    def _needs_external_refresh(self, claims: SessionClaims) -> bool:
        if not claims.oidc_expires_at or not claims.oidc_refresh_token:
            return False
        if claims.oidc_provider_name is None:
            return False
        threshold = timedelta(minutes=self.settings.oidc_refresh_threshold_minutes)
        expires_at = datetime.fromtimestamp(claims.oidc_expires_at, tz=timezone.utc)
        return expires_at - datetime.now(timezone.utc) <= threshold

    async def _refresh_external(
        self,
        claims: SessionClaims,
        external_refresh: ExternalRefresher,
    ) -> SessionClaims:
        provider_name = claims.oidc_provider_name
        try:
            tokens = await external_refresh(provider_name, claims.oidc_refresh_token)
        except AuthError as e:
            logger.warning(
                f"OIDC refresh for {claims.provider} failed, keeping previous claims: {e.message}"
            )
            return claims

        logger.info(f"Refreshed OIDC tokens for user {claims.sub} via {claims.provider}")
        return claims.model_copy(
            update={
                "oidc_expires_at": resolve_oidc_expiry(
                    self.settings, expires_in=tokens.get("expires_in")
                ),
                "oidc_refresh_token": tokens.get("refresh_token") or claims.oidc_refresh_token,
                "id_token": tokens.get("id_token") or claims.id_token,
            }
        )
