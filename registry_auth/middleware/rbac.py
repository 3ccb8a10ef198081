"""
Request Authentication and Role Checks

FastAPI dependencies that extract the session token from a request, decode
it to claims, load the principal and check organization roles.
"""

import logging
from uuid import UUID

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings, require_settings
from registry_auth.db.session import get_db
from registry_auth.models.role import RoleName
from registry_auth.models.user import User
from registry_auth.services.auth import LocalPrincipal, Principal
from registry_auth.services.errors import Forbidden, TokenInvalid
from registry_auth.services.memberships import MembershipResolver
from registry_auth.services.tokens import SessionClaims, TokenIssuer, claims_to_principal

logger = logging.getLogger(__name__)


def extract_token(request: Request) -> str | None:
    """
    Session token from the request.

    Supports:
    - Bearer token (Authorization header)
    - x-access-token header
    """
    auth_header = request.headers.get("authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        if token:
            return token
    return request.headers.get("x-access-token") or None


def get_token_issuer(settings: Settings = Depends(require_settings)) -> TokenIssuer:
    return TokenIssuer(settings)


async def get_current_claims(
    request: Request,
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> SessionClaims:
    """Decode the request's session token. Missing or invalid tokens raise TokenInvalid (403)."""
    token = extract_token(request)
    if not token:
        raise TokenInvalid("No token provided!")

    claims = issuer.decode(token)

    # Picked up by the audit log middleware
    request.state.user_id = claims.sub
    primary = next((org for org in claims.organizations if org.is_primary), None)
    request.state.org_name = primary.organization if primary else None
    return claims


async def get_current_principal(
    claims: SessionClaims = Depends(get_current_claims),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    return await claims_to_principal(db, claims)


async def get_current_user(principal: Principal = Depends(get_current_principal)) -> User:
    """The authenticated local user; service account tokens are refused."""
    if not isinstance(principal, LocalPrincipal):
        raise Forbidden("This endpoint requires a user session")
    return principal.user


async def require_org_role(
    db: AsyncSession,
    user: User,
    organization_id: UUID,
    *roles: str,
) -> None:
    """Raise Forbidden unless user holds one of roles in the organization or is a global admin."""
    if RoleName.ADMIN.value in user.role_names:
        return
    membership = await MembershipResolver(db).find(user.id, organization_id)
    if membership is None or membership.role not in roles:
        raise Forbidden(f"Required organization role: {', '.join(roles)}")


async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """The authenticated user, provided they hold the global admin role."""
    if RoleName.ADMIN.value not in user.role_names:
        raise Forbidden("Require Admin Role!")
    return user
