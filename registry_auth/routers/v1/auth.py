"""
Auth Router

Local signin/signup, token refresh, invitation management and email
verification.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings, get_settings_result, require_settings
from registry_auth.db.session import get_db
from registry_auth.middleware.rbac import (
    extract_token,
    get_current_user,
    get_token_issuer,
    require_org_role,
)
from registry_auth.models.organization import Organization
from registry_auth.models.user import User
from registry_auth.models.user_org import OrgRole
from registry_auth.routers.v1.oidc import get_login_flow
from registry_auth.schemas.auth import (
    AuthMethod,
    InvitationCreateRequest,
    InvitationResponse,
    InvitationSummary,
    InvitationValidationResponse,
    MessageResponse,
    RefreshTokenRequest,
    SigninRequest,
    SigninResponse,
    SignupRequest,
    SignupResponse,
    TokenResponse,
)
from registry_auth.services.auth import LocalPrincipal, ServiceAccountPrincipal, authenticate
from registry_auth.services.errors import OrganizationNotFound, RefreshNotAllowed, TokenInvalid
from registry_auth.services.invitations import InvitationResolver
from registry_auth.services.memberships import MembershipResolver
from registry_auth.services.oidc import ExternalLoginFlow
from registry_auth.services.registration import register_user, verify_email
from registry_auth.services.tokens import (
    SERVICE_ACCOUNT_PROVIDER,
    TokenIssuer,
    claims_to_principal,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/signin", response_model=SigninResponse)
async def signin(
    body: SigninRequest,
    db: AsyncSession = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> SigninResponse:
    """
    Authenticate a local user (username + password) or a service account
    (username + token) and return a session token.
    """
    principal = await authenticate(db, body.username, body.password)
    memberships = MembershipResolver(db)

    if isinstance(principal, ServiceAccountPrincipal):
        account = principal.account
        organizations = [
            m.as_claim()
            for m in await memberships.resolve(account.user_id)
            if m.organization_id == account.organization_id
        ]
        token = issuer.issue(principal, organizations, stay_logged_in=body.stay_logged_in)
        logger.info(f"Service account {account.username} signed in")
        return SigninResponse(
            id=account.id,
            username=account.username,
            roles=[SERVICE_ACCOUNT_PROVIDER],
            organizations=organizations,
            provider=SERVICE_ACCOUNT_PROVIDER,
            is_service_account=True,
            access_token=token,
        )

    user = principal.user
    organizations = await memberships.claims_for(user.id)
    token = issuer.issue(principal, organizations, stay_logged_in=body.stay_logged_in)
    logger.info(f"User {user.username} signed in")
    return SigninResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        verified=user.verified,
        roles=user.role_names,
        organizations=organizations,
        provider=user.auth_provider or "local",
        access_token=token,
    )


@router.post("/signup", response_model=SignupResponse, status_code=status.HTTP_201_CREATED)
async def signup(
    body: SignupRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(require_settings),
) -> SignupResponse:
    registration = await register_user(
        db,
        settings,
        username=body.username,
        email=body.email,
        password=body.password,
        invitation_token=body.invitation_token,
    )
    return SignupResponse(
        message="User registered successfully!",
        id=registration.user.id,
        username=registration.user.username,
        organization=registration.organization.name,
        roles=registration.role_names,
    )


@router.post("/refresh-token", response_model=TokenResponse)
async def refresh_token(
    request: Request,
    body: RefreshTokenRequest | None = None,
    db: AsyncSession = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
    flow: ExternalLoginFlow = Depends(get_login_flow),
) -> TokenResponse:
    """
    Reissue the caller's session token with fresh organization claims.

    Service account tokens cannot be refreshed.
    """
    token = extract_token(request)
    if not token:
        raise TokenInvalid("No token provided!")
    claims = issuer.decode(token)
    if claims.is_service_account:
        raise RefreshNotAllowed("Service account tokens cannot be refreshed")

    principal = await claims_to_principal(db, claims)
    if not isinstance(principal, LocalPrincipal):
        raise RefreshNotAllowed()

    organizations = await MembershipResolver(db).claims_for(principal.user.id)
    new_token = await issuer.refresh(
        claims,
        organizations,
        stay_logged_in=body.stay_logged_in if body else None,
        external_refresh=flow.refresh_external_tokens,
    )
    return TokenResponse(access_token=new_token)


@router.get("/validate-invitation/{token}", response_model=InvitationValidationResponse)
async def validate_invitation(
    token: str,
    db: AsyncSession = Depends(get_db),
) -> InvitationValidationResponse:
    resolver = InvitationResolver(db)
    invitation = await resolver.validate(token)
    organization = await resolver.organization_of(invitation)
    return InvitationValidationResponse(
        organization_name=organization.name,
        invited_role=invitation.invited_role,
    )


@router.post("/invitations", response_model=InvitationResponse, status_code=status.HTTP_201_CREATED)
async def create_invitation(
    body: InvitationCreateRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(require_settings),
    user: User = Depends(get_current_user),
) -> InvitationResponse:
    """Invite an email address into an organization (organization moderators and admins)."""
    result = await db.execute(
        select(Organization).where(Organization.name == body.organization_name)
    )
    organization = result.scalar_one_or_none()
    if organization is None:
        raise OrganizationNotFound()

    await require_org_role(db, user, organization.id, OrgRole.MODERATOR.value, OrgRole.ADMIN.value)

    invitation = await InvitationResolver(db, settings).create(
        email=body.email,
        organization_id=organization.id,
        invited_role=body.invited_role,
        invited_by=user.id,
    )
    return InvitationResponse.model_validate(invitation)


@router.get("/invitations", response_model=list[InvitationSummary])
async def list_invitations(
    organization_name: str = Query(..., alias="organizationName"),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[InvitationSummary]:
    """All invitations of an organization, including accepted and expired ones."""
    result = await db.execute(select(Organization).where(Organization.name == organization_name))
    organization = result.scalar_one_or_none()
    if organization is None:
        raise OrganizationNotFound()

    await require_org_role(db, user, organization.id, OrgRole.MODERATOR.value, OrgRole.ADMIN.value)

    invitations = await InvitationResolver(db).list_for_organization(organization.id)
    return [InvitationSummary.model_validate(inv) for inv in invitations]


@router.delete("/invitations/{invitation_id}", response_model=MessageResponse)
async def delete_invitation(
    invitation_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> MessageResponse:
    """Revoke an invitation (moderators and admins of its organization)."""
    resolver = InvitationResolver(db)
    invitation = await resolver.get(invitation_id)
    await require_org_role(
        db, user, invitation.organization_id, OrgRole.MODERATOR.value, OrgRole.ADMIN.value
    )
    await resolver.delete(invitation)
    return MessageResponse(message="Invitation deleted successfully.")


@router.get("/verify-mail/{token}", response_model=MessageResponse)
async def verify_mail(
    token: str,
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    await verify_email(db, token)
    return MessageResponse(message="Email verified successfully.")


@router.get("/methods", response_model=list[AuthMethod])
async def auth_methods(request: Request) -> list[AuthMethod]:
    """Login methods for the UI. Empty when configuration failed to load."""
    if get_settings_result().degraded:
        return []
    registry = request.app.state.provider_registry
    methods = [AuthMethod(id="local", name="Local Account")]
    methods.extend(
        AuthMethod(id=f"oidc-{name}", name=provider.display_name)
        for name, provider in registry.providers.items()
    )
    return methods
