"""
User Routes

The caller's organization memberships and primary organization, plus
suspension of other users by global admins.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.db.session import get_db
from registry_auth.middleware.rbac import get_admin_user, get_current_user
from registry_auth.models.organization import Organization
from registry_auth.models.user import User
from registry_auth.schemas.auth import MessageResponse
from registry_auth.schemas.organization import MembershipResponse, PrimaryOrganizationResponse
from registry_auth.services.errors import OrganizationNotFound
from registry_auth.services.memberships import MembershipResolver
from registry_auth.services.users import set_suspended

router = APIRouter()


@router.get(
    "/me/organizations",
    response_model=list[MembershipResponse],
    summary="List my organizations",
)
async def my_organizations(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[MembershipResponse]:
    memberships = await MembershipResolver(db).resolve(user.id)
    return [MembershipResponse.model_validate(m) for m in memberships]


@router.put(
    "/me/primary-organization/{org_name}",
    response_model=PrimaryOrganizationResponse,
    summary="Set primary organization",
    description="Make one of the caller's organizations the primary one.",
)
async def set_primary_organization(
    org_name: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PrimaryOrganizationResponse:
    result = await db.execute(select(Organization).where(Organization.name == org_name))
    organization = result.scalar_one_or_none()
    if organization is None:
        raise OrganizationNotFound()

    resolver = MembershipResolver(db)
    await resolver.set_primary(user.id, organization.id)
    memberships = await resolver.resolve(user.id)
    return PrimaryOrganizationResponse(
        message="Primary organization updated",
        primary_organization=organization.name,
        organizations=[MembershipResponse.model_validate(m) for m in memberships],
    )


@router.put("/{user_id}/suspend", response_model=MessageResponse, summary="Suspend a user")
async def suspend_user(
    user_id: UUID,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_admin_user),
) -> MessageResponse:
    await set_suspended(db, admin, user_id, suspended=True)
    return MessageResponse(message="User suspended successfully.")


@router.put("/{user_id}/resume", response_model=MessageResponse, summary="Resume a suspended user")
async def resume_user(
    user_id: UUID,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_admin_user),
) -> MessageResponse:
    await set_suspended(db, admin, user_id, suspended=False)
    return MessageResponse(message="User resumed successfully.")
