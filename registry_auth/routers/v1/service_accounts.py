"""
Service Account Routes

The caller's own service accounts: create, list and delete.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings, require_settings
from registry_auth.db.session import get_db
from registry_auth.middleware.rbac import get_current_user
from registry_auth.models.organization import Organization
from registry_auth.models.user import User
from registry_auth.schemas.auth import (
    MessageResponse,
    ServiceAccountCreateRequest,
    ServiceAccountResponse,
    ServiceAccountSummary,
)
from registry_auth.services.errors import OrganizationNotFound
from registry_auth.services.service_accounts import (
    create_service_account,
    delete_service_account,
    list_service_accounts,
)

router = APIRouter()


@router.post("", response_model=ServiceAccountResponse, status_code=status.HTTP_201_CREATED)
async def create(
    body: ServiceAccountCreateRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(require_settings),
    user: User = Depends(get_current_user),
) -> ServiceAccountResponse:
    """Create a service account in one of the caller's organizations. The token is shown once."""
    result = await db.execute(
        select(Organization).where(Organization.name == body.organization_name)
    )
    organization = result.scalar_one_or_none()
    if organization is None:
        raise OrganizationNotFound()

    account, token = await create_service_account(
        db,
        user,
        organization.id,
        settings,
        description=body.description,
        expiration_days=body.expiration_days,
    )
    return ServiceAccountResponse(
        id=account.id,
        username=account.username,
        token=token,
        description=account.description,
        expires_at=account.expires_at,
        organization=organization.name,
    )


@router.get("", response_model=list[ServiceAccountSummary])
async def list_accounts(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> list[ServiceAccountSummary]:
    return [
        ServiceAccountSummary(
            id=account.id,
            username=account.username,
            description=account.description,
            expires_at=account.expires_at,
            created_at=account.created_at,
            organization=organization,
        )
        for account, organization in await list_service_accounts(db, user)
    ]


@router.delete("/{account_id}", response_model=MessageResponse)
async def delete(
    account_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
) -> MessageResponse:
    """Delete one of the caller's service accounts; its token stops working at once."""
    await delete_service_account(db, user, account_id)
    return MessageResponse(message="Service account deleted successfully.")
