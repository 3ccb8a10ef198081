"""
Service Account Management

Creates, lists and deletes machine identities scoped to one organization.
Only the owning user sees or deletes an account. Only the SHA-256 hash of
the token is stored; the raw token is returned once.
"""

import logging
import secrets
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings
from registry_auth.models.base import utcnow
from registry_auth.models.organization import Organization
from registry_auth.models.service_account import ServiceAccount
from registry_auth.models.user import User
from registry_auth.services.auth import hash_token
from registry_auth.services.errors import InvalidRequest, MembershipNotFound, ServiceAccountNotFound
from registry_auth.services.memberships import MembershipResolver

logger = logging.getLogger(__name__)


async def create_service_account(
    db: AsyncSession,
    owner: User,
    organization_id: UUID,
    settings: Settings,
    description: str | None = None,
    expiration_days: int = 30,
) -> tuple[ServiceAccount, str]:
    """
    Create a service account owned by owner in organization_id.

    Returns the account and its raw token.
    """
    max_days = settings.service_account_max_expiry_days
    if expiration_days < 1 or expiration_days > max_days:
        raise InvalidRequest(f"expiration_days must be between 1 and {max_days}")

    if await MembershipResolver(db).find(owner.id, organization_id) is None:
        raise MembershipNotFound()

    token = secrets.token_hex(32)
    account = ServiceAccount(
        username=f"{owner.username}-{secrets.token_hex(4)}",
        token_hash=hash_token(token),
        description=description,
        expires_at=utcnow() + timedelta(days=expiration_days),
        user_id=owner.id,
        organization_id=organization_id,
    )
    db.add(account)
    await db.flush()

    logger.info(f"Service account {account.username} created for org {organization_id}")
    return account, token


async def list_service_accounts(
    db: AsyncSession,
    owner: User,
) -> list[tuple[ServiceAccount, str]]:
    """The owner's service accounts with their organization names, newest first."""
    result = await db.execute(
        select(ServiceAccount, Organization.name)
        .join(Organization, Organization.id == ServiceAccount.organization_id)
        .where(ServiceAccount.user_id == owner.id)
        .order_by(ServiceAccount.created_at.desc())
    )
    return [(account, name) for account, name in result.all()]


async def delete_service_account(db: AsyncSession, owner: User, account_id: UUID) -> None:
    """
    Delete one of owner's service accounts.

    Another user's account is reported as missing, same as an unknown id.
    """
    result = await db.execute(
        select(ServiceAccount).where(
            ServiceAccount.id == account_id,
            ServiceAccount.user_id == owner.id,
        )
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise ServiceAccountNotFound()

    await db.delete(account)
    await db.flush()
    logger.info(f"Service account {account.username} deleted by {owner.username}")
