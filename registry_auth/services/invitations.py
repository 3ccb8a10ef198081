"""
Invitation Resolver

Validates, consumes, creates, lists and revokes single-use organization
invitations.
"""

import logging
import secrets
from datetime import timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.config import Settings
from registry_auth.models.base import as_utc, utcnow
from registry_auth.models.invitation import Invitation
from registry_auth.models.organization import Organization
from registry_auth.services.errors import (
    InvitationExpired,
    InvitationInvalid,
    InvitationNotFound,
    OrganizationNotFound,
)

logger = logging.getLogger(__name__)

INVITABLE_ROLES = ("user", "moderator")


def is_pending(invitation: Invitation) -> bool:
    """Neither accepted nor expired, and not past its expiry."""
    return (
        not invitation.accepted
        and not invitation.expired
        and as_utc(invitation.expires) > utcnow()
    )


class InvitationResolver:
    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings

    async def _by_token(self, token: str) -> Invitation | None:
        result = await self.db.execute(select(Invitation).where(Invitation.token == token))
        return result.scalar_one_or_none()

    async def validate(self, token: str) -> Invitation:
        """Return the invitation if it can still be accepted. Raises InvitationInvalid."""
        invitation = await self._by_token(token)
        if invitation is None or not is_pending(invitation):
            raise InvitationInvalid()
        return invitation

    async def organization_of(self, invitation: Invitation) -> Organization:
        organization = await self.db.get(Organization, invitation.organization_id)
        if organization is None:
            raise OrganizationNotFound()
        return organization

    async def accept(self, invitation: Invitation) -> Invitation:
        """Mark an invitation accepted. A used or expired invitation raises InvitationInvalid."""
        if invitation.accepted or invitation.expired:
            raise InvitationInvalid()
        invitation.accepted = True
        await self.db.flush()
        logger.info(f"Invitation {invitation.id} accepted by {invitation.email}")
        return invitation

    async def consume_for_signup(self, token: str) -> Invitation:
        """
        Load an invitation presented at signup.

        A missing or already-used invitation raises InvitationInvalid. One
        past its expiry is stamped expired and committed before
        InvitationExpired is raised, so the flag survives the request's
        rollback.
        """
        invitation = await self._by_token(token)
        if invitation is None or invitation.accepted or invitation.expired:
            raise InvitationInvalid()

        if as_utc(invitation.expires) <= utcnow():
            invitation.expired = True
            await self.db.flush()
            await self.db.commit()
            logger.info(f"Invitation {invitation.id} presented after expiry, marked expired")
            raise InvitationExpired()

        return invitation

    async def find_pending_for_email(self, email: str) -> Invitation | None:
        """Most recent invitation for email that is still pending."""
        result = await self.db.execute(
            select(Invitation)
            .where(
                func.lower(Invitation.email) == email.lower(),
                Invitation.accepted.is_(False),
                Invitation.expired.is_(False),
            )
            .order_by(Invitation.created_at.desc())
        )
        return next((inv for inv in result.scalars().all() if is_pending(inv)), None)

    async def create(
        self,
        email: str,
        organization_id: UUID,
        invited_role: str = "user",
        invited_by: UUID | None = None,
    ) -> Invitation:
        if invited_role not in INVITABLE_ROLES:
            raise InvitationInvalid(f"Cannot invite with role {invited_role}")
        if await self.db.get(Organization, organization_id) is None:
            raise OrganizationNotFound()

        hours = self.settings.invitation_token_expiry_hours if self.settings else 24
        invitation = Invitation(
            email=email.lower(),
            token=secrets.token_hex(32),
            expires=utcnow() + timedelta(hours=hours),
            organization_id=organization_id,
            invited_role=invited_role,
            invited_by=invited_by,
        )
        self.db.add(invitation)
        await self.db.flush()
        logger.info(f"Invitation created for {invitation.email} into org {organization_id}")
        return invitation

    async def list_for_organization(self, organization_id: UUID) -> list[Invitation]:
        """Every invitation of an organization, pending, accepted or expired, newest first."""
        result = await self.db.execute(
            select(Invitation)
            .where(Invitation.organization_id == organization_id)
            .order_by(Invitation.created_at.desc())
        )
        return list(result.scalars().all())

    async def get(self, invitation_id: UUID) -> Invitation:
        invitation = await self.db.get(Invitation, invitation_id)
        if invitation is None:
            raise InvitationNotFound()
        return invitation

    async def delete(self, invitation: Invitation) -> None:
        """Revoke an invitation; its token stops validating immediately."""
        await self.db.delete(invitation)
        await self.db.flush()
        logger.info(f"Invitation {invitation.id} for {invitation.email} deleted")
