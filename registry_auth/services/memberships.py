"""
Organization Membership Resolver

Computes a user's (organization, role, is_primary) tuples and owns the
single-primary invariant on user_organizations.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.models.base import as_utc, utcnow
from registry_auth.models.organization import Organization
from registry_auth.models.role import RoleName
from registry_auth.models.user import User
from registry_auth.models.user_org import OrgRole, UserOrg
from registry_auth.services.errors import MembershipNotFound, NotFound

logger = logging.getLogger(__name__)

# Highest global role wins when a legacy user has no membership rows
_LEGACY_ROLE_ORDER = (RoleName.ADMIN.value, RoleName.MODERATOR.value, RoleName.USER.value)


@dataclass(frozen=True)
class ResolvedMembership:
    organization_id: UUID
    organization: str
    role: str
    is_primary: bool
    joined_at: datetime | None

    def as_claim(self) -> dict:
        return {
            "organization": self.organization,
            "role": self.role,
            "isPrimary": self.is_primary,
        }


class MembershipResolver:
    """Reads and maintains organization memberships for a user."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, user_id: UUID) -> list[ResolvedMembership]:
        """
        Return the user's memberships, primary first then by join time.

        Users without any membership row fall back to the denormalized
        users.primary_organization_id reference.
        """
        result = await self.db.execute(
            select(
                UserOrg.organization_id,
                Organization.name,
                UserOrg.role,
                UserOrg.is_primary,
                UserOrg.joined_at,
            )
            .join(Organization, Organization.id == UserOrg.organization_id)
            .where(UserOrg.user_id == user_id)
            .order_by(UserOrg.is_primary.desc(), UserOrg.joined_at.asc())
        )
        rows = result.all()
        if rows:
            return [
                ResolvedMembership(
                    organization_id=row.organization_id,
                    organization=row.name,
                    role=row.role,
                    is_primary=row.is_primary,
                    joined_at=as_utc(row.joined_at),
                )
                for row in rows
            ]
        return await self._resolve_legacy(user_id)

    async def _resolve_legacy(self, user_id: UUID) -> list[ResolvedMembership]:
        user = await self.db.get(User, user_id)
        if user is None or user.primary_organization_id is None:
            return []

        organization = await self.db.get(Organization, user.primary_organization_id)
        if organization is None:
            return []

        role_names = {role.name for role in await user.awaitable_attrs.roles}
        role = next((name for name in _LEGACY_ROLE_ORDER if name in role_names), OrgRole.USER.value)
        logger.debug(f"User {user_id} has no memberships, using denormalized primary organization")
        return [
            ResolvedMembership(
                organization_id=organization.id,
                organization=organization.name,
                role=role,
                is_primary=True,
                joined_at=None,
            )
        ]

    async def claims_for(self, user_id: UUID) -> list[dict]:
        """Membership list in session-token claim form."""
        return [membership.as_claim() for membership in await self.resolve(user_id)]

    async def primary(self, user_id: UUID) -> ResolvedMembership | None:
        memberships = await self.resolve(user_id)
        return next((m for m in memberships if m.is_primary), None)

    async def find(self, user_id: UUID, organization_id: UUID) -> UserOrg | None:
        result = await self.db.execute(
            select(UserOrg).where(
                UserOrg.user_id == user_id,
                UserOrg.organization_id == organization_id,
            )
        )
        return result.scalar_one_or_none()

    async def set_primary(self, user_id: UUID, organization_id: UUID) -> UserOrg:
        """
        Make organization_id the user's only primary membership.

        The user's membership rows are locked, then the clear-all and set-one
        updates run inside one savepoint together with the denormalized
        users.primary_organization_id write. A non-member target raises
        MembershipNotFound and leaves every row untouched.
        """
        async with self.db.begin_nested():
            locked = await self.db.execute(
                select(UserOrg)
                .where(UserOrg.user_id == user_id)
                .with_for_update()
            )
            target = next(
                (row for row in locked.scalars().all() if row.organization_id == organization_id),
                None,
            )
            if target is None:
                raise MembershipNotFound()

            await self.db.execute(
                update(UserOrg)
                .where(UserOrg.user_id == user_id)
                .values(is_primary=False)
                .execution_options(synchronize_session="fetch")
            )
            await self.db.execute(
                update(UserOrg)
                .where(
                    UserOrg.user_id == user_id,
                    UserOrg.organization_id == organization_id,
                )
                .values(is_primary=True)
                .execution_options(synchronize_session="fetch")
            )
            await self.db.execute(
                update(User)
                .where(User.id == user_id)
                .values(primary_organization_id=organization_id)
                .execution_options(synchronize_session="fetch")
            )

        logger.info(f"Primary organization for user {user_id} set to {organization_id}")
        return target

    async def add_membership(
        self,
        user: User,
        organization: Organization,
        role: str = OrgRole.USER.value,
        make_primary: bool | None = None,
    ) -> UserOrg:
        """
        Add (or return the existing) membership of user in organization.

        make_primary=None makes the new row primary only when the user has no
        primary organization yet.
        """
        existing = await self.find(user.id, organization.id)
        if existing is not None:
            membership = existing
        else:
            membership = UserOrg(
                user_id=user.id,
                organization_id=organization.id,
                role=role,
                is_primary=False,
                joined_at=utcnow(),
            )
            self.db.add(membership)
            await self.db.flush()

        if make_primary is None:
            make_primary = user.primary_organization_id is None
        if make_primary:
            await self.set_primary(user.id, organization.id)
            user.primary_organization_id = organization.id
        return membership

    async def require_user(self, user_id: UUID) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFound()
        return user
