"""
UserOrg Model

Membership join between users and organizations, carrying the per-org role
and the primary-organization flag.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registry_auth.models.base import Base, TimestampMixin, utcnow

if TYPE_CHECKING:
    from registry_auth.models.organization import Organization
    from registry_auth.models.user import User


class OrgRole(str, Enum):
    """Role of a user inside one organization."""

    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


class UserOrg(TimestampMixin, Base):
    """
    One membership row per (user, organization).

    At most one row per user has is_primary set; MembershipResolver is the
    only writer of that flag.
    """

    __tablename__ = "user_organizations"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(
        String(20),
        default=OrgRole.USER.value,
        nullable=False,
        comment="Role: user|moderator|admin",
    )
    is_primary: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="memberships")
    organization: Mapped["Organization"] = relationship(back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="unique_user_org"),
        CheckConstraint("role IN ('user', 'moderator', 'admin')", name="valid_org_role"),
        Index("ix_user_organizations_primary", "user_id", "is_primary"),
    )

    def __repr__(self) -> str:
        return f"<UserOrg user={self.user_id} org={self.organization_id} role={self.role}>"
