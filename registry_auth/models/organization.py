"""
Organization Model

Tenant boundary for the registry. Boxes, service accounts and invitations
are all scoped to an organization.
"""

from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registry_auth.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from registry_auth.models.user_org import UserOrg


class AccessMode(str, Enum):
    """How new members may join an organization."""

    PRIVATE = "private"
    INVITE_ONLY = "invite_only"
    REQUEST_TO_JOIN = "request_to_join"


class Organization(TimestampMixin, Base):
    """
    Multi-tenant organization record.

    Created at signup or by just-in-time provisioning; this service only
    references organizations and never deletes them.
    """

    __tablename__ = "organizations"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    access_mode: Mapped[str] = mapped_column(
        String(20),
        default=AccessMode.PRIVATE.value,
        nullable=False,
        comment="Access mode: private|invite_only|request_to_join",
    )
    suspended: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Relationships
    memberships: Mapped[list["UserOrg"]] = relationship(
        back_populates="organization",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "access_mode IN ('private', 'invite_only', 'request_to_join')",
            name="valid_access_mode",
        ),
    )

    def __repr__(self) -> str:
        return f"<Organization {self.name}>"
