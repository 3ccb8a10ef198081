"""
Invitation Model

Single-use tokens inviting an email address into an organization.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from registry_auth.models.base import Base, TimestampMixin


class Invitation(TimestampMixin, Base):
    """
    Pending, accepted or expired invitation.

    Once accepted or expired is set the row is never mutated again.
    """

    __tablename__ = "invitations"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    token: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )
    expires: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invited_role: Mapped[str] = mapped_column(
        String(20),
        default="user",
        nullable=False,
        comment="Role granted on acceptance: user|moderator",
    )
    invited_by: Mapped[UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    accepted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    expired: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("invited_role IN ('user', 'moderator')", name="valid_invited_role"),
        Index("ix_invitations_pending", "email", "accepted", "expired"),
    )

    def __repr__(self) -> str:
        return f"<Invitation {self.email} org={self.organization_id}>"
