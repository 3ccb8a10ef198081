"""
Role Model

Instance-wide roles. The first user to sign up is granted admin and
moderator; everyone else starts as user.
"""

from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Column, ForeignKey, String, Table
from sqlalchemy.orm import Mapped, mapped_column

from registry_auth.models.base import Base


class RoleName(str, Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)


class Role(Base):
    """Named global role."""

    __tablename__ = "roles"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(50),
        unique=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Role {self.name}>"
