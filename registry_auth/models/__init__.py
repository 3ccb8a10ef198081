"""SQLAlchemy ORM Models for Registry Auth."""

from registry_auth.models.base import Base, TimestampMixin
from registry_auth.models.credential import Credential
from registry_auth.models.invitation import Invitation
from registry_auth.models.organization import AccessMode, Organization
from registry_auth.models.role import Role, RoleName, user_roles
from registry_auth.models.service_account import ServiceAccount
from registry_auth.models.user import User
from registry_auth.models.user_org import OrgRole, UserOrg

__all__ = [
    "Base",
    "TimestampMixin",
    "AccessMode",
    "Credential",
    "Invitation",
    "Organization",
    "OrgRole",
    "Role",
    "RoleName",
    "ServiceAccount",
    "User",
    "UserOrg",
    "user_roles",
]
