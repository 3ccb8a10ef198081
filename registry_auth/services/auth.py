"""
Authentication Service

Password hashing and credential verification for local users and service
accounts. Authentication resolves to a Principal, a tagged union the token
issuer matches on.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Union

from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from registry_auth.models.base import as_utc, utcnow
from registry_auth.models.service_account import ServiceAccount
from registry_auth.models.user import User
from registry_auth.services.errors import (
    AccountInactive,
    InvalidCredentials,
    NotFound,
    ServiceAccountExpired,
)

logger = logging.getLogger(__name__)

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a plain-text password with bcrypt."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Verify a plain-text password against a bcrypt hash (constant time)."""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unrecognized hash format
        return False


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store service account tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


def email_hash(email: str) -> str:
    return hashlib.sha256(email.lower().encode()).hexdigest()


@dataclass(frozen=True)
class LocalPrincipal:
    user: User


@dataclass(frozen=True)
class ServiceAccountPrincipal:
    account: ServiceAccount


Principal = Union[LocalPrincipal, ServiceAccountPrincipal]


async def authenticate(db: AsyncSession, identifier: str, secret: str) -> Principal:
    """
    Resolve (identifier, secret) to a principal.

    Local users are tried first; only when no user has that username is the
    pair checked against service accounts. Raises NotFound,
    InvalidCredentials, AccountInactive or ServiceAccountExpired.
    """
    result = await db.execute(select(User).where(User.username == identifier))
    user = result.scalar_one_or_none()

    if user is not None:
        if not verify_password(secret, user.hashed_password):
            raise InvalidCredentials()
        if user.suspended:
            raise AccountInactive("Account is suspended")
        return LocalPrincipal(user)

    account = await authenticate_service_account(db, identifier, secret)
    return ServiceAccountPrincipal(account)


async def authenticate_service_account(
    db: AsyncSession,
    username: str,
    token: str,
) -> ServiceAccount:
    """Look up a service account by username, then check its token and expiry."""
    result = await db.execute(select(ServiceAccount).where(ServiceAccount.username == username))
    account = result.scalar_one_or_none()

    if account is None or not hmac.compare_digest(account.token_hash, hash_token(token)):
        raise NotFound()

    if utcnow() > as_utc(account.expires_at):
        logger.info(f"Rejected expired service account {account.username}")
        raise ServiceAccountExpired()

    return account
