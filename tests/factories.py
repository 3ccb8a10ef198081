"""
Test Factories

Helper functions for creating model instances in tests.
"""

import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs
from uuid import uuid4

import httpx
import jwt
from sqlalchemy import select

from registry_auth.models.credential import Credential
from registry_auth.models.invitation import Invitation
from registry_auth.models.organization import Organization
from registry_auth.models.role import Role
from registry_auth.models.service_account import ServiceAccount
from registry_auth.models.user import User
from registry_auth.services.auth import hash_password, hash_token
from registry_auth.services.providers import ProviderConfig

TEST_PASSWORD = "TestPass123!"


def make_organization(**overrides) -> Organization:
    """Create an Organization instance with sensible defaults."""
    defaults = {
        "id": uuid4(),
        "name": f"org-{secrets.token_hex(4)}",
        "access_mode": "private",
        "suspended": False,
    }
    defaults.update(overrides)
    return Organization(**defaults)


def make_user(**overrides) -> User:
    """Create a User instance with sensible defaults."""
    suffix = secrets.token_hex(4)
    defaults = {
        "id": uuid4(),
        "username": f"user-{suffix}",
        "email": f"user-{suffix}@test.com",
        "hashed_password": hash_password(TEST_PASSWORD),
        "verified": True,
        "suspended": False,
        "roles": [],
    }
    defaults.update(overrides)
    return User(**defaults)


def make_credential(user_id, provider: str, subject: str, **overrides) -> Credential:
    defaults = {
        "id": uuid4(),
        "user_id": user_id,
        "provider": provider,
        "subject": subject,
    }
    defaults.update(overrides)
    return Credential(**defaults)


def make_invitation(organization_id, **overrides) -> Invitation:
    """Create a pending Invitation valid for one day."""
    defaults = {
        "id": uuid4(),
        "email": f"invitee-{secrets.token_hex(4)}@test.com",
        "token": secrets.token_hex(32),
        "expires": datetime.now(timezone.utc) + timedelta(days=1),
        "organization_id": organization_id,
        "invited_role": "user",
        "accepted": False,
        "expired": False,
    }
    defaults.update(overrides)
    return Invitation(**defaults)


def make_service_account(user_id, organization_id, **overrides) -> tuple[ServiceAccount, str]:
    """
    Create a ServiceAccount and its raw token.

    Returns:
        Tuple of (account, raw_token)
    """
    token = overrides.pop("token", secrets.token_hex(32))
    defaults = {
        "id": uuid4(),
        "username": f"sa-{secrets.token_hex(4)}",
        "token_hash": hash_token(token),
        "description": "CI pipeline",
        "expires_at": datetime.now(timezone.utc) + timedelta(days=30),
        "user_id": user_id,
        "organization_id": organization_id,
    }
    defaults.update(overrides)
    return ServiceAccount(**defaults), token


def make_provider(**overrides) -> ProviderConfig:
    """Create a discovered ProviderConfig for a fake identity provider."""
    defaults = {
        "name": "test",
        "display_name": "Test IdP",
        "issuer": "https://idp.test",
        "client_id": "registry",
        "client_secret": "idp-client-secret",
        "auth_method": "basic",
        "scope": "openid profile email",
        "authorization_endpoint": "https://idp.test/authorize",
        "token_endpoint": "https://idp.test/token",
        "userinfo_endpoint": "https://idp.test/userinfo",
        "end_session_endpoint": "https://idp.test/logout",
        "supports_pkce": True,
    }
    defaults.update(overrides)
    return ProviderConfig(**defaults)


def make_id_token(provider: ProviderConfig, **claims) -> str:
    """HS256 ID token signed with the provider's client secret."""
    now = datetime.now(timezone.utc)
    payload = {
        "iss": provider.issuer,
        "aud": provider.client_id,
        "sub": f"subject-{secrets.token_hex(4)}",
        "iat": now,
        "exp": now + timedelta(hours=1),
    }
    payload.update(claims)
    return jwt.encode(payload, provider.client_secret, algorithm="HS256")


async def get_role(db, name: str) -> Role:
    """Load one of the seeded global roles."""
    result = await db.execute(select(Role).where(Role.name == name))
    return result.scalar_one()


class FakeIdentityProvider:
    """
    httpx.MockTransport handler standing in for an OIDC provider's token
    and userinfo endpoints.
    """

    def __init__(self, provider: ProviderConfig):
        self.provider = provider
        self.nonce: str | None = None
        self.id_claims: dict = {}
        self.userinfo: dict = {}
        self.token_response: httpx.Response | None = None
        self.issue_id_token = True
        self.token_requests: list[httpx.Request] = []
        self.last_id_token: str | None = None

    def form(self, index: int = -1) -> dict[str, str]:
        """Decoded form body of a recorded token request."""
        body = self.token_requests[index].content.decode()
        return {key: values[0] for key, values in parse_qs(body).items()}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            self.token_requests.append(request)
            if self.token_response is not None:
                return self.token_response
            payload = {"access_token": "idp-access", "refresh_token": "idp-refresh", "token_type": "Bearer"}
            if self.issue_id_token:
                claims = {"nonce": self.nonce, "email": "jane@corp.test"}
                claims.update(self.id_claims)
                self.last_id_token = make_id_token(self.provider, **claims)
                payload["id_token"] = self.last_id_token
            return httpx.Response(200, json=payload)
        if request.url.path == "/userinfo":
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)
