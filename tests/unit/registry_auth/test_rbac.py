"""
Unit Tests for Request Authentication

Tests token extraction from request headers, claims-to-principal loading
and organization role checks.
"""

from uuid import uuid4

import pytest
from starlette.requests import Request

from registry_auth.middleware.rbac import extract_token, get_current_user, require_org_role
from registry_auth.services.auth import LocalPrincipal, ServiceAccountPrincipal
from registry_auth.services.errors import AccountInactive, Forbidden, NotFound, TokenInvalid
from registry_auth.services.tokens import SessionClaims, claims_to_principal
from tests.factories import get_role, make_service_account, make_user

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _request(headers: dict[str, str]) -> Request:
    raw = [(key.lower().encode(), value.encode()) for key, value in headers.items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


def _claims(**overrides) -> SessionClaims:
    values = {"sub": str(uuid4()), "provider": "local"}
    values.update(overrides)
    return SessionClaims(**values)


# ===========================================================================
# Token extraction
# ===========================================================================

class TestExtractToken:
    """Verify where session tokens are read from."""

    def test_bearer_header(self):
        assert extract_token(_request({"Authorization": "Bearer abc.def"})) == "abc.def"

    def test_bearer_scheme_is_case_insensitive(self):
        assert extract_token(_request({"Authorization": "bearer abc.def"})) == "abc.def"

    def test_x_access_token_header(self):
        assert extract_token(_request({"x-access-token": "abc.def"})) == "abc.def"

    def test_bearer_wins_over_x_access_token(self):
        request = _request({"Authorization": "Bearer first", "x-access-token": "second"})
        assert extract_token(request) == "first"

    def test_non_bearer_authorization_falls_back(self):
        request = _request({"Authorization": "Basic dXNlcjpwYXNz", "x-access-token": "second"})
        assert extract_token(request) == "second"

    def test_missing_token(self):
        assert extract_token(_request({})) is None
        assert extract_token(_request({"Authorization": "Bearer "})) is None


# ===========================================================================
# Claims to principal
# ===========================================================================

class TestClaimsToPrincipal:
    """Verify that token claims load the matching principal."""

    @pytest.mark.asyncio
    async def test_local_user(self, db_session, test_user):
        principal = await claims_to_principal(db_session, _claims(sub=str(test_user.id)))

        assert isinstance(principal, LocalPrincipal)
        assert principal.user.id == test_user.id

    @pytest.mark.asyncio
    async def test_deleted_user(self, db_session):
        with pytest.raises(NotFound):
            await claims_to_principal(db_session, _claims())

    @pytest.mark.asyncio
    async def test_suspended_user(self, db_session):
        user = make_user(suspended=True)
        db_session.add(user)
        await db_session.commit()

        with pytest.raises(AccountInactive):
            await claims_to_principal(db_session, _claims(sub=str(user.id)))

    @pytest.mark.asyncio
    async def test_malformed_subject(self, db_session):
        with pytest.raises(TokenInvalid):
            await claims_to_principal(db_session, _claims(sub="not-a-uuid"))

    @pytest.mark.asyncio
    async def test_service_account(self, db_session, test_user, test_org):
        account, _ = make_service_account(test_user.id, test_org.id)
        db_session.add(account)
        await db_session.commit()

        claims = _claims(
            sub=str(test_user.id),
            provider="service_account",
            is_service_account=True,
            service_account_id=str(account.id),
        )
        principal = await claims_to_principal(db_session, claims)

        assert isinstance(principal, ServiceAccountPrincipal)
        assert principal.account.id == account.id

    @pytest.mark.asyncio
    async def test_service_account_user_endpoint_refused(self, db_session, test_user, test_org):
        account, _ = make_service_account(test_user.id, test_org.id)

        with pytest.raises(Forbidden):
            await get_current_user(ServiceAccountPrincipal(account))


# ===========================================================================
# Organization roles
# ===========================================================================

class TestRequireOrgRole:
    """Verify organization role checks."""

    @pytest.mark.asyncio
    async def test_member_with_role(self, db_session, test_user, test_org):
        await require_org_role(db_session, test_user, test_org.id, "moderator", "admin")

    @pytest.mark.asyncio
    async def test_member_without_role(self, db_session, test_user, test_org):
        with pytest.raises(Forbidden):
            await require_org_role(db_session, test_user, test_org.id, "moderator")

    @pytest.mark.asyncio
    async def test_non_member(self, db_session, test_user):
        with pytest.raises(Forbidden):
            await require_org_role(db_session, test_user, uuid4(), "user", "moderator", "admin")

    @pytest.mark.asyncio
    async def test_global_admin_bypasses_membership(self, db_session):
        admin = make_user(roles=[await get_role(db_session, "admin")])
        db_session.add(admin)
        await db_session.commit()

        await require_org_role(db_session, admin, uuid4(), "admin")
