"""
Unit tests for registry_auth.services.auth

Password hashing plus the local-then-service-account authentication order.
"""

from datetime import datetime, timedelta, timezone

import pytest

from registry_auth.services.auth import (
    LocalPrincipal,
    ServiceAccountPrincipal,
    authenticate,
    hash_password,
    hash_token,
    verify_password,
)
from registry_auth.services.errors import (
    AccountInactive,
    InvalidCredentials,
    NotFound,
    ServiceAccountExpired,
)
from tests.factories import TEST_PASSWORD, make_service_account, make_user

SAMPLE_PASSWORD = "S3cure!Pa$$w0rd"


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def test_hash_password_produces_different_hashes_for_same_input():
    assert hash_password(SAMPLE_PASSWORD) != hash_password(SAMPLE_PASSWORD)


def test_verify_password():
    hashed = hash_password(SAMPLE_PASSWORD)
    assert verify_password(SAMPLE_PASSWORD, hashed) is True
    assert verify_password("WrongPassword!", hashed) is False


def test_verify_password_without_hash_fails():
    assert verify_password(SAMPLE_PASSWORD, None) is False
    assert verify_password(SAMPLE_PASSWORD, "not-a-bcrypt-hash") is False


def test_hash_token_is_sha256_hex():
    digest = hash_token("abc")
    assert len(digest) == 64
    assert digest == hash_token("abc")


# ---------------------------------------------------------------------------
# authenticate()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_authenticate_local_user(db_session, test_user):
    principal = await authenticate(db_session, "owner", TEST_PASSWORD)
    assert isinstance(principal, LocalPrincipal)
    assert principal.user.id == test_user.id


@pytest.mark.asyncio
async def test_authenticate_wrong_password(db_session, test_user):
    with pytest.raises(InvalidCredentials):
        await authenticate(db_session, "owner", "nope")


@pytest.mark.asyncio
async def test_authenticate_unknown_identifier(db_session):
    with pytest.raises(NotFound):
        await authenticate(db_session, "ghost", "whatever")


@pytest.mark.asyncio
async def test_authenticate_suspended_user(db_session):
    db_session.add(make_user(username="frozen", suspended=True))
    await db_session.commit()

    with pytest.raises(AccountInactive):
        await authenticate(db_session, "frozen", TEST_PASSWORD)


@pytest.mark.asyncio
async def test_authenticate_service_account(db_session, test_user, test_org):
    account, token = make_service_account(test_user.id, test_org.id, username="ci-bot")
    db_session.add(account)
    await db_session.commit()

    principal = await authenticate(db_session, "ci-bot", token)

    assert isinstance(principal, ServiceAccountPrincipal)
    assert principal.account.id == account.id


@pytest.mark.asyncio
async def test_authenticate_service_account_wrong_token(db_session, test_user, test_org):
    account, _ = make_service_account(test_user.id, test_org.id, username="ci-bot")
    db_session.add(account)
    await db_session.commit()

    with pytest.raises(NotFound):
        await authenticate(db_session, "ci-bot", "0" * 64)


@pytest.mark.asyncio
async def test_service_account_token_only_works_for_its_own_username(db_session, test_user, test_org):
    first, first_token = make_service_account(test_user.id, test_org.id, username="ci-bot")
    second, _ = make_service_account(test_user.id, test_org.id, username="cd-bot")
    db_session.add_all([first, second])
    await db_session.commit()

    with pytest.raises(NotFound):
        await authenticate(db_session, "cd-bot", first_token)


@pytest.mark.asyncio
async def test_authenticate_expired_service_account(db_session, test_user, test_org):
    account, token = make_service_account(
        test_user.id,
        test_org.id,
        username="old-bot",
        expires_at=datetime.now(timezone.utc) - timedelta(seconds=1),
    )
    db_session.add(account)
    await db_session.commit()

    with pytest.raises(ServiceAccountExpired):
        await authenticate(db_session, "old-bot", token)


@pytest.mark.asyncio
async def test_local_user_shadows_service_account_with_same_name(db_session, test_user, test_org):
    """A username that exists locally is never checked against service accounts."""
    account, token = make_service_account(test_user.id, test_org.id, username="owner")
    db_session.add(account)
    await db_session.commit()

    with pytest.raises(InvalidCredentials):
        await authenticate(db_session, "owner", token)
