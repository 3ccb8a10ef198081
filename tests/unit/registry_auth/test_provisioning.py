"""
Unit tests for registry_auth.services.provisioning

The three matching branches, organization determination (invitation,
domain mapping) and the fallback policies.
"""

import json
import re

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import IntegrityError

from registry_auth.config import Settings
from registry_auth.models.credential import Credential
from registry_auth.models.invitation import Invitation
from registry_auth.models.organization import Organization
from registry_auth.models.user import User
from registry_auth.services.errors import AccessDenied, AccountInactive, UnknownPolicy, UserCreationFailed
from registry_auth.services.memberships import MembershipResolver
from registry_auth.services.provisioning import ExternalProfile, ProvisioningEngine, parse_domain_mappings
from tests.factories import make_credential, make_invitation, make_organization, make_user

TAG = "oidc-corp"


def _settings(**overrides) -> Settings:
    values = {
        "provisioning_enabled": True,
        "provisioning_fallback_action": "create_org",
        "domain_mapping_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def _profile(email: str | None = "jane@corp.test", subject: str = "jane-sub", **overrides) -> ExternalProfile:
    return ExternalProfile(subject=subject, email=email, **overrides)


async def _memberships(db, user):
    return await MembershipResolver(db).resolve(user.id)


async def _user_count(db) -> int:
    return (await db.execute(select(func.count(User.id)))).scalar_one()


# ---------------------------------------------------------------------------
# Domain mapping parsing
# ---------------------------------------------------------------------------

def test_parse_domain_mappings():
    raw = json.dumps({"Acme": ["Acme.com", "acme.io"], "Broken": "acme.org"})
    assert parse_domain_mappings(raw) == {"Acme": ["acme.com", "acme.io"]}


@pytest.mark.parametrize("raw", ["", None, "{not json", "[1, 2]", '"acme.com"'])
def test_parse_domain_mappings_malformed(raw):
    assert parse_domain_mappings(raw) == {}


# ---------------------------------------------------------------------------
# Branch 1: existing credential
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_existing_credential_returns_linked_user(db_session, test_user):
    db_session.add(make_credential(test_user.id, TAG, "jane-sub"))
    await db_session.commit()

    user = await ProvisioningEngine(db_session, _settings()).handle_external_user(TAG, _profile())

    assert user.id == test_user.id
    assert await _user_count(db_session) == 1


@pytest.mark.asyncio
async def test_existing_credential_suspended_user(db_session):
    frozen = make_user(suspended=True)
    db_session.add(frozen)
    await db_session.flush()
    db_session.add(make_credential(frozen.id, TAG, "jane-sub"))
    await db_session.commit()

    with pytest.raises(AccountInactive):
        await ProvisioningEngine(db_session, _settings()).handle_external_user(TAG, _profile())


@pytest.mark.asyncio
async def test_existing_credential_gets_default_role(db_session, test_org):
    roleless = make_user(roles=[])
    db_session.add(roleless)
    await db_session.flush()
    await MembershipResolver(db_session).add_membership(roleless, test_org)
    db_session.add(make_credential(roleless.id, TAG, "jane-sub"))
    await db_session.commit()

    user = await ProvisioningEngine(db_session, _settings()).handle_external_user(TAG, _profile())

    assert user.role_names == ["user"]


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", ["require_invite", "deny_access"])
async def test_existing_user_without_primary_is_denied_by_policy(db_session, policy):
    orphan = make_user(roles=[])
    db_session.add(orphan)
    await db_session.flush()
    db_session.add(make_credential(orphan.id, TAG, "jane-sub"))
    await db_session.commit()

    engine = ProvisioningEngine(db_session, _settings(provisioning_fallback_action=policy))
    with pytest.raises(AccessDenied):
        await engine.handle_external_user(TAG, _profile())


@pytest.mark.asyncio
async def test_existing_user_without_primary_and_unknown_policy(db_session):
    db_session.add(make_user(email="jane@corp.test"))
    await db_session.commit()

    engine = ProvisioningEngine(db_session, _settings(provisioning_fallback_action="welcome_all"))
    with pytest.raises(UnknownPolicy):
        await engine.handle_external_user(TAG, _profile())


@pytest.mark.asyncio
async def test_existing_user_without_primary_gets_created_org(db_session):
    orphan = make_user(roles=[])
    db_session.add(orphan)
    await db_session.flush()
    db_session.add(make_credential(orphan.id, TAG, "jane-sub"))
    await db_session.commit()

    user = await ProvisioningEngine(db_session, _settings()).handle_external_user(TAG, _profile())

    memberships = await _memberships(db_session, user)
    assert [(m.role, m.is_primary) for m in memberships] == [("admin", True)]
    assert user.primary_organization_id == memberships[0].organization_id


@pytest.mark.asyncio
async def test_existing_user_without_primary_joins_invited_organization(db_session, test_org):
    orphan = make_user(email="orphan@corp.test")
    db_session.add(orphan)
    await db_session.flush()
    db_session.add(make_credential(orphan.id, TAG, "orphan-sub"))
    db_session.add(make_invitation(test_org.id, email="orphan@corp.test", invited_role="moderator"))
    await db_session.commit()

    engine = ProvisioningEngine(db_session, _settings(provisioning_fallback_action="deny_access"))
    user = await engine.handle_external_user(TAG, _profile("orphan@corp.test", "orphan-sub"))

    memberships = await _memberships(db_session, user)
    assert [(m.organization, m.role, m.is_primary) for m in memberships] == [("Test Org", "moderator", True)]


# ---------------------------------------------------------------------------
# Branch 2: email match
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_email_match_links_credential(db_session, test_user):
    engine = ProvisioningEngine(db_session, _settings())

    user = await engine.handle_external_user(TAG, _profile("Owner@Test.com", "owner-sub"))

    assert user.id == test_user.id
    assert user.auth_provider == TAG
    assert user.external_id == "owner-sub"
    assert user.linked_at is not None
    credential = (
        await db_session.execute(select(Credential).where(Credential.subject == "owner-sub"))
    ).scalar_one()
    assert credential.user_id == test_user.id
    assert credential.provider == TAG


@pytest.mark.asyncio
async def test_email_match_survives_credential_link_failure(db_session, test_user):
    def reject_credentials(session, flush_context, instances):
        if any(isinstance(obj, Credential) for obj in session.new):
            raise IntegrityError("INSERT INTO federated_credentials", {}, Exception("duplicate"))

    event.listen(db_session.sync_session, "before_flush", reject_credentials)
    try:
        user = await ProvisioningEngine(db_session, _settings()).handle_external_user(
            TAG, _profile("owner@test.com", "owner-sub")
        )
    finally:
        event.remove(db_session.sync_session, "before_flush", reject_credentials)

    assert user.id == test_user.id
    assert user.external_id == "owner-sub"
    credentials = (
        await db_session.execute(select(func.count(Credential.id)).where(Credential.user_id == test_user.id))
    ).scalar_one()
    assert credentials == 0


@pytest.mark.asyncio
async def test_email_match_suspended_user(db_session):
    db_session.add(make_user(email="jane@corp.test", suspended=True))
    await db_session.commit()

    with pytest.raises(AccountInactive):
        await ProvisioningEngine(db_session, _settings()).handle_external_user(TAG, _profile())


@pytest.mark.asyncio
async def test_missing_email_fails_before_provisioning(db_session):
    with pytest.raises(UserCreationFailed):
        await ProvisioningEngine(db_session, _settings()).handle_external_user(TAG, _profile(email=None))


# ---------------------------------------------------------------------------
# Branch 3: provisioning
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_provisioning_disabled(db_session):
    engine = ProvisioningEngine(db_session, _settings(provisioning_enabled=False))
    with pytest.raises(AccessDenied):
        await engine.handle_external_user(TAG, _profile())
    assert await _user_count(db_session) == 0


@pytest.mark.asyncio
async def test_invitation_wins_over_deny_access(db_session, test_org):
    invitation = make_invitation(test_org.id, email="Jane@Corp.test", invited_role="moderator")
    db_session.add(invitation)
    await db_session.commit()

    engine = ProvisioningEngine(db_session, _settings(provisioning_fallback_action="deny_access"))
    user = await engine.handle_external_user(TAG, _profile())

    memberships = await _memberships(db_session, user)
    assert [(m.organization, m.role, m.is_primary) for m in memberships] == [("Test Org", "moderator", True)]
    accepted = (
        await db_session.execute(select(Invitation.accepted).where(Invitation.id == invitation.id))
    ).scalar_one()
    assert accepted is True


@pytest.mark.asyncio
async def test_domain_mapping_to_existing_organization(db_session):
    db_session.add(make_organization(name="Corp"))
    await db_session.commit()
    settings = _settings(
        domain_mapping_enabled=True,
        domain_mappings=json.dumps({"Corp": ["corp.test"]}),
        provisioning_fallback_action="deny_access",
    )

    user = await ProvisioningEngine(db_session, settings).handle_external_user(TAG, _profile())

    memberships = await _memberships(db_session, user)
    assert [(m.organization, m.role, m.is_primary) for m in memberships] == [("Corp", "user", True)]
    assert user.role_names == ["user"]


@pytest.mark.asyncio
async def test_domain_mapping_to_missing_organization_creates_domain_named_org(db_session):
    settings = _settings(
        domain_mapping_enabled=True,
        domain_mappings=json.dumps({"Mapped Inc": ["mapped.com"]}),
    )

    user = await ProvisioningEngine(db_session, settings).handle_external_user(
        TAG, _profile("dev@mapped.com", "dev-sub")
    )

    memberships = await _memberships(db_session, user)
    assert [(m.organization, m.role) for m in memberships] == [("mapped.com", "admin")]


@pytest.mark.asyncio
async def test_domain_mapping_ignored_when_disabled(db_session):
    db_session.add(make_organization(name="Corp"))
    await db_session.commit()
    settings = _settings(
        domain_mapping_enabled=False,
        domain_mappings=json.dumps({"Corp": ["corp.test"]}),
        provisioning_fallback_action="require_invite",
    )

    with pytest.raises(AccessDenied):
        await ProvisioningEngine(db_session, settings).handle_external_user(TAG, _profile())


@pytest.mark.asyncio
async def test_create_org_policy_uses_random_code(db_session):
    user = await ProvisioningEngine(db_session, _settings()).handle_external_user(TAG, _profile())

    memberships = await _memberships(db_session, user)
    assert len(memberships) == 1
    assert re.fullmatch(r"[0-9A-F]{6}", memberships[0].organization)
    assert memberships[0].role == "admin"
    assert memberships[0].is_primary is True
    assert user.primary_organization_id == memberships[0].organization_id


@pytest.mark.asyncio
async def test_created_org_name_collision_falls_back_to_random_code(db_session):
    db_session.add(make_organization(name="mapped.com"))
    await db_session.commit()
    settings = _settings(
        domain_mapping_enabled=True,
        domain_mappings=json.dumps({"Mapped Inc": ["mapped.com"]}),
    )

    user = await ProvisioningEngine(db_session, settings).handle_external_user(
        TAG, _profile("dev@mapped.com", "dev-sub")
    )

    organization = (await _memberships(db_session, user))[0].organization
    assert re.fullmatch(r"[0-9A-F]{6}", organization)


@pytest.mark.asyncio
async def test_new_user_is_verified_with_credential_and_default_role(db_session):
    user = await ProvisioningEngine(db_session, _settings()).handle_external_user(
        TAG, _profile(username="jane.doe")
    )

    assert user.username == "jane.doe"
    assert user.verified is True
    assert user.hashed_password is None
    assert user.role_names == ["user"]
    subjects = (
        await db_session.execute(select(Credential.subject).where(Credential.user_id == user.id))
    ).scalars().all()
    assert subjects == ["jane-sub"]


@pytest.mark.asyncio
async def test_username_collision_gets_suffix(db_session):
    db_session.add(make_user(username="jane", email="other@test.com"))
    await db_session.commit()

    user = await ProvisioningEngine(db_session, _settings()).handle_external_user(TAG, _profile())

    assert user.username.startswith("jane-")


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", ["require_invite", "deny_access"])
async def test_denying_policies(db_session, policy):
    engine = ProvisioningEngine(db_session, _settings(provisioning_fallback_action=policy))
    with pytest.raises(AccessDenied):
        await engine.handle_external_user(TAG, _profile())
    assert await _user_count(db_session) == 0


@pytest.mark.asyncio
async def test_unknown_policy(db_session):
    engine = ProvisioningEngine(db_session, _settings(provisioning_fallback_action="welcome_all"))
    with pytest.raises(UnknownPolicy):
        await engine.handle_external_user(TAG, _profile())
    organizations = (await db_session.execute(select(func.count(Organization.id)))).scalar_one()
    assert organizations == 0
