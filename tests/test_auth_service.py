"""Unit tests for the auth facade.

Tests for:
- Patient self-registration and password policy
- Password login, with and without MFA
- Organization registration, switching and hierarchy links
- Permission queries
"""

import pytest

from medisecure.service.auth import AuthService, LoginResult
from medisecure.service.authorization import AuthorizationEngine, DenyReason
from medisecure.service.errors import (
    AuthenticationError,
    AuthorizationError,
    DuplicateEmailError,
    NotFoundError,
    ValidationError,
    WeakPasswordError,
)
from medisecure.service.mfa import MfaChallengeRequired, MfaEngine
from medisecure.service.sso import SsoBridge
from medisecure.service.tenancy import TenantContext
from medisecure.service.tokens import TokenService
from medisecure.service.totp import generate_totp
from medisecure.storage.models import Organization, OrganizationType, Plan, Role, build_profile

PASSWORD = "TestPassword123!"


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock.timestamp)


@pytest.fixture
def auth_service(memory_store, settings, tokens, clock):
    """Create auth service for testing."""
    return AuthService(
        memory_store,
        settings,
        tokens=tokens,
        sso=SsoBridge(memory_store, tokens, settings, clock=clock.now),
        mfa=MfaEngine(memory_store, tokens, settings, clock=clock.now),
        tenancy=TenantContext(memory_store, tokens),
        authorization=AuthorizationEngine(resources=memory_store),
    )


@pytest.fixture
def patient(auth_service):
    return auth_service.register(
        "Patient@Example.com", PASSWORD, "Pat Ient", profile_fields={"date_of_birth": "1985-03-02"}
    )


class TestRegistration:
    """Tests for self-service registration."""

    def test_register_creates_patient_in_default_org(self, patient):
        assert patient.email == "patient@example.com"
        assert patient.role == Role.PATIENT
        assert patient.organization_ids == ["org-1"]
        assert patient.profile.date_of_birth.isoformat() == "1985-03-02"
        assert patient.password_hash != PASSWORD

    def test_duplicate_email_rejected(self, auth_service, patient):
        with pytest.raises(DuplicateEmailError):
            auth_service.register("PATIENT@example.com", PASSWORD, "Again")

    @pytest.mark.parametrize(
        "password", ["short1!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigitsHere!", "NoSpecial123"]
    )
    def test_weak_passwords_rejected(self, auth_service, password):
        with pytest.raises(WeakPasswordError):
            auth_service.register("new@example.com", password, "New")

    def test_invalid_email_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.register("not-an-email", PASSWORD, "New")

    def test_invalid_date_of_birth_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.register(
                "new@example.com", PASSWORD, "New", profile_fields={"date_of_birth": "yesterday"}
            )


class TestLogin:
    """Tests for password login."""

    async def test_login_issues_token(self, auth_service, patient, tokens):
        result = await auth_service.login("patient@example.com", PASSWORD)

        assert isinstance(result, LoginResult)
        claims = tokens.verify(result.token.token)
        assert claims.identity_id == patient.id
        assert claims.organization_id == "org-1"

    async def test_wrong_password_and_unknown_email_look_identical(self, auth_service, patient):
        with pytest.raises(AuthenticationError) as wrong_password:
            await auth_service.login("patient@example.com", "WrongPassword123!")
        with pytest.raises(AuthenticationError) as unknown_email:
            await auth_service.login("nobody@example.com", PASSWORD)

        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.public_detail() == unknown_email.value.public_detail() == {}

    async def test_sso_only_account_cannot_password_login(self, auth_service, memory_store):
        memory_store.create(
            email="sso@example.com",
            name="SSO",
            role=Role.PATIENT,
            organization_ids=["org-1"],
            profile=build_profile(Role.PATIENT),
        )

        with pytest.raises(AuthenticationError):
            await auth_service.login("sso@example.com", PASSWORD)

    async def test_mfa_account_gets_challenge_then_token(self, auth_service, patient, clock, tokens):
        material = await auth_service.mfa.begin_enrollment(patient, "totp")
        secret = material["secret"]
        await auth_service.mfa.confirm_enrollment(
            patient, "totp", {"code": generate_totp(secret, clock.timestamp())}
        )

        outcome = await auth_service.login("patient@example.com", PASSWORD)

        assert isinstance(outcome, MfaChallengeRequired)
        assert outcome.method.value == "totp"
        assert outcome.backup_codes_available is True

        challenge = await auth_service.begin_mfa_challenge(outcome.attempt_id, "totp")
        assert challenge["method"] == "totp"
        result = await auth_service.verify_mfa(
            outcome.attempt_id, "totp", {"code": generate_totp(secret, clock.timestamp())}
        )
        assert result.identity.id == patient.id
        assert tokens.verify(result.token.token).identity_id == patient.id

    async def test_token_survives_password_change(self, auth_service, patient, tokens):
        """Tokens are stateless: a password change does not revoke them."""
        result = await auth_service.login("patient@example.com", PASSWORD)

        auth_service.change_password(patient, PASSWORD, "NewPassword456!")

        assert tokens.verify(result.token.token).identity_id == patient.id
        with pytest.raises(AuthenticationError):
            await auth_service.login("patient@example.com", PASSWORD)
        await auth_service.login("patient@example.com", "NewPassword456!")

    def test_change_password_requires_current(self, auth_service, patient):
        with pytest.raises(AuthenticationError):
            auth_service.change_password(patient, "WrongPassword123!", "NewPassword456!")


class TestOrganizations:
    """Tests for organization registration, switching and links."""

    def test_register_organization_creates_admin(self, auth_service, memory_store):
        organization, admin = auth_service.register_organization(
            "Lakeside Clinic", "Clinic", "Ada Admin", "ada@lakeside.example", PASSWORD
        )

        assert organization.id.startswith("org-")
        assert organization.type == OrganizationType.CLINIC
        assert organization.plan_id == Plan.PROFESSIONAL
        assert admin.role == Role.ADMIN
        assert admin.organization_ids == [organization.id]
        assert memory_store.get_organization(organization.id) is not None

    def test_register_organization_rejects_unknown_type(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.register_organization("X", "Spaceport", "Ada", "ada@x.example", PASSWORD)

    def test_register_organization_rejects_taken_email(self, auth_service, patient):
        with pytest.raises(DuplicateEmailError):
            auth_service.register_organization(
                "X", "Clinic", "Ada", "patient@example.com", PASSWORD
            )

    def test_switch_organization(self, auth_service, patient, memory_store, tokens):
        memory_store.create_organization(Organization(id="org-2", name="Second"))
        memory_store.add_membership(patient.id, "org-2")
        identity = memory_store.find_by_id(patient.id)

        result = auth_service.switch_organization(identity, "org-2")

        assert tokens.verify(result.token.token).organization_id == "org-2"

    def test_switch_to_foreign_organization_rejected(self, auth_service, patient, memory_store):
        memory_store.create_organization(Organization(id="org-2", name="Second"))

        with pytest.raises(AuthorizationError):
            auth_service.switch_organization(patient, "org-2")

    def test_link_and_unlink(self, auth_service, memory_store):
        memory_store.create_organization(Organization(id="org-hq", name="HQ", type=OrganizationType.HEADQUARTERS))

        linked = auth_service.link_organizations("org-1", "org-hq")
        assert linked.parent_organization_id == "org-hq"

        unlinked = auth_service.unlink_organization("org-1")
        assert unlinked.parent_organization_id is None

    def test_link_cycle_rejected(self, auth_service, memory_store):
        memory_store.create_organization(Organization(id="org-a", name="A"))
        memory_store.create_organization(Organization(id="org-b", name="B"))
        auth_service.link_organizations("org-b", "org-a")

        with pytest.raises(ValidationError):
            auth_service.link_organizations("org-a", "org-b")
        with pytest.raises(ValidationError):
            auth_service.link_organizations("org-a", "org-a")

    def test_link_unknown_organization(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.link_organizations("org-1", "org-missing")


class TestPermissions:
    def test_role_permissions_sorted(self, auth_service):
        permissions = auth_service.role_permissions("nurse")

        assert permissions == sorted(permissions)
        assert "record_vitals" in permissions

    def test_can_user_perform(self, auth_service, patient):
        assert auth_service.can_user_perform(patient, "view_own_bills")
        assert not auth_service.can_user_perform(patient, "manage_users")
        assert not auth_service.can_user_perform(None, "view_own_bills")

    def test_authorize_uses_current_organization_plan(self, auth_service, patient):
        decision = auth_service.authorize(patient, "view_own_lab_results", feature="lab")

        assert decision.reason == DenyReason.PLAN_RESTRICTED
