"""Unit tests for the single sign-on bridge.

Tests for:
- Placeholder-credential gating of every entry point
- OAuth state handling and the code exchange (via httpx.MockTransport)
- Pending registrations: creation, lookup, single-use completion, expiry
"""

import httpx
import pytest

from medisecure.service.errors import (
    ConfigurationError,
    DuplicateEmailError,
    ExpiredError,
    IdentityProviderError,
    NotFoundError,
    ValidationError,
)
from medisecure.service.sso import (
    GOOGLE_PROVIDER,
    ProviderProfile,
    SsoAuthenticated,
    SsoBridge,
    SsoPending,
    credentials_look_configured,
)
from medisecure.service.tokens import TokenService
from medisecure.storage.models import Role, build_profile

CLIENT_ID = "123456789012-abcdefg.apps.googleusercontent.com"
CLIENT_SECRET = "GOCSPX-0123456789abcdefghij"


@pytest.fixture
def sso_settings(settings):
    return settings.model_copy(
        update={"google_client_id": CLIENT_ID, "google_client_secret": CLIENT_SECRET}
    )


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock.timestamp)


def _provider_transport(userinfo, *, token_status=200, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if str(request.url) == GOOGLE_PROVIDER["token_url"]:
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-access-token"})
        if str(request.url) == GOOGLE_PROVIDER["userinfo_url"]:
            assert request.headers["Authorization"] == "Bearer provider-access-token"
            return httpx.Response(200, json=userinfo)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def make_bridge(memory_store, tokens, sso_settings, clock):
    def factory(transport=None, settings=None):
        return SsoBridge(
            memory_store,
            tokens,
            settings or sso_settings,
            transport=transport,
            clock=clock.now,
        )

    return factory


@pytest.fixture
def bridge(make_bridge):
    return make_bridge()


class TestConfigurationGate:
    """Tests for the placeholder-credential gate."""

    @pytest.mark.parametrize(
        "client_id,client_secret",
        [
            (None, CLIENT_SECRET),
            (CLIENT_ID, ""),
            ("mock-client-id", CLIENT_SECRET),
            (CLIENT_ID, "your-client-secret"),
            ("short", CLIENT_SECRET),
            ("  CHANGEME  ", CLIENT_SECRET),
        ],
    )
    def test_placeholder_credentials_are_unconfigured(self, client_id, client_secret):
        assert credentials_look_configured(client_id, client_secret) is False

    def test_real_looking_credentials_are_configured(self):
        assert credentials_look_configured(CLIENT_ID, CLIENT_SECRET) is True

    def test_status_reports_unconfigured(self, make_bridge, settings):
        """status works even when the provider is not configured."""
        bridge = make_bridge(settings=settings)

        status = bridge.status()

        assert status["configured"] is False
        assert status["provider"] == "google"
        assert "GOOGLE_CLIENT_ID" in status["message"]

    async def test_every_entry_point_refuses_when_unconfigured(self, make_bridge, settings):
        """No handshake is attempted with placeholder credentials."""
        calls = []
        bridge = make_bridge(
            transport=_provider_transport({"email": "a@example.com"}, calls=calls),
            settings=settings.model_copy(
                update={"google_client_id": "mock-client-id", "google_client_secret": "mock-client-secret"}
            ),
        )

        with pytest.raises(ConfigurationError):
            await bridge.start()
        with pytest.raises(ConfigurationError):
            await bridge.callback("code", "state")
        with pytest.raises(ConfigurationError):
            await bridge.handle_profile(ProviderProfile(email="a@example.com"))
        with pytest.raises(ConfigurationError):
            await bridge.fetch_pending("ticket")
        with pytest.raises(ConfigurationError):
            await bridge.complete_registration("ticket", {"date_of_birth": "1990-01-01"})
        assert calls == []


class TestHandshake:
    """Tests for the OAuth redirect and callback."""

    async def test_start_returns_authorization_url_with_state(self, bridge):
        start = await bridge.start()

        assert start["provider"] == "google"
        assert start["authorization_url"].startswith(GOOGLE_PROVIDER["auth_url"])
        assert f"state={start['state']}" in start["authorization_url"]
        assert "client_id=" in start["authorization_url"]

    async def test_callback_rejects_unknown_state(self, make_bridge):
        calls = []
        bridge = make_bridge(_provider_transport({"email": "a@example.com"}, calls=calls))

        with pytest.raises(IdentityProviderError):
            await bridge.callback("code", "forged-state")
        assert calls == []

    async def test_callback_state_is_single_use(self, make_bridge):
        bridge = make_bridge(
            _provider_transport({"email": "new@example.com", "name": "New", "verified_email": True})
        )
        start = await bridge.start()

        await bridge.callback("code", start["state"])
        with pytest.raises(IdentityProviderError):
            await bridge.callback("code", start["state"])

    async def test_callback_rejects_expired_state(self, make_bridge, clock):
        bridge = make_bridge(_provider_transport({"email": "new@example.com"}))
        start = await bridge.start()
        clock.advance(minutes=11)

        with pytest.raises(IdentityProviderError):
            await bridge.callback("code", start["state"])

    async def test_callback_for_new_email_creates_pending_registration(self, make_bridge):
        bridge = make_bridge(
            _provider_transport(
                {"id": "1234", "email": "New.Patient@Example.com", "name": "New Patient", "verified_email": True}
            )
        )
        start = await bridge.start()

        outcome = await bridge.callback("auth-code", start["state"])

        assert isinstance(outcome, SsoPending)
        assert outcome.registration.email == "new.patient@example.com"
        assert outcome.registration.role == Role.PATIENT
        assert outcome.registration.name == "New Patient"

    async def test_callback_for_existing_email_issues_token(self, make_bridge, memory_store, tokens):
        existing = memory_store.create(
            email="known@example.com",
            name="Known",
            role=Role.PATIENT,
            organization_ids=["org-1"],
            profile=build_profile(Role.PATIENT),
        )
        bridge = make_bridge(_provider_transport({"email": "known@example.com", "verified_email": True}))
        start = await bridge.start()

        outcome = await bridge.callback("auth-code", start["state"])

        assert isinstance(outcome, SsoAuthenticated)
        assert outcome.identity.id == existing.id
        assert tokens.verify(outcome.token.token).identity_id == existing.id

    async def test_provider_error_maps_to_identity_provider_error(self, make_bridge):
        bridge = make_bridge(_provider_transport({}, token_status=400))
        start = await bridge.start()

        with pytest.raises(IdentityProviderError):
            await bridge.callback("bad-code", start["state"])

    async def test_unverified_email_rejected(self, bridge):
        with pytest.raises(IdentityProviderError):
            await bridge.handle_profile(ProviderProfile(email="x@example.com", email_verified=False))

    async def test_missing_email_rejected(self, bridge):
        with pytest.raises(IdentityProviderError):
            await bridge.handle_profile(ProviderProfile(email=None))


class TestPendingRegistration:
    """Tests for completing a pending SSO registration."""

    async def _pending(self, bridge, email="pending@example.com"):
        outcome = await bridge.handle_profile(ProviderProfile(email=email, name="Pending Person"))
        assert isinstance(outcome, SsoPending)
        return outcome.registration

    async def test_fetch_returns_registration(self, bridge):
        registration = await self._pending(bridge)

        fetched = await bridge.fetch_pending(registration.ticket)

        assert fetched.email == "pending@example.com"

    async def test_fetch_unknown_ticket_not_found(self, bridge):
        with pytest.raises(NotFoundError):
            await bridge.fetch_pending("missing")

    async def test_complete_creates_patient_in_default_organization(self, bridge, tokens):
        registration = await self._pending(bridge)

        identity, token = await bridge.complete_registration(
            registration.ticket, {"date_of_birth": "1990-05-17"}
        )

        assert identity.role == Role.PATIENT
        assert identity.organization_ids == ["org-1"]
        assert identity.is_sso_only
        assert identity.profile.date_of_birth.isoformat() == "1990-05-17"
        assert tokens.verify(token.token).organization_id == "org-1"

    async def test_role_from_client_is_ignored(self, bridge):
        registration = await self._pending(bridge)

        identity, _ = await bridge.complete_registration(
            registration.ticket, {"date_of_birth": "1990-05-17", "role": "admin"}
        )

        assert identity.role == Role.PATIENT

    async def test_ticket_is_single_use(self, bridge):
        registration = await self._pending(bridge)
        await bridge.complete_registration(registration.ticket, {"date_of_birth": "1990-05-17"})

        with pytest.raises(ExpiredError):
            await bridge.complete_registration(registration.ticket, {"date_of_birth": "1990-05-17"})

    async def test_invalid_input_keeps_ticket_usable(self, bridge):
        """A bad form submission can be corrected within the ticket's lifetime."""
        registration = await self._pending(bridge)

        with pytest.raises(ValidationError) as excinfo:
            await bridge.complete_registration(registration.ticket, {"date_of_birth": "not-a-date"})
        assert excinfo.value.detail["field"] == "date_of_birth"
        with pytest.raises(ValidationError):
            await bridge.complete_registration(registration.ticket, {})

        identity, _ = await bridge.complete_registration(
            registration.ticket, {"date_of_birth": "1990-05-17"}
        )
        assert identity.email == "pending@example.com"

    async def test_expired_ticket_rejected(self, bridge, clock):
        registration = await self._pending(bridge)
        clock.advance(minutes=11)

        with pytest.raises(NotFoundError):
            await bridge.fetch_pending(registration.ticket)
        with pytest.raises(ExpiredError):
            await bridge.complete_registration(registration.ticket, {"date_of_birth": "1990-05-17"})

    async def test_email_taken_meanwhile_is_duplicate(self, bridge, memory_store):
        registration = await self._pending(bridge)
        memory_store.create(
            email="pending@example.com",
            name="Racer",
            role=Role.PATIENT,
            organization_ids=["org-1"],
            profile=build_profile(Role.PATIENT),
        )

        with pytest.raises(DuplicateEmailError):
            await bridge.complete_registration(registration.ticket, {"date_of_birth": "1990-05-17"})

    async def test_cleanup_drops_expired_tickets(self, bridge, clock):
        await self._pending(bridge)
        await bridge.start()
        clock.advance(minutes=30)

        assert bridge.cleanup_expired() == 2
