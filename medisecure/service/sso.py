from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urlencode, urlparse

import httpx

from medisecure.config import Settings
from medisecure.logging import get_logger, sanitize_error_message
from medisecure.service.errors import (
    ConfigurationError,
    DuplicateEmailError,
    ExpiredError,
    IdentityProviderError,
    NotFoundError,
    ValidationError,
)
from medisecure.service.tokens import IssuedToken, TokenService
from medisecure.storage.errors import ConstraintViolation
from medisecure.storage.models import (
    Identity,
    PendingSsoRegistration,
    Role,
    build_profile,
)
from medisecure.storage.redis_cache import RedisCache, SyncRedisCache
from medisecure.storage.store import CredentialStore

logger = get_logger(__name__)

GOOGLE_PROVIDER = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}

# Sample values shipped in example env files
PLACEHOLDER_CREDENTIALS = frozenset({
    "mock-client-id",
    "mock-client-secret",
    "your-client-id",
    "your-client-secret",
    "your-google-client-id",
    "your-google-client-secret",
    "client-id",
    "client-secret",
    "changeme",
    "change-me",
    "placeholder",
    "xxx",
    "todo",
})
MIN_CREDENTIAL_LENGTH = 11
OAUTH_STATE_TTL = timedelta(minutes=10)


def credentials_look_configured(client_id: Optional[str], client_secret: Optional[str]) -> bool:
    for value in (client_id, client_secret):
        if not value:
            return False
        normalized = value.strip()
        if len(normalized) < MIN_CREDENTIAL_LENGTH:
            return False
        if normalized.lower() in PLACEHOLDER_CREDENTIALS:
            return False
    return True


@dataclass(frozen=True)
class ProviderProfile:
    email: Optional[str]
    name: Optional[str] = None
    email_verified: bool = True
    provider: str = "google"
    provider_uid: Optional[str] = None


@dataclass(frozen=True)
class SsoAuthenticated:
    identity: Identity
    token: IssuedToken


@dataclass(frozen=True)
class SsoPending:
    registration: PendingSsoRegistration


SsoOutcome = Union[SsoAuthenticated, SsoPending]


class SsoBridge:
    """Turns an external identity-provider login into a session or a pending registration.

    Built once at startup. Credential validity is evaluated in the constructor
    and cached; when the provider is not configured every entry point except
    ``status`` raises ``ConfigurationError`` before any handshake is attempted.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        settings: Settings,
        *,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.cache = cache
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.client_id = settings.google_client_id
        self.client_secret = settings.google_client_secret
        self.redirect_uri = settings.oauth_redirect_uri
        self.pending_ttl = timedelta(minutes=settings.sso_pending_ttl_minutes)
        self.default_role = Role(settings.sso_default_role)
        self.configured = credentials_look_configured(self.client_id, self.client_secret)
        self._state_lock = threading.Lock()
        self._pending: Dict[str, PendingSsoRegistration] = {}
        self._oauth_states: Dict[str, datetime] = {}
        if not self.configured:
            logger.warning("sso_not_configured", provider="google")

    def _now(self) -> datetime:
        return self._clock()

    def _require_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("single sign-on is not configured")

    def status(self) -> Dict[str, Any]:
        if self.configured:
            message = "Google OAuth is configured"
        else:
            message = "Google OAuth is not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
        return {"provider": "google", "configured": self.configured, "message": message}

    # -- OAuth handshake ----------------------------------------------------

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ConfigurationError("OAuth redirect URI must be an absolute http(s) URL")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ConfigurationError("Insecure OAuth redirect URI not allowed outside localhost")
        return redirect_uri

    async def start(self) -> Dict[str, str]:
        self._require_configured()
        redirect_uri = self._validate_redirect_uri(self.redirect_uri)
        state = secrets.token_urlsafe(24)
        expires_at = self._now() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, "google", expires_at)
        else:
            with self._state_lock:
                self._oauth_states[state] = expires_at
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_PROVIDER["scope"],
            "state": state,
            "prompt": "select_account",
        }
        return {
            "authorization_url": f"{GOOGLE_PROVIDER['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": "google",
        }

    async def _consume_state(self, state: str) -> bool:
        now = self._now()
        if self.cache:
            stored = await self.cache.pop_oauth_state(state)
            return bool(stored) and stored[0] == "google" and stored[1] > now
        with self._state_lock:
            expires_at = self._oauth_states.pop(state, None)
        return expires_at is not None and expires_at > now

    async def exchange_code(self, code: str) -> ProviderProfile:
        """Trade an authorization code for the provider's user profile."""
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                token_response = await client.post(
                    GOOGLE_PROVIDER["token_url"],
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "grant_type": "authorization_code",
                        "redirect_uri": self.redirect_uri,
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    logger.error("oauth_token_missing", provider="google")
                    raise IdentityProviderError("identity provider login failed")
                userinfo_response = await client.get(
                    GOOGLE_PROVIDER["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            raise IdentityProviderError("identity provider login failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "oauth_exchange_error", provider="google", error=sanitize_error_message(str(exc))
            )
            raise IdentityProviderError("identity provider login failed") from exc
        return self._parse_userinfo(userinfo)

    @staticmethod
    def _parse_userinfo(userinfo: Any) -> ProviderProfile:
        if not isinstance(userinfo, dict):
            raise IdentityProviderError("identity provider login failed")
        verified = userinfo.get("verified_email", userinfo.get("email_verified", True))
        return ProviderProfile(
            email=userinfo.get("email"),
            name=userinfo.get("name"),
            email_verified=verified not in (False, "false"),
            provider="google",
            provider_uid=str(userinfo["id"]) if userinfo.get("id") else None,
        )

    async def callback(self, code: str, state: str) -> SsoOutcome:
        """Provider redirect target: validates ``state``, exchanges ``code``, resolves the login."""
        self._require_configured()
        if not state or not await self._consume_state(state):
            logger.warning("oauth_state_invalid", provider="google")
            raise IdentityProviderError("identity provider login failed")
        profile = await self.exchange_code(code)
        return await self.handle_profile(profile)

    # -- account resolution -------------------------------------------------

    async def handle_profile(self, profile: ProviderProfile) -> SsoOutcome:
        self._require_configured()
        email = (profile.email or "").strip().lower()
        if not email or "@" not in email or not profile.email_verified:
            logger.warning("sso_profile_without_verified_email", provider=profile.provider)
            raise IdentityProviderError("identity provider did not return a verified e-mail")

        identity = self.store.find_by_email(email)
        if identity is not None:
            token = self.tokens.issue(identity.id, identity.current_organization_id)
            logger.info("sso_login_existing_account", user_id=identity.id)
            return SsoAuthenticated(identity=identity, token=token)

        now = self._now()
        registration = PendingSsoRegistration(
            ticket=secrets.token_urlsafe(32),
            name=profile.name or email.split("@")[0],
            email=email,
            role=self.default_role,
            provider=profile.provider,
            created_at=now,
            expires_at=now + self.pending_ttl,
        )
        if self.cache:
            await self.cache.set_pending_registration(
                registration.ticket, registration.to_dict(), registration.expires_at
            )
        else:
            with self._state_lock:
                self._pending[registration.ticket] = registration
        logger.info("sso_pending_registration_created", provider=profile.provider)
        return SsoPending(registration=registration)

    async def fetch_pending(self, ticket: str) -> PendingSsoRegistration:
        self._require_configured()
        registration: Optional[PendingSsoRegistration] = None
        if self.cache:
            raw = await self.cache.get_pending_registration(ticket)
            registration = PendingSsoRegistration.from_dict(raw) if raw else None
        else:
            with self._state_lock:
                registration = self._pending.get(ticket)
        if registration is None or registration.expires_at <= self._now():
            raise NotFoundError("registration ticket not found or expired")
        return registration

    async def _pop_pending(self, ticket: str) -> Optional[PendingSsoRegistration]:
        if self.cache:
            raw = await self.cache.pop_pending_registration(ticket)
            return PendingSsoRegistration.from_dict(raw) if raw else None
        with self._state_lock:
            return self._pending.pop(ticket, None)

    async def complete_registration(
        self, ticket: str, extra_fields: Dict[str, Any]
    ) -> tuple[Identity, IssuedToken]:
        """Finalize a pending registration; the ticket is consumed exactly once.

        Input is validated before the ticket is consumed so that a caller can
        correct a bad form submission within the ticket's lifetime.
        """
        self._require_configured()
        extra_fields = dict(extra_fields or {})
        # Role comes from the ticket, never from the client
        extra_fields.pop("role", None)
        try:
            profile = build_profile(Role.PATIENT, extra_fields)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "date_of_birth"}) from exc
        if self.default_role == Role.PATIENT and getattr(profile, "date_of_birth", None) is None:
            raise ValidationError("date_of_birth is required", detail={"field": "date_of_birth"})

        registration = await self._pop_pending(ticket)
        if registration is None or registration.expires_at <= self._now():
            raise ExpiredError("registration ticket has expired")

        if registration.role != Role.PATIENT:
            profile = build_profile(registration.role, extra_fields)
        name = str(extra_fields.get("name") or registration.name)
        try:
            identity = self.store.create(
                email=registration.email,
                name=name,
                role=registration.role,
                organization_ids=[self.settings.default_organization_id],
                profile=profile,
                password_hash=None,
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise DuplicateEmailError("account already exists") from exc
            raise
        token = self.tokens.issue(identity.id, identity.current_organization_id)
        logger.info("sso_registration_completed", user_id=identity.id)
        return identity, token

    def cleanup_expired(self) -> int:
        now = self._now()
        with self._state_lock:
            expired_tickets = [t for t, r in self._pending.items() if r.expires_at <= now]
            for ticket in expired_tickets:
                self._pending.pop(ticket, None)
            expired_states = [s for s, exp in self._oauth_states.items() if exp <= now]
            for state in expired_states:
                self._oauth_states.pop(state, None)
        return len(expired_tickets) + len(expired_states)
