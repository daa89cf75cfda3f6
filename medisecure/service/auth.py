from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from medisecure.config import Settings
from medisecure.logging import get_logger
from medisecure.service.authorization import (
    AuthorizationEngine,
    Decision,
    has_permission,
    role_permissions,
)
from medisecure.service.errors import (
    AuthenticationError,
    DuplicateEmailError,
    NotFoundError,
    ValidationError,
)
from medisecure.service.mfa import MfaChallengeRequired, MfaEngine
from medisecure.service.passwords import (
    burn_verification,
    check_password_strength,
    hash_secret,
    verify_secret,
)
from medisecure.service.sso import SsoBridge, SsoOutcome
from medisecure.service.tenancy import TenantContext
from medisecure.service.tokens import IssuedToken, TokenService
from medisecure.storage.errors import ConstraintViolation
from medisecure.storage.models import (
    Identity,
    MfaMethod,
    Organization,
    OrganizationType,
    Plan,
    Resource,
    Role,
    build_profile,
)
from medisecure.storage.store import CredentialStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginResult:
    identity: Identity
    token: IssuedToken


LoginOutcome = Union[LoginResult, MfaChallengeRequired]


def _normalize_email(email: str) -> str:
    if not isinstance(email, str):
        raise ValidationError("email is required", detail={"field": "email"})
    normalized = email.strip().lower()
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain or " " in normalized:
        raise ValidationError("invalid email", detail={"field": "email"})
    return normalized


def _require_name(name: Any, field: str = "name") -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"{field} is required", detail={"field": field})
    return name.strip()


class AuthService:
    """Caller-facing operations over the token, SSO, MFA, tenancy and RBAC components."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        tokens: TokenService,
        sso: SsoBridge,
        mfa: MfaEngine,
        tenancy: TenantContext,
        authorization: AuthorizationEngine,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.sso = sso
        self.mfa = mfa
        self.tenancy = tenancy
        self.authorization = authorization

    # -- local accounts -----------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        profile_fields: Optional[Dict[str, Any]] = None,
    ) -> Identity:
        """Self-service signup; always creates a patient in the default organization."""
        email = _normalize_email(email)
        name = _require_name(name)
        check_password_strength(password)
        try:
            profile = build_profile(Role.PATIENT, profile_fields)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "profile"}) from exc
        try:
            identity = self.store.create(
                email=email,
                name=name,
                role=Role.PATIENT,
                organization_ids=[self.settings.default_organization_id],
                profile=profile,
                password_hash=hash_secret(password),
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise DuplicateEmailError("account already exists") from exc
            raise
        logger.info("identity_registered", user_id=identity.id, role=identity.role.value)
        return identity

    async def login(self, email: str, password: str) -> LoginOutcome:
        """Check a password; returns a session or, for MFA accounts, a pending challenge.

        Unknown e-mails, SSO-only accounts and wrong passwords all fail with the
        same ``AuthenticationError`` after a comparable amount of hashing work.
        """
        if not isinstance(email, str) or not isinstance(password, str) or not password:
            raise AuthenticationError("invalid credentials")
        identity = self.store.find_by_email(email.strip().lower())
        if identity is None or identity.password_hash is None:
            burn_verification(password)
            logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError("invalid credentials")
        if not verify_secret(identity.password_hash, password):
            logger.info("login_failed", reason="bad_password", user_id=identity.id)
            raise AuthenticationError("invalid credentials")

        enrollment = self.store.get_mfa_enrollment(identity.id)
        if enrollment.enabled:
            challenge = await self.mfa.create_attempt(identity)
            logger.info("login_mfa_required", user_id=identity.id, method=challenge.method.value)
            return challenge

        token = self.tokens.issue(identity.id, identity.current_organization_id)
        logger.info("login_succeeded", user_id=identity.id)
        return LoginResult(identity=identity, token=token)

    async def verify_mfa(
        self, attempt_id: str, method: MfaMethod | str, proof: Dict[str, Any]
    ) -> LoginResult:
        """Second step of an MFA login, bound to the identity resolved by ``login``."""
        identity_id, token = await self.mfa.verify_attempt(attempt_id, method, proof)
        identity = self.store.find_by_id(identity_id)
        if identity is None:
            raise AuthenticationError("invalid credentials")
        return LoginResult(identity=identity, token=token)

    async def begin_mfa_challenge(self, attempt_id: str, method: MfaMethod | str) -> Dict[str, Any]:
        return await self.mfa.begin_challenge(attempt_id, method)

    def change_password(self, identity: Identity, current_password: str, new_password: str) -> None:
        """Replace the password hash. Existing session tokens remain valid until expiry."""
        if not verify_secret(identity.password_hash, current_password or ""):
            raise AuthenticationError("invalid credentials")
        check_password_strength(new_password)
        self.store.update_password_hash(identity.id, hash_secret(new_password))
        logger.info("password_changed", user_id=identity.id)

    # -- single sign-on -----------------------------------------------------

    def sso_status(self) -> Dict[str, Any]:
        return self.sso.status()

    async def start_sso(self) -> Dict[str, str]:
        return await self.sso.start()

    async def complete_sso_handshake(self, code: str, state: str) -> SsoOutcome:
        return await self.sso.callback(code, state)

    async def fetch_pending_registration(self, ticket: str):
        return await self.sso.fetch_pending(ticket)

    async def complete_sso_registration(
        self, ticket: str, extra_fields: Dict[str, Any]
    ) -> LoginResult:
        identity, token = await self.sso.complete_registration(ticket, extra_fields)
        return LoginResult(identity=identity, token=token)

    # -- organizations ------------------------------------------------------

    def register_organization(
        self,
        org_name: str,
        org_type: OrganizationType | str,
        admin_name: str,
        admin_email: str,
        admin_password: str,
    ) -> tuple[Organization, Identity]:
        """Create an organization on the professional plan together with its first admin."""
        org_name = _require_name(org_name, "org_name")
        admin_name = _require_name(admin_name, "admin_name")
        admin_email = _normalize_email(admin_email)
        try:
            org_type = OrganizationType(org_type)
        except ValueError:
            raise ValidationError("unknown organization type", detail={"field": "org_type"})
        check_password_strength(admin_password)
        if self.store.find_by_email(admin_email) is not None:
            raise DuplicateEmailError("account already exists")

        organization = self.store.create_organization(
            Organization(
                id=f"org-{uuid.uuid4().hex[:12]}",
                name=org_name,
                type=org_type,
                plan_id=Plan.PROFESSIONAL,
            )
        )
        try:
            admin = self.store.create(
                email=admin_email,
                name=admin_name,
                role=Role.ADMIN,
                organization_ids=[organization.id],
                profile=build_profile(Role.ADMIN),
                password_hash=hash_secret(admin_password),
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise DuplicateEmailError("account already exists") from exc
            raise
        logger.info("organization_registered", organization_id=organization.id, admin_id=admin.id)
        return organization, admin

    def _organization(self, organization_id: str) -> Organization:
        organization = self.store.get_organization(organization_id)
        if organization is None:
            raise NotFoundError("organization not found", detail={"organization_id": organization_id})
        return organization

    def link_organizations(self, child_id: str, parent_id: str) -> Organization:
        """Attach ``child_id`` under ``parent_id``; the hierarchy stays a tree."""
        if child_id == parent_id:
            raise ValidationError("organization cannot be its own parent", detail={"field": "parent_id"})
        child = self._organization(child_id)
        ancestor: Optional[Organization] = self._organization(parent_id)
        seen = set()
        while ancestor is not None:
            if ancestor.id == child.id:
                raise ValidationError("link would create a cycle", detail={"field": "parent_id"})
            if ancestor.id in seen:
                break
            seen.add(ancestor.id)
            parent_ref = ancestor.parent_organization_id
            ancestor = self.store.get_organization(parent_ref) if parent_ref else None
        child.parent_organization_id = parent_id
        updated = self.store.update_organization(child)
        logger.info("organizations_linked", child_id=child_id, parent_id=parent_id)
        return updated

    def unlink_organization(self, child_id: str) -> Organization:
        child = self._organization(child_id)
        child.parent_organization_id = None
        updated = self.store.update_organization(child)
        logger.info("organization_unlinked", child_id=child_id)
        return updated

    # -- session & authorization --------------------------------------------

    def switch_organization(self, identity: Identity, organization_id: str) -> LoginResult:
        updated, token = self.tenancy.switch_organization(identity, organization_id)
        return LoginResult(identity=updated, token=token)

    def role_permissions(self, role: Role | str) -> List[str]:
        return sorted(role_permissions(role))

    def can_user_perform(self, identity: Optional[Identity], permission: str) -> bool:
        return has_permission(identity, permission)

    def authorize(
        self,
        identity: Optional[Identity],
        permission: str,
        *,
        resource: Optional[Resource] = None,
        feature: Optional[str] = None,
        requested_organization_id: Optional[str] = None,
    ) -> Decision:
        organization = None
        if identity is not None:
            organization = self.store.get_organization(identity.current_organization_id)
        return self.authorization.authorize(
            identity,
            permission,
            organization=organization,
            resource=resource,
            feature=feature,
            requested_organization_id=requested_organization_id,
        )

    def cleanup_expired(self) -> int:
        return self.sso.cleanup_expired() + self.mfa.cleanup_expired()
