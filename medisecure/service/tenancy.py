from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from medisecure.logging import get_logger
from medisecure.service.errors import AuthenticationError, AuthorizationError
from medisecure.service.tokens import IssuedToken, TokenClaims, TokenService
from medisecure.storage.errors import ConstraintViolation
from medisecure.storage.models import Identity, Organization
from medisecure.storage.store import CredentialStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Who is calling and on behalf of which organization, for one request."""

    identity: Identity
    organization: Optional[Organization]
    claims: TokenClaims

    @property
    def organization_id(self) -> str:
        return self.claims.organization_id


class TenantContext:
    """Resolves the active organization of a request from its verified token.

    The organization always comes from the token's ``org_id`` claim; request
    parameters never select it. ``switch_organization`` is the only way to
    change it and it reissues the token.
    """

    def __init__(self, store: CredentialStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    def resolve(self, token: Optional[str]) -> RequestContext:
        if not token:
            raise AuthenticationError("invalid session", reason="unauthenticated")
        claims = self.tokens.verify(token)
        identity = self.store.find_by_id(claims.identity_id)
        if identity is None:
            logger.warning("session_identity_missing", user_id=claims.identity_id)
            raise AuthenticationError("invalid session", reason="invalid_token")
        if not identity.is_member(claims.organization_id):
            # Membership was revoked after the token was issued
            logger.warning(
                "session_organization_not_member",
                user_id=identity.id,
                organization_id=claims.organization_id,
            )
            raise AuthorizationError("access denied", reason="cross_tenant")
        # Requests act within the organization named by the token
        identity.current_organization_id = claims.organization_id
        organization = self.store.get_organization(claims.organization_id)
        return RequestContext(identity=identity, organization=organization, claims=claims)

    def switch_organization(
        self, identity: Identity, organization_id: str
    ) -> tuple[Identity, IssuedToken]:
        if not organization_id or not identity.is_member(organization_id):
            logger.warning(
                "switch_organization_denied",
                user_id=identity.id,
                organization_id=organization_id,
            )
            raise AuthorizationError(
                "organization is not available to this account", reason="invalid_organization"
            )
        try:
            updated = self.store.update_current_organization(identity.id, organization_id)
        except ConstraintViolation as exc:
            raise AuthorizationError(
                "organization is not available to this account", reason="invalid_organization"
            ) from exc
        token = self.tokens.issue(updated.id, updated.current_organization_id)
        logger.info("organization_switched", user_id=updated.id, organization_id=organization_id)
        return updated, token
