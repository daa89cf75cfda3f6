from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from medisecure.config import MIN_JWT_SECRET_LENGTH, Settings
from medisecure.logging import get_logger
from medisecure.service.errors import InvalidSignatureError, TokenExpiredError

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    identity_id: str
    organization_id: str
    issued_at: int
    expires_at: int
    token_id: str


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: int
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Issues and verifies stateless HS256 session tokens.

    A token carries the identity id (``sub``), the active organization
    (``org_id``), ``iat`` and a fixed-horizon ``exp``. Verification is pure:
    it never consults the credential store, so a token stays valid after a
    password change or MFA disablement until it expires. There is no
    revocation list.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        secret = settings.jwt_secret
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            # A service without a usable signing key must not start
            raise RuntimeError("session token signing key is unavailable")
        self._key = secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.ttl_seconds = settings.session_token_ttl_minutes * 60
        self.leeway_seconds = settings.clock_skew_seconds
        self._clock = clock or time.time

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, identity_id: str, organization_id: str) -> IssuedToken:
        if not identity_id or not organization_id:
            raise ValueError("identity_id and organization_id are required")
        now = int(self._clock())
        payload: dict[str, Any] = {
            "sub": identity_id,
            "org_id": organization_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": uuid.uuid4().hex,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(token=token, expires_at=payload["exp"])

    def verify(self, token: str) -> TokenClaims:
        """Return the claims of a valid token.

        Raises:
            InvalidSignatureError: malformed token, wrong algorithm, bad
                signature, or mismatched issuer/audience.
            TokenExpiredError: signature is valid but ``exp`` (plus the
                clock-skew leeway) has passed.
        """
        if not token or not isinstance(token, str):
            raise InvalidSignatureError("invalid session")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignatureError("invalid session")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            raise InvalidSignatureError("invalid session")
        # Only HS256 is accepted; rejects "none" and algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignatureError("invalid session")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignatureError("invalid session")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidSignatureError("invalid session")
        if not isinstance(payload, dict):
            raise InvalidSignatureError("invalid session")
        if payload.get("iss") != self.issuer or not self._audience_matches(payload.get("aud")):
            raise InvalidSignatureError("invalid session")

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            identity_id = str(payload["sub"])
            organization_id = str(payload["org_id"])
        except (KeyError, TypeError, ValueError):
            raise InvalidSignatureError("invalid session")

        if exp <= self._clock() - self.leeway_seconds:
            raise TokenExpiredError("invalid session")

        return TokenClaims(
            identity_id=identity_id,
            organization_id=organization_id,
            issued_at=iat,
            expires_at=exp,
            token_id=str(payload.get("jti", "")),
        )

    def _audience_matches(self, aud: Any) -> bool:
        if isinstance(aud, str):
            return aud == self.audience
        if isinstance(aud, list):
            return self.audience in aud
        return False
