"""Unit tests for session token issuance and verification."""

import base64
import json

import pytest

from medisecure.config import Settings
from medisecure.service.errors import InvalidSignatureError, TokenExpiredError
from medisecure.service.tokens import TokenService


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock.timestamp)


class TestIssue:
    """Tests for token issuance."""

    def test_round_trip_carries_identity_and_organization(self, tokens):
        """A freshly issued token verifies to the same identity and organization."""
        issued = tokens.issue("user-1", "org-1")
        claims = tokens.verify(issued.token)

        assert claims.identity_id == "user-1"
        assert claims.organization_id == "org-1"
        assert claims.expires_at == issued.expires_at
        assert issued.token_type == "bearer"

    def test_expiry_is_fixed_horizon(self, tokens, clock):
        """exp is iat plus the configured TTL."""
        issued = tokens.issue("user-1", "org-1")
        claims = tokens.verify(issued.token)

        assert claims.expires_at - claims.issued_at == 60 * 60
        assert claims.issued_at == int(clock.timestamp())

    def test_each_token_has_unique_id(self, tokens):
        first = tokens.verify(tokens.issue("user-1", "org-1").token)
        second = tokens.verify(tokens.issue("user-1", "org-1").token)

        assert first.token_id != second.token_id

    def test_missing_organization_rejected(self, tokens):
        with pytest.raises(ValueError):
            tokens.issue("user-1", "")

    def test_short_signing_key_refuses_to_start(self, settings):
        """A service without a usable key must not issue tokens."""
        weak = settings.model_copy(update={"jwt_secret": "too-short"})

        with pytest.raises(RuntimeError):
            TokenService(weak)


class TestVerify:
    """Tests for token verification failures."""

    def test_expired_token_rejected(self, tokens, clock):
        """Tokens past exp plus leeway raise TokenExpiredError."""
        issued = tokens.issue("user-1", "org-1")
        clock.advance(minutes=61)

        with pytest.raises(TokenExpiredError):
            tokens.verify(issued.token)

    def test_clock_skew_leeway_accepted(self, tokens, clock):
        """A token a few seconds past exp is still inside the skew window."""
        issued = tokens.issue("user-1", "org-1")
        clock.advance(minutes=60, seconds=10)

        assert tokens.verify(issued.token).identity_id == "user-1"

    def test_tampered_payload_rejected(self, tokens):
        """Changing the organization claim breaks the signature."""
        issued = tokens.issue("user-1", "org-1")
        header, payload, signature = issued.token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["org_id"] = "org-2"
        forged = f"{header}.{_b64(claims)}.{signature}"

        with pytest.raises(InvalidSignatureError):
            tokens.verify(forged)

    def test_alg_none_rejected(self, tokens):
        """Unsigned tokens are never accepted."""
        issued = tokens.issue("user-1", "org-1")
        _, payload, _ = issued.token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        with pytest.raises(InvalidSignatureError):
            tokens.verify(forged)

    def test_token_signed_with_other_key_rejected(self, tokens, clock):
        other = TokenService(
            Settings(jwt_secret="another-secret-key-that-is-long-enough-1234"),
            clock=clock.timestamp,
        )
        issued = other.issue("user-1", "org-1")

        with pytest.raises(InvalidSignatureError):
            tokens.verify(issued.token)

    @pytest.mark.parametrize("token", ["", "not-a-token", "a.b", "a.b.c.d"])
    def test_malformed_tokens_rejected(self, tokens, token):
        with pytest.raises(InvalidSignatureError):
            tokens.verify(token)

    def test_wrong_audience_rejected(self, settings, clock):
        """Tokens minted for another audience do not verify here."""
        issuer = TokenService(
            settings.model_copy(update={"jwt_audience": "other-clients"}),
            clock=clock.timestamp,
        )
        verifier = TokenService(settings, clock=clock.timestamp)
        issued = issuer.issue("user-1", "org-1")

        with pytest.raises(InvalidSignatureError):
            verifier.verify(issued.token)
