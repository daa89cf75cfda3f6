"""WebAuthn ceremony checks.

Only the semantic contract is handled here: challenge/response binding,
origin and relying-party checks, the user-presence/verification flags, the
signature over ``authenticator_data || SHA-256(client_data_json)``, and the
signature counter carried in the authenticator data. Attestation formats and
browser ArrayBuffer marshaling are out of scope; binary fields arrive
base64url-encoded and public keys as SPKI (PEM or base64url DER).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from medisecure.logging import get_logger
from medisecure.service.errors import MfaError

logger = get_logger(__name__)

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
TIMEOUT_MS = 60_000
# rpIdHash(32) + flags(1) + signCount(4)
_AUTH_DATA_MIN_LENGTH = 37

# COSE algorithm id -> (key type, verifier)
_SIGNATURE_VERIFIERS: dict[int, tuple[type, Callable[[Any, bytes, bytes], None]]] = {
    -7: (
        ec.EllipticCurvePublicKey,
        lambda key, signature, payload: key.verify(signature, payload, ec.ECDSA(hashes.SHA256())),
    ),
    -257: (
        rsa.RSAPublicKey,
        lambda key, signature, payload: key.verify(
            signature, payload, padding.PKCS1v15(), hashes.SHA256()
        ),
    ),
    -8: (
        ed25519.Ed25519PublicKey,
        lambda key, signature, payload: key.verify(signature, payload),
    ),
}

SUPPORTED_ALGORITHMS = (-7, -257, -8)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    if not isinstance(data, str):
        raise ValueError("expected base64url string")
    padding_chars = "=" * ((4 - len(data) % 4) % 4)
    return base64.urlsafe_b64decode(data + padding_chars)


@dataclass(frozen=True)
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    if len(raw) < _AUTH_DATA_MIN_LENGTH:
        raise MfaError("invalid proof", detail={"field": "authenticator_data"})
    return AuthenticatorData(
        rp_id_hash=raw[:32],
        flags=raw[32],
        sign_count=int.from_bytes(raw[33:37], "big"),
    )


def load_public_key(encoded: str):
    """Load an SPKI public key given as PEM text or base64url DER."""
    try:
        if encoded.lstrip().startswith("-----BEGIN"):
            key = serialization.load_pem_public_key(encoded.encode())
        else:
            key = serialization.load_der_public_key(b64url_decode(encoded))
    except (ValueError, TypeError, UnsupportedAlgorithm, binascii.Error) as exc:
        raise MfaError("invalid proof", detail={"field": "public_key"}) from exc
    if not any(isinstance(key, key_type) for key_type, _ in _SIGNATURE_VERIFIERS.values()):
        raise MfaError("invalid proof", detail={"field": "public_key"})
    return key


def public_key_to_pem(key) -> str:
    return key.public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


def _algorithm_for_key(key) -> int:
    for alg, (key_type, _) in _SIGNATURE_VERIFIERS.items():
        if isinstance(key, key_type):
            return alg
    raise MfaError("invalid proof", detail={"field": "public_key"})


class WebAuthnVerifier:
    def __init__(self, rp_id: str, rp_name: str, origin: str) -> None:
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin.rstrip("/")
        self._rp_id_hash = hashlib.sha256(rp_id.encode()).digest()

    def creation_options(
        self,
        *,
        challenge: str,
        user_id: str,
        user_name: str,
        display_name: str,
        exclude_credential_ids: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        return {
            "challenge": challenge,
            "rp": {"id": self.rp_id, "name": self.rp_name},
            "user": {
                "id": b64url_encode(user_id.encode()),
                "name": user_name,
                "displayName": display_name,
            },
            "pubKeyCredParams": [
                {"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS
            ],
            "authenticatorSelection": {
                "authenticatorAttachment": "platform",
                "userVerification": "required",
                "residentKey": "preferred",
            },
            "excludeCredentials": [
                {"type": "public-key", "id": cred_id}
                for cred_id in exclude_credential_ids or []
            ],
            "timeout": TIMEOUT_MS,
            "attestation": "none",
        }

    def request_options(self, *, challenge: str, credential_ids: List[str]) -> Dict[str, Any]:
        return {
            "challenge": challenge,
            "rpId": self.rp_id,
            "allowCredentials": [
                {"type": "public-key", "id": cred_id} for cred_id in credential_ids
            ],
            "userVerification": "required",
            "timeout": TIMEOUT_MS,
        }

    def verify_registration(
        self,
        *,
        public_key: str,
        client_data_json: str,
        authenticator_data: str,
        signature: str,
        expected_challenge: str,
    ) -> tuple[str, int]:
        """Check a registration proof signed by the new credential.

        Returns the normalized PEM public key and the initial sign count.
        """
        key = load_public_key(public_key)
        auth_data = self._verify(
            key,
            ceremony="webauthn.create",
            client_data_json=client_data_json,
            authenticator_data=authenticator_data,
            signature=signature,
            expected_challenge=expected_challenge,
        )
        return public_key_to_pem(key), auth_data.sign_count

    def verify_assertion(
        self,
        *,
        public_key_pem: str,
        client_data_json: str,
        authenticator_data: str,
        signature: str,
        expected_challenge: str,
    ) -> int:
        """Check a login assertion and return the authenticator's sign count.

        Counter monotonicity is checked by the caller, after the signature,
        against the stored value under compare-and-set.
        """
        key = load_public_key(public_key_pem)
        auth_data = self._verify(
            key,
            ceremony="webauthn.get",
            client_data_json=client_data_json,
            authenticator_data=authenticator_data,
            signature=signature,
            expected_challenge=expected_challenge,
        )
        return auth_data.sign_count

    def _verify(
        self,
        key,
        *,
        ceremony: str,
        client_data_json: str,
        authenticator_data: str,
        signature: str,
        expected_challenge: str,
    ) -> AuthenticatorData:
        try:
            client_data_raw = b64url_decode(client_data_json)
            auth_data_raw = b64url_decode(authenticator_data)
            signature_raw = b64url_decode(signature)
            client_data = json.loads(client_data_raw)
        except (ValueError, binascii.Error) as exc:
            raise MfaError("invalid proof", detail={"field": "encoding"}) from exc
        if not isinstance(client_data, dict):
            raise MfaError("invalid proof", detail={"field": "client_data_json"})

        if client_data.get("type") != ceremony:
            raise MfaError("invalid proof", detail={"field": "type"})
        challenge = client_data.get("challenge")
        if not isinstance(challenge, str) or not hmac.compare_digest(
            challenge.encode(), expected_challenge.encode()
        ):
            raise MfaError("invalid proof", detail={"field": "challenge"})
        if str(client_data.get("origin", "")).rstrip("/") != self.origin:
            logger.warning("webauthn_origin_mismatch", origin=client_data.get("origin"))
            raise MfaError("invalid proof", detail={"field": "origin"})

        auth_data = parse_authenticator_data(auth_data_raw)
        if not hmac.compare_digest(auth_data.rp_id_hash, self._rp_id_hash):
            raise MfaError("invalid proof", detail={"field": "rp_id"})
        if not auth_data.user_present or not auth_data.user_verified:
            raise MfaError("invalid proof", detail={"field": "flags"})

        _, verifier = _SIGNATURE_VERIFIERS[_algorithm_for_key(key)]
        payload = auth_data_raw + hashlib.sha256(client_data_raw).digest()
        try:
            verifier(key, signature_raw, payload)
        except (InvalidSignature, ValueError) as exc:
            raise MfaError("invalid proof", detail={"field": "signature"}) from exc
        return auth_data
