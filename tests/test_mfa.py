"""Unit tests for the MFA engine.

Tests for:
- TOTP enrollment and verification
- WebAuthn registration, assertions and signature-counter replay detection
- Security questions
- Backup codes (single use)
- Login attempts, lockout and management operations
"""

import asyncio
import dataclasses
import hashlib
import json
import threading

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from medisecure.service.errors import (
    AuthenticationError,
    MfaError,
    NotFoundError,
    StateError,
    ValidationError,
)
from medisecure.service.mfa import (
    MfaEngine,
    generate_backup_codes,
    normalize_answer,
    normalize_backup_code,
)
from medisecure.service.passwords import hash_secret
from medisecure.service.tokens import TokenService
from medisecure.service.totp import generate_totp
from medisecure.service.webauthn import b64url_encode
from medisecure.storage.errors import ConcurrentUpdate
from medisecure.storage.models import MfaMethod, Role, build_profile

PASSWORD = "TestPassword123!"


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock.timestamp)


@pytest.fixture
def engine(memory_store, tokens, settings, clock):
    return MfaEngine(memory_store, tokens, settings, clock=clock.now)


@pytest.fixture
def identity(memory_store):
    return memory_store.create(
        email="patient@example.com",
        name="Pat Ient",
        role=Role.PATIENT,
        organization_ids=["org-1"],
        profile=build_profile(Role.PATIENT),
        password_hash=hash_secret(PASSWORD),
    )


def _wrong_code(secret, timestamp):
    valid = {generate_totp(secret, timestamp + offset * 30) for offset in (-1, 0, 1)}
    for candidate in range(1_000_000):
        code = f"{candidate:06d}"
        if code not in valid:
            return code
    raise AssertionError("unreachable")


class Authenticator:
    """Software authenticator producing WebAuthn-shaped proofs."""

    def __init__(self, settings, credential_id="cred-1"):
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = credential_id
        self.rp_id = settings.webauthn_rp_id
        self.origin = settings.webauthn_origin
        self.sign_count = 0

    @property
    def public_key_pem(self):
        return self.key.public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode()

    def _proof(self, ceremony, challenge, sign_count, flags=0x05, origin=None):
        client_data = json.dumps(
            {"type": ceremony, "challenge": challenge, "origin": origin or self.origin}
        ).encode()
        auth_data = (
            hashlib.sha256(self.rp_id.encode()).digest()
            + bytes([flags])
            + sign_count.to_bytes(4, "big")
        )
        signature = self.key.sign(
            auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256())
        )
        return {
            "credential_id": self.credential_id,
            "client_data_json": b64url_encode(client_data),
            "authenticator_data": b64url_encode(auth_data),
            "signature": b64url_encode(signature),
        }

    def register(self, challenge, **kwargs):
        proof = self._proof("webauthn.create", challenge, self.sign_count, **kwargs)
        proof["public_key"] = self.public_key_pem
        proof["device_name"] = "Test Laptop"
        return proof

    def assert_login(self, challenge, sign_count=None, **kwargs):
        if sign_count is None:
            self.sign_count += 1
            sign_count = self.sign_count
        return self._proof("webauthn.get", challenge, sign_count, **kwargs)


async def _enroll_totp(engine, identity, clock):
    material = await engine.begin_enrollment(identity, "totp")
    secret = material["secret"]
    codes = await engine.confirm_enrollment(
        identity, "totp", {"code": generate_totp(secret, clock.timestamp())}
    )
    return secret, codes


async def _enroll_webauthn(engine, identity, authenticator):
    material = await engine.begin_enrollment(identity, "webauthn")
    challenge = material["options"]["challenge"]
    return await engine.confirm_enrollment(identity, "webauthn", authenticator.register(challenge))


class ContendedStore:
    """Store wrapper that makes enrollment writes collide.

    The first ``parties`` writes wait for each other, so every racer has read
    the same version before any of them writes. With ``always_conflict`` every
    write loses.
    """

    def __init__(self, store, *, parties=0, always_conflict=False):
        self._store = store
        self._barrier = threading.Barrier(parties) if parties else None
        self._lock = threading.Lock()
        self._held = 0
        self.always_conflict = always_conflict
        self.conflicts = 0

    def __getattr__(self, name):
        return getattr(self._store, name)

    def update_mfa_enrollment(self, enrollment, *, expected_version):
        if self.always_conflict:
            raise ConcurrentUpdate("mfa_enrollment", expected_version, expected_version + 1)
        with self._lock:
            hold = self._barrier is not None and self._held < self._barrier.parties
            if hold:
                self._held += 1
        if hold:
            self._barrier.wait(timeout=5)
        try:
            return self._store.update_mfa_enrollment(enrollment, expected_version=expected_version)
        except ConcurrentUpdate:
            with self._lock:
                self.conflicts += 1
            raise


def _race(engine, identity, method, proof, **kwargs):
    """Run two verifications of one proof on separate threads; return their outcomes."""
    outcomes = []
    lock = threading.Lock()

    def run():
        try:
            asyncio.run(engine.verify(identity, method, dict(proof), **kwargs))
            result = "ok"
        except MfaError as exc:
            result = exc.reason
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return sorted(outcomes)


SECURITY_ANSWERS = [
    {"question_id": "mother_maiden", "answer": "Smith"},
    {"question_id": "first_pet", "answer": "Rex"},
    {"question_id": "birth_city", "answer": "New York"},
]


class TestHelpers:
    def test_backup_codes_format(self):
        codes = generate_backup_codes(10)

        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code in codes:
            assert len(code) == 9 and code[4] == "-"
            assert code.replace("-", "") == code.replace("-", "").upper()

    def test_backup_code_normalization(self):
        assert normalize_backup_code("ab12 cd34") == "AB12-CD34"
        assert normalize_backup_code("AB12CD34") == "AB12-CD34"
        assert normalize_backup_code("short") == ""
        assert normalize_backup_code(None) == ""

    def test_answer_normalization(self):
        assert normalize_answer("  New   York ") == "new york"


class TestTotp:
    """Tests for TOTP enrollment and verification."""

    async def test_enrollment_enables_mfa_and_returns_backup_codes(self, engine, identity, clock):
        _, codes = await _enroll_totp(engine, identity, clock)

        status = engine.status(identity)
        assert len(codes) == 10
        assert status["enabled"] is True
        assert status["method"] == "totp"
        assert status["backup_codes_remaining"] == 10

    async def test_begin_returns_provisioning_uri(self, engine, identity):
        material = await engine.begin_enrollment(identity, "totp")

        assert material["otpauth_uri"].startswith("otpauth://totp/")
        assert material["secret"] in material["otpauth_uri"]

    async def test_wrong_code_rejects_and_consumes_challenge(self, engine, identity, clock):
        material = await engine.begin_enrollment(identity, "totp")
        wrong = _wrong_code(material["secret"], clock.timestamp())

        with pytest.raises(MfaError):
            await engine.confirm_enrollment(identity, "totp", {"code": wrong})
        with pytest.raises(MfaError) as excinfo:
            await engine.confirm_enrollment(
                identity, "totp", {"code": generate_totp(material["secret"], clock.timestamp())}
            )
        assert excinfo.value.reason == "expired_challenge"
        assert engine.status(identity)["enabled"] is False

    async def test_confirm_without_begin_rejected(self, engine, identity):
        with pytest.raises(MfaError) as excinfo:
            await engine.confirm_enrollment(identity, "totp", {"code": "123456"})
        assert excinfo.value.reason == "expired_challenge"

    async def test_enrollment_challenge_expires(self, engine, identity, clock):
        material = await engine.begin_enrollment(identity, "totp")
        clock.advance(minutes=6)

        with pytest.raises(MfaError) as excinfo:
            await engine.confirm_enrollment(
                identity, "totp", {"code": generate_totp(material["secret"], clock.timestamp())}
            )
        assert excinfo.value.reason == "expired_challenge"

    async def test_second_enrollment_rejected(self, engine, identity, clock):
        await _enroll_totp(engine, identity, clock)

        with pytest.raises(StateError):
            await engine.begin_enrollment(identity, "security_questions")

    async def test_backup_code_cannot_be_enrolled(self, engine, identity):
        with pytest.raises(ValidationError):
            await engine.begin_enrollment(identity, "backup_code")

    async def test_verify_accepts_current_and_adjacent_step(self, engine, identity, clock, tokens):
        secret, _ = await _enroll_totp(engine, identity, clock)

        token = await engine.verify(identity, "totp", {"code": generate_totp(secret, clock.timestamp())})
        assert tokens.verify(token.token).identity_id == identity.id

        previous_step = generate_totp(secret, clock.timestamp() - 30)
        await engine.verify(identity, "totp", {"code": previous_step})

    async def test_verify_accepts_numeric_code(self, engine, identity, clock):
        """JSON clients may send the code as a number without its leading zeros."""
        secret, _ = await _enroll_totp(engine, identity, clock)
        code = generate_totp(secret, clock.timestamp())

        await engine.verify(identity, "totp", {"code": int(code)})

    async def test_verify_rejects_code_outside_window(self, engine, identity, clock):
        secret, _ = await _enroll_totp(engine, identity, clock)
        stale = generate_totp(secret, clock.timestamp() - 120)
        if stale in {generate_totp(secret, clock.timestamp() + o * 30) for o in (-1, 0, 1)}:
            pytest.skip("stale code collides with the current window")

        with pytest.raises(MfaError):
            await engine.verify(identity, "totp", {"code": stale})

    async def test_secret_is_encrypted_at_rest(self, engine, identity, clock, memory_store):
        secret, _ = await _enroll_totp(engine, identity, clock)

        assert memory_store.mfa_enrollments[identity.id].totp_secret != secret
        assert memory_store.get_mfa_enrollment(identity.id).totp_secret == secret


class TestBackupCodes:
    """Tests for backup-code verification."""

    async def test_backup_code_is_single_use(self, engine, identity, clock):
        _, codes = await _enroll_totp(engine, identity, clock)

        await engine.verify(identity, "backup_code", {"code": codes[0]})
        with pytest.raises(MfaError):
            await engine.verify(identity, "backup_code", {"code": codes[0]})
        assert engine.status(identity)["backup_codes_remaining"] == 9

    async def test_backup_code_accepted_without_dash(self, engine, identity, clock):
        _, codes = await _enroll_totp(engine, identity, clock)

        await engine.verify(identity, "backup_code", {"code": codes[1].replace("-", "").lower()})

    async def test_concurrent_use_of_one_code_succeeds_once(
        self, engine, identity, clock, memory_store, tokens, settings
    ):
        _, codes = await _enroll_totp(engine, identity, clock)
        store = ContendedStore(memory_store, parties=2)
        racing = MfaEngine(store, tokens, settings, clock=clock.now)

        outcomes = _race(racing, identity, "backup_code", {"code": codes[0]})

        assert outcomes == ["invalid_proof", "ok"]
        assert store.conflicts == 1
        assert engine.status(identity)["backup_codes_remaining"] == 9

    async def test_write_conflict_keeps_attempt_usable(
        self, engine, identity, clock, memory_store, tokens, settings
    ):
        _, codes = await _enroll_totp(engine, identity, clock)
        store = ContendedStore(memory_store, always_conflict=True)
        racing = MfaEngine(store, tokens, settings, clock=clock.now)
        attempt = await racing.create_attempt(identity)

        with pytest.raises(StateError) as excinfo:
            await racing.verify_attempt(attempt.attempt_id, "backup_code", {"code": codes[0]})
        assert excinfo.value.detail == {"retryable": True}
        assert racing._failures == {}

        store.always_conflict = False
        user_id, _ = await racing.verify_attempt(
            attempt.attempt_id, "backup_code", {"code": codes[0]}
        )
        assert user_id == identity.id

    async def test_regenerate_invalidates_old_codes(self, engine, identity, clock):
        _, codes = await _enroll_totp(engine, identity, clock)

        new_codes = engine.regenerate_backup_codes(identity)

        assert set(new_codes).isdisjoint(codes)
        with pytest.raises(MfaError):
            await engine.verify(identity, "backup_code", {"code": codes[0]})
        await engine.verify(identity, "backup_code", {"code": new_codes[0]})


class TestWebAuthn:
    """Tests for WebAuthn registration and assertions."""

    async def _login(self, engine, identity, authenticator, **kwargs):
        attempt = await engine.create_attempt(identity)
        material = await engine.begin_challenge(attempt.attempt_id, "webauthn")
        challenge = material["options"]["challenge"]
        proof = authenticator.assert_login(challenge, **kwargs)
        return await engine.verify_attempt(attempt.attempt_id, "webauthn", proof)

    async def test_registration_stores_credential(self, engine, identity, settings):
        authenticator = Authenticator(settings)

        codes = await _enroll_webauthn(engine, identity, authenticator)

        credentials = engine.list_credentials(identity)
        assert len(codes) == 10
        assert [c["credential_id"] for c in credentials] == ["cred-1"]
        assert credentials[0]["device_name"] == "Test Laptop"
        assert engine.status(identity)["method"] == "webauthn"

    async def test_registration_with_wrong_origin_rejected(self, engine, identity, settings):
        authenticator = Authenticator(settings)
        material = await engine.begin_enrollment(identity, "webauthn")
        proof = authenticator.register(
            material["options"]["challenge"], origin="https://evil.example.com"
        )

        with pytest.raises(MfaError) as excinfo:
            await engine.confirm_enrollment(identity, "webauthn", proof)
        assert excinfo.value.detail["field"] == "origin"

    async def test_registration_requires_user_verification(self, engine, identity, settings):
        authenticator = Authenticator(settings)
        material = await engine.begin_enrollment(identity, "webauthn")
        proof = authenticator.register(material["options"]["challenge"], flags=0x01)

        with pytest.raises(MfaError):
            await engine.confirm_enrollment(identity, "webauthn", proof)

    async def test_assertion_issues_token_and_advances_counter(self, engine, identity, settings, tokens):
        authenticator = Authenticator(settings)
        await _enroll_webauthn(engine, identity, authenticator)

        user_id, token = await self._login(engine, identity, authenticator)

        assert user_id == identity.id
        assert tokens.verify(token.token).organization_id == "org-1"
        assert engine.list_credentials(identity)[0]["last_used_at"] is not None

    async def test_assertion_signed_by_other_key_rejected(self, engine, identity, settings):
        await _enroll_webauthn(engine, identity, Authenticator(settings))
        impostor = Authenticator(settings)

        with pytest.raises(MfaError) as excinfo:
            await self._login(engine, identity, impostor)
        assert excinfo.value.detail["field"] == "signature"

    async def test_assertion_for_stale_challenge_rejected(self, engine, identity, settings):
        authenticator = Authenticator(settings)
        await _enroll_webauthn(engine, identity, authenticator)
        attempt = await engine.create_attempt(identity)
        await engine.begin_challenge(attempt.attempt_id, "webauthn")

        proof = authenticator.assert_login("some-other-challenge")
        with pytest.raises(MfaError) as excinfo:
            await engine.verify_attempt(attempt.attempt_id, "webauthn", proof)
        assert excinfo.value.detail["field"] == "challenge"

    async def test_counter_replay_flags_credential(self, engine, identity, settings):
        """A non-increasing sign count is treated as a cloned authenticator."""
        authenticator = Authenticator(settings)
        await _enroll_webauthn(engine, identity, authenticator)
        await self._login(engine, identity, authenticator, sign_count=5)

        with pytest.raises(MfaError) as excinfo:
            await self._login(engine, identity, authenticator, sign_count=5)
        assert excinfo.value.reason == "replayed_counter"
        assert engine.list_credentials(identity)[0]["flagged"] is True

        # Flagged credentials stay unusable even with a higher counter
        with pytest.raises(MfaError):
            await self._login(engine, identity, authenticator, sign_count=50)

    async def test_concurrent_replay_of_one_counter_accepted_once(
        self, engine, identity, settings, memory_store, tokens, clock
    ):
        authenticator = Authenticator(settings)
        await _enroll_webauthn(engine, identity, authenticator)
        store = ContendedStore(memory_store, parties=2)
        racing = MfaEngine(store, tokens, settings, clock=clock.now)
        proof = authenticator.assert_login("race-challenge", sign_count=1)

        outcomes = _race(racing, identity, "webauthn", proof, challenge="race-challenge")

        assert outcomes == ["ok", "replayed_counter"]
        assert store.conflicts == 1
        credential = memory_store.get_mfa_enrollment(identity.id).webauthn_credentials[0]
        assert credential.flagged is True
        assert credential.sign_count == 1

    async def test_second_credential_can_be_added(self, engine, identity, settings):
        await _enroll_webauthn(engine, identity, Authenticator(settings, "cred-1"))
        await _enroll_webauthn(engine, identity, Authenticator(settings, "cred-2"))

        assert {c["credential_id"] for c in engine.list_credentials(identity)} == {"cred-1", "cred-2"}

    async def test_remove_last_credential_rejected(self, engine, identity, settings):
        await _enroll_webauthn(engine, identity, Authenticator(settings))

        with pytest.raises(StateError):
            engine.remove_credential(identity, "cred-1")
        with pytest.raises(NotFoundError):
            engine.remove_credential(identity, "missing")

    async def test_remove_one_of_two_credentials(self, engine, identity, settings):
        await _enroll_webauthn(engine, identity, Authenticator(settings, "cred-1"))
        await _enroll_webauthn(engine, identity, Authenticator(settings, "cred-2"))

        engine.remove_credential(identity, "cred-1")

        assert [c["credential_id"] for c in engine.list_credentials(identity)] == ["cred-2"]


class TestSecurityQuestions:
    """Tests for security-question enrollment and verification."""

    async def _enroll(self, engine, identity, answers=SECURITY_ANSWERS):
        material = await engine.begin_enrollment(identity, "security_questions")
        assert len(material["questions"]) == 8
        return await engine.confirm_enrollment(identity, "security_questions", {"answers": answers})

    async def test_enrollment_stores_hashed_answers(self, engine, identity, memory_store):
        await self._enroll(engine, identity)

        stored = memory_store.get_mfa_enrollment(identity.id).security_answers
        assert engine.security_question_ids(identity) == ["mother_maiden", "first_pet", "birth_city"]
        assert all("Smith" not in answer.answer_hash for answer in stored)

    async def test_too_few_answers_rejected(self, engine, identity):
        with pytest.raises(MfaError):
            await self._enroll(engine, identity, SECURITY_ANSWERS[:2])

    async def test_unknown_question_rejected(self, engine, identity):
        answers = SECURITY_ANSWERS[:2] + [{"question_id": "favorite_color", "answer": "blue"}]
        with pytest.raises(MfaError):
            await self._enroll(engine, identity, answers)

    @pytest.mark.parametrize(
        "answers",
        [
            "Smith",
            None,
            [{"question_id": "mother_maiden"}] + SECURITY_ANSWERS[1:],
            SECURITY_ANSWERS + [SECURITY_ANSWERS[0]],
        ],
    )
    async def test_malformed_answers_rejected_as_invalid_proof(self, engine, identity, answers):
        with pytest.raises(MfaError) as excinfo:
            await self._enroll(engine, identity, answers)
        assert excinfo.value.reason == "invalid_proof"
        assert engine.status(identity)["enabled"] is False

    async def test_answers_match_case_and_whitespace_insensitively(self, engine, identity):
        await self._enroll(engine, identity)

        await engine.verify(
            identity,
            "security_questions",
            {"answers": {"mother_maiden": " SMITH", "first_pet": "rex", "birth_city": "new   york"}},
        )

    async def test_wrong_answer_rejected(self, engine, identity):
        await self._enroll(engine, identity)

        with pytest.raises(MfaError):
            await engine.verify(
                identity,
                "security_questions",
                {"answers": {"mother_maiden": "Jones", "first_pet": "Rex", "birth_city": "New York"}},
            )

    async def test_partial_answers_rejected(self, engine, identity):
        await self._enroll(engine, identity)

        with pytest.raises(MfaError):
            await engine.verify(
                identity,
                "security_questions",
                {"answers": {"mother_maiden": "Smith", "first_pet": "Rex"}},
            )

    async def test_challenge_lists_enrolled_questions(self, engine, identity):
        await self._enroll(engine, identity)
        attempt = await engine.create_attempt(identity)

        material = await engine.begin_challenge(attempt.attempt_id, "security_questions")

        assert [q["id"] for q in material["questions"]] == ["mother_maiden", "first_pet", "birth_city"]


class TestAttemptsAndLockout:
    """Tests for login attempts and the failure lockout."""

    async def test_lockout_after_max_failures(self, engine, identity, clock):
        secret, _ = await _enroll_totp(engine, identity, clock)
        wrong = _wrong_code(secret, clock.timestamp())

        for _ in range(3):
            with pytest.raises(MfaError):
                await engine.verify(identity, "totp", {"code": wrong})

        with pytest.raises(MfaError) as excinfo:
            await engine.verify(identity, "totp", {"code": generate_totp(secret, clock.timestamp())})
        assert excinfo.value.reason == "locked_out"

    async def test_lockout_expires(self, engine, identity, clock):
        secret, _ = await _enroll_totp(engine, identity, clock)
        wrong = _wrong_code(secret, clock.timestamp())
        for _ in range(3):
            with pytest.raises(MfaError):
                await engine.verify(identity, "totp", {"code": wrong})

        clock.advance(seconds=301)

        await engine.verify(identity, "totp", {"code": generate_totp(secret, clock.timestamp())})

    async def test_success_resets_failure_count(self, engine, identity, clock):
        secret, _ = await _enroll_totp(engine, identity, clock)
        wrong = _wrong_code(secret, clock.timestamp())

        for _ in range(2):
            with pytest.raises(MfaError):
                await engine.verify(identity, "totp", {"code": wrong})
        await engine.verify(identity, "totp", {"code": generate_totp(secret, clock.timestamp())})
        for _ in range(2):
            with pytest.raises(MfaError):
                await engine.verify(identity, "totp", {"code": wrong})

        await engine.verify(identity, "totp", {"code": generate_totp(secret, clock.timestamp())})

    async def test_attempt_is_single_use(self, engine, identity, clock):
        secret, _ = await _enroll_totp(engine, identity, clock)
        attempt = await engine.create_attempt(identity)
        proof = {"code": generate_totp(secret, clock.timestamp())}

        await engine.verify_attempt(attempt.attempt_id, "totp", proof)
        with pytest.raises(MfaError) as excinfo:
            await engine.verify_attempt(attempt.attempt_id, "totp", proof)
        assert excinfo.value.reason == "expired_challenge"

    async def test_attempt_survives_a_failure(self, engine, identity, clock):
        secret, _ = await _enroll_totp(engine, identity, clock)
        attempt = await engine.create_attempt(identity)

        with pytest.raises(MfaError):
            await engine.verify_attempt(
                attempt.attempt_id, "totp", {"code": _wrong_code(secret, clock.timestamp())}
            )
        user_id, _ = await engine.verify_attempt(
            attempt.attempt_id, "totp", {"code": generate_totp(secret, clock.timestamp())}
        )
        assert user_id == identity.id

    async def test_attempt_dropped_after_max_failures(self, engine, identity, clock):
        secret, _ = await _enroll_totp(engine, identity, clock)
        attempt = await engine.create_attempt(identity)
        wrong = _wrong_code(secret, clock.timestamp())

        for _ in range(3):
            with pytest.raises(MfaError):
                await engine.verify_attempt(attempt.attempt_id, "totp", {"code": wrong})

        with pytest.raises(MfaError) as excinfo:
            await engine.verify_attempt(attempt.attempt_id, "totp", {"code": wrong})
        assert excinfo.value.reason == "expired_challenge"

    async def test_attempt_expires(self, engine, identity, clock):
        secret, _ = await _enroll_totp(engine, identity, clock)
        attempt = await engine.create_attempt(identity)
        clock.advance(minutes=6)

        with pytest.raises(MfaError) as excinfo:
            await engine.verify_attempt(
                attempt.attempt_id, "totp", {"code": generate_totp(secret, clock.timestamp())}
            )
        assert excinfo.value.reason == "expired_challenge"

    async def test_unenrolled_method_rejected(self, engine, identity, clock):
        await _enroll_totp(engine, identity, clock)
        attempt = await engine.create_attempt(identity)

        with pytest.raises(MfaError) as excinfo:
            await engine.begin_challenge(attempt.attempt_id, "webauthn")
        assert excinfo.value.reason == "not_enrolled"

    async def test_attempt_requires_enrollment(self, engine, identity):
        with pytest.raises(MfaError) as excinfo:
            await engine.create_attempt(identity)
        assert excinfo.value.reason == "not_enrolled"

    async def test_cleanup_drops_expired_state(self, engine, identity, clock):
        await _enroll_totp(engine, identity, clock)
        await engine.create_attempt(identity)
        await engine.begin_enrollment(dataclasses.replace(identity, id="other"), "totp")
        clock.advance(minutes=10)

        assert engine.cleanup_expired() == 2


class TestManagement:
    """Tests for disabling MFA."""

    async def test_disable_requires_password(self, engine, identity, clock):
        await _enroll_totp(engine, identity, clock)

        with pytest.raises(AuthenticationError):
            engine.disable(identity, "WrongPassword123!")
        engine.disable(identity, PASSWORD)

        assert engine.status(identity)["enabled"] is False
        assert engine.status(identity)["backup_codes_remaining"] == 0

    async def test_reenroll_after_disable(self, engine, identity, clock):
        await _enroll_totp(engine, identity, clock)
        engine.disable(identity, PASSWORD)

        await _enroll_totp(engine, identity, clock)

        assert engine.status(identity)["method"] == MfaMethod.TOTP.value
