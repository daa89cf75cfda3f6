from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from medisecure.config import Settings
from medisecure.logging import get_logger
from medisecure.service.errors import (
    AuthenticationError,
    MfaError,
    NotFoundError,
    StateError,
    ValidationError,
)
from medisecure.service.passwords import hash_secret, verify_secret
from medisecure.service.tokens import IssuedToken, TokenService
from medisecure.service.totp import (
    DIGITS,
    INTERVAL_SECONDS,
    WINDOW_STEPS,
    generate_secret,
    provisioning_uri,
    verify_totp,
)
from medisecure.service.webauthn import WebAuthnVerifier, b64url_encode
from medisecure.storage.errors import ConcurrentUpdate
from medisecure.storage.models import (
    ENROLLABLE_METHODS,
    EnrollmentChallenge,
    Identity,
    MfaAttempt,
    MfaAttemptState,
    MfaEnrollment,
    MfaMethod,
    SecurityAnswer,
    WebAuthnCredential,
)
from medisecure.storage.redis_cache import RedisCache, SyncRedisCache
from medisecure.storage.store import CredentialStore

logger = get_logger(__name__)

SECURITY_QUESTIONS: Dict[str, str] = {
    "mother_maiden": "What is your mother's maiden name?",
    "first_pet": "What was the name of your first pet?",
    "birth_city": "In what city were you born?",
    "first_school": "What was the name of your first school?",
    "favorite_teacher": "What was your favorite teacher's name?",
    "first_car": "What was the make of your first car?",
    "childhood_nickname": "What was your childhood nickname?",
    "first_job": "Where did you work your first job?",
}
MIN_SECURITY_ANSWERS = 3
MAX_SECURITY_ANSWERS = 5
CAS_RETRIES = 5
_BACKUP_CODE_PATTERN = re.compile(r"^[0-9A-F]{4}-[0-9A-F]{4}$")


def generate_backup_codes(count: int) -> List[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def normalize_backup_code(code: Any) -> str:
    if not isinstance(code, str):
        return ""
    compact = re.sub(r"[\s-]", "", code).upper()
    if len(compact) != 8:
        return ""
    return f"{compact[:4]}-{compact[4:]}"


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def normalize_answer(answer: str) -> str:
    """Case-fold and collapse whitespace so that 'New  York ' matches 'new york'."""
    return " ".join(answer.split()).casefold()


def _parse_answers(proof: Dict[str, Any]) -> Dict[str, str]:
    raw = proof.get("answers")
    answers: Dict[str, str] = {}
    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        items = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise ValidationError("invalid answer format", detail={"field": "answers"})
            items.append((entry.get("question_id") or entry.get("questionId"), entry.get("answer")))
    else:
        raise ValidationError("answers are required", detail={"field": "answers"})
    for question_id, answer in items:
        if not isinstance(question_id, str) or not isinstance(answer, str) or not answer.strip():
            raise ValidationError("invalid answer format", detail={"field": "answers"})
        if question_id in answers:
            raise ValidationError("duplicate question", detail={"field": "answers"})
        answers[question_id] = answer
    return answers


@dataclass(frozen=True)
class MfaChallengeRequired:
    """Login outcome when the password checked out but a second factor is due."""

    attempt_id: str
    method: MfaMethod
    expires_at: datetime
    backup_codes_available: bool


class MfaEngine:
    """Enrollment ceremonies and login-time verification for every second factor.

    Shared mutable state (backup codes, WebAuthn counters) is only written
    through compare-and-set on the enrollment record, so two concurrent logins
    cannot both consume one backup code or both accept one counter value.
    Ephemeral state (enrollment challenges, login attempts, lockouts) lives in
    Redis when configured and in lock-guarded dicts otherwise.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        settings: Settings,
        *,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        verifier: Optional[WebAuthnVerifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.cache = cache
        self.verifier = verifier or WebAuthnVerifier(
            settings.webauthn_rp_id, settings.webauthn_rp_name, settings.webauthn_origin
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.challenge_ttl = timedelta(minutes=settings.mfa_challenge_ttl_minutes)
        self.max_attempts = settings.mfa_max_attempts
        self.lockout_seconds = settings.mfa_lockout_seconds
        self._state_lock = threading.Lock()
        self._enrollment_challenges: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._attempts: Dict[str, Dict[str, Any]] = {}
        self._failures: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, datetime] = {}

    def _now(self) -> datetime:
        return self._clock()

    # -- enrollment ---------------------------------------------------------

    async def begin_enrollment(self, identity: Identity, method: MfaMethod | str) -> Dict[str, Any]:
        """Issue method-specific setup material and remember it server-side."""
        method = self._enrollable(method)
        enrollment = self.store.get_mfa_enrollment(identity.id)
        if enrollment.enabled and not (
            method == MfaMethod.WEBAUTHN and enrollment.method == MfaMethod.WEBAUTHN
        ):
            raise StateError("mfa is already enabled", reason="already_enrolled")

        stored: Dict[str, Any] = {}
        if method == MfaMethod.TOTP:
            secret = generate_secret()
            stored["secret"] = secret
            material = {
                "method": method.value,
                "secret": secret,
                "otpauth_uri": provisioning_uri(secret, identity.email, self.settings.totp_issuer),
                "digits": DIGITS,
                "period": INTERVAL_SECONDS,
            }
        elif method == MfaMethod.WEBAUTHN:
            challenge = b64url_encode(secrets.token_bytes(32))
            stored["challenge"] = challenge
            material = {
                "method": method.value,
                "options": self.verifier.creation_options(
                    challenge=challenge,
                    user_id=identity.id,
                    user_name=identity.email,
                    display_name=identity.name,
                    exclude_credential_ids=[
                        c.credential_id for c in enrollment.webauthn_credentials
                    ],
                ),
            }
        else:
            material = {
                "method": method.value,
                "questions": [
                    {"id": qid, "question": prompt} for qid, prompt in SECURITY_QUESTIONS.items()
                ],
                "min_answers": MIN_SECURITY_ANSWERS,
                "max_answers": MAX_SECURITY_ANSWERS,
            }

        challenge_record = EnrollmentChallenge(
            user_id=identity.id,
            method=method,
            expires_at=self._now() + self.challenge_ttl,
            material=stored,
        )
        if self.cache:
            await self.cache.set_enrollment_challenge(
                identity.id, method.value, challenge_record.to_dict(), challenge_record.expires_at
            )
        else:
            with self._state_lock:
                self._enrollment_challenges[(identity.id, method.value)] = challenge_record.to_dict()
        material["expires_at"] = challenge_record.expires_at
        logger.info("mfa_enrollment_started", user_id=identity.id, method=method.value)
        return material

    async def confirm_enrollment(
        self, identity: Identity, method: MfaMethod | str, proof: Dict[str, Any]
    ) -> List[str]:
        """Verify the setup proof, enable MFA and return a fresh batch of backup codes.

        The pending challenge is single-use: any outcome consumes it, so a
        failed confirmation needs a new ``begin_enrollment``.
        """
        method = self._enrollable(method)
        challenge = await self._pop_enrollment_challenge(identity.id, method)
        if challenge is None:
            raise MfaError("enrollment challenge expired", reason="expired_challenge")
        proof = proof or {}

        enrollment = self.store.get_mfa_enrollment(identity.id)
        expected_version = enrollment.version
        if enrollment.enabled and not (
            method == MfaMethod.WEBAUTHN and enrollment.method == MfaMethod.WEBAUTHN
        ):
            raise StateError("mfa is already enabled", reason="already_enrolled")

        if method == MfaMethod.TOTP:
            secret = challenge.material.get("secret")
            if not secret or not verify_totp(
                secret, proof.get("code"), now=self._now().timestamp(), window=WINDOW_STEPS
            ):
                logger.info("mfa_enrollment_proof_rejected", user_id=identity.id, method="totp")
                raise MfaError("invalid proof", detail={"field": "code"})
            enrollment.totp_secret = secret
        elif method == MfaMethod.WEBAUTHN:
            enrollment.webauthn_credentials.append(
                self._register_credential(enrollment, challenge, proof)
            )
        else:
            enrollment.security_answers = self._build_security_answers(proof)

        codes = generate_backup_codes(self.settings.backup_code_count)
        enrollment.enabled = True
        enrollment.method = method
        enrollment.backup_code_hashes = [hash_backup_code(code) for code in codes]
        enrollment.enrolled_at = enrollment.enrolled_at or self._now()
        try:
            self.store.update_mfa_enrollment(enrollment, expected_version=expected_version)
        except ConcurrentUpdate as exc:
            raise StateError("mfa enrollment changed concurrently") from exc
        logger.info("mfa_enrolled", user_id=identity.id, method=method.value)
        return codes

    def _register_credential(
        self, enrollment: MfaEnrollment, challenge: EnrollmentChallenge, proof: Dict[str, Any]
    ) -> WebAuthnCredential:
        credential_id = proof.get("credential_id")
        if not isinstance(credential_id, str) or not credential_id:
            raise MfaError("invalid proof", detail={"field": "credential_id"})
        if enrollment.find_credential(credential_id) is not None:
            raise MfaError("invalid proof", detail={"field": "credential_id"})
        try:
            public_key_pem, sign_count = self.verifier.verify_registration(
                public_key=proof.get("public_key") or "",
                client_data_json=proof.get("client_data_json") or "",
                authenticator_data=proof.get("authenticator_data") or "",
                signature=proof.get("signature") or "",
                expected_challenge=challenge.material.get("challenge") or "",
            )
        except MfaError:
            logger.info(
                "mfa_enrollment_proof_rejected", user_id=enrollment.user_id, method="webauthn"
            )
            raise
        return WebAuthnCredential(
            credential_id=credential_id,
            public_key=public_key_pem,
            sign_count=sign_count,
            device_name=proof.get("device_name"),
            created_at=self._now(),
        )

    @staticmethod
    def _build_security_answers(proof: Dict[str, Any]) -> List[SecurityAnswer]:
        try:
            answers = _parse_answers(proof)
        except ValidationError as exc:
            raise MfaError("invalid proof", detail=exc.detail) from exc
        if not MIN_SECURITY_ANSWERS <= len(answers) <= MAX_SECURITY_ANSWERS:
            raise MfaError(
                "invalid proof",
                detail={"field": "answers", "min": MIN_SECURITY_ANSWERS, "max": MAX_SECURITY_ANSWERS},
            )
        unknown = [qid for qid in answers if qid not in SECURITY_QUESTIONS]
        if unknown:
            raise MfaError("invalid proof", detail={"field": "answers"})
        return [
            SecurityAnswer(question_id=qid, answer_hash=hash_secret(normalize_answer(answer)))
            for qid, answer in answers.items()
        ]

    @staticmethod
    def _enrollable(method: MfaMethod | str) -> MfaMethod:
        try:
            method = MfaMethod(method)
        except ValueError:
            raise ValidationError("unknown mfa method", detail={"field": "method"})
        if method not in ENROLLABLE_METHODS:
            raise ValidationError("method cannot be enrolled", detail={"field": "method"})
        return method

    async def _pop_enrollment_challenge(
        self, user_id: str, method: MfaMethod
    ) -> Optional[EnrollmentChallenge]:
        if self.cache:
            raw = await self.cache.pop_enrollment_challenge(user_id, method.value)
        else:
            with self._state_lock:
                raw = self._enrollment_challenges.pop((user_id, method.value), None)
        if not raw:
            return None
        challenge = EnrollmentChallenge.from_dict(raw)
        if challenge.expires_at <= self._now():
            return None
        return challenge

    # -- login attempts -----------------------------------------------------

    async def create_attempt(self, identity: Identity) -> MfaChallengeRequired:
        enrollment = self.store.get_mfa_enrollment(identity.id)
        if not enrollment.enabled or enrollment.method is None:
            raise MfaError("mfa is not enabled", reason="not_enrolled")
        attempt = MfaAttempt(
            id=uuid.uuid4().hex,
            user_id=identity.id,
            organization_id=identity.current_organization_id,
            expires_at=self._now() + self.challenge_ttl,
        )
        await self._save_attempt(attempt)
        return MfaChallengeRequired(
            attempt_id=attempt.id,
            method=enrollment.method,
            expires_at=attempt.expires_at,
            backup_codes_available=bool(enrollment.backup_code_hashes),
        )

    async def begin_challenge(self, attempt_id: str, method: MfaMethod | str) -> Dict[str, Any]:
        """Move an attempt to ``Challenged`` and return what the client needs to answer."""
        method = self._method(method)
        attempt = await self._load_attempt(attempt_id)
        enrollment = self.store.get_mfa_enrollment(attempt.user_id)
        if method not in (enrollment.method, MfaMethod.BACKUP_CODE):
            raise MfaError("method not enrolled", reason="not_enrolled")

        material: Dict[str, Any] = {"method": method.value, "attempt_id": attempt.id}
        attempt.challenge = None
        if method == MfaMethod.WEBAUTHN:
            attempt.challenge = b64url_encode(secrets.token_bytes(32))
            material["options"] = self.verifier.request_options(
                challenge=attempt.challenge,
                credential_ids=[
                    c.credential_id for c in enrollment.webauthn_credentials if not c.flagged
                ],
            )
        elif method == MfaMethod.SECURITY_QUESTIONS:
            material["questions"] = [
                {"id": answer.question_id, "question": SECURITY_QUESTIONS.get(answer.question_id)}
                for answer in enrollment.security_answers
            ]
        elif method == MfaMethod.TOTP:
            material.update({"digits": DIGITS, "period": INTERVAL_SECONDS})
        else:
            material["remaining"] = len(enrollment.backup_code_hashes)
        attempt.state = MfaAttemptState.CHALLENGED
        attempt.method = method
        await self._save_attempt(attempt)
        return material

    async def verify_attempt(
        self, attempt_id: str, method: MfaMethod | str, proof: Dict[str, Any]
    ) -> Tuple[str, IssuedToken]:
        """Check the proof for a login attempt and issue the session token.

        The attempt is taken out of the store before checking, so concurrent
        submissions for one attempt cannot both succeed. A failure puts it
        back until ``mfa_max_attempts`` is reached, after which it is dropped
        as ``Failed``.
        """
        method = self._method(method)
        attempt = await self._pop_attempt(attempt_id)
        if attempt is None or attempt.is_terminal or attempt.expires_at <= self._now():
            raise MfaError("mfa challenge expired", reason="expired_challenge")
        identity = self.store.find_by_id(attempt.user_id)
        if identity is None:
            raise MfaError("mfa challenge expired", reason="expired_challenge")

        challenge = attempt.challenge if attempt.method == method else None
        try:
            await self.verify_proof(identity, method, proof, challenge=challenge)
        except StateError as exc:
            # Lost the enrollment write race; the proof was never judged
            attempt.state = MfaAttemptState.CHALLENGED
            attempt.method = method
            await self._save_attempt(attempt)
            logger.warning("mfa_verification_conflict", user_id=identity.id, method=method.value)
            raise StateError(
                "mfa verification conflicted, retry", detail={"retryable": True}
            ) from exc
        except MfaError as exc:
            attempt.failures += 1
            if attempt.failures >= self.max_attempts or exc.reason == "locked_out":
                attempt.state = MfaAttemptState.FAILED
                logger.warning(
                    "mfa_attempt_failed", user_id=identity.id, failures=attempt.failures
                )
            else:
                attempt.state = MfaAttemptState.CHALLENGED
                attempt.method = method
                await self._save_attempt(attempt)
            raise

        attempt.state = MfaAttemptState.VERIFIED
        token = self.tokens.issue(attempt.user_id, attempt.organization_id)
        logger.info("mfa_verified", user_id=identity.id, method=method.value)
        return identity.id, token

    async def verify(
        self,
        identity: Identity,
        method: MfaMethod | str,
        proof: Dict[str, Any],
        *,
        challenge: Optional[str] = None,
    ) -> IssuedToken:
        """Verify one proof for ``identity`` and issue a token on success."""
        await self.verify_proof(identity, method, proof, challenge=challenge)
        return self.tokens.issue(identity.id, identity.current_organization_id)

    async def verify_proof(
        self,
        identity: Identity,
        method: MfaMethod | str,
        proof: Dict[str, Any],
        *,
        challenge: Optional[str] = None,
    ) -> None:
        """Raise ``MfaError`` unless ``proof`` satisfies the enrolled method or a backup code.

        Every failure is tallied toward the per-identity lockout.
        """
        method = self._method(method)
        proof = proof if isinstance(proof, dict) else {}
        if await self._is_locked_out(identity.id):
            logger.warning("mfa_locked_out", user_id=identity.id)
            raise MfaError("too many failed attempts", reason="locked_out")

        enrollment = self.store.get_mfa_enrollment(identity.id)
        if not enrollment.enabled or enrollment.method is None:
            raise MfaError("mfa is not enabled", reason="not_enrolled")

        try:
            if method == MfaMethod.BACKUP_CODE:
                if not self._consume_backup_code(identity.id, proof.get("code")):
                    raise MfaError("invalid proof", detail={"field": "code"})
            elif method != enrollment.method:
                raise MfaError("method not enrolled", reason="not_enrolled")
            elif method == MfaMethod.TOTP:
                if not verify_totp(
                    enrollment.totp_secret or "",
                    proof.get("code"),
                    now=self._now().timestamp(),
                    window=WINDOW_STEPS,
                ):
                    raise MfaError("invalid proof", detail={"field": "code"})
            elif method == MfaMethod.WEBAUTHN:
                self._verify_webauthn(identity.id, enrollment, proof, challenge)
            else:
                self._verify_security_answers(enrollment, proof)
        except MfaError as exc:
            await self._record_failure(identity.id, method, exc.reason)
            raise
        except ValidationError as exc:
            await self._record_failure(identity.id, method, "invalid_proof")
            raise MfaError("invalid proof", detail=exc.detail) from exc
        await self._clear_failures(identity.id)

    def _consume_backup_code(self, user_id: str, code: Any) -> bool:
        normalized = normalize_backup_code(code)
        if not _BACKUP_CODE_PATTERN.match(normalized):
            return False
        digest = hash_backup_code(normalized)
        for _ in range(CAS_RETRIES):
            enrollment = self.store.get_mfa_enrollment(user_id)
            match = None
            for stored in enrollment.backup_code_hashes:
                if hmac.compare_digest(stored, digest):
                    match = stored
            if match is None:
                return False
            enrollment.backup_code_hashes.remove(match)
            try:
                self.store.update_mfa_enrollment(enrollment, expected_version=enrollment.version)
            except ConcurrentUpdate:
                continue
            logger.info(
                "mfa_backup_code_consumed",
                user_id=user_id,
                remaining=len(enrollment.backup_code_hashes),
            )
            return True
        raise StateError("mfa enrollment changed concurrently")

    def _verify_webauthn(
        self,
        user_id: str,
        enrollment: MfaEnrollment,
        proof: Dict[str, Any],
        challenge: Optional[str],
    ) -> None:
        if not challenge:
            raise MfaError("mfa challenge expired", reason="expired_challenge")
        credential_id = proof.get("credential_id")
        credential = enrollment.find_credential(credential_id) if credential_id else None
        if credential is None:
            raise MfaError("invalid proof", detail={"field": "credential_id"})
        if credential.flagged:
            logger.warning("webauthn_flagged_credential_used", user_id=user_id)
            raise MfaError("invalid proof", detail={"field": "credential_id"})

        sign_count = self.verifier.verify_assertion(
            public_key_pem=credential.public_key,
            client_data_json=proof.get("client_data_json") or "",
            authenticator_data=proof.get("authenticator_data") or "",
            signature=proof.get("signature") or "",
            expected_challenge=challenge,
        )

        for _ in range(CAS_RETRIES):
            current = self.store.get_mfa_enrollment(user_id)
            stored = current.find_credential(credential.credential_id)
            if stored is None:
                raise MfaError("invalid proof", detail={"field": "credential_id"})
            regressed = sign_count <= stored.sign_count
            if regressed:
                stored.flagged = True
            else:
                stored.sign_count = sign_count
                stored.last_used_at = self._now()
            try:
                self.store.update_mfa_enrollment(current, expected_version=current.version)
            except ConcurrentUpdate:
                continue
            if regressed:
                logger.error(
                    "webauthn_counter_regression",
                    user_id=user_id,
                    credential_id=credential.credential_id,
                    stored_count=stored.sign_count,
                    presented_count=sign_count,
                )
                raise MfaError("signature counter did not increase", reason="replayed_counter")
            return
        raise StateError("mfa enrollment changed concurrently")

    @staticmethod
    def _verify_security_answers(enrollment: MfaEnrollment, proof: Dict[str, Any]) -> None:
        answers = _parse_answers(proof)
        expected = {answer.question_id: answer.answer_hash for answer in enrollment.security_answers}
        if not expected or set(answers) != set(expected):
            raise MfaError("invalid proof", detail={"field": "answers"})
        matched = [
            verify_secret(expected[qid], normalize_answer(answer)) for qid, answer in answers.items()
        ]
        if not all(matched):
            raise MfaError("invalid proof", detail={"field": "answers"})

    @staticmethod
    def _method(method: MfaMethod | str) -> MfaMethod:
        try:
            return MfaMethod(method)
        except ValueError:
            raise ValidationError("unknown mfa method", detail={"field": "method"})

    # -- lockout ------------------------------------------------------------

    async def _is_locked_out(self, user_id: str) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(user_id)
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
        return False

    async def _record_failure(self, user_id: str, method: MfaMethod, reason: str) -> None:
        logger.info("mfa_proof_rejected", user_id=user_id, method=method.value, reason=reason)
        if reason == "locked_out":
            return
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts=self.max_attempts, lockout_seconds=self.lockout_seconds
            )
            if is_locked and attempts >= 0:
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return
        now = self._now()
        window = timedelta(seconds=self.lockout_seconds)
        with self._state_lock:
            attempts, window_start = 1, now
            current = self._failures.get(user_id)
            if current and now - current[1] < window:
                attempts, window_start = current[0] + 1, current[1]
            self._failures[user_id] = (attempts, window_start)
            if attempts >= self.max_attempts:
                self._lockouts[user_id] = now + window
                self._failures.pop(user_id, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _clear_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
            return
        with self._state_lock:
            self._failures.pop(user_id, None)

    # -- attempt storage ----------------------------------------------------

    async def _save_attempt(self, attempt: MfaAttempt) -> None:
        if self.cache:
            await self.cache.set_mfa_attempt(attempt.id, attempt.to_dict(), attempt.expires_at)
            return
        with self._state_lock:
            self._attempts[attempt.id] = attempt.to_dict()

    async def _load_attempt(self, attempt_id: str) -> MfaAttempt:
        if self.cache:
            raw = await self.cache.get_mfa_attempt(attempt_id)
        else:
            with self._state_lock:
                raw = self._attempts.get(attempt_id)
        attempt = MfaAttempt.from_dict(raw) if raw else None
        if attempt is None or attempt.is_terminal or attempt.expires_at <= self._now():
            raise MfaError("mfa challenge expired", reason="expired_challenge")
        return attempt

    async def _pop_attempt(self, attempt_id: str) -> Optional[MfaAttempt]:
        if self.cache:
            raw = await self.cache.pop_mfa_attempt(attempt_id)
        else:
            with self._state_lock:
                raw = self._attempts.pop(attempt_id, None)
        return MfaAttempt.from_dict(raw) if raw else None

    # -- management ---------------------------------------------------------

    def status(self, identity: Identity) -> Dict[str, Any]:
        enrollment = self.store.get_mfa_enrollment(identity.id)
        return {
            "enabled": enrollment.enabled,
            "method": enrollment.method.value if enrollment.method else None,
            "enrolled_at": enrollment.enrolled_at,
            "backup_codes_remaining": len(enrollment.backup_code_hashes),
            "webauthn_credentials": len(enrollment.webauthn_credentials),
        }

    def disable(self, identity: Identity, password: str) -> None:
        """Turn MFA off after re-checking the account password.

        Session tokens issued while MFA was on stay valid until they expire.
        """
        if identity.is_sso_only or not verify_secret(identity.password_hash, password or ""):
            raise AuthenticationError("invalid credentials")
        enrollment = self.store.get_mfa_enrollment(identity.id)
        cleared = MfaEnrollment(user_id=identity.id, version=enrollment.version)
        try:
            self.store.update_mfa_enrollment(cleared, expected_version=enrollment.version)
        except ConcurrentUpdate as exc:
            raise StateError("mfa enrollment changed concurrently") from exc
        logger.info("mfa_disabled", user_id=identity.id)

    def regenerate_backup_codes(self, identity: Identity) -> List[str]:
        enrollment = self.store.get_mfa_enrollment(identity.id)
        if not enrollment.enabled:
            raise MfaError("mfa is not enabled", reason="not_enrolled")
        codes = generate_backup_codes(self.settings.backup_code_count)
        enrollment.backup_code_hashes = [hash_backup_code(code) for code in codes]
        try:
            self.store.update_mfa_enrollment(enrollment, expected_version=enrollment.version)
        except ConcurrentUpdate as exc:
            raise StateError("mfa enrollment changed concurrently") from exc
        logger.info("mfa_backup_codes_regenerated", user_id=identity.id)
        return codes

    def list_credentials(self, identity: Identity) -> List[Dict[str, Any]]:
        enrollment = self.store.get_mfa_enrollment(identity.id)
        return [credential.summary() for credential in enrollment.webauthn_credentials]

    def remove_credential(self, identity: Identity, credential_id: str) -> None:
        enrollment = self.store.get_mfa_enrollment(identity.id)
        credential = enrollment.find_credential(credential_id)
        if credential is None:
            raise NotFoundError("credential not found")
        remaining = [c for c in enrollment.webauthn_credentials if c.credential_id != credential_id]
        if enrollment.enabled and enrollment.method == MfaMethod.WEBAUTHN and not remaining:
            raise StateError("cannot remove the last credential while webauthn is enabled")
        enrollment.webauthn_credentials = remaining
        try:
            self.store.update_mfa_enrollment(enrollment, expected_version=enrollment.version)
        except ConcurrentUpdate as exc:
            raise StateError("mfa enrollment changed concurrently") from exc
        logger.info("webauthn_credential_removed", user_id=identity.id)

    def security_question_ids(self, identity: Identity) -> List[str]:
        enrollment = self.store.get_mfa_enrollment(identity.id)
        if not enrollment.security_answers:
            raise NotFoundError("security questions not configured")
        return [answer.question_id for answer in enrollment.security_answers]

    def cleanup_expired(self) -> int:
        now = self._now()
        cleaned = 0
        with self._state_lock:
            for key, raw in list(self._enrollment_challenges.items()):
                if EnrollmentChallenge.from_dict(raw).expires_at <= now:
                    self._enrollment_challenges.pop(key, None)
                    cleaned += 1
            for attempt_id, raw in list(self._attempts.items()):
                if MfaAttempt.from_dict(raw).expires_at <= now:
                    self._attempts.pop(attempt_id, None)
                    cleaned += 1
            for user_id, locked_until in list(self._lockouts.items()):
                if locked_until <= now:
                    self._lockouts.pop(user_id, None)
                    cleaned += 1
            window = timedelta(seconds=self.lockout_seconds)
            for user_id, (_, window_start) in list(self._failures.items()):
                if now - window_start >= window:
                    self._failures.pop(user_id, None)
                    cleaned += 1
        if cleaned:
            logger.debug("mfa_state_cleanup", cleaned=cleaned)
        return cleaned
