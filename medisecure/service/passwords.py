from __future__ import annotations

import re
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from medisecure.logging import get_logger
from medisecure.service.errors import WeakPasswordError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_SPECIAL_CHARACTERS = re.compile(r"[@$!%*?&#^()_+\-=\[\]{};':\"\\|,.<>/~`]")

_hasher = PasswordHasher(type=Type.ID)


def check_password_strength(password: str) -> None:
    """Raise ``WeakPasswordError`` unless the password satisfies the policy.

    Policy: 8 to 128 characters with at least one lowercase letter, one
    uppercase letter, one digit and one special character.
    """
    problems = []
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
        password = password if isinstance(password, str) else ""
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"at most {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        problems.append("a lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("an uppercase letter")
    if not re.search(r"\d", password):
        problems.append("a digit")
    if not _SPECIAL_CHARACTERS.search(password):
        problems.append("a special character")
    if problems:
        raise WeakPasswordError(
            "password does not meet the strength policy", detail={"requires": problems}
        )


def hash_secret(value: str) -> str:
    return _hasher.hash(value)


def verify_secret(stored_hash: Optional[str], candidate: str) -> bool:
    """Constant-time argon2id check; malformed or missing hashes never verify."""
    if not stored_hash:
        return False
    try:
        return _hasher.verify(stored_hash, candidate)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("secret_hash_unusable")
        return False


# Checked in place of a missing account's hash
_DUMMY_HASH = _hasher.hash("medisecure-timing-equalizer")


def burn_verification(candidate: str) -> None:
    verify_secret(_DUMMY_HASH, candidate)
