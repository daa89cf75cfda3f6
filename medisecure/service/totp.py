from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from typing import Optional
from urllib.parse import quote, urlencode

from medisecure.logging import get_logger

logger = get_logger(__name__)

INTERVAL_SECONDS = 30
DIGITS = 6
# Adjacent steps accepted on either side of the current one
WINDOW_STEPS = 1


def generate_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(os.urandom(num_bytes)).decode("utf-8").rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": DIGITS,
            "period": INTERVAL_SECONDS,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def generate_totp(
    secret: str, timestamp: float, *, interval: int = INTERVAL_SECONDS, digits: int = DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for an undecodable secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str | int,
    *,
    now: Optional[float] = None,
    window: int = WINDOW_STEPS,
    interval: int = INTERVAL_SECONDS,
) -> bool:
    # JSON clients may send the code as a number, dropping leading zeros
    if isinstance(code, int) and not isinstance(code, bool) and code >= 0:
        code = str(code).zfill(DIGITS)
    if not secret or not isinstance(code, str):
        return False
    code = code.strip().replace(" ", "")
    if len(code) != DIGITS or not code.isdigit():
        return False
    timestamp = time.time() if now is None else now
    matched = False
    # Check every step so timing does not depend on which one matched
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            matched = True
    return matched
