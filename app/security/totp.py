"""RFC 6238 time-based one-time passwords (SHA-1, 6 digits, 30 s steps)."""

import base64
import hashlib
import hmac
import os
import time
from urllib.parse import quote, urlencode

from app.crypto import constant_time_equals

INTERVAL = 30
DIGITS = 6


def generate_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(os.urandom(num_bytes)).decode().rstrip("=")


def generate_totp(secret: str, timestamp: float, *, interval: int = INTERVAL, digits: int = DIGITS) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = (int.from_bytes(digest[offset:offset + 4], "big") & 0x7FFFFFFF) % (10 ** digits)
    return str(code).zfill(digits)


def match_totp_step(
    secret: str,
    code: str,
    *,
    drift_steps: int = 1,
    now: float | None = None,
    interval: int = INTERVAL,
) -> int | None:
    """Return the time step *code* was generated for, within ``drift_steps`` of now."""
    code = (code or "").strip().replace(" ", "")
    if len(code) != DIGITS or not code.isdigit():
        return None
    now = time.time() if now is None else now
    matched = None
    # Every candidate step is compared so timing does not reveal which one hit
    for step in range(-drift_steps, drift_steps + 1):
        timestamp = now + step * interval
        expected = generate_totp(secret, timestamp, interval=interval)
        if expected and constant_time_equals(expected, code):
            matched = int(timestamp // interval)
    return matched


def verify_totp(
    secret: str,
    code: str,
    *,
    drift_steps: int = 1,
    now: float | None = None,
    interval: int = INTERVAL,
) -> bool:
    return match_totp_step(secret, code, drift_steps=drift_steps, now=now, interval=interval) is not None


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer, "algorithm": "SHA1", "digits": DIGITS, "period": INTERVAL})
    return f"otpauth://totp/{label}?{query}"
