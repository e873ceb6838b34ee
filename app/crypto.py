"""Encryption and digest helpers for secrets kept in the store."""

import base64
import hashlib
import hmac
import secrets
import string

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings

BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _get_fernet_key() -> bytes:
    """Derive a Fernet-compatible key from the secret_key."""
    # Use SHA256 to get a 32-byte key, then base64 encode for Fernet
    key_bytes = hashlib.sha256(settings.secret_key.encode()).digest()
    return base64.urlsafe_b64encode(key_bytes)


def _get_fernet() -> Fernet:
    """Get a Fernet instance for encryption/decryption."""
    return Fernet(_get_fernet_key())


def encrypt_secret(value: str) -> str:
    """Encrypt a secret (e.g. a TOTP seed) for storage."""
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt_secret(encrypted: str) -> str | None:
    """Decrypt a stored secret. Returns None if it was tampered with or the key changed."""
    try:
        return _get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        return None


def keyed_digest(value: str, purpose: str) -> str:
    """HMAC-SHA256 of *value*, domain-separated by *purpose*."""
    key = hashlib.sha256(f"{purpose}:{settings.secret_key}".encode()).digest()
    return hmac.new(key, value.encode(), hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    """Fixed-time comparison; runtime does not depend on where the inputs differ."""
    return hmac.compare_digest(a.encode(), b.encode())


def generate_code(length: int = 8) -> str:
    return "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
