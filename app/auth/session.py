"""Signed session tokens with explicit revocation.

Tokens are HS256 JWTs carrying the user id and role flags. Verification is
stateless apart from the in-memory revocation set, which holds the ``jti`` of
every revoked token until that token would have expired anyway. When
``store_check`` is on, the ``user_sessions`` table is consulted too, so a
logout on one instance is honoured by every other instance.
"""

import logging
import secrets
import threading
import time
from datetime import timedelta
from typing import Callable

from jose import JWTError, jwt

from app.db import get_connection, to_timestamp
from app.models import Identity

logger = logging.getLogger(__name__)


class RevocationSet:
    """jti -> expiry map; entries disappear once the token is dead anyway."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, float] = {}

    def add(self, jti: str, expires_at: float) -> None:
        with self._lock:
            self._prune_locked()
            self._entries[jti] = expires_at

    def __contains__(self, jti: str) -> bool:
        with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[jti]
                return False
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def prune(self) -> int:
        with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> int:
        now = self._clock()
        dead = [jti for jti, exp in self._entries.items() if exp <= now]
        for jti in dead:
            del self._entries[jti]
        return len(dead)


class SessionAuthority:
    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(days=7),
        revocations: RevocationSet | None = None,
        store_check: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl = ttl
        self.clock = clock
        self.revocations = revocations if revocations is not None else RevocationSet(clock)
        self.store_check = store_check

    def issue(self, identity: Identity) -> str:
        now = self.clock()
        expires_at = int(now + self.ttl.total_seconds())
        jti = secrets.token_urlsafe(16)
        payload = {
            "sub": str(identity.id),
            "username": identity.username,
            "is_admin": identity.is_admin,
            "is_site_owner": identity.is_site_owner,
            "is_banned": identity.is_banned,
            "iat": int(now),
            "exp": expires_at,
            "jti": jti,
        }
        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

        with get_connection() as conn:
            conn.execute(
                "INSERT INTO user_sessions (user_id, jti, expires_at) VALUES (?, ?, ?)",
                (identity.id, jti, to_timestamp(expires_at)),
            )
        return token

    def _decode(self, token: str) -> dict | None:
        if not token or not isinstance(token, str):
            return None
        try:
            # Expiry is checked against our own clock below
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        for claim in ("sub", "exp", "jti", "username"):
            if claim not in claims:
                return None
        return claims

    def verify(self, token: str) -> Identity | None:
        """Return the token's identity, or None if anything about it is off."""
        claims = self._decode(token)
        if claims is None:
            return None
        try:
            identity = Identity(
                id=int(claims["sub"]),
                username=str(claims["username"]),
                is_admin=bool(claims.get("is_admin", False)),
                is_site_owner=bool(claims.get("is_site_owner", False)),
                is_banned=bool(claims.get("is_banned", False)),
                issued_at=float(claims.get("iat", 0)),
                expires_at=float(claims["exp"]),
                jti=str(claims["jti"]),
            )
        except (TypeError, ValueError):
            return None

        if identity.expires_at <= self.clock():
            return None
        if identity.jti in self.revocations:
            return None
        if self.store_check and not self._session_active(identity.jti):
            return None
        return identity

    def revoke(self, token: str) -> bool:
        claims = self._decode(token)
        if claims is None:
            return False
        jti = str(claims["jti"])
        expires_at = float(claims["exp"])
        self.revocations.add(jti, expires_at)
        with get_connection() as conn:
            conn.execute(
                "UPDATE user_sessions SET revoked_at = ? WHERE jti = ? AND revoked_at IS NULL",
                (to_timestamp(self.clock()), jti),
            )
        logger.info(f"Revoked session {jti[:8]} for user {claims['sub']}")
        return True

    def _session_active(self, jti: str) -> bool:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT revoked_at, expires_at FROM user_sessions WHERE jti = ?", (jti,)
            ).fetchone()
        if not row or row["revoked_at"]:
            return False
        return row["expires_at"] > to_timestamp(self.clock())
