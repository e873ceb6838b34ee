"""TOTP enrollment, verification and single-use backup codes.

An enrollment starts out pending: the secret exists but nothing enforces it
until the user proves they can generate a code with it. Secrets are stored
Fernet-encrypted; backup codes are stored only as keyed digests and are
removed from the row as they are consumed.
"""

import logging
import time
from typing import Callable

from app.crypto import constant_time_equals, decrypt_secret, encrypt_secret, generate_code, keyed_digest
from app.db import dumps, get_connection, loads, to_timestamp, transaction
from app.errors import ConflictError, StoreError, ValidationError
from app.models import MFAEnrollment
from app.security.audit import AuditEntry, AuditLog
from app.security.totp import generate_secret, match_totp_step, provisioning_uri

logger = logging.getLogger(__name__)

BACKUP_CODE_PURPOSE = "mfa-backup-code"


def _normalise_backup_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


class MFAManager:
    def __init__(
        self,
        audit: AuditLog,
        issuer: str = "SchoolChat Security",
        backup_code_count: int = 10,
        drift_steps: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        self.audit = audit
        self.issuer = issuer
        self.backup_code_count = backup_code_count
        self.drift_steps = drift_steps
        self.clock = clock

    def _load(self, user_id: int) -> MFAEnrollment | None:
        with get_connection() as conn:
            row = conn.execute("SELECT * FROM user_mfa_settings WHERE user_id = ?", (user_id,)).fetchone()
        return MFAEnrollment.from_row(row) if row else None

    def _new_backup_codes(self) -> tuple[list[str], list[str]]:
        codes = [generate_code(8) for _ in range(self.backup_code_count)]
        return codes, [keyed_digest(c, BACKUP_CODE_PURPOSE) for c in codes]

    def _secret(self, enrollment: MFAEnrollment) -> str:
        secret = decrypt_secret(enrollment.totp_secret or "")
        if secret is None:
            logger.error(f"Stored TOTP secret for user {enrollment.user_id} could not be decrypted")
            raise StoreError("MFA settings are unreadable")
        return secret

    def setup_totp(self, user_id: int, username: str) -> dict:
        """Create (or replace) a pending enrollment and hand out its secret once."""
        secret = generate_secret()
        codes, digests = self._new_backup_codes()
        now = to_timestamp(self.clock())

        with transaction() as conn:
            row = conn.execute(
                "SELECT is_enabled FROM user_mfa_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row and row["is_enabled"]:
                raise ConflictError("MFA is already enabled")
            conn.execute(
                """INSERT INTO user_mfa_settings
                   (user_id, totp_secret, backup_codes, is_enabled, created_at, updated_at)
                   VALUES (?, ?, ?, 0, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       totp_secret = excluded.totp_secret,
                       backup_codes = excluded.backup_codes,
                       is_enabled = 0,
                       last_totp_step = NULL,
                       updated_at = excluded.updated_at""",
                (user_id, encrypt_secret(secret), dumps(digests), now, now),
            )

        self.audit.record(AuditEntry(
            user_id=user_id,
            event_type="mfa_totp_setup_initiated",
            event_category="security",
            severity="info",
            resource="/mfa/setup",
            details={"mfa_type": "totp", "backup_codes_generated": len(codes)},
        ))
        return {
            "secret": secret,
            "qr_payload": provisioning_uri(secret, username, self.issuer),
            "backup_codes": codes,
        }

    def verify_and_enable(self, user_id: int, code: str, source_ip: str = "unknown") -> None:
        enrollment = self._load(user_id)
        if not enrollment or not enrollment.totp_secret:
            raise ValidationError("MFA not set up", field="token")
        if enrollment.is_enabled:
            raise ConflictError("MFA is already enabled")

        step = match_totp_step(self._secret(enrollment), code, drift_steps=self.drift_steps, now=self.clock())
        if step is None:
            self.audit.record(AuditEntry(
                user_id=user_id,
                event_type="mfa_verification_failed",
                event_category="authentication",
                severity="low",
                source_ip=source_ip,
                resource="/mfa/verify",
                details={"mfa_type": "totp", "token_length": len(code or "")},
                success=False,
                error_message="Invalid TOTP token",
            ))
            raise ValidationError("Invalid verification code", field="token")

        now = to_timestamp(self.clock())
        with get_connection() as conn:
            cursor = conn.execute(
                "UPDATE user_mfa_settings SET is_enabled = 1, last_used_at = ?, last_totp_step = ?, updated_at = ? "
                "WHERE user_id = ? AND is_enabled = 0 AND totp_secret = ?",
                (now, step, now, user_id, enrollment.totp_secret),
            )
            if cursor.rowcount == 0:
                raise ConflictError("MFA enrollment changed during verification")

        logger.info(f"MFA enabled for user {user_id}")
        self.audit.record(AuditEntry(
            user_id=user_id,
            event_type="mfa_enabled",
            event_category="security",
            severity="info",
            source_ip=source_ip,
            resource="/mfa/enable",
            details={"mfa_type": "totp"},
        ))

    def is_enabled(self, user_id: int) -> bool:
        enrollment = self._load(user_id)
        return bool(enrollment and enrollment.is_enabled)

    def check_code(self, user_id: int, code: str) -> str | None:
        """Validate a TOTP or backup code for an enabled enrollment.

        Returns the method that matched (``"totp"`` or ``"backup_code"``) or
        None. A TOTP step is accepted at most once and a matching backup code
        is consumed. Nothing is audited here; callers record the outcome as
        part of their own event.
        """
        enrollment = self._load(user_id)
        if not enrollment or not enrollment.is_enabled or not code:
            return None

        step = match_totp_step(self._secret(enrollment), code, drift_steps=self.drift_steps, now=self.clock())
        if step is not None and self._claim_totp_step(user_id, step):
            return "totp"
        if self._consume_backup_code(user_id, code):
            with get_connection() as conn:
                conn.execute(
                    "UPDATE user_mfa_settings SET last_used_at = ? WHERE user_id = ?",
                    (to_timestamp(self.clock()), user_id),
                )
            return "backup_code"
        return None

    def _claim_totp_step(self, user_id: int, step: int) -> bool:
        with get_connection() as conn:
            cursor = conn.execute(
                "UPDATE user_mfa_settings SET last_totp_step = ?, last_used_at = ? "
                "WHERE user_id = ? AND is_enabled = 1 AND (last_totp_step IS NULL OR last_totp_step < ?)",
                (step, to_timestamp(self.clock()), user_id, step),
            )
            claimed = cursor.rowcount == 1
        if not claimed:
            logger.warning(f"Rejected reused TOTP code for user {user_id}")
            return False
        return True

    def _consume_backup_code(self, user_id: int, code: str) -> bool:
        digest = keyed_digest(_normalise_backup_code(code), BACKUP_CODE_PURPOSE)
        with transaction() as conn:
            row = conn.execute(
                "SELECT backup_codes FROM user_mfa_settings WHERE user_id = ? AND is_enabled = 1",
                (user_id,),
            ).fetchone()
            if not row:
                return False
            remaining, found = [], False
            for stored in loads(row["backup_codes"], []):
                if not found and constant_time_equals(stored, digest):
                    found = True
                    continue
                remaining.append(stored)
            if not found:
                return False
            conn.execute(
                "UPDATE user_mfa_settings SET backup_codes = ?, updated_at = ? WHERE user_id = ?",
                (dumps(remaining), to_timestamp(self.clock()), user_id),
            )
        logger.info(f"Backup code consumed for user {user_id}, {len(remaining)} left")
        return True

    def _require_possession(self, user_id: int, token: str, source_ip: str, resource: str) -> str:
        if not self.is_enabled(user_id):
            raise ValidationError("MFA is not enabled")
        method = self.check_code(user_id, token)
        if not method:
            self.audit.record(AuditEntry(
                user_id=user_id,
                event_type="mfa_verification_failed",
                event_category="authentication",
                severity="medium",
                source_ip=source_ip,
                resource=resource,
                details={"token_length": len(token or "")},
                success=False,
                error_message="Invalid MFA token",
            ))
            raise ValidationError("Invalid verification code", field="token")
        return method

    def disable_mfa(self, user_id: int, verification_token: str, source_ip: str = "unknown") -> None:
        method = self._require_possession(user_id, verification_token, source_ip, "/mfa/disable")
        with get_connection() as conn:
            conn.execute("DELETE FROM user_mfa_settings WHERE user_id = ?", (user_id,))

        logger.info(f"MFA disabled for user {user_id}")
        self.audit.record(AuditEntry(
            user_id=user_id,
            event_type="mfa_disabled",
            event_category="security",
            severity="medium",
            source_ip=source_ip,
            resource="/mfa/disable",
            details={"mfa_type": "totp", "verified_with": method},
        ))

    def generate_new_backup_codes(
        self, user_id: int, verification_token: str, source_ip: str = "unknown"
    ) -> list[str]:
        self._require_possession(user_id, verification_token, source_ip, "/mfa/backup-codes")
        codes, digests = self._new_backup_codes()
        with get_connection() as conn:
            conn.execute(
                "UPDATE user_mfa_settings SET backup_codes = ?, updated_at = ? WHERE user_id = ?",
                (dumps(digests), to_timestamp(self.clock()), user_id),
            )

        self.audit.record(AuditEntry(
            user_id=user_id,
            event_type="mfa_backup_codes_regenerated",
            event_category="security",
            severity="info",
            source_ip=source_ip,
            resource="/mfa/backup-codes",
            details={"codes_generated": len(codes)},
        ))
        return codes

    def get_status(self, user_id: int) -> dict:
        enrollment = self._load(user_id)
        if not enrollment:
            return {"enabled": False, "methods": [], "backup_codes_remaining": 0, "last_used": None}
        return {
            "enabled": enrollment.is_enabled,
            "methods": ["totp"] if enrollment.is_enabled and enrollment.totp_secret else [],
            "backup_codes_remaining": len(enrollment.backup_codes),
            "last_used": enrollment.last_used_at,
        }
