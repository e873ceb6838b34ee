import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from app.config import settings
from app.errors import StoreError

logger = logging.getLogger(__name__)

DB_PATH = Path(settings.database_path)
BUSY_TIMEOUT_SECONDS = 10


def get_db_path() -> Path:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    return DB_PATH


def to_timestamp(epoch: float) -> str:
    """Render epoch seconds as a fixed-width UTC ISO string (sorts lexically)."""
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: str) -> float:
    return datetime.fromisoformat(value).timestamp()


def dumps(value: Any) -> str:
    return json.dumps(value)


def loads(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def init_db():
    """Create tables if they don't exist."""
    with get_connection() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                is_admin INTEGER NOT NULL DEFAULT 0,
                is_site_owner INTEGER NOT NULL DEFAULT 0,
                is_banned INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS user_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                jti TEXT UNIQUE NOT NULL,
                expires_at TEXT NOT NULL,
                revoked_at TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS user_mfa_settings (
                user_id INTEGER PRIMARY KEY,
                totp_secret TEXT,
                backup_codes TEXT,
                is_enabled INTEGER NOT NULL DEFAULT 0,
                last_used_at TEXT,
                last_totp_step INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS security_audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER,
                event_type TEXT NOT NULL,
                event_category TEXT NOT NULL,
                severity TEXT NOT NULL,
                risk_score INTEGER NOT NULL DEFAULT 0,
                source_ip TEXT,
                user_agent TEXT,
                resource TEXT,
                details TEXT,
                threat_indicators TEXT,
                success INTEGER NOT NULL DEFAULT 1,
                error_message TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_audit_created_at ON security_audit_logs(created_at);
            CREATE INDEX IF NOT EXISTS idx_audit_user ON security_audit_logs(user_id);

            CREATE TABLE IF NOT EXISTS security_incidents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                audit_log_id INTEGER,
                incident_type TEXT NOT NULL,
                severity TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open',
                title TEXT NOT NULL,
                description TEXT,
                affected_users TEXT,
                source_ips TEXT,
                indicators TEXT,
                timeline TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (audit_log_id) REFERENCES security_audit_logs(id)
            );
            CREATE INDEX IF NOT EXISTS idx_incidents_status ON security_incidents(status, created_at);

            CREATE TABLE IF NOT EXISTS security_challenges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                category TEXT NOT NULL,
                difficulty TEXT NOT NULL,
                points INTEGER NOT NULL,
                flag_format TEXT,
                flag_hash TEXT NOT NULL,
                hints TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                max_attempts INTEGER,
                time_limit INTEGER,
                created_by INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS challenge_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                challenge_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                is_correct INTEGER NOT NULL,
                points_awarded INTEGER NOT NULL DEFAULT 0,
                submitted_length INTEGER NOT NULL DEFAULT 0,
                source_ip TEXT,
                user_agent TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (challenge_id) REFERENCES security_challenges(id)
            );
            CREATE INDEX IF NOT EXISTS idx_attempts_user ON challenge_attempts(user_id, challenge_id);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_attempts_single_score
                ON challenge_attempts(challenge_id, user_id) WHERE points_awarded > 0;

            CREATE TABLE IF NOT EXISTS sandbox_environments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                environment_type TEXT NOT NULL,
                image TEXT,
                target_services TEXT,
                allowed_tools TEXT,
                restrictions TEXT,
                max_duration INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_by INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sandbox_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                environment_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                status TEXT NOT NULL,
                container_id TEXT,
                connection_info TEXT,
                actions_log TEXT,
                findings TEXT,
                score INTEGER NOT NULL DEFAULT 0,
                notes TEXT,
                start_time TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                end_time TEXT,
                duration INTEGER,
                FOREIGN KEY (environment_id) REFERENCES sandbox_environments(id)
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_sandbox_single_active
                ON sandbox_sessions(user_id, environment_id) WHERE status IN ('starting', 'running');
        """)


@contextmanager
def get_connection():
    try:
        conn = sqlite3.connect(get_db_path(), timeout=BUSY_TIMEOUT_SECONDS)
    except sqlite3.Error as e:
        logger.exception("Could not open database")
        raise StoreError("Database unavailable") from e
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except sqlite3.IntegrityError:
        raise
    except sqlite3.Error as e:
        logger.exception("Database operation failed")
        raise StoreError("Database operation failed") from e
    finally:
        conn.close()


@contextmanager
def transaction():
    """Serialized write transaction for check-then-write invariants."""
    with get_connection() as conn:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
