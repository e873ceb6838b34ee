"""Lifecycle of practice sandbox sessions.

A session moves ``starting`` -> ``running`` -> ``stopped`` | ``expired`` and
never changes once terminal. A user holds at most one non-terminal session
per environment; the check runs in a serialized transaction and a partial
unique index enforces it at the store. Sessions past ``expires_at`` are
expired lazily whenever they are read and by the periodic sweep.
"""

import logging
import secrets
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol
from urllib.parse import urlparse

from app.db import dumps, from_timestamp, get_connection, to_timestamp, transaction
from app.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ProvisioningError,
    RateLimitError,
    ValidationError,
)
from app.models import Identity, SandboxEnvironment, SandboxSession
from app.security.audit import AuditEntry, AuditLog
from app.security.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

FINDING_POINTS = {"critical": 100, "high": 75, "medium": 50, "low": 25, "info": 10}
MAX_DURATION_MINUTES = 24 * 60

_ACTIVE_SQL = "status IN ('starting', 'running')"


class Provisioner(Protocol):
    def provision(self, session_id: int, environment: SandboxEnvironment) -> dict: ...

    def release(self, container_id: str) -> None: ...


@dataclass
class NewEnvironment:
    name: str
    environment_type: str
    description: Optional[str] = None
    image: Optional[str] = None
    target_services: list[Any] = field(default_factory=list)
    allowed_tools: list[str] = field(default_factory=list)
    restrictions: dict = field(default_factory=dict)
    max_duration: int = 60
    is_active: bool = True

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("Name is required", field="name")
        if not self.environment_type or not self.environment_type.strip():
            raise ValidationError("Environment type is required", field="environment_type")
        if not 0 < self.max_duration <= MAX_DURATION_MINUTES:
            raise ValidationError(
                f"max_duration must be between 1 and {MAX_DURATION_MINUTES} minutes", field="max_duration"
            )


class SandboxOrchestrator:
    def __init__(
        self,
        audit: AuditLog,
        limiter: RateLimiter,
        provisioner: Provisioner | None = None,
        base_url: str = "https://sandbox.localhost",
        clock: Callable[[], float] = time.time,
    ):
        self.audit = audit
        self.limiter = limiter
        self.provisioner = provisioner
        self.base_url = base_url.rstrip("/")
        self.clock = clock

    # -- environments -------------------------------------------------------

    def list_environments(self, environment_type: str | None = None) -> list[SandboxEnvironment]:
        sql = "SELECT * FROM sandbox_environments WHERE is_active = 1"
        params: tuple = ()
        if environment_type:
            sql += " AND environment_type = ?"
            params = (environment_type,)
        sql += " ORDER BY created_at DESC, id DESC"
        with get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [SandboxEnvironment.from_row(r) for r in rows]

    def create_environment(self, spec: NewEnvironment, creator: Identity) -> SandboxEnvironment:
        if not creator.is_admin:
            raise AuthorizationError("Admin access required")
        spec.validate()

        with get_connection() as conn:
            cursor = conn.execute(
                """INSERT INTO sandbox_environments
                   (name, description, environment_type, image, target_services, allowed_tools,
                    restrictions, max_duration, is_active, created_by, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    spec.name.strip(),
                    spec.description,
                    spec.environment_type.strip(),
                    spec.image,
                    dumps(spec.target_services),
                    dumps(spec.allowed_tools),
                    dumps(spec.restrictions),
                    spec.max_duration,
                    int(spec.is_active),
                    creator.id,
                    to_timestamp(self.clock()),
                ),
            )
            row = conn.execute(
                "SELECT * FROM sandbox_environments WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()

        environment = SandboxEnvironment.from_row(row)
        self.audit.record(AuditEntry(
            user_id=creator.id,
            event_type="sandbox_environment_created",
            event_category="admin",
            severity="info",
            resource=f"/sandbox/environments/{environment.id}",
            details={"environment_id": environment.id, "name": environment.name, "type": environment.environment_type},
        ))
        return environment

    # -- sessions -----------------------------------------------------------

    def start_session(
        self,
        environment_id: int,
        user_id: int,
        source_ip: str = "unknown",
        user_agent: str = "unknown",
    ) -> tuple[SandboxSession, dict]:
        if not self.limiter.is_allowed(str(user_id)):
            retry_after = self.limiter.retry_after_seconds(str(user_id))
            self.audit.record(AuditEntry(
                user_id=user_id,
                event_type="sandbox_start_rate_limited",
                event_category="security",
                severity="low",
                source_ip=source_ip,
                user_agent=user_agent,
                resource="/sandbox/sessions",
                details={"environment_id": environment_id},
                success=False,
            ))
            raise RateLimitError("Too many sandbox sessions started. Please try again later.", retry_after)

        self._expire_overdue(user_id=user_id)
        now = self.clock()

        with transaction() as conn:
            row = conn.execute(
                "SELECT * FROM sandbox_environments WHERE id = ? AND is_active = 1", (environment_id,)
            ).fetchone()
            if not row:
                raise NotFoundError("Environment not found or inactive")
            environment = SandboxEnvironment.from_row(row)

            existing = conn.execute(
                f"SELECT id FROM sandbox_sessions WHERE user_id = ? AND environment_id = ? AND {_ACTIVE_SQL}",
                (user_id, environment_id),
            ).fetchone()
            if existing:
                raise ConflictError(
                    "You already have an active session for this environment. Stop it before starting a new one."
                )
            try:
                cursor = conn.execute(
                    """INSERT INTO sandbox_sessions
                       (environment_id, user_id, status, connection_info, actions_log, findings,
                        start_time, expires_at)
                       VALUES (?, ?, 'starting', '{}', '[]', '[]', ?, ?)""",
                    (
                        environment_id,
                        user_id,
                        to_timestamp(now),
                        to_timestamp(now + environment.max_duration * 60),
                    ),
                )
            except sqlite3.IntegrityError:
                raise ConflictError("You already have an active session for this environment.")
            session_id = cursor.lastrowid

        try:
            connection_info = self._provision(session_id, environment)
        except Exception as e:
            self._finish(session_id, "stopped", self.clock())
            message = e.message if isinstance(e, ProvisioningError) else f"Failed to provision sandbox: {e}"
            logger.error(f"Provisioning failed for sandbox session {session_id}: {message}")
            self.audit.record(AuditEntry(
                user_id=user_id,
                event_type="sandbox_session_failed",
                event_category="security",
                severity="medium",
                source_ip=source_ip,
                user_agent=user_agent,
                resource=f"/sandbox/sessions/{session_id}",
                details={"session_id": session_id, "environment_id": environment_id},
                success=False,
                error_message=message,
            ))
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(message) from e

        with get_connection() as conn:
            cursor = conn.execute(
                "UPDATE sandbox_sessions SET status = 'running', container_id = ?, connection_info = ? "
                "WHERE id = ? AND status = 'starting'",
                (connection_info.get("container_id"), dumps(connection_info), session_id),
            )
            started = cursor.rowcount == 1

        if not started:
            # Stopped or expired while provisioning; the container has no session to back
            self._release(connection_info.get("container_id"))
            logger.info(f"Sandbox session {session_id} ended before it was running")
            raise ConflictError("Session was stopped before it finished starting")

        logger.info(f"Sandbox session {session_id} running for user {user_id} in environment {environment_id}")
        self.audit.record(AuditEntry(
            user_id=user_id,
            event_type="sandbox_session_started",
            event_category="security",
            severity="info",
            source_ip=source_ip,
            user_agent=user_agent,
            resource=f"/sandbox/sessions/{session_id}",
            details={
                "session_id": session_id,
                "environment_id": environment_id,
                "environment_name": environment.name,
                "container_id": connection_info.get("container_id"),
            },
        ))
        return self._get(session_id), connection_info

    def _provision(self, session_id: int, environment: SandboxEnvironment) -> dict:
        info = {
            "web_interface": f"{self.base_url}/session/{session_id}",
            "ssh_access": None,
            "target_services": environment.target_services,
            "allowed_tools": environment.allowed_tools,
            "restrictions": environment.restrictions,
            "max_duration": environment.max_duration,
        }
        if environment.environment_type == "network":
            info["ssh_access"] = {
                "host": urlparse(self.base_url).hostname or "localhost",
                "port": 2200 + session_id % 1000,
                "username": "pentester",
                "password": secrets.token_urlsafe(12),
            }
        if self.provisioner is not None and environment.image:
            info.update(self.provisioner.provision(session_id, environment))
        else:
            info["container_id"] = f"sandbox_{session_id}_{int(self.clock())}"
        return info

    def _release(self, container_id: str | None) -> None:
        if not container_id or self.provisioner is None:
            return
        try:
            self.provisioner.release(container_id)
        except Exception as e:
            logger.warning(f"Failed to release sandbox container {container_id}: {e}")

    def _finish(self, session_id: int, status: str, end: float) -> bool:
        """Move a non-terminal session to *status*; False if it was already terminal."""
        with get_connection() as conn:
            row = conn.execute("SELECT start_time FROM sandbox_sessions WHERE id = ?", (session_id,)).fetchone()
            if not row:
                return False
            duration = max(0, int(end - from_timestamp(row["start_time"])))
            cursor = conn.execute(
                f"UPDATE sandbox_sessions SET status = ?, end_time = ?, duration = ? "
                f"WHERE id = ? AND {_ACTIVE_SQL}",
                (status, to_timestamp(end), duration, session_id),
            )
            return cursor.rowcount == 1

    def stop_session(self, session_id: int, actor: Identity, source_ip: str = "unknown") -> SandboxSession:
        session = self._get(session_id)
        if session.user_id != actor.id and not actor.is_admin:
            raise AuthorizationError("Only the session owner or an administrator may stop this session")

        self._expire_overdue(session_id=session_id)
        session = self._get(session_id)
        if session.is_terminal:
            return session

        if not self._finish(session_id, "stopped", self.clock()):
            # Lost a race with another stop or the sweep; the result is terminal either way
            return self._get(session_id)

        self._release(session.container_id)
        session = self._get(session_id)
        logger.info(f"Sandbox session {session_id} stopped by user {actor.id}")
        self.audit.record(AuditEntry(
            user_id=actor.id,
            event_type="sandbox_session_stopped",
            event_category="admin" if actor.id != session.user_id else "security",
            severity="info",
            source_ip=source_ip,
            resource=f"/sandbox/sessions/{session_id}",
            details={
                "session_id": session_id,
                "owner_id": session.user_id,
                "duration": session.duration,
                "container_id": session.container_id,
            },
        ))
        return session

    def _get(self, session_id: int) -> SandboxSession:
        with get_connection() as conn:
            row = conn.execute(
                "SELECT s.*, e.name AS environment_name FROM sandbox_sessions s "
                "LEFT JOIN sandbox_environments e ON e.id = s.environment_id WHERE s.id = ?",
                (session_id,),
            ).fetchone()
        if not row:
            raise NotFoundError("Session not found")
        return SandboxSession.from_row(row)

    def get_session(self, session_id: int, actor: Identity) -> SandboxSession:
        session = self._get(session_id)
        if session.user_id != actor.id and not actor.is_admin:
            raise NotFoundError("Session not found")
        if self._expire_overdue(session_id=session_id):
            session = self._get(session_id)
        return session

    def user_history(self, user_id: int, limit: int = 20) -> list[SandboxSession]:
        if limit < 1:
            raise ValidationError("limit must be positive", field="limit")
        self._expire_overdue(user_id=user_id)
        with get_connection() as conn:
            rows = conn.execute(
                "SELECT s.*, e.name AS environment_name FROM sandbox_sessions s "
                "LEFT JOIN sandbox_environments e ON e.id = s.environment_id "
                "WHERE s.user_id = ? ORDER BY s.start_time DESC, s.id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [SandboxSession.from_row(r) for r in rows]

    def _running_session(self, conn, session_id: int, user_id: int) -> SandboxSession:
        row = conn.execute(
            "SELECT s.*, NULL AS environment_name FROM sandbox_sessions s "
            "WHERE s.id = ? AND s.user_id = ?",
            (session_id, user_id),
        ).fetchone()
        if not row:
            raise NotFoundError("Session not found")
        session = SandboxSession.from_row(row)
        if session.status != "running" or from_timestamp(session.expires_at) <= self.clock():
            raise ConflictError("Session is not running")
        return session

    def log_action(self, session_id: int, user_id: int, action: str, details: dict | None = None) -> None:
        if not action or not action.strip():
            raise ValidationError("Action is required", field="action")
        with transaction() as conn:
            session = self._running_session(conn, session_id, user_id)
            session.actions_log.append(
                {"timestamp": to_timestamp(self.clock()), "action": action.strip(), "details": details or {}}
            )
            conn.execute(
                "UPDATE sandbox_sessions SET actions_log = ? WHERE id = ?",
                (dumps(session.actions_log), session_id),
            )

    def submit_findings(
        self,
        session_id: int,
        user_id: int,
        findings: list[dict],
        notes: str | None = None,
        source_ip: str = "unknown",
    ) -> int:
        for i, finding in enumerate(findings):
            if finding.get("severity") not in FINDING_POINTS:
                raise ValidationError(f"Finding {i} has an unknown severity", field="findings")
            if not finding.get("vulnerability_type"):
                raise ValidationError(f"Finding {i} is missing vulnerability_type", field="findings")

        score = sum(FINDING_POINTS[f["severity"]] for f in findings)
        with transaction() as conn:
            self._running_session(conn, session_id, user_id)
            conn.execute(
                "UPDATE sandbox_sessions SET findings = ?, score = ?, notes = ? WHERE id = ?",
                (dumps(findings), score, notes, session_id),
            )

        self.audit.record(AuditEntry(
            user_id=user_id,
            event_type="sandbox_findings_submitted",
            event_category="security",
            severity="info",
            source_ip=source_ip,
            resource=f"/sandbox/sessions/{session_id}/findings",
            details={
                "session_id": session_id,
                "findings_count": len(findings),
                "score": score,
                "vulnerabilities": [f["vulnerability_type"] for f in findings],
            },
        ))
        return score

    # -- expiry -------------------------------------------------------------

    def _expire_overdue(self, user_id: int | None = None, session_id: int | None = None) -> int:
        now = self.clock()
        sql = f"SELECT *, NULL AS environment_name FROM sandbox_sessions WHERE {_ACTIVE_SQL} AND expires_at <= ?"
        params: list = [to_timestamp(now)]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if session_id is not None:
            sql += " AND id = ?"
            params.append(session_id)

        with get_connection() as conn:
            overdue = [SandboxSession.from_row(r) for r in conn.execute(sql, params).fetchall()]

        expired = 0
        for session in overdue:
            # The session ended at its deadline, not when we noticed
            if not self._finish(session.id, "expired", from_timestamp(session.expires_at)):
                continue
            expired += 1
            self._release(session.container_id)
            logger.info(f"Sandbox session {session.id} expired")
            self.audit.record(AuditEntry(
                user_id=session.user_id,
                event_type="sandbox_session_expired",
                event_category="security",
                severity="info",
                resource=f"/sandbox/sessions/{session.id}",
                details={"session_id": session.id, "container_id": session.container_id},
            ))
        return expired

    def expire_overdue_sessions(self) -> int:
        """Sweep every overdue session; returns how many were expired."""
        return self._expire_overdue()

    def active_session_count(self) -> int:
        with get_connection() as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM sandbox_sessions WHERE {_ACTIVE_SQL} AND expires_at > ?",
                (to_timestamp(self.clock()),),
            ).fetchone()[0]
