"""Append-only security event log.

Every security-relevant outcome is written here with a risk score and any
threat indicators spotted in its details. ``record`` raises ``StoreError``
when the write fails; callers decide whether that is fatal for them.
"""

import json
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from app.db import dumps, get_connection, loads, to_timestamp
from app.errors import StoreError, ValidationError
from app.models import AuditEvent

logger = logging.getLogger(__name__)

CATEGORIES = ("authentication", "authorization", "data_access", "admin", "security")
SEVERITIES = ("critical", "high", "medium", "low", "info")

SEVERITY_SCORES = {"critical": 80, "high": 60, "medium": 40, "low": 20, "info": 0}
CRITICAL_RISK = 90

SUSPICIOUS_AGENTS = (
    "sqlmap", "nikto", "nmap", "burp", "zap", "metasploit",
    "curl", "wget", "python-requests", "scanner",
)

TIMEFRAMES = {
    # timeframe: (total hours, bucket hours)
    "24h": (24, 1),
    "7d": (24 * 7, 24),
    "30d": (24 * 30, 24),
}

MAX_PAGE_SIZE = 500


@dataclass
class AuditEntry:
    event_type: str
    event_category: str
    severity: str = "info"
    user_id: Optional[int] = None
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    resource: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error_message: Optional[str] = None


@dataclass
class AuditFilter:
    user_id: Optional[int] = None
    event_type: Optional[str] = None
    event_category: Optional[str] = None
    severity: Optional[str] = None
    min_risk_score: Optional[int] = None
    start: Optional[str] = None
    end: Optional[str] = None


def detect_threat_indicators(entry: AuditEntry) -> list[str]:
    indicators = []
    if entry.details:
        content = json.dumps(entry.details, default=str).lower()
        if any(p in content for p in ("union select", "drop table", "insert into", "delete from")):
            indicators.append("sql_injection_attempt")
        if any(p in content for p in ("<script>", "javascript:", "onerror=", "onload=")):
            indicators.append("xss_attempt")
        if any(p in content for p in ("../", "..\\\\", "%2e%2e%2f")):
            indicators.append("path_traversal_attempt")
        if any(p in content for p in ("$(", "`", "&&", "||")):
            indicators.append("command_injection_attempt")

    if "failed_login" in entry.event_type:
        indicators.append("potential_brute_force")
    if "admin" in entry.event_type and not entry.success:
        indicators.append("privilege_escalation_attempt")
    return indicators


def calculate_risk_score(entry: AuditEntry, indicators: list[str]) -> int:
    score = SEVERITY_SCORES[entry.severity]
    if "failed_login" in entry.event_type or "unauthorized" in entry.event_type:
        score += 15
    if entry.event_category == "admin":
        score += 10
    score += 5 * len(indicators)
    if entry.user_agent and any(p in entry.user_agent.lower() for p in SUSPICIOUS_AGENTS):
        score += 20
    if entry.source_ip and "failed" in entry.event_type:
        score += 10
    return max(0, min(100, score))


def parse_time(value: str, field_name: str) -> str:
    """Normalise a caller-supplied ISO time to the stored representation."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid timestamp: {value}", field=field_name)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return to_timestamp(parsed.timestamp())


class AuditLog:
    def __init__(self, high_risk_threshold: int = 70, clock: Callable[[], float] = time.time):
        self.high_risk_threshold = high_risk_threshold
        self.clock = clock

    def record(self, entry: AuditEntry) -> AuditEvent:
        if entry.event_category not in CATEGORIES:
            raise ValidationError(f"Unknown event category: {entry.event_category}", field="event_category")
        if entry.severity not in SEVERITIES:
            raise ValidationError(f"Unknown severity: {entry.severity}", field="severity")

        indicators = detect_threat_indicators(entry)
        risk_score = calculate_risk_score(entry, indicators)
        created_at = to_timestamp(self.clock())

        try:
            with get_connection() as conn:
                cursor = conn.execute(
                    """INSERT INTO security_audit_logs
                       (user_id, event_type, event_category, severity, risk_score, source_ip,
                        user_agent, resource, details, threat_indicators, success,
                        error_message, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.user_id,
                        entry.event_type,
                        entry.event_category,
                        entry.severity,
                        risk_score,
                        entry.source_ip,
                        entry.user_agent,
                        entry.resource,
                        json.dumps(entry.details or {}, default=str),
                        dumps(indicators),
                        int(entry.success),
                        entry.error_message,
                        created_at,
                    ),
                )
                event_id = cursor.lastrowid
        except StoreError:
            logger.error(f"Failed to record security event {entry.event_type} for user {entry.user_id}")
            raise

        if risk_score >= self.high_risk_threshold:
            logger.warning(
                f"High-risk security event {entry.event_type} (risk {risk_score}) "
                f"user={entry.user_id} ip={entry.source_ip} indicators={indicators}"
            )
            self._open_incident(event_id, entry, risk_score, indicators, created_at)

        return AuditEvent(
            id=event_id,
            created_at=created_at,
            user_id=entry.user_id,
            event_type=entry.event_type,
            event_category=entry.event_category,
            severity=entry.severity,
            risk_score=risk_score,
            source_ip=entry.source_ip,
            user_agent=entry.user_agent,
            resource=entry.resource,
            details=dict(entry.details or {}),
            threat_indicators=indicators,
            success=entry.success,
            error_message=entry.error_message,
        )

    def _open_incident(
        self, event_id: int, entry: AuditEntry, risk_score: int, indicators: list[str], created_at: str
    ) -> None:
        """Open an incident for a high-risk event. The event itself is already stored."""
        timeline = [{
            "timestamp": created_at,
            "event": "Incident created by automated detection",
            "details": f"Risk score: {risk_score}, Indicators: {', '.join(indicators)}",
        }]
        try:
            with get_connection() as conn:
                conn.execute(
                    """INSERT INTO security_incidents
                       (audit_log_id, incident_type, severity, status, title, description,
                        affected_users, source_ips, indicators, timeline, created_at)
                       VALUES (?, ?, ?, 'open', ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event_id,
                        f"automated_detection_{entry.event_type}",
                        "critical" if risk_score >= CRITICAL_RISK else "high",
                        f"High-risk security event detected: {entry.event_type}",
                        f"Automated detection of suspicious activity with risk score {risk_score}",
                        dumps([entry.user_id] if entry.user_id is not None else []),
                        dumps([entry.source_ip] if entry.source_ip else []),
                        dumps([
                            {"type": "behavioral", "value": i, "confidence": 0.8} for i in indicators
                        ]),
                        dumps(timeline),
                        created_at,
                    ),
                )
        except StoreError:
            logger.error(f"Failed to open security incident for audit event {event_id}")

    def incidents(self, status: str | None = None, limit: int = 50) -> list[dict]:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        sql = "SELECT * FROM security_incidents"
        params: list = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            {
                **dict(r),
                **{k: loads(r[k], []) for k in ("affected_users", "source_ips", "indicators", "timeline")},
            }
            for r in rows
        ]

    def query(self, filters: AuditFilter, limit: int = 50, offset: int = 0) -> tuple[list[AuditEvent], int]:
        """Filtered events newest-first plus the total number of matches."""
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset")

        clauses, params = [], []
        if filters.user_id is not None:
            clauses.append("user_id = ?")
            params.append(filters.user_id)
        if filters.event_type:
            clauses.append("event_type = ?")
            params.append(filters.event_type)
        if filters.event_category:
            clauses.append("event_category = ?")
            params.append(filters.event_category)
        if filters.severity:
            clauses.append("severity = ?")
            params.append(filters.severity)
        if filters.min_risk_score is not None:
            clauses.append("risk_score >= ?")
            params.append(filters.min_risk_score)
        if filters.start:
            clauses.append("created_at >= ?")
            params.append(parse_time(filters.start, "start_date"))
        if filters.end:
            clauses.append("created_at <= ?")
            params.append(parse_time(filters.end, "end_date"))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with get_connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM security_audit_logs {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM security_audit_logs {where} "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [AuditEvent.from_row(r) for r in rows], total

    def metrics(self, timeframe: str = "24h") -> dict:
        if timeframe not in TIMEFRAMES:
            raise ValidationError("timeframe must be one of 24h, 7d, 30d", field="timeframe")
        hours, bucket_hours = TIMEFRAMES[timeframe]
        now = self.clock()
        start = now - hours * 3600
        bucket_seconds = bucket_hours * 3600
        bucket_count = hours // bucket_hours

        with get_connection() as conn:
            rows = conn.execute(
                "SELECT event_type, event_category, severity, risk_score, success, created_at "
                "FROM security_audit_logs WHERE created_at >= ?",
                (to_timestamp(start),),
            ).fetchall()

        by_category = Counter(r["event_category"] for r in rows)
        by_severity = Counter(r["severity"] for r in rows)
        event_types = Counter(r["event_type"] for r in rows)

        trend = [
            {"start": to_timestamp(start + i * bucket_seconds), "count": 0, "high_risk": 0}
            for i in range(bucket_count)
        ]
        for r in rows:
            ts = datetime.fromisoformat(r["created_at"]).timestamp()
            index = min(bucket_count - 1, max(0, int((ts - start) // bucket_seconds)))
            trend[index]["count"] += 1
            if r["risk_score"] >= self.high_risk_threshold:
                trend[index]["high_risk"] += 1

        return {
            "timeframe": timeframe,
            "total_events": len(rows),
            "high_risk_events": sum(1 for r in rows if r["risk_score"] >= self.high_risk_threshold),
            "failed_logins": sum(1 for r in rows if "login" in r["event_type"] and not r["success"]),
            "admin_actions": by_category.get("admin", 0),
            "threat_indicators": sum(1 for r in rows if r["risk_score"] > 50),
            "by_category": {c: by_category.get(c, 0) for c in CATEGORIES},
            "by_severity": {s: by_severity.get(s, 0) for s in SEVERITIES},
            "top_event_types": [
                {"event_type": t, "count": c} for t, c in event_types.most_common(10)
            ],
            "risk_distribution": {
                "low": sum(1 for r in rows if r["risk_score"] < 30),
                "medium": sum(1 for r in rows if 30 <= r["risk_score"] < self.high_risk_threshold),
                "high": sum(1 for r in rows if r["risk_score"] >= self.high_risk_threshold),
            },
            "trend": trend,
        }
