from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from app.db import loads


@dataclass(frozen=True)
class Identity:
    id: int
    username: str
    is_admin: bool = False
    is_site_owner: bool = False
    is_banned: bool = False
    issued_at: Optional[float] = None
    expires_at: Optional[float] = None
    jti: Optional[str] = None

    def public(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "is_admin": self.is_admin,
            "is_site_owner": self.is_site_owner,
            "is_banned": self.is_banned,
        }


@dataclass
class MFAEnrollment:
    user_id: int
    totp_secret: Optional[str]
    backup_codes: list[str]
    is_enabled: bool
    last_used_at: Optional[str]

    @classmethod
    def from_row(cls, row) -> "MFAEnrollment":
        return cls(
            user_id=row["user_id"],
            totp_secret=row["totp_secret"],
            backup_codes=loads(row["backup_codes"], []),
            is_enabled=bool(row["is_enabled"]),
            last_used_at=row["last_used_at"],
        )


@dataclass(frozen=True)
class AuditEvent:
    id: int
    created_at: str
    user_id: Optional[int]
    event_type: str
    event_category: str
    severity: str
    risk_score: int
    source_ip: Optional[str]
    user_agent: Optional[str]
    resource: Optional[str]
    details: dict
    threat_indicators: list[str]
    success: bool
    error_message: Optional[str]

    @classmethod
    def from_row(cls, row) -> "AuditEvent":
        return cls(
            id=row["id"],
            created_at=row["created_at"],
            user_id=row["user_id"],
            event_type=row["event_type"],
            event_category=row["event_category"],
            severity=row["severity"],
            risk_score=row["risk_score"],
            source_ip=row["source_ip"],
            user_agent=row["user_agent"],
            resource=row["resource"],
            details=loads(row["details"], {}),
            threat_indicators=loads(row["threat_indicators"], []),
            success=bool(row["success"]),
            error_message=row["error_message"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Challenge:
    """Public view of a challenge. The flag hash never leaves the store layer."""

    id: int
    title: str
    description: Optional[str]
    category: str
    difficulty: str
    points: int
    flag_format: Optional[str]
    hints: list[str]
    is_active: bool
    max_attempts: Optional[int]
    time_limit: Optional[int]
    created_by: Optional[int]
    created_at: str
    user_solved: bool = False
    user_attempts: int = 0

    @classmethod
    def from_row(cls, row) -> "Challenge":
        return cls(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            category=row["category"],
            difficulty=row["difficulty"],
            points=row["points"],
            flag_format=row["flag_format"],
            hints=loads(row["hints"], []),
            is_active=bool(row["is_active"]),
            max_attempts=row["max_attempts"],
            time_limit=row["time_limit"],
            created_by=row["created_by"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ChallengeAttempt:
    id: int
    challenge_id: int
    user_id: int
    is_correct: bool
    points_awarded: int
    source_ip: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, row) -> "ChallengeAttempt":
        return cls(
            id=row["id"],
            challenge_id=row["challenge_id"],
            user_id=row["user_id"],
            is_correct=bool(row["is_correct"]),
            points_awarded=row["points_awarded"],
            source_ip=row["source_ip"],
            created_at=row["created_at"],
        )


@dataclass
class SandboxEnvironment:
    id: int
    name: str
    description: Optional[str]
    environment_type: str
    image: Optional[str]
    target_services: list[Any]
    allowed_tools: list[str]
    restrictions: dict
    max_duration: int
    is_active: bool
    created_by: Optional[int]
    created_at: str

    @classmethod
    def from_row(cls, row) -> "SandboxEnvironment":
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            environment_type=row["environment_type"],
            image=row["image"],
            target_services=loads(row["target_services"], []),
            allowed_tools=loads(row["allowed_tools"], []),
            restrictions=loads(row["restrictions"], {}),
            max_duration=row["max_duration"],
            is_active=bool(row["is_active"]),
            created_by=row["created_by"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


TERMINAL_STATUSES = ("stopped", "expired")
ACTIVE_STATUSES = ("starting", "running")


@dataclass
class SandboxSession:
    id: int
    environment_id: int
    user_id: int
    status: str
    container_id: Optional[str]
    connection_info: dict
    start_time: str
    expires_at: str
    end_time: Optional[str]
    duration: Optional[int]
    score: int
    notes: Optional[str]
    actions_log: list[dict] = field(default_factory=list)
    findings: list[dict] = field(default_factory=list)
    environment_name: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row) -> "SandboxSession":
        keys = row.keys()
        return cls(
            id=row["id"],
            environment_id=row["environment_id"],
            user_id=row["user_id"],
            status=row["status"],
            container_id=row["container_id"],
            connection_info=loads(row["connection_info"], {}),
            start_time=row["start_time"],
            expires_at=row["expires_at"],
            end_time=row["end_time"],
            duration=row["duration"],
            score=row["score"],
            notes=row["notes"],
            actions_log=loads(row["actions_log"], []),
            findings=loads(row["findings"], []),
            environment_name=row["environment_name"] if "environment_name" in keys else None,
        )

    def to_dict(self) -> dict:
        return asdict(self)
