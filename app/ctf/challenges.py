"""Scored flag challenges.

Flags are stored as keyed digests and compared in constant time. Submissions
run inside a serialized write transaction so the attempt ceiling and the
"points once per user and challenge" rule hold under concurrent requests; a
partial unique index on scoring attempts backs the latter up at the store.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from app.crypto import constant_time_equals, keyed_digest
from app.db import dumps, get_connection, to_timestamp, transaction
from app.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.models import Challenge, Identity
from app.security.audit import AuditEntry, AuditLog

logger = logging.getLogger(__name__)

FLAG_PURPOSE = "challenge-flag"
DIFFICULTIES = ("easy", "medium", "hard", "expert")


def normalise_flag(flag: str) -> str:
    return flag.strip().lower()


def hash_flag(flag: str) -> str:
    return keyed_digest(normalise_flag(flag), FLAG_PURPOSE)


@dataclass
class NewChallenge:
    title: str
    category: str
    difficulty: str
    points: int
    flag: str
    description: Optional[str] = None
    flag_format: Optional[str] = None
    hints: list[str] = field(default_factory=list)
    is_active: bool = True
    max_attempts: Optional[int] = None
    time_limit: Optional[int] = None

    def validate(self) -> None:
        if not self.title or not self.title.strip():
            raise ValidationError("Title is required", field="title")
        if not self.category or not self.category.strip():
            raise ValidationError("Category is required", field="category")
        if self.difficulty not in DIFFICULTIES:
            raise ValidationError(f"Difficulty must be one of {', '.join(DIFFICULTIES)}", field="difficulty")
        if self.points <= 0:
            raise ValidationError("Points must be positive", field="points")
        if not self.flag or not self.flag.strip():
            raise ValidationError("Flag is required", field="flag")
        if self.max_attempts is not None and self.max_attempts <= 0:
            raise ValidationError("max_attempts must be positive", field="max_attempts")
        if self.time_limit is not None and self.time_limit <= 0:
            raise ValidationError("time_limit must be positive", field="time_limit")


class ChallengeEngine:
    def __init__(self, audit: AuditLog, clock: Callable[[], float] = time.time):
        self.audit = audit
        self.clock = clock

    def create_challenge(self, spec: NewChallenge, creator: Identity) -> Challenge:
        if not creator.is_admin:
            raise AuthorizationError("Admin access required")
        spec.validate()

        with get_connection() as conn:
            cursor = conn.execute(
                """INSERT INTO security_challenges
                   (title, description, category, difficulty, points, flag_format, flag_hash,
                    hints, is_active, max_attempts, time_limit, created_by, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    spec.title.strip(),
                    spec.description,
                    spec.category.strip(),
                    spec.difficulty,
                    spec.points,
                    spec.flag_format,
                    hash_flag(spec.flag),
                    dumps(spec.hints),
                    int(spec.is_active),
                    spec.max_attempts,
                    spec.time_limit,
                    creator.id,
                    to_timestamp(self.clock()),
                ),
            )
            row = conn.execute(
                "SELECT * FROM security_challenges WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()

        challenge = Challenge.from_row(row)
        self.audit.record(AuditEntry(
            user_id=creator.id,
            event_type="challenge_created",
            event_category="admin",
            severity="info",
            resource=f"/challenges/{challenge.id}",
            details={
                "challenge_id": challenge.id,
                "title": challenge.title,
                "category": challenge.category,
                "difficulty": challenge.difficulty,
            },
        ))
        return challenge

    def list_challenges(
        self,
        category: str | None = None,
        difficulty: str | None = None,
        include_inactive: bool = False,
        user_id: int | None = None,
    ) -> list[Challenge]:
        clauses, params = [], []
        if category:
            clauses.append("category = ?")
            params.append(category)
        if difficulty:
            clauses.append("difficulty = ?")
            params.append(difficulty)
        if not include_inactive:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_challenges {where} ORDER BY created_at DESC, id DESC", params
            ).fetchall()
            progress = {}
            if user_id is not None:
                for p in conn.execute(
                    "SELECT challenge_id, COUNT(*) AS attempts, MAX(is_correct) AS solved "
                    "FROM challenge_attempts WHERE user_id = ? GROUP BY challenge_id",
                    (user_id,),
                ).fetchall():
                    progress[p["challenge_id"]] = p

        challenges = []
        for row in rows:
            challenge = Challenge.from_row(row)
            p = progress.get(challenge.id)
            if p:
                challenge.user_solved = bool(p["solved"])
                challenge.user_attempts = p["attempts"]
            challenges.append(challenge)
        return challenges

    def submit_flag(
        self,
        challenge_id: int,
        user_id: int,
        submitted_flag: str,
        source_ip: str = "unknown",
        user_agent: str = "unknown",
    ) -> dict:
        submitted_flag = submitted_flag or ""
        rejection = None
        challenge = None
        correct = False
        points_awarded = 0
        first_solve = False

        with transaction() as conn:
            challenge = conn.execute(
                "SELECT id, title, category, points, is_active, max_attempts, flag_hash "
                "FROM security_challenges WHERE id = ?",
                (challenge_id,),
            ).fetchone()
            if not challenge or not challenge["is_active"]:
                rejection = NotFoundError("Challenge not found or inactive")
            else:
                attempts = conn.execute(
                    "SELECT COUNT(*) FROM challenge_attempts WHERE challenge_id = ? AND user_id = ?",
                    (challenge_id, user_id),
                ).fetchone()[0]
                max_attempts = challenge["max_attempts"]
                if max_attempts and attempts >= max_attempts:
                    rejection = ConflictError(
                        f"Maximum attempts ({max_attempts}) exceeded for this challenge"
                    )

            if rejection is None:
                correct = constant_time_equals(hash_flag(submitted_flag), challenge["flag_hash"])
                if correct:
                    already = conn.execute(
                        "SELECT 1 FROM challenge_attempts "
                        "WHERE challenge_id = ? AND user_id = ? AND points_awarded > 0",
                        (challenge_id, user_id),
                    ).fetchone()
                    first_solve = already is None
                    points_awarded = challenge["points"] if first_solve else 0
                points_awarded = self._insert_attempt(
                    conn, challenge_id, user_id, correct, points_awarded,
                    len(submitted_flag), source_ip, user_agent,
                )
                first_solve = first_solve and points_awarded > 0

        if rejection is not None:
            self.audit.record(AuditEntry(
                user_id=user_id,
                event_type="challenge_submission_rejected",
                event_category="security",
                severity="low",
                source_ip=source_ip,
                user_agent=user_agent,
                resource=f"/challenges/{challenge_id}",
                details={"challenge_id": challenge_id, "reason": rejection.message},
                success=False,
                error_message=rejection.message,
            ))
            logger.info(f"Rejected submission from user {user_id} for challenge {challenge_id}: {rejection.message}")
            raise rejection

        if correct and first_solve:
            event_type, message = "challenge_solved", (
                f"Congratulations! You solved the challenge and earned {points_awarded} points!"
            )
        elif correct:
            event_type, message = "challenge_resubmitted", "Correct, but you have already solved this challenge."
        else:
            event_type, message = "challenge_attempt_failed", "Incorrect flag. Try again!"

        self.audit.record(AuditEntry(
            user_id=user_id,
            event_type=event_type,
            event_category="security",
            severity="info",
            source_ip=source_ip,
            user_agent=user_agent,
            resource=f"/challenges/{challenge_id}",
            details={
                "challenge_id": challenge_id,
                "challenge_title": challenge["title"],
                "challenge_category": challenge["category"],
                "points_awarded": points_awarded,
                "submitted_flag_length": len(submitted_flag),
            },
            success=correct,
        ))
        return {"correct": correct, "points_awarded": points_awarded, "message": message}

    def _insert_attempt(
        self, conn, challenge_id, user_id, correct, points, submitted_length, source_ip, user_agent
    ) -> int:
        sql = (
            "INSERT INTO challenge_attempts (challenge_id, user_id, is_correct, points_awarded, "
            "submitted_length, source_ip, user_agent, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
        )
        created_at = to_timestamp(self.clock())
        try:
            conn.execute(sql, (challenge_id, user_id, int(correct), points, submitted_length,
                               source_ip, user_agent, created_at))
        except sqlite3.IntegrityError:
            # Another writer already holds the scoring attempt
            points = 0
            conn.execute(sql, (challenge_id, user_id, int(correct), 0, submitted_length,
                               source_ip, user_agent, created_at))
        return points

    def leaderboard(self, limit: int = 50) -> list[dict]:
        if limit < 1:
            raise ValidationError("limit must be positive", field="limit")
        return self._ranking(limit)

    def _ranking(self, limit: int | None = None) -> list[dict]:
        # The last scoring attempt is when a user reached their total; earlier wins ties
        sql = """
            SELECT a.user_id, u.username, SUM(a.points_awarded) AS total_points,
                   COUNT(*) AS challenges_solved, MAX(a.created_at) AS last_solve
            FROM challenge_attempts a
            LEFT JOIN users u ON u.id = a.user_id
            WHERE a.points_awarded > 0
            GROUP BY a.user_id
            ORDER BY total_points DESC, last_solve ASC, a.user_id ASC
        """
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            {
                "rank": i + 1,
                "user_id": r["user_id"],
                "username": r["username"] or "Unknown",
                "total_points": r["total_points"],
                "challenges_solved": r["challenges_solved"],
                "last_solve": r["last_solve"],
            }
            for i, r in enumerate(rows)
        ]

    def user_stats(self, user_id: int) -> dict:
        with get_connection() as conn:
            solved = conn.execute(
                """SELECT a.challenge_id, a.points_awarded, a.created_at,
                          c.title, c.category, c.difficulty
                   FROM challenge_attempts a
                   JOIN security_challenges c ON c.id = a.challenge_id
                   WHERE a.user_id = ? AND a.points_awarded > 0
                   ORDER BY a.created_at DESC, a.id DESC""",
                (user_id,),
            ).fetchall()
            total_attempts = conn.execute(
                "SELECT COUNT(*) FROM challenge_attempts WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

        by_category: dict[str, int] = {}
        by_difficulty: dict[str, int] = {}
        for s in solved:
            by_category[s["category"]] = by_category.get(s["category"], 0) + 1
            by_difficulty[s["difficulty"]] = by_difficulty.get(s["difficulty"], 0) + 1

        position = None
        for entry in self._ranking():
            if entry["user_id"] == user_id:
                position = entry["rank"]
                break

        return {
            "total_solved": len(solved),
            "total_points": sum(s["points_awarded"] for s in solved),
            "total_attempts": total_attempts,
            "challenges_by_category": by_category,
            "challenges_by_difficulty": by_difficulty,
            "recent_solves": [
                {
                    "challenge_id": s["challenge_id"],
                    "challenge_title": s["title"],
                    "points_awarded": s["points_awarded"],
                    "solved_at": s["created_at"],
                }
                for s in solved[:10]
            ],
            "leaderboard_position": position,
        }
