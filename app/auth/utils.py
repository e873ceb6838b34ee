import re
import sqlite3

import bcrypt
from fastapi import Request

from app.db import get_connection
from app.errors import ConflictError, ValidationError
from app.models import Identity

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


def validate_username(username: str) -> None:
    if not username:
        raise ValidationError("Username is required", field="username")
    if len(username) < 3 or len(username) > 50:
        raise ValidationError("Username must be between 3 and 50 characters", field="username")
    if not USERNAME_RE.match(username):
        raise ValidationError(
            "Username can only contain letters, numbers, underscores, and hyphens",
            field="username",
        )


def validate_password(password: str) -> None:
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long", field="password")
    if not (
        re.search(r"[a-z]", password)
        and re.search(r"[A-Z]", password)
        and re.search(r"[0-9]", password)
    ):
        raise ValidationError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number",
            field="password",
        )


def create_user(username: str, password: str, is_admin: bool = False, is_site_owner: bool = False) -> Identity:
    try:
        with get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO users (username, password_hash, is_admin, is_site_owner) VALUES (?, ?, ?, ?)",
                (username, hash_password(password), int(is_admin), int(is_site_owner)),
            )
            user_id = cursor.lastrowid
    except sqlite3.IntegrityError:
        raise ConflictError("Username already exists")
    return Identity(id=user_id, username=username, is_admin=is_admin, is_site_owner=is_site_owner)


def get_user_row(username: str):
    with get_connection() as conn:
        return conn.execute(
            "SELECT id, username, password_hash, is_admin, is_site_owner, is_banned "
            "FROM users WHERE username = ?",
            (username,),
        ).fetchone()


def identity_from_row(row) -> Identity:
    return Identity(
        id=row["id"],
        username=row["username"],
        is_admin=bool(row["is_admin"]),
        is_site_owner=bool(row["is_site_owner"]),
        is_banned=bool(row["is_banned"]),
    )


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"
