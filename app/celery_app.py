"""Celery application setup."""

from __future__ import annotations

from celery import Celery

from app.config import settings

celery_app = Celery(
    "schoolchat_control_plane",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks.maintenance"],
)

celery_app.conf.beat_schedule = {
    "expire-sandbox-sessions": {
        "task": "app.tasks.maintenance.expire_sandbox_sessions",
        "schedule": float(settings.sandbox_sweep_seconds),
    },
}
