"""Periodic housekeeping run by Celery beat."""

from __future__ import annotations

import logging

from app.celery_app import celery_app
from app.db import init_db
from app.services import Services, build_services

logger = logging.getLogger(__name__)

_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        init_db()
        _services = build_services()
    return _services


def expire_sandbox_sessions(services: Services) -> int:
    expired = services.sandbox.expire_overdue_sessions()
    if expired:
        logger.info("Expired %s overdue sandbox session(s)", expired)
    return expired


@celery_app.task(name="app.tasks.maintenance.expire_sandbox_sessions")
def expire_sandbox_sessions_task() -> int:
    return expire_sandbox_sessions(get_services())
