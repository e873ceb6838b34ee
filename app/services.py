"""Wiring of the control-plane components.

``build_services`` is called once at startup and the result is parked on
``app.state.services``; routers reach it through the dependencies in
``app.auth.router``. Tests build their own with a fixed clock.
"""

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from app.auth.session import RevocationSet, SessionAuthority
from app.config import Settings, settings as default_settings
from app.ctf.challenges import ChallengeEngine
from app.sandbox.orchestrator import SandboxOrchestrator
from app.security.audit import AuditLog
from app.security.mfa import MFAManager
from app.security.ratelimit import BucketStore, RateLimiter, RateLimitPolicy, build_bucket_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    authority: SessionAuthority
    bucket_store: BucketStore
    login_limiter: RateLimiter
    message_limiter: RateLimiter
    sandbox_limiter: RateLimiter
    flag_limiter: RateLimiter
    audit: AuditLog
    mfa: MFAManager
    challenges: ChallengeEngine
    sandbox: SandboxOrchestrator


def _get_provisioner(config: Settings):
    if not config.sandbox_use_docker:
        return None
    from app.sandbox.docker_mgr import DockerManager

    try:
        return DockerManager()
    except Exception as e:
        logger.warning(f"Docker not available, sandbox sessions will not get containers: {e}")
        return None


def build_services(
    config: Settings | None = None,
    clock: Callable[[], float] = time.time,
    bucket_store: BucketStore | None = None,
    provisioner=None,
) -> Services:
    config = config or default_settings
    store = bucket_store or build_bucket_store(
        config.rate_limit_backend, config.redis_url, config.rate_limit_grace_seconds
    )

    def limiter(name: str, max_attempts: int, window_seconds: int) -> RateLimiter:
        return RateLimiter(RateLimitPolicy(name, max_attempts, window_seconds * 1000), store, clock=clock)

    audit = AuditLog(high_risk_threshold=config.high_risk_threshold, clock=clock)
    sandbox_limiter = limiter("sandbox_start", config.sandbox_start_max_attempts, config.sandbox_start_window_seconds)

    services = Services(
        authority=SessionAuthority(
            config.secret_key,
            algorithm=config.jwt_algorithm,
            ttl=timedelta(minutes=config.jwt_expire_minutes),
            revocations=RevocationSet(clock),
            store_check=config.session_store_check,
            clock=clock,
        ),
        bucket_store=store,
        login_limiter=limiter("login", config.login_max_attempts, config.login_window_seconds),
        message_limiter=limiter("message", config.message_max_attempts, config.message_window_seconds),
        sandbox_limiter=sandbox_limiter,
        flag_limiter=limiter("flag_submit", config.flag_submit_max_attempts, config.flag_submit_window_seconds),
        audit=audit,
        mfa=MFAManager(
            audit,
            issuer=config.mfa_issuer,
            backup_code_count=config.mfa_backup_code_count,
            drift_steps=config.totp_drift_steps,
            clock=clock,
        ),
        challenges=ChallengeEngine(audit, clock=clock),
        sandbox=SandboxOrchestrator(
            audit,
            sandbox_limiter,
            provisioner=provisioner if provisioner is not None else _get_provisioner(config),
            base_url=config.sandbox_base_url,
            clock=clock,
        ),
    )
    logger.info(f"Control plane services ready (rate limit backend: {config.rate_limit_backend})")
    return services
