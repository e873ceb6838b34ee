from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from app.auth.router import get_current_user, get_services, require_admin
from app.auth.utils import get_client_ip
from app.models import Identity
from app.security.audit import AuditFilter
from app.services import Services

router = APIRouter(prefix="/api/security", tags=["security"])


class MFASetupRequest(BaseModel):
    action: Literal["generate", "verify"]
    token: str | None = None


class MFATokenRequest(BaseModel):
    token: str


@router.post("/mfa/setup")
async def mfa_setup(
    body: MFASetupRequest,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    if body.action == "generate":
        setup = services.mfa.setup_totp(user.id, user.username)
        return {
            "success": True,
            "secret": setup["secret"],
            "qr_code_url": setup["qr_payload"],
            "backup_codes": setup["backup_codes"],
        }

    services.mfa.verify_and_enable(user.id, body.token or "", source_ip=get_client_ip(request))
    return {"success": True, "message": "MFA enabled"}


@router.get("/mfa/status")
async def mfa_status(user: Identity = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"success": True, **services.mfa.get_status(user.id)}


@router.post("/mfa/disable")
async def mfa_disable(
    body: MFATokenRequest,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    services.mfa.disable_mfa(user.id, body.token, source_ip=get_client_ip(request))
    return {"success": True, "message": "MFA disabled"}


@router.post("/mfa/backup-codes")
async def mfa_backup_codes(
    body: MFATokenRequest,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    codes = services.mfa.generate_new_backup_codes(user.id, body.token, source_ip=get_client_ip(request))
    return {"success": True, "backup_codes": codes}


@router.get("/audit-logs")
async def audit_logs(
    user_id: int | None = None,
    event_type: str | None = None,
    event_category: str | None = None,
    severity: str | None = None,
    min_risk_score: int | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    limit: int = 50,
    offset: int = 0,
    admin: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    filters = AuditFilter(
        user_id=user_id,
        event_type=event_type,
        event_category=event_category,
        severity=severity,
        min_risk_score=min_risk_score,
        start=start_date,
        end=end_date,
    )
    events, total = services.audit.query(filters, limit=limit, offset=offset)
    return {
        "success": True,
        "logs": [e.to_dict() for e in events],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/metrics")
async def security_metrics(
    timeframe: str = "24h",
    admin: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return {"success": True, "metrics": services.audit.metrics(timeframe)}


@router.get("/incidents")
async def security_incidents(
    status: str | None = None,
    limit: int = 50,
    admin: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return {"success": True, "incidents": services.audit.incidents(status, limit)}
