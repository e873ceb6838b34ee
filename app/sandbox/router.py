from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from app.auth.router import get_current_user, get_services, require_admin
from app.auth.utils import get_client_ip, get_user_agent
from app.models import Identity
from app.sandbox.orchestrator import NewEnvironment
from app.services import Services

router = APIRouter(prefix="/api/security/sandbox", tags=["sandbox"])


class EnvironmentCreateRequest(BaseModel):
    name: str
    environment_type: str
    description: str | None = None
    image: str | None = None
    target_services: list[Any] = Field(default_factory=list)
    allowed_tools: list[str] = Field(default_factory=list)
    restrictions: dict = Field(default_factory=dict)
    max_duration: int = 60
    is_active: bool = True


class SessionStartRequest(BaseModel):
    environment_id: int


class ActionRequest(BaseModel):
    action: str
    details: dict = Field(default_factory=dict)


class Finding(BaseModel):
    vulnerability_type: str
    severity: str
    description: str | None = None
    evidence: str | None = None


class FindingsRequest(BaseModel):
    findings: list[Finding]
    notes: str | None = None


@router.get("/environments")
async def list_environments(
    environment_type: str | None = Query(None, alias="type"),
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    environments = services.sandbox.list_environments(environment_type)
    return {"success": True, "environments": [e.to_dict() for e in environments]}


@router.post("/environments")
async def create_environment(
    body: EnvironmentCreateRequest,
    admin: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    environment = services.sandbox.create_environment(NewEnvironment(**body.model_dump()), admin)
    return {"success": True, "environment": environment.to_dict()}


@router.get("/sessions")
async def session_history(
    limit: int = 20,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    sessions = services.sandbox.user_history(user.id, limit)
    return {"success": True, "sessions": [s.to_dict() for s in sessions]}


@router.post("/sessions")
async def start_session(
    body: SessionStartRequest,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    session, connection_info = services.sandbox.start_session(
        body.environment_id,
        user.id,
        source_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return {"success": True, "session": session.to_dict(), "connection_info": connection_info}


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: int,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {"success": True, "session": services.sandbox.get_session(session_id, user).to_dict()}


@router.post("/sessions/{session_id}/stop")
async def stop_session(
    session_id: int,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    session = services.sandbox.stop_session(session_id, user, source_ip=get_client_ip(request))
    return {"success": True, "session": session.to_dict()}


@router.post("/sessions/{session_id}/actions")
async def log_action(
    session_id: int,
    body: ActionRequest,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    services.sandbox.log_action(session_id, user.id, body.action, body.details)
    return {"success": True}


@router.post("/sessions/{session_id}/findings")
async def submit_findings(
    session_id: int,
    body: FindingsRequest,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    score = services.sandbox.submit_findings(
        session_id,
        user.id,
        [f.model_dump() for f in body.findings],
        notes=body.notes,
        source_ip=get_client_ip(request),
    )
    return {"success": True, "score": score}
