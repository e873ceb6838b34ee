from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from app.auth.router import get_current_user, get_services, require_admin
from app.auth.utils import get_client_ip, get_user_agent
from app.ctf.challenges import NewChallenge
from app.errors import RateLimitError
from app.models import Identity
from app.security.audit import AuditEntry
from app.services import Services

router = APIRouter(prefix="/api/security/challenges", tags=["challenges"])


class ChallengeCreateRequest(BaseModel):
    title: str
    category: str
    difficulty: str
    points: int
    flag: str
    description: str | None = None
    flag_format: str | None = None
    hints: list[str] = Field(default_factory=list)
    is_active: bool = True
    max_attempts: int | None = None
    time_limit: int | None = None


class FlagSubmission(BaseModel):
    flag: str


@router.get("")
async def list_challenges(
    category: str | None = None,
    difficulty: str | None = None,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    challenges = services.challenges.list_challenges(category=category, difficulty=difficulty, user_id=user.id)
    return {"success": True, "challenges": [c.to_dict() for c in challenges]}


@router.post("")
async def create_challenge(
    body: ChallengeCreateRequest,
    admin: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    challenge = services.challenges.create_challenge(NewChallenge(**body.model_dump()), admin)
    return {"success": True, "challenge": challenge.to_dict()}


@router.get("/stats")
async def challenge_stats(
    limit: int = 50,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return {
        "success": True,
        "stats": services.challenges.user_stats(user.id),
        "leaderboard": services.challenges.leaderboard(limit),
    }


@router.post("/{challenge_id}/submit")
async def submit_flag(
    challenge_id: int,
    body: FlagSubmission,
    request: Request,
    user: Identity = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    key = str(user.id)
    if not services.flag_limiter.is_allowed(key):
        message = "Too many flag submissions. Please slow down."
        services.audit.record(AuditEntry(
            user_id=user.id,
            event_type="challenge_submission_rejected",
            event_category="security",
            severity="low",
            source_ip=get_client_ip(request),
            user_agent=get_user_agent(request),
            resource=f"/challenges/{challenge_id}",
            details={"challenge_id": challenge_id, "reason": "rate_limited"},
            success=False,
            error_message=message,
        ))
        raise RateLimitError(message, services.flag_limiter.retry_after_seconds(key))

    result = services.challenges.submit_flag(
        challenge_id,
        user.id,
        body.flag,
        source_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return {"success": True, **result}
