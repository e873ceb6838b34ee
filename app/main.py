import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.db import init_db
from app.errors import ControlPlaneError
from app.services import build_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    logger.info("SchoolChat control plane started")
    yield
    # Cleanup on shutdown
    provisioner = app.state.services.sandbox.provisioner
    if provisioner is not None:
        try:
            logger.info("Cleaning up sandbox containers...")
            provisioner.cleanup_all_sandbox_containers()
        except Exception as e:
            logger.warning(f"Cleanup error: {e}")


app = FastAPI(title="SchoolChat Control Plane", version="0.1.0", lifespan=lifespan)


@app.exception_handler(ControlPlaneError)
async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    field = None
    if errors:
        loc = [str(part) for part in errors[0].get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or None
    content = {"success": False, "error": "Invalid request"}
    if field:
        content["field"] = field
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


@app.get("/health")
async def health():
    return {"status": "ok"}


# Import routers after app is created to avoid circular imports
from app.auth.router import router as auth_router  # noqa: E402
from app.ctf.router import router as challenges_router  # noqa: E402
from app.sandbox.router import router as sandbox_router  # noqa: E402
from app.security.router import router as security_router  # noqa: E402

app.include_router(auth_router)
app.include_router(security_router)
app.include_router(challenges_router)
app.include_router(sandbox_router)
