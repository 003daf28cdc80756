import asyncio
import logging
import uuid

from fastapi import FastAPI, HTTPException, status
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from sqlalchemy import text

from app.config import settings
from app.auth import router as auth_router
from app.routers.chat import router as chat_router
from app.routers.jobs import router as jobs_router
from app.core import exceptions
from app.core.logging import configure_logging
from app.database import AsyncSessionLocal
from app.jobs.worker import default_job_context, start_workers, stop_workers

logger = logging.getLogger(__name__)
job_worker_tasks: list[asyncio.Task] = []

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# CORS must be added before other middleware
configured_origins = [str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS]
default_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
]
allow_origins = configured_origins if settings.APP_ENV == "production" else list(dict.fromkeys([*default_origins, *configured_origins]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

# Exception Handlers
app.add_exception_handler(RequestValidationError, exceptions.validation_exception_handler)  # type: ignore
app.add_exception_handler(IntegrityError, exceptions.integrity_exception_handler)  # type: ignore
app.add_exception_handler(exceptions.AppError, exceptions.app_exception_handler)  # type: ignore

# Routers
app.include_router(auth_router.router, prefix=f"{settings.API_V1_STR}/auth", tags=["Auth"])
app.include_router(chat_router, prefix=f"{settings.API_V1_STR}/chat", tags=["Chat"])
app.include_router(jobs_router, prefix=f"{settings.API_V1_STR}/admin/jobs", tags=["Jobs"])

@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/healthz")
async def healthz():
    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.exception("Health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database unavailable",
        ) from exc
    return {"status": "ok", "database": "ok"}

@app.get("/")
async def root():
    return {"message": "Welcome to the Home Care Chat API", "docs": "/docs"}


@app.on_event("startup")
async def startup_job_workers() -> None:
    global job_worker_tasks
    configure_logging()
    _validate_security_settings()
    if not settings.JOB_WORKER_ENABLED:
        logger.info("Job worker disabled by config")
        return
    if any(not task.done() for task in job_worker_tasks):
        return
    job_worker_tasks = start_workers(AsyncSessionLocal, default_job_context())
    logger.info("Job workers started (concurrency=%s)", len(job_worker_tasks))


@app.on_event("shutdown")
async def shutdown_job_workers() -> None:
    global job_worker_tasks
    await stop_workers(job_worker_tasks)
    job_worker_tasks = []


def _validate_security_settings() -> None:
    if settings.APP_ENV != "production":
        return

    errors: list[str] = []
    if len(settings.SECRET_KEY.strip()) < 24:
        errors.append("SECRET_KEY must be at least 24 characters in production.")
    if not settings.BACKEND_CORS_ORIGINS:
        errors.append("BACKEND_CORS_ORIGINS must be explicitly configured in production.")
    if settings.STORAGE_BACKEND.lower() == "s3" and not settings.S3_BUCKET:
        errors.append("S3_BUCKET must be set when STORAGE_BACKEND=s3.")

    if errors:
        raise RuntimeError("; ".join(errors))
