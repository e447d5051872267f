from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .configuration import Settings, get_settings, sqlite_path
from .database import TranslationDatabase
from .errors import InternalServiceError, JobValidationError
from .job_manager import JobManager
from .models import (
    ErrorResponse,
    HealthStatus,
    JobStatus,
    TranslationAccepted,
    TranslationCreate,
    TranslationDetail,
)
from .supervisor import ReconnectionSupervisor, build_supervisor
from .utils import configure_logging

logger = logging.getLogger(__name__)

ACCEPTED_MESSAGE = "Translation request queued"

router = APIRouter()


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


@router.get("/healthz", response_model=HealthStatus)
def healthcheck(manager: JobManager = Depends(get_job_manager)) -> HealthStatus:
    return HealthStatus(
        status="ok",
        broker="connected" if manager.supervisor.connected else "disconnected",
        jobs=manager.count_jobs(),
    )


@router.post(
    "/translations",
    status_code=202,
    response_model=TranslationAccepted,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def create_translation(payload: TranslationCreate, manager: JobManager = Depends(get_job_manager)) -> TranslationAccepted:
    job = manager.submit(payload.text, payload.targetLanguage)
    return TranslationAccepted(message=ACCEPTED_MESSAGE, requestId=job.request_id, status=job.status)


@router.get("/translations", response_model=List[TranslationDetail])
def list_translations(
    status: Optional[JobStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
    manager: JobManager = Depends(get_job_manager),
) -> List[TranslationDetail]:
    return [job.to_detail() for job in manager.list_jobs(status=status, limit=limit)]


@router.get(
    "/translations/{request_id}",
    response_model=TranslationDetail,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def get_translation(request_id: str, manager: JobManager = Depends(get_job_manager)):
    job = manager.get_job(request_id)
    if not job:
        return _error(404, "Translation request not found")
    return job.to_detail()


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[TranslationDatabase] = None,
    supervisor: Optional[ReconnectionSupervisor] = None,
) -> FastAPI:
    """
    Build the API application.

    The broker connection is made by the supervisor's background thread when
    the application starts, so the API serves status queries (and answers
    submissions with 500) while the broker is unreachable.
    """
    settings = settings or get_settings()
    database = database or TranslationDatabase(sqlite_path(settings.store.url))
    supervisor = supervisor or build_supervisor(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        supervisor.start()
        logger.info(f"Translation API ready on port {settings.api.port}")
        yield
        supervisor.stop()

    app = FastAPI(title="Translation API", version="0.1.0", lifespan=lifespan)
    app.state.job_manager = JobManager(database, supervisor, settings.broker.queue_name)
    app.include_router(router)

    @app.exception_handler(JobValidationError)
    async def validation_error_handler(request: Request, exc: JobValidationError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Invalid request: text and targetLanguage must be strings")

    @app.exception_handler(InternalServiceError)
    async def internal_error_handler(request: Request, exc: InternalServiceError) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error(500, "Internal server error")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"{request.method} {request.url.path} failed unexpectedly: {exc}")
        return _error(500, "Internal server error")

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    configure_logging(settings.logging.level)
    uvicorn.run(app, host=settings.api.host, port=settings.api.port)
