from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from scrapeflow.api.router import api_router
from scrapeflow.config.settings import get_settings
from scrapeflow.db.pool import close_pool, get_pool
from scrapeflow.models.api import ErrorBody, ErrorResponse
from scrapeflow.queue.jobs import enqueue_schedule_trigger, enqueue_scrape_job
from scrapeflow.services.factory import create_scraping_service
from scrapeflow.services.scheduler_backend import APSchedulerBackend
from scrapeflow.utils.errors import (
    CircuitOpenError,
    InvalidStateError,
    InvalidStateTransition,
    NotFoundError,
    RateLimitedError,
    ScrapeflowError,
    StaleUpdateError,
    ValidationError,
)

log = structlog.get_logger()

_STATUS_CODES: list[tuple[type[ScrapeflowError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidStateTransition, 409),
    (InvalidStateError, 409),
    (StaleUpdateError, 409),
    (RateLimitedError, 429),
    (CircuitOpenError, 503),
]


def status_code_for(exc: ScrapeflowError) -> int:
    for error_type, status in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status
    return 500


async def scrapeflow_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ScrapeflowError)
    status = status_code_for(exc)
    if status >= 500:
        log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    body = ErrorResponse(
        error=ErrorBody(
            code=exc.code,
            message=exc.message,
            retryable=status in (429, 503) or exc.retryable,
            details=exc.details,
        )
    )
    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after_ms:
        headers["Retry-After"] = str(max(1, exc.retry_after_ms // 1000))
    return JSONResponse(status_code=status, content=jsonable_encoder(body), headers=headers)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    from scrapeflow.utils.logger import setup_logging

    setup_logging()
    settings = get_settings()
    pool = await get_pool()
    backend = APSchedulerBackend()
    backend.start()

    app.state.service = create_scraping_service(
        settings,
        pool=pool,
        backend=backend,
        execute=enqueue_schedule_trigger if settings.scheduler_enqueue else None,
    )
    app.state.dispatch = enqueue_scrape_job
    log.info("server_started", base_url=settings.base_url)
    yield
    backend.shutdown()
    await close_pool()


def create_app(with_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Scrapeflow",
        version="0.1.0",
        description="Scheduled web data collection with quality-scored storage",
        lifespan=lifespan if with_lifespan else None,
    )
    app.add_exception_handler(ScrapeflowError, scrapeflow_error_handler)
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
