"""Argus FastAPI application — scraper session workflow API.

Endpoints
---------
POST  /sessions                     — start a session for a carrier
POST  /sessions/confirm-ready       — operator has logged in
POST  /sessions/scrape              — begin scraping (runs in the background)
GET   /sessions/{id}/status         — session joined with its job
POST  /sessions/{id}/stop           — fail a session with "Stopped by user"
POST  /sessions/{id}/retry          — new session for a failed session's job
GET   /sessions                     — recent sessions, optionally by status
GET   /jobs                         — 50 most recent jobs
GET   /jobs/{id}/policies           — up to 500 stored policies
GET   /jobs/{id}/export             — CSV or JSON download
GET   /carriers                     — registered carrier portals
GET   /health                       — liveness and database check

Authentication is via the ``X-API-Key`` header on every endpoint except
``/health``. Errors are returned as ``{"error": "..."}``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Callable, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from argus import __version__
from argus.api.schemas import (
    CarrierSummary,
    HealthResponse,
    MessageResponse,
    PolicyRow,
    SessionActionRequest,
    SessionStatusResponse,
    StartSessionRequest,
    StartSessionResponse,
)
from argus.carriers import CARRIER_CONFIGS, get_carrier_config
from argus.context import ServiceContext
from argus.errors import (
    ArgusError,
    BrowserAcquisitionError,
    InvalidStateTransition,
    LoginError,
    NotFoundError,
    PersistenceError,
    ScrapeLaunchError,
    ValidationError,
)
from argus.scraper.export import EXPORT_FORMATS, export_filename, to_csv, to_json
from argus.scraper.models import JobRecord, SessionRecord, SessionStatus
from argus.scraper.session_manager import StartResult
from argus.tasks import run_scrape_session

logger = logging.getLogger("argus.api")

POLICY_LIST_LIMIT = 500
JOB_LIST_LIMIT = 50

# Domain error -> HTTP status. Lookup walks the exception's MRO.
ERROR_STATUS: dict[type[ArgusError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateTransition: status.HTTP_409_CONFLICT,
    BrowserAcquisitionError: status.HTTP_502_BAD_GATEWAY,
    LoginError: status.HTTP_502_BAD_GATEWAY,
    PersistenceError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ArgusError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_context(request: Request) -> ServiceContext:
    """Return the application's :class:`ServiceContext` or raise 503."""
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service context not initialised.",
        )
    return context


async def require_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    context: ServiceContext = Depends(get_context),
) -> str:
    """Validate the ``X-API-Key`` header.

    Raises
    ------
    HTTPException
        403 if the key is missing or invalid.
    """
    if not x_api_key or x_api_key != context.settings.argus_api_key:
        logger.warning("Invalid API key attempt: %s...", (x_api_key or "")[:6])
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key.",
        )
    return x_api_key


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _start_response(result: StartResult) -> StartSessionResponse:
    return StartSessionResponse(
        session_id=result.session_id,
        job_id=result.job_id,
        status=result.status.value,
        message=result.message,
    )


async def _launch_scrape(app: FastAPI, context: ServiceContext, session_id: UUID) -> None:
    """Run the scrape on a Celery worker or as a task on this event loop."""
    if context.settings.scrape_executor == "celery":
        await context.manager.release_browser(session_id)
        try:
            run_scrape_session.delay(str(session_id))
        except Exception as exc:
            message = f"Could not queue scrape: {exc}"
            logger.error("Session %s: %s", session_id, message)
            await context.manager.abort_scrape(session_id, message)
            raise ScrapeLaunchError(message) from exc
        logger.info("Queued scrape of session %s on Celery", session_id)
        return

    task = asyncio.create_task(
        context.manager.run_scrape(session_id), name=f"scrape-{session_id}"
    )
    tasks: set[asyncio.Task] = app.state.scrape_tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)


def _carrier_summary(name: str, context: ServiceContext) -> CarrierSummary:
    scraper_config = get_carrier_config(name, context.settings)
    return CarrierSummary(
        carrier_name=name,
        login_mode=scraper_config.login_mode.value,
        portal_url=scraper_config.portal_url,
        max_pages=scraper_config.max_pages,
        rate_limit_ms=scraper_config.rate_limit_ms,
        credentials_configured=bool(scraper_config.username and scraper_config.password),
    )


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(context_factory: Optional[Callable[[], ServiceContext]] = None) -> FastAPI:
    """Build the FastAPI application.

    Parameters
    ----------
    context_factory:
        Builds the :class:`ServiceContext` at startup. Defaults to
        :meth:`ServiceContext.from_settings`; tests supply one wired with a
        fake browser controller and portal driver.
    """
    factory = context_factory or ServiceContext.from_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Argus API starting up (version=%s)", __version__)
        context = factory()
        await context.startup()
        app.state.context = context
        app.state.scrape_tasks = set()

        yield

        logger.info("Argus API shutting down")
        tasks: set[asyncio.Task] = app.state.scrape_tasks
        for task in list(tasks):
            task.cancel()
        if tasks:
            logger.warning("Cancelled %d running scrape(s)", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
        await context.aclose()

    app = FastAPI(
        title="Argus Carrier Portal Scraper API",
        description=(
            "Session-based scraping of insurance carrier agent portals through "
            "remote browser profiles."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Middleware — request logging ─────────────────────────────────

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every inbound request with timing."""
        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "%s %s -> %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    # ── Error handlers ───────────────────────────────────────────────

    @app.exception_handler(ArgusError)
    async def argus_error_handler(request: Request, exc: ArgusError) -> JSONResponse:
        code = next(
            (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": _validation_message(exc)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    # ── Sessions ─────────────────────────────────────────────────────

    @app.post(
        "/sessions",
        response_model=StartSessionResponse,
        summary="Start a scraper session",
        tags=["Sessions"],
    )
    async def start_session(
        body: StartSessionRequest,
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> StartSessionResponse:
        result = await context.manager.start(
            body.job_name,
            requested_by=body.user_email or "anonymous",
            carrier_name=body.carrier_name,
        )
        return _start_response(result)

    @app.post(
        "/sessions/confirm-ready",
        response_model=MessageResponse,
        summary="Confirm the operator has logged in",
        tags=["Sessions"],
    )
    async def confirm_ready(
        body: SessionActionRequest,
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> MessageResponse:
        await context.manager.confirm_ready(body.session_id)
        return MessageResponse(message='Ready to scrape. Click "Start Scraping" to begin.')

    @app.post(
        "/sessions/scrape",
        response_model=MessageResponse,
        summary="Begin scraping a ready session",
        tags=["Sessions"],
    )
    async def begin_scrape(
        body: SessionActionRequest,
        request: Request,
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> MessageResponse:
        if await context.manager.begin_scrape(body.session_id):
            await _launch_scrape(request.app, context, body.session_id)
        return MessageResponse(message="Scraping started. Monitor progress in Status tab.")

    @app.get(
        "/sessions/{session_id}/status",
        response_model=SessionStatusResponse,
        summary="Poll a session's progress",
        tags=["Sessions"],
    )
    async def session_status(
        session_id: UUID,
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> SessionStatusResponse:
        record = await context.manager.status(session_id)
        return SessionStatusResponse.from_record(record)

    @app.post(
        "/sessions/{session_id}/stop",
        response_model=MessageResponse,
        summary="Stop a session",
        tags=["Sessions"],
    )
    async def stop_session(
        session_id: UUID,
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> MessageResponse:
        await context.manager.stop(session_id)
        return MessageResponse(message="Session stopped")

    @app.post(
        "/sessions/{session_id}/retry",
        response_model=StartSessionResponse,
        summary="Retry a failed session",
        tags=["Sessions"],
    )
    async def retry_session(
        session_id: UUID,
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> StartSessionResponse:
        result = await context.manager.retry(session_id)
        return _start_response(result)

    @app.get(
        "/sessions",
        response_model=list[SessionRecord],
        summary="List recent sessions",
        tags=["Sessions"],
    )
    async def list_sessions(
        status_filter: Optional[str] = Query(None, alias="status"),
        limit: int = Query(50, ge=1, le=500),
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> list[SessionRecord]:
        session_status_value: Optional[SessionStatus] = None
        if status_filter:
            try:
                session_status_value = SessionStatus(status_filter)
            except ValueError:
                raise ValidationError(f"Unknown session status {status_filter!r}") from None
        return await context.store.list_sessions(session_status_value, limit=limit)

    # ── Jobs ─────────────────────────────────────────────────────────

    @app.get(
        "/jobs",
        response_model=list[JobRecord],
        summary="List recent jobs",
        tags=["Jobs"],
    )
    async def list_jobs(
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> list[JobRecord]:
        return await context.store.list_jobs(limit=JOB_LIST_LIMIT)

    @app.get(
        "/jobs/{job_id}/policies",
        response_model=list[PolicyRow],
        summary="Policies scraped for a job",
        tags=["Jobs"],
    )
    async def job_policies(
        job_id: UUID,
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> list[PolicyRow]:
        await context.store.get_job(job_id)
        return await context.store.list_policies(job_id, limit=POLICY_LIST_LIMIT)

    @app.get(
        "/jobs/{job_id}/export",
        summary="Download a job's policies as CSV or JSON",
        tags=["Jobs"],
    )
    async def export_job(
        job_id: UUID,
        format: str = Query("csv"),
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> Response:
        fmt = format.lower()
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format {format!r}; use csv or json")
        await context.store.get_job(job_id)
        policies = await context.store.list_policies(job_id)

        headers = {"Content-Disposition": f'attachment; filename="{export_filename(job_id, fmt)}"'}
        if fmt == "json":
            return Response(to_json(policies), media_type="application/json", headers=headers)
        if not policies:
            raise NotFoundError("No data to export")
        return Response(to_csv(policies), media_type="text/csv", headers=headers)

    # ── System ───────────────────────────────────────────────────────

    @app.get(
        "/carriers",
        response_model=list[CarrierSummary],
        summary="Registered carrier portals",
        tags=["System"],
    )
    async def list_carriers(
        _key: str = Depends(require_api_key),
        context: ServiceContext = Depends(get_context),
    ) -> list[CarrierSummary]:
        return [_carrier_summary(name, context) for name in sorted(CARRIER_CONFIGS)]

    @app.get(
        "/health",
        response_model=HealthResponse,
        summary="System health check",
        tags=["System"],
    )
    async def health_check(
        context: ServiceContext = Depends(get_context),
    ) -> HealthResponse:
        database_ok = await context.check_database()
        return HealthResponse(
            status="healthy" if database_ok else "degraded",
            version=__version__,
            database=database_ok,
            active_sessions=context.manager.active_sessions,
            timestamp=datetime.now(timezone.utc),
        )

    return app


app = create_app()
