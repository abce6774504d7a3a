"""Argus Celery tasks — background scrapes and the login watchdog.

Each task builds its own :class:`~argus.context.ServiceContext`, runs the
async implementation through ``_run_async`` and tears the context down, so no
engine or browser handle outlives a task.

Task inventory:
    1. run_scrape_session     — drive a session already moved to ``scraping``
    2. expire_stale_sessions  — fail sessions stuck waiting for login or stalled
    3. health_check           — verify database connectivity
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Coroutine, TypeVar

from celery import Task

from argus.celery_app import app
from argus.config import settings
from argus.context import ServiceContext
from argus.scraper.models import SessionStatus

logger = logging.getLogger("argus.tasks")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------


def _run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Execute an async coroutine from a synchronous Celery task.

    Args:
        coro: The coroutine to execute.

    Returns:
        Whatever the coroutine returns.
    """
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Task 1: run_scrape_session
# ---------------------------------------------------------------------------


@app.task(
    name="argus.tasks.run_scrape_session",
    bind=True,
    acks_late=True,
    queue="scraper",
)
def run_scrape_session(self: Task, session_id: str) -> dict:
    """Scrape every page for a session the API moved to ``scraping``.

    Not retried by Celery: failures are recorded on the session and the
    operator decides whether to retry it.

    Returns:
        Dict with ``session_id``, ``status``, ``current_page``,
        ``scraped_count`` and ``error_message``.
    """
    logger.info("Task: run_scrape_session started for %s", session_id)
    return _run_async(_run_scrape_session_async(uuid.UUID(session_id)))


async def _run_scrape_session_async(session_id: uuid.UUID) -> dict:
    context = ServiceContext.from_settings(settings)
    try:
        await context.startup()
        record = await context.manager.run_scrape(session_id)
    finally:
        await context.aclose()
    result = {
        "session_id": str(session_id),
        "status": record.status.value,
        "current_page": record.current_page,
        "scraped_count": record.scraped_count,
        "error_message": record.error_message,
    }
    logger.info("Task: run_scrape_session finished: %s", result)
    return result


# ---------------------------------------------------------------------------
# Task 2: expire_stale_sessions
# ---------------------------------------------------------------------------


@app.task(
    name="argus.tasks.expire_stale_sessions",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    queue="default",
)
def expire_stale_sessions(self: Task) -> dict:
    """Fail sessions waiting for login longer than ``login_timeout_minutes``
    and scrapes with no page progress for ``scrape_stall_minutes``.

    Returns:
        Dict with the number of ``expired`` sessions.
    """
    logger.info("Task: expire_stale_sessions started")
    try:
        expired = _run_async(_expire_stale_sessions_async())
    except Exception as exc:
        logger.error("expire_stale_sessions failed: %s", exc)
        raise self.retry(exc=exc)
    return {"expired": expired, "timeout_minutes": settings.login_timeout_minutes}


async def _expire_stale_sessions_async() -> int:
    context = ServiceContext.from_settings(settings)
    try:
        await context.startup()
        return await context.manager.expire_stale_sessions()
    finally:
        await context.aclose()


# ---------------------------------------------------------------------------
# Task 3: health_check
# ---------------------------------------------------------------------------


@app.task(
    name="argus.tasks.health_check",
    bind=True,
    max_retries=1,
    default_retry_delay=30,
    queue="default",
)
def health_check(self: Task) -> dict:
    """Verify database connectivity and count sessions in flight.

    Returns:
        Dict with ``status`` (healthy/unhealthy) and detail fields.
    """
    logger.info("Task: health_check started")
    return _run_async(_health_check_async())


async def _health_check_async() -> dict:
    report: dict = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "unknown",
        "waiting_for_login": 0,
        "scraping": 0,
    }
    context = ServiceContext.from_settings(settings)
    try:
        if not await context.check_database():
            report["database"] = "error"
            report["status"] = "unhealthy"
            return report
        report["database"] = "ok"
        for status in (SessionStatus.WAITING_FOR_LOGIN, SessionStatus.SCRAPING):
            sessions = await context.store.list_sessions(status, limit=500)
            report[status.value] = len(sessions)
    finally:
        await context.aclose()
    logger.info("Health check: %s", report)
    return report
