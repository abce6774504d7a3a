"""Argus Celery application — task broker, beat scheduler, and configuration.

Initialises the Celery app with Redis as both broker and result backend and
registers the periodic beat schedule (``celery -A argus.celery_app worker``,
``celery -A argus.celery_app beat``).

Beat schedule overview:
    - expire_stale_sessions : every 5 minutes
    - health_check          : every hour
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.schedules import crontab

from argus.config import settings

logger = logging.getLogger("argus.celery")

# ---------------------------------------------------------------------------
# App initialisation
# ---------------------------------------------------------------------------

app = Celery(
    "argus",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["argus.tasks"],
)

# ---------------------------------------------------------------------------
# Serialisation & transport settings
# ---------------------------------------------------------------------------

app.conf.update(
    # Serialisation
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behaviour
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # Queues: scrapes each hold a cloud browser profile for their whole run
    task_routes={
        "argus.tasks.run_scrape_session": {"queue": "scraper"},
        "argus.tasks.*": {"queue": "default"},
    },
    task_default_queue="default",
    # Upper bound for a scrape of max_pages at the configured pacing
    task_time_limit=settings.scrape_max_pages * 120,
    # Keep results for 24 hours
    result_expires=86400,
    # Beat scheduler persistence
    beat_schedule_filename="celerybeat-schedule",
)

# ---------------------------------------------------------------------------
# Beat schedule
# ---------------------------------------------------------------------------

app.conf.beat_schedule = {
    # 1. Fail sessions stuck waiting for login or stalled mid-scrape (every 5 minutes)
    "expire-stale-sessions": {
        "task": "argus.tasks.expire_stale_sessions",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "default"},
    },
    # 2. System health check (every hour)
    "health-check": {
        "task": "argus.tasks.health_check",
        "schedule": crontab(minute=0),
        "options": {"queue": "default"},
    },
}

logger.info(
    "Celery app configured: broker=%s tasks=%d",
    settings.redis_url,
    len(app.conf.beat_schedule),
)
