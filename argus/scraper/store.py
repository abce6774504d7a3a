"""Durable CRUD over scraper jobs, sessions and policies.

Every public coroutine opens its own short-lived ``AsyncSession`` so that
concurrent scrapes never share a unit of work. SQLAlchemy failures are
re-raised as :class:`~argus.errors.PersistenceError`; the store performs no
network calls of its own.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from argus.db import ScrapedPolicy, ScraperJob, ScraperSession
from argus.errors import NotFoundError, PersistenceError, ValidationError
from argus.scraper.models import (
    JobRecord,
    JobStatus,
    PolicyRecord,
    ScraperConfig,
    SessionRecord,
    SessionStatus,
    validate_config,
)

logger = logging.getLogger("argus.scraper.store")

_SESSION_FIELDS = frozenset(
    {
        "status",
        "browser_url",
        "profile_id",
        "current_page",
        "total_pages",
        "scraped_count",
        "error_message",
    }
)
_JOB_FIELDS = frozenset(
    {
        "status",
        "total_records",
        "scraped_records",
        "error_message",
        "started_at",
        "completed_at",
    }
)
_POLICY_FIELDS = tuple(
    name for name in PolicyRecord.model_fields if name != "policy_number"
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _plain(fields: dict[str, Any]) -> dict[str, Any]:
    """Unwrap enum members so they are stored as their string values."""
    return {
        key: (value.value if isinstance(value, (SessionStatus, JobStatus)) else value)
        for key, value in fields.items()
    }


def _check_fields(fields: dict[str, Any], allowed: frozenset[str], kind: str) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown {kind} field(s): {', '.join(sorted(unknown))}")


class SessionStore:
    """Persistence for :class:`ScraperJob`, :class:`ScraperSession` and
    :class:`ScrapedPolicy` rows.

    Parameters
    ----------
    sessionmaker:
        Factory bound to the service's async engine.
    """

    def __init__(self, sessionmaker: async_sessionmaker) -> None:
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    yield db
        except SQLAlchemyError as exc:
            logger.error("Store operation failed: %s", exc)
            raise PersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        config: ScraperConfig,
        job_name: str,
        created_by: str = "anonymous",
    ) -> JobRecord:
        """Insert a ``pending`` job for ``config``.

        Raises
        ------
        ValidationError
            If the config is missing required fields or ``job_name`` is blank.
        """
        errors = validate_config(config)
        if not job_name or not job_name.strip():
            errors.insert(0, "Job name is required")
        if errors:
            raise ValidationError("; ".join(errors), errors)

        now = _now()
        async with self._transaction() as db:
            job = ScraperJob(
                carrier_name=config.carrier_name,
                job_name=job_name.strip(),
                status=JobStatus.PENDING.value,
                total_records=0,
                scraped_records=0,
                config=config.persisted(),
                created_by=created_by or "anonymous",
                created_at=now,
                updated_at=now,
            )
            db.add(job)
            await db.flush()
            record = JobRecord.model_validate(job)
        logger.info("Created job %s (%s) for %s", record.id, record.job_name, record.carrier_name)
        return record

    async def get_job(self, job_id: uuid.UUID) -> JobRecord:
        async with self._transaction() as db:
            job = await db.get(ScraperJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            return JobRecord.model_validate(job)

    async def update_job(self, job_id: uuid.UUID, **fields: Any) -> None:
        """Patch a job; a job that no longer exists is logged and skipped."""
        _check_fields(fields, _JOB_FIELDS, "job")
        values = _plain(fields)
        values.setdefault("updated_at", _now())
        async with self._transaction() as db:
            result = await db.execute(
                update(ScraperJob).where(ScraperJob.id == job_id).values(**values)
            )
            if result.rowcount == 0:
                logger.warning("update_job: job %s no longer exists; skipped", job_id)

    async def list_jobs(self, limit: int = 50) -> list[JobRecord]:
        async with self._transaction() as db:
            rows = await db.scalars(
                select(ScraperJob).order_by(ScraperJob.created_at.desc()).limit(limit)
            )
            return [JobRecord.model_validate(job) for job in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        job_id: uuid.UUID,
        current_page: int = 0,
        scraped_count: int = 0,
        total_pages: Optional[int] = None,
    ) -> SessionRecord:
        """Insert an ``initializing`` session for an existing job."""
        now = _now()
        async with self._transaction() as db:
            job = await db.get(ScraperJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            row = ScraperSession(
                job_id=job_id,
                status=SessionStatus.INITIALIZING.value,
                current_page=current_page,
                total_pages=total_pages,
                scraped_count=scraped_count,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            await db.flush()
            record = SessionRecord.model_validate(
                {
                    "id": row.id,
                    "job_id": row.job_id,
                    "status": row.status,
                    "current_page": row.current_page,
                    "total_pages": row.total_pages,
                    "scraped_count": row.scraped_count,
                    "created_at": row.created_at,
                    "updated_at": row.updated_at,
                    "job": JobRecord.model_validate(job),
                }
            )
        logger.info("Created session %s for job %s", record.id, job_id)
        return record

    async def get_session(self, session_id: uuid.UUID) -> SessionRecord:
        """Return the session joined with its job."""
        async with self._transaction() as db:
            row = await db.scalar(
                select(ScraperSession)
                .options(selectinload(ScraperSession.job))
                .where(ScraperSession.id == session_id)
            )
            if row is None:
                raise NotFoundError(f"Session {session_id} not found")
            return SessionRecord.model_validate(row)

    async def update_session(self, session_id: uuid.UUID, **fields: Any) -> None:
        """Patch a session.

        Raises :class:`NotFoundError` for an unknown session. When the
        session's job has been deleted the update is logged and skipped.
        """
        _check_fields(fields, _SESSION_FIELDS, "session")
        values = _plain(fields)
        values.setdefault("updated_at", _now())
        async with self._transaction() as db:
            row = await db.get(ScraperSession, session_id)
            if row is None:
                raise NotFoundError(f"Session {session_id} not found")
            if row.job_id is None:
                logger.warning(
                    "update_session: job for session %s no longer exists; skipped",
                    session_id,
                )
                return
            for key, value in values.items():
                setattr(row, key, value)

    async def transition_session(
        self,
        session_id: uuid.UUID,
        expected: SessionStatus | Iterable[SessionStatus],
        target: SessionStatus,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the session status.

        Moves the session to ``target`` only if its stored status is one of
        ``expected``. Returns ``True`` when this call performed the
        transition, ``False`` when the stored status did not match.
        """
        _check_fields(fields, _SESSION_FIELDS - {"status"}, "session")
        if isinstance(expected, SessionStatus):
            expected = (expected,)
        expected_values = [status.value for status in expected]
        values = _plain(fields)
        values["status"] = target.value
        values.setdefault("updated_at", _now())
        async with self._transaction() as db:
            result = await db.execute(
                update(ScraperSession)
                .where(
                    ScraperSession.id == session_id,
                    ScraperSession.status.in_(expected_values),
                )
                .values(**values)
            )
            changed = result.rowcount == 1
        if changed:
            logger.info("Session %s -> %s", session_id, target.value)
        return changed

    async def list_sessions(
        self, status: Optional[SessionStatus] = None, limit: int = 50
    ) -> list[SessionRecord]:
        async with self._transaction() as db:
            stmt = (
                select(ScraperSession)
                .options(selectinload(ScraperSession.job))
                .order_by(ScraperSession.created_at.desc())
                .limit(limit)
            )
            if status is not None:
                stmt = stmt.where(ScraperSession.status == status.value)
            rows = await db.scalars(stmt)
            return [SessionRecord.model_validate(row) for row in rows]

    async def find_stale_sessions(
        self, status: SessionStatus, older_than: datetime
    ) -> list[SessionRecord]:
        """Sessions in ``status`` whose last update is before ``older_than``."""
        async with self._transaction() as db:
            rows = await db.scalars(
                select(ScraperSession)
                .options(selectinload(ScraperSession.job))
                .where(
                    ScraperSession.status == status.value,
                    ScraperSession.updated_at < older_than,
                )
                .order_by(ScraperSession.updated_at)
            )
            return [SessionRecord.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    async def save_policies(
        self,
        job_id: uuid.UUID,
        carrier_name: str,
        records: Iterable[PolicyRecord],
    ) -> int:
        """Upsert ``records`` by ``(job_id, policy_number)``.

        A later record for a policy number already stored on the job replaces
        the earlier one. Returns the number of records written.
        """
        batch: dict[str, PolicyRecord] = {}
        for record in records:
            batch[record.policy_number] = record
        if not batch:
            return 0

        async with self._transaction() as db:
            existing = {
                row.policy_number: row
                for row in await db.scalars(
                    select(ScrapedPolicy).where(
                        ScrapedPolicy.job_id == job_id,
                        ScrapedPolicy.policy_number.in_(list(batch)),
                    )
                )
            }
            for policy_number, record in batch.items():
                values = record.model_dump(include=set(_POLICY_FIELDS))
                row = existing.get(policy_number)
                if row is None:
                    db.add(
                        ScrapedPolicy(
                            job_id=job_id,
                            carrier_name=carrier_name,
                            policy_number=policy_number,
                            created_at=_now(),
                            **values,
                        )
                    )
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
        logger.debug(
            "Saved %d policies for job %s (%d updated)", len(batch), job_id, len(existing)
        )
        return len(batch)

    async def list_policies(
        self, job_id: uuid.UUID, limit: Optional[int] = None
    ) -> list[dict[str, Any]]:
        """Stored policies for a job, oldest first, as plain dicts."""
        async with self._transaction() as db:
            stmt = (
                select(ScrapedPolicy)
                .where(ScrapedPolicy.job_id == job_id)
                .order_by(ScrapedPolicy.created_at, ScrapedPolicy.policy_number)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = await db.scalars(stmt)
            return [
                {
                    "id": str(row.id),
                    "job_id": str(row.job_id),
                    "carrier_name": row.carrier_name,
                    "policy_number": row.policy_number,
                    **{name: getattr(row, name) for name in _POLICY_FIELDS},
                    "created_at": row.created_at,
                }
                for row in rows
            ]
