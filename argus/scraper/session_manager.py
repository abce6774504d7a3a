"""Session state machine — the orchestrator of a carrier scrape.

States::

    initializing -> waiting_for_login -> ready -> scraping -> completed
          \\               \\               \\          \\
           +---------------+---------------+----------+--> failed

``completed`` and ``failed`` are terminal; a retry starts a new session on the
same job. Every status change goes through
:meth:`SessionStore.transition_session`, a compare-and-set on the stored
status, so duplicate requests (double clicks, two API workers) cannot both win
a transition.

Browser handles held by this process live in ``_active`` keyed by session id.
Releasing a handle pops its entry, which is what guarantees that a handle is
released exactly once no matter how many exit paths race for it. The profile id
is also stored on the session row, so a process that ends a session it does
not hold (the watchdog, a stop sent to another API worker) stops the profile
by id, and the holder drops its entry once it sees the session has ended.
Cancellation is cooperative: ``stop`` flips the stored status and an
in-process flag, and the scrape loop checks both between pages.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from argus.carriers import get_carrier_config
from argus.config import Settings, settings
from argus.errors import (
    AcquisitionTimeout,
    ExtractionError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from argus.scraper.models import (
    NON_TERMINAL_STATUSES,
    JobRecord,
    JobStatus,
    LoginMode,
    ScraperConfig,
    SessionRecord,
    SessionStatus,
)
from argus.scraper.normalizer import normalize_rows
from argus.scraper.portal_driver import PortalDriver
from argus.scraper.remote_browser import ConnectionHandle, GoLoginController
from argus.scraper.store import SessionStore

logger = logging.getLogger("argus.scraper.sessions")

STOPPED_BY_USER = "Stopped by user"
LOGIN_TIMED_OUT = "Login confirmation timed out"
SCRAPE_STALLED = "Scrape made no progress"
SCRAPE_CANCELLED = "Scrape was interrupted"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StartResult:
    """Outcome of :meth:`SessionManager.start` and :meth:`SessionManager.retry`."""

    session_id: uuid.UUID
    job_id: uuid.UUID
    status: SessionStatus
    message: str


@dataclass
class ActiveSession:
    """In-process resources of one session."""

    session_id: uuid.UUID
    handle: Optional[ConnectionHandle] = None
    page: Any = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    busy: bool = False


class SessionManager:
    """Drive scraper sessions through their lifecycle.

    Parameters
    ----------
    store:
        Durable job / session / policy persistence.
    controller:
        Remote browser controller (GoLogin in production).
    driver:
        Portal driver used for login, extraction and pagination.
    config:
        Argus ``Settings``; supplies the default carrier, page-failure
        tolerance and the login watchdog timeout.
    """

    def __init__(
        self,
        store: SessionStore,
        controller: GoLoginController,
        driver: PortalDriver,
        config: Settings = settings,
    ) -> None:
        self.store = store
        self.controller = controller
        self.driver = driver
        self.config = config
        self._active: dict[uuid.UUID, ActiveSession] = {}

    @property
    def active_sessions(self) -> int:
        """Sessions holding in-process browser resources."""
        return len(self._active)

    # ------------------------------------------------------------------
    # start / retry
    # ------------------------------------------------------------------

    async def start(
        self,
        job_name: str,
        requested_by: str = "anonymous",
        carrier_name: Optional[str] = None,
    ) -> StartResult:
        """Create a job and a session and prepare the browser.

        The config is validated before anything is written. For automatic
        login carriers the profile is acquired, attached and logged in here;
        manual-login carriers skip acquisition and wait for the operator.

        Raises
        ------
        ValidationError
            Unknown carrier or incomplete carrier config; nothing is stored.
        BrowserAcquisitionError, LoginError, PersistenceError
            Preparation failed; the session and job are recorded as failed
            before the error propagates.
        """
        carrier = carrier_name or self.config.default_carrier
        scraper_config = get_carrier_config(carrier, self.config)
        await self._prune_finished()
        job = await self.store.create_job(scraper_config, job_name, requested_by)
        session = await self.store.create_session(
            job.id, current_page=0, scraped_count=0, total_pages=scraper_config.max_pages
        )
        logger.info(
            "Starting session %s for %s (job %s, requested by %s)",
            session.id, job.carrier_name, job.id, requested_by,
        )
        return await self._prepare(session.id, job, scraper_config)

    async def retry(self, session_id: uuid.UUID) -> StartResult:
        """Start a new session for the job of a failed session.

        The new session inherits ``current_page`` and ``scraped_count`` so that
        carriers with a page URL template resume after the last stored page.
        """
        session = await self.store.get_session(session_id)
        if session.status is not SessionStatus.FAILED:
            raise InvalidStateTransition(session_id, session.status.value, "retry")
        if session.job is None:
            raise NotFoundError(f"Job for session {session_id} no longer exists")

        await self._prune_finished()
        job = session.job
        scraper_config = self._resolve_config(job)
        new_session = await self.store.create_session(
            job.id,
            current_page=session.current_page,
            scraped_count=session.scraped_count,
            total_pages=session.total_pages,
        )
        await self.store.update_job(
            job.id, status=JobStatus.PENDING, error_message=None, completed_at=None
        )
        logger.info(
            "Retrying session %s as %s from page %d",
            session_id, new_session.id, session.current_page,
        )
        return await self._prepare(new_session.id, job, scraper_config)

    async def _prepare(
        self, session_id: uuid.UUID, job: JobRecord, scraper_config: ScraperConfig
    ) -> StartResult:
        # Busy until the session settles: a concurrent stop only flags the
        # entry and this method releases whatever handle it acquired.
        active = self._active.setdefault(session_id, ActiveSession(session_id))
        active.busy = True
        try:
            if scraper_config.login_mode is LoginMode.AUTOMATIC:
                await self._attach(session_id, active, scraper_config, scraper_config.login_url)
                await self.driver.login(active.page, scraper_config)
                message = (
                    f"Session started. Credentials submitted to {job.carrier_name} portal; "
                    "confirm when the portal is ready."
                )
            else:
                message = f"Session started. Please login to {job.carrier_name} portal."
            moved = await self.store.transition_session(
                session_id, SessionStatus.INITIALIZING, SessionStatus.WAITING_FOR_LOGIN
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.error("Session %s failed during preparation: %s", session_id, error)
            try:
                await self._fail(session_id, job.id, error, (SessionStatus.INITIALIZING,))
            finally:
                active.busy = False
                await self._release(session_id)
            raise
        active.busy = False

        if not moved or active.cancel.is_set():
            await self._release(session_id)
            current = await self.store.get_session(session_id)
            return StartResult(session_id, job.id, current.status, "Session was stopped during start.")
        return StartResult(session_id, job.id, SessionStatus.WAITING_FOR_LOGIN, message)

    # ------------------------------------------------------------------
    # confirm_ready
    # ------------------------------------------------------------------

    async def confirm_ready(self, session_id: uuid.UUID) -> SessionRecord:
        """``waiting_for_login`` -> ``ready``; a no-op when already ``ready``."""
        session = await self.store.get_session(session_id)
        if session.status is SessionStatus.READY:
            return session
        if session.status is not SessionStatus.WAITING_FOR_LOGIN:
            raise InvalidStateTransition(session_id, session.status.value, "confirm")

        moved = await self.store.transition_session(
            session_id, SessionStatus.WAITING_FOR_LOGIN, SessionStatus.READY
        )
        current = await self.store.get_session(session_id)
        if not moved and current.status is not SessionStatus.READY:
            raise InvalidStateTransition(session_id, current.status.value, "confirm")
        return current

    # ------------------------------------------------------------------
    # scrape
    # ------------------------------------------------------------------

    async def scrape(self, session_id: uuid.UUID) -> SessionRecord:
        """Begin and run a scrape to completion in the calling task."""
        if await self.begin_scrape(session_id):
            return await self.run_scrape(session_id)
        return await self.store.get_session(session_id)

    async def begin_scrape(self, session_id: uuid.UUID) -> bool:
        """``ready`` -> ``scraping`` and mark the job ``in_progress``.

        Returns ``True`` when this call made the transition (the caller must
        then run :meth:`run_scrape`), ``False`` when the session was already
        scraping.
        """
        session = await self.store.get_session(session_id)
        if session.status is SessionStatus.SCRAPING:
            return False
        if session.status is not SessionStatus.READY:
            raise InvalidStateTransition(session_id, session.status.value, "scrape")

        moved = await self.store.transition_session(
            session_id, SessionStatus.READY, SessionStatus.SCRAPING
        )
        if not moved:
            current = await self.store.get_session(session_id)
            if current.status is SessionStatus.SCRAPING:
                return False
            raise InvalidStateTransition(session_id, current.status.value, "scrape")
        if session.job_id is not None:
            await self.store.update_job(
                session.job_id, status=JobStatus.IN_PROGRESS, started_at=_now()
            )
        return True

    async def run_scrape(self, session_id: uuid.UUID) -> SessionRecord:
        """Walk the portal page by page for a session in ``scraping``.

        Progress is written after every page. Two consecutive extraction
        failures, a browser error or a persistence error fail the session.
        The browser handle is released on every exit path.
        """
        session = await self.store.get_session(session_id)
        if session.status is not SessionStatus.SCRAPING:
            logger.warning(
                "run_scrape: session %s is %s, not scraping", session_id, session.status.value
            )
            return session
        if session.job is None:
            logger.warning("run_scrape: job for session %s no longer exists", session_id)
            await self._release(session_id)
            return session

        job = session.job
        scraper_config = self._resolve_config(job)
        active = self._active.setdefault(session_id, ActiveSession(session_id))
        active.busy = True
        try:
            await self._scrape_pages(session, job, scraper_config, active)
        except asyncio.CancelledError:
            logger.warning("Scrape of session %s cancelled", session_id)
            await self._fail(session_id, job.id, SCRAPE_CANCELLED, (SessionStatus.SCRAPING,))
            raise
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("Scrape of session %s failed", session_id)
            await self._fail(session_id, job.id, error, (SessionStatus.SCRAPING,))
        finally:
            active.busy = False
            await self._release(session_id)
        return await self.store.get_session(session_id)

    async def _scrape_pages(
        self,
        session: SessionRecord,
        job: JobRecord,
        scraper_config: ScraperConfig,
        active: ActiveSession,
    ) -> None:
        session_id = session.id
        if await self._cancelled(session_id, active):
            return
        if active.page is None:
            await self._attach(session_id, active, scraper_config, scraper_config.portal_url)
            if scraper_config.login_mode is LoginMode.AUTOMATIC:
                await self.driver.login(active.page, scraper_config)
        page = active.page

        page_number = 1
        scraped = 0
        if session.current_page and scraper_config.page_url_template:
            page_number = session.current_page + 1
            scraped = session.scraped_count
            logger.info("Resuming session %s at page %d", session_id, page_number)
        await self.driver.open_portal(page, scraper_config, page_number)

        failures = 0
        while True:
            if await self._cancelled(session_id, active):
                return
            try:
                rows = await self.driver.extract_page(page, scraper_config)
            except ExtractionError as exc:
                failures += 1
                logger.warning(
                    "Session %s page %d: %s (%d consecutive)",
                    session_id, page_number, exc, failures,
                )
                if failures >= self.config.max_consecutive_page_failures:
                    raise
            else:
                failures = 0
                records = normalize_rows(rows)
                await self.store.save_policies(job.id, job.carrier_name, records)
                scraped += len(records)
                await self.store.update_session(
                    session_id, current_page=page_number, scraped_count=scraped
                )
                await self.store.update_job(job.id, scraped_records=scraped)
                logger.info(
                    "Session %s page %d: %d rows (%d total)",
                    session_id, page_number, len(records), scraped,
                )

            if not await self.driver.has_next_page(page, scraper_config, page_number):
                break
            await self.driver.rate_limit(scraper_config)
            if await self._cancelled(session_id, active):
                return
            page_number = await self.driver.go_to_next_page(page, scraper_config, page_number)

        completed = await self.store.transition_session(
            session_id, SessionStatus.SCRAPING, SessionStatus.COMPLETED, total_pages=page_number
        )
        if not completed:
            logger.info("Session %s left scraping before completion; status kept", session_id)
            return
        await self.store.update_job(
            job.id,
            status=JobStatus.COMPLETED,
            completed_at=_now(),
            total_records=scraped,
            scraped_records=scraped,
        )
        logger.info("Session %s completed: %d policies over %d pages", session_id, scraped, page_number)

    async def _cancelled(self, session_id: uuid.UUID, active: ActiveSession) -> bool:
        if active.cancel.is_set():
            return True
        current = await self.store.get_session(session_id)
        if current.status is not SessionStatus.SCRAPING:
            logger.info("Session %s is %s; stopping scrape", session_id, current.status.value)
            active.cancel.set()
            return True
        return False

    # ------------------------------------------------------------------
    # status / stop
    # ------------------------------------------------------------------

    async def status(self, session_id: uuid.UUID) -> SessionRecord:
        """Return the session; an idle local handle of a finished session is released."""
        session = await self.store.get_session(session_id)
        if session.status.is_terminal:
            await self.release_browser(session_id)
        return session

    async def stop(self, session_id: uuid.UUID) -> SessionRecord:
        """Fail a non-terminal session with ``"Stopped by user"``.

        A scrape in progress finishes its current page and then exits; its
        browser handle is released by the scrape itself. Otherwise the handle
        is released here, by profile id when another process started it.
        """
        session = await self.store.get_session(session_id)
        if session.status.is_terminal:
            raise InvalidStateTransition(session_id, session.status.value, "stop")

        stopped = await self._fail(session_id, session.job_id, STOPPED_BY_USER, NON_TERMINAL_STATUSES)
        if not stopped:
            current = await self.store.get_session(session_id)
            raise InvalidStateTransition(session_id, current.status.value, "stop")
        logger.info("Session %s stopped by user", session_id)

        await self._release_ended(
            session,
            remote=session.status in (SessionStatus.WAITING_FOR_LOGIN, SessionStatus.READY),
        )
        return await self.store.get_session(session_id)

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    async def expire_stale_sessions(
        self,
        max_wait: Optional[timedelta] = None,
        stall_after: Optional[timedelta] = None,
    ) -> int:
        """Fail sessions that stopped moving and stop their browser profiles.

        Sessions left in ``waiting_for_login`` longer than ``max_wait``
        (default ``settings.login_timeout_minutes``) and scrapes with no page
        progress for ``stall_after`` (default ``settings.scrape_stall_minutes``)
        are failed. Returns the number of sessions expired.
        """
        wait = (
            max_wait
            if max_wait is not None
            else timedelta(minutes=self.config.login_timeout_minutes)
        )
        stall = (
            stall_after
            if stall_after is not None
            else timedelta(minutes=self.config.scrape_stall_minutes)
        )
        await self._prune_finished()

        expired = 0
        for status, cutoff, message in (
            (SessionStatus.WAITING_FOR_LOGIN, wait, LOGIN_TIMED_OUT),
            (SessionStatus.SCRAPING, stall, SCRAPE_STALLED),
        ):
            for session in await self.store.find_stale_sessions(status, _now() - cutoff):
                if await self._fail(session.id, session.job_id, message, (status,)):
                    expired += 1
                    await self._release_ended(session, remote=True)
        if expired:
            logger.info("Expired %d stale session(s)", expired)
        return expired

    # ------------------------------------------------------------------
    # Browser resources
    # ------------------------------------------------------------------

    async def release_browser(self, session_id: uuid.UUID) -> None:
        """Drop this process's handle for a session, e.g. before handing the
        scrape to a worker process."""
        active = self._active.get(session_id)
        if active is not None and not active.busy:
            await self._release(session_id)

    async def abort_scrape(self, session_id: uuid.UUID, message: str) -> bool:
        """Fail a ``scraping`` session whose scrape never started running."""
        session = await self.store.get_session(session_id)
        failed = await self._fail(session_id, session.job_id, message, (SessionStatus.SCRAPING,))
        await self.release_browser(session_id)
        return failed

    async def aclose(self) -> None:
        """Cancel running scrapes and release every idle handle."""
        for session_id, active in list(self._active.items()):
            active.cancel.set()
            if not active.busy:
                await self._release(session_id)

    async def _attach(
        self,
        session_id: uuid.UUID,
        active: ActiveSession,
        scraper_config: ScraperConfig,
        target_url: str,
    ) -> None:
        active.handle = await self._acquire(scraper_config)
        await self.store.update_session(
            session_id,
            browser_url=active.handle.public_url,
            profile_id=active.handle.profile_id,
        )
        active.page = await self.controller.connect(active.handle, target_url)

    async def _acquire(self, scraper_config: ScraperConfig) -> ConnectionHandle:
        """Acquire a profile, retrying once on :class:`AcquisitionTimeout`."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(AcquisitionTimeout),
            stop=stop_after_attempt(2),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Profile acquisition timed out; retrying once")
                handle = await self.controller.acquire_profile(scraper_config.profile_id)
        return handle

    async def _release(self, session_id: uuid.UUID) -> None:
        active = self._active.pop(session_id, None)
        if active is not None and active.handle is not None:
            await self.controller.release(active.handle)

    async def _release_ended(self, session: SessionRecord, remote: bool) -> None:
        """Release the browser of a session that was just failed.

        A busy local entry is only flagged; its owner releases the handle.
        With no local entry and ``remote`` set, the stored profile is stopped
        by id since another process started it.
        """
        active = self._active.get(session.id)
        if active is not None:
            active.cancel.set()
            if not active.busy:
                await self._release(session.id)
        elif remote and session.profile_id:
            logger.info(
                "Stopping profile %s of session %s started elsewhere",
                session.profile_id, session.id,
            )
            await self.controller.release(ConnectionHandle(profile_id=session.profile_id, ws_url=""))

    async def _prune_finished(self) -> None:
        """Release idle handles of sessions that another process has ended."""
        for session_id, active in list(self._active.items()):
            if active.busy:
                continue
            try:
                session = await self.store.get_session(session_id)
            except NotFoundError:
                session = None
            if session is None or session.status.is_terminal:
                logger.info("Releasing browser of finished session %s", session_id)
                await self.release_browser(session_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fail(
        self,
        session_id: uuid.UUID,
        job_id: Optional[uuid.UUID],
        message: str,
        expected: Iterable[SessionStatus],
    ) -> bool:
        moved = await self.store.transition_session(
            session_id, tuple(expected), SessionStatus.FAILED, error_message=message
        )
        if moved and job_id is not None:
            await self.store.update_job(
                job_id, status=JobStatus.FAILED, error_message=message, completed_at=_now()
            )
        return moved

    def _resolve_config(self, job: JobRecord) -> ScraperConfig:
        """Rebuild a job's config with the portal password from the registry."""
        scraper_config = ScraperConfig.model_validate(job.config)
        try:
            registered = get_carrier_config(job.carrier_name, self.config)
        except ValidationError:
            logger.warning("Carrier %s is no longer registered; no credentials", job.carrier_name)
            return scraper_config
        return scraper_config.model_copy(
            update={
                "username": scraper_config.username or registered.username,
                "password": registered.password,
            }
        )
