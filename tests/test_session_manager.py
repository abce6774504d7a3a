"""
Tests for argus.scraper.session_manager.SessionManager.

The browser controller and portal driver are fakes from conftest; the store is
the real SessionStore on in-memory SQLite.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta

import pytest

from argus.errors import (
    AcquisitionTimeout,
    BrowserAcquisitionError,
    ExtractionError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from argus.scraper.models import JobStatus, SessionStatus
from argus.scraper.session_manager import (
    LOGIN_TIMED_OUT,
    SCRAPE_CANCELLED,
    SCRAPE_STALLED,
    STOPPED_BY_USER,
    SessionManager,
)
from tests.conftest import FakeBrowserController, make_rows


async def _ready_session(manager, carrier: str = "TESTCO"):
    result = await manager.start("Weekly pull", requested_by="ops@example.test", carrier_name=carrier)
    await manager.confirm_ready(result.session_id)
    return result


class GatedController(FakeBrowserController):
    """Holds acquire_profile until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def acquire_profile(self, profile_id=None, credentials=None):
        self.entered.set()
        await self.gate.wait()
        return await super().acquire_profile(profile_id, credentials)


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------


class TestStart:
    async def test_automatic_carrier_waits_for_login(self, manager, controller, driver):
        result = await manager.start("Weekly pull", requested_by="ops@example.test")

        session = await manager.status(result.session_id)
        assert result.status is SessionStatus.WAITING_FOR_LOGIN
        assert session.status is SessionStatus.WAITING_FOR_LOGIN
        assert session.job.status is JobStatus.PENDING
        assert session.job.created_by == "ops@example.test"
        assert controller.acquire_calls == 1
        assert driver.logins == 1
        assert controller.released == []

    async def test_browser_url_does_not_leak_token(self, manager):
        result = await manager.start("Weekly pull")

        session = await manager.status(result.session_id)
        assert session.browser_url is not None
        assert "secret-token" not in session.browser_url

    async def test_manual_carrier_skips_acquisition(self, manager, controller):
        result = await manager.start("GTL pull", carrier_name="MANUALCO")

        session = await manager.status(result.session_id)
        assert session.status is SessionStatus.WAITING_FOR_LOGIN
        assert "Please login to MANUALCO portal" in result.message
        assert controller.acquire_calls == 0

    async def test_job_config_never_contains_password(self, manager):
        result = await manager.start("Weekly pull")

        session = await manager.status(result.session_id)
        assert "password" not in session.job.config
        assert session.job.config["policy_row_selector"] == "tbody tr"

    async def test_invalid_config_creates_nothing(self, manager, store, controller):
        with pytest.raises(ValidationError) as excinfo:
            await manager.start("Broken pull", carrier_name="BROKEN")

        assert "Policy row selector is required" in excinfo.value.errors
        assert await store.list_sessions() == []
        assert await store.list_jobs() == []
        assert controller.acquire_calls == 0

    async def test_unknown_carrier_is_validation_error(self, manager, store):
        with pytest.raises(ValidationError):
            await manager.start("Nope", carrier_name="NOPE")
        assert await store.list_jobs() == []

    async def test_acquisition_timeout_is_retried_once(self, manager, controller):
        controller.timeouts = 1

        result = await manager.start("Weekly pull")

        assert result.status is SessionStatus.WAITING_FOR_LOGIN
        assert controller.acquire_calls == 2

    async def test_second_timeout_fails_session_and_job(self, manager, controller, store):
        controller.timeouts = 2

        with pytest.raises(AcquisitionTimeout):
            await manager.start("Weekly pull")

        [session] = await store.list_sessions()
        assert session.status is SessionStatus.FAILED
        assert session.error_message
        assert session.job.status is JobStatus.FAILED
        assert controller.acquire_calls == 2
        assert controller.released == []

    async def test_acquisition_error_is_not_retried(self, manager, controller, store):
        controller.error = BrowserAcquisitionError("profile expired")

        with pytest.raises(BrowserAcquisitionError):
            await manager.start("Weekly pull")

        [session] = await store.list_sessions()
        assert session.status is SessionStatus.FAILED
        assert session.error_message == "profile expired"
        assert controller.acquire_calls == 1

    async def test_status_after_start_is_never_ready_or_scraping(self, manager):
        result = await manager.start("Weekly pull")

        session = await manager.status(result.session_id)
        assert session.status in (SessionStatus.WAITING_FOR_LOGIN, SessionStatus.FAILED)


# ---------------------------------------------------------------------------
# confirm_ready
# ---------------------------------------------------------------------------


class TestConfirmReady:
    async def test_confirm_is_idempotent(self, manager):
        result = await manager.start("Weekly pull")

        first = await manager.confirm_ready(result.session_id)
        second = await manager.confirm_ready(result.session_id)

        assert first.status is SessionStatus.READY
        assert second.status is SessionStatus.READY

    async def test_confirm_after_stop_is_rejected(self, manager):
        result = await manager.start("Weekly pull")
        await manager.stop(result.session_id)

        with pytest.raises(InvalidStateTransition):
            await manager.confirm_ready(result.session_id)

        session = await manager.status(result.session_id)
        assert session.status is SessionStatus.FAILED

    async def test_confirm_unknown_session(self, manager):
        with pytest.raises(NotFoundError):
            await manager.confirm_ready(uuid.uuid4())


# ---------------------------------------------------------------------------
# scrape
# ---------------------------------------------------------------------------


class TestScrape:
    async def test_scrape_before_ready_is_rejected(self, manager, driver):
        driver.pages = [make_rows(1, 2)]
        result = await manager.start("Weekly pull")

        with pytest.raises(InvalidStateTransition):
            await manager.scrape(result.session_id)

        session = await manager.status(result.session_id)
        assert session.status is SessionStatus.WAITING_FOR_LOGIN
        assert driver.extracted == []

    async def test_scrape_walks_every_page(self, manager, driver, controller, store):
        driver.pages = [make_rows(1, 2), make_rows(2, 3), make_rows(3, 1)]
        result = await _ready_session(manager)

        session = await manager.scrape(result.session_id)

        assert session.status is SessionStatus.COMPLETED
        assert session.current_page == 3
        assert session.scraped_count == 6
        assert session.job.status is JobStatus.COMPLETED
        assert session.job.total_records == 6
        assert session.job.started_at is not None
        assert session.job.completed_at is not None
        assert len(await store.list_policies(result.job_id)) == 6
        assert driver.rate_limits == 2
        assert len(controller.released) == 1

    async def test_scrape_stops_at_max_pages(self, manager, driver):
        driver.pages = [make_rows(1, 2), make_rows(2, 2), make_rows(3, 2)]
        result = await _ready_session(manager, carrier="CAPPED")

        session = await manager.scrape(result.session_id)

        assert session.status is SessionStatus.COMPLETED
        assert session.current_page == 2
        assert session.scraped_count == 4
        assert driver.extracted == [1, 2]

    async def test_rows_are_normalised_before_storage(self, manager, driver, store):
        driver.pages = [make_rows(1, 1)]
        result = await _ready_session(manager)

        await manager.scrape(result.session_id)

        [policy] = await store.list_policies(result.job_id)
        assert policy["policy_number"] == "GTL01000"
        assert policy["coverage_amount"] == "10000.00"
        assert policy["date_of_birth"] == "1990-01-02"
        assert policy["gender"] == "F"
        assert policy["raw_data"]["insured"] == "Applicant 1-0"

    async def test_duplicate_scrape_request_is_noop(self, manager, driver):
        driver.pages = [make_rows(1, 1)]
        result = await _ready_session(manager)

        assert await manager.begin_scrape(result.session_id) is True
        assert await manager.begin_scrape(result.session_id) is False

        session = await manager.status(result.session_id)
        assert session.status is SessionStatus.SCRAPING
        assert session.job.status is JobStatus.IN_PROGRESS

    async def test_two_consecutive_extraction_errors_fail_session(self, manager, driver, controller):
        driver.pages = [
            make_rows(1, 2),
            ExtractionError("table missing"),
            ExtractionError("table missing"),
            make_rows(4, 2),
        ]
        result = await _ready_session(manager)

        session = await manager.scrape(result.session_id)

        assert session.status is SessionStatus.FAILED
        assert "table missing" in session.error_message
        assert session.job.status is JobStatus.FAILED
        assert session.current_page == 1
        assert driver.extracted == [1, 2, 3]
        assert len(controller.released) == 1

    async def test_isolated_extraction_error_is_tolerated(self, manager, driver):
        driver.pages = [make_rows(1, 2), ExtractionError("flaky"), make_rows(3, 2)]
        result = await _ready_session(manager)

        session = await manager.scrape(result.session_id)

        assert session.status is SessionStatus.COMPLETED
        assert session.current_page == 3
        assert session.scraped_count == 4

    async def test_browser_error_mid_scrape_fails_session(self, manager, driver, controller):
        driver.pages = [make_rows(1, 2), RuntimeError("Target closed")]
        result = await _ready_session(manager)

        session = await manager.scrape(result.session_id)

        assert session.status is SessionStatus.FAILED
        assert session.error_message == "Target closed"
        assert len(controller.released) == 1


# ---------------------------------------------------------------------------
# stop
# ---------------------------------------------------------------------------


class TestStop:
    async def test_stop_mid_scrape_releases_exactly_once(self, manager, driver, controller):
        driver.pages = [make_rows(1, 2), make_rows(2, 2), make_rows(3, 2)]
        result = await _ready_session(manager)

        async def stop_on_second_page(page_number: int) -> None:
            if page_number == 2:
                await manager.stop(result.session_id)

        driver.on_extract = stop_on_second_page

        session = await manager.scrape(result.session_id)

        assert session.status is SessionStatus.FAILED
        assert STOPPED_BY_USER in session.error_message
        assert session.job.status is JobStatus.FAILED
        assert session.job.error_message == STOPPED_BY_USER
        assert driver.extracted == [1, 2]
        assert len(controller.released) == 1

    async def test_stop_while_waiting_releases_held_browser(self, manager, controller):
        result = await manager.start("Weekly pull")

        session = await manager.stop(result.session_id)

        assert session.status is SessionStatus.FAILED
        assert session.error_message == STOPPED_BY_USER
        assert len(controller.released) == 1

    async def test_stop_terminal_session_is_rejected(self, manager):
        result = await manager.start("Weekly pull")
        await manager.stop(result.session_id)

        with pytest.raises(InvalidStateTransition):
            await manager.stop(result.session_id)


# ---------------------------------------------------------------------------
# retry / watchdog
# ---------------------------------------------------------------------------


class TestRetryAndExpiry:
    async def test_retry_resumes_after_last_stored_page(self, manager, driver, store):
        driver.pages = [
            make_rows(1, 2),
            make_rows(2, 2),
            ExtractionError("gone"),
            ExtractionError("gone"),
        ]
        result = await _ready_session(manager)
        failed = await manager.scrape(result.session_id)
        assert failed.status is SessionStatus.FAILED
        assert failed.current_page == 2

        driver.pages[2] = make_rows(3, 1)
        driver.pages[3] = make_rows(4, 1)
        retried = await manager.retry(result.session_id)
        await manager.confirm_ready(retried.session_id)
        session = await manager.scrape(retried.session_id)

        assert retried.job_id == result.job_id
        assert retried.session_id != result.session_id
        assert driver.opened[-1] == 3
        assert session.status is SessionStatus.COMPLETED
        assert session.current_page == 4
        assert session.scraped_count == 6
        assert len(await store.list_policies(result.job_id)) == 6

    async def test_retry_requires_failed_session(self, manager):
        result = await manager.start("Weekly pull")

        with pytest.raises(InvalidStateTransition):
            await manager.retry(result.session_id)

    async def test_expire_stale_sessions(self, manager, controller):
        waiting = await manager.start("Waiting pull", carrier_name="MANUALCO")
        ready = await _ready_session(manager, carrier="MANUALCO")

        expired = await manager.expire_stale_sessions(timedelta(0))

        assert expired == 1
        stale = await manager.status(waiting.session_id)
        assert stale.status is SessionStatus.FAILED
        assert stale.error_message == LOGIN_TIMED_OUT
        assert stale.job.status is JobStatus.FAILED
        untouched = await manager.status(ready.session_id)
        assert untouched.status is SessionStatus.READY

    async def test_recent_sessions_are_not_expired(self, manager):
        await manager.start("Waiting pull", carrier_name="MANUALCO")

        assert await manager.expire_stale_sessions() == 0


# ---------------------------------------------------------------------------
# Browser release across exit paths and processes
# ---------------------------------------------------------------------------


class TestBrowserRelease:
    async def test_start_records_profile_id(self, manager):
        result = await manager.start("Weekly pull")

        session = await manager.status(result.session_id)
        assert session.profile_id == "profile-test"

    async def test_stop_during_acquisition_releases_profile(self, store, driver, test_settings):
        controller = GatedController()
        manager = SessionManager(store, controller, driver, test_settings)
        starting = asyncio.create_task(manager.start("Weekly pull"))
        await controller.entered.wait()
        (pending,) = await store.list_sessions(SessionStatus.INITIALIZING)

        stopped = await manager.stop(pending.id)
        controller.gate.set()
        result = await starting

        assert stopped.status is SessionStatus.FAILED
        assert result.status is SessionStatus.FAILED
        assert result.message == "Session was stopped during start."
        assert len(controller.acquired) == 1
        assert controller.released == controller.acquired
        assert manager.active_sessions == 0

    async def test_watchdog_in_other_process_stops_profile(
        self, manager, store, driver, controller, test_settings
    ):
        worker_controller = FakeBrowserController()
        worker = SessionManager(store, worker_controller, driver, test_settings)
        result = await manager.start("Weekly pull")

        expired = await worker.expire_stale_sessions(timedelta(0))

        assert expired == 1
        assert [h.profile_id for h in worker_controller.released] == ["profile-test"]
        assert controller.released == []

        session = await manager.status(result.session_id)
        assert session.status is SessionStatus.FAILED
        assert controller.released == controller.acquired
        assert manager.active_sessions == 0

    async def test_stop_from_other_process_stops_profile(
        self, manager, store, driver, controller, test_settings
    ):
        other_controller = FakeBrowserController()
        other = SessionManager(store, other_controller, driver, test_settings)
        first = await manager.start("Weekly pull")

        await other.stop(first.session_id)
        await manager.start("Next pull")

        assert [h.profile_id for h in other_controller.released] == ["profile-test"]
        assert controller.released == [controller.acquired[0]]
        assert manager.active_sessions == 1

    async def test_stop_of_scrape_in_other_process_leaves_profile_to_owner(
        self, manager, store, driver, test_settings
    ):
        other_controller = FakeBrowserController()
        other = SessionManager(store, other_controller, driver, test_settings)
        result = await _ready_session(manager)
        assert await manager.begin_scrape(result.session_id)

        await other.stop(result.session_id)

        assert other_controller.released == []

    async def test_cancelled_scrape_is_recorded_as_failed(self, manager, driver, controller):
        driver.pages = [make_rows(1, 2), make_rows(2, 2)]
        entered = asyncio.Event()

        async def hang(page_number: int) -> None:
            entered.set()
            await asyncio.Event().wait()

        driver.on_extract = hang
        result = await _ready_session(manager)
        assert await manager.begin_scrape(result.session_id)
        scraping = asyncio.create_task(manager.run_scrape(result.session_id))
        await entered.wait()

        scraping.cancel()
        with pytest.raises(asyncio.CancelledError):
            await scraping

        session = await manager.status(result.session_id)
        assert session.status is SessionStatus.FAILED
        assert session.error_message == SCRAPE_CANCELLED
        assert session.job.status is JobStatus.FAILED
        assert controller.released == controller.acquired

    async def test_stalled_scrape_is_failed(self, manager, controller):
        result = await _ready_session(manager)
        assert await manager.begin_scrape(result.session_id)

        expired = await manager.expire_stale_sessions(stall_after=timedelta(0))

        session = await manager.status(result.session_id)
        assert expired == 1
        assert session.status is SessionStatus.FAILED
        assert session.error_message == SCRAPE_STALLED
        assert session.job.status is JobStatus.FAILED
        assert controller.released == controller.acquired

    async def test_abort_scrape_fails_session_and_job(self, manager, controller):
        result = await _ready_session(manager)
        assert await manager.begin_scrape(result.session_id)

        assert await manager.abort_scrape(result.session_id, "Could not queue scrape: down")

        session = await manager.status(result.session_id)
        assert session.status is SessionStatus.FAILED
        assert session.error_message == "Could not queue scrape: down"
        assert session.job.status is JobStatus.FAILED
        assert controller.released == controller.acquired
