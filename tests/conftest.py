"""
Shared fixtures: in-memory SQLite settings, fake browser collaborators and a
wired ServiceContext.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

import pytest

from argus.carriers import CARRIER_CONFIGS
from argus.config import Settings
from argus.context import ServiceContext
from argus.errors import AcquisitionTimeout
from argus.scraper.models import LoginMode, ScraperConfig
from argus.scraper.portal_driver import LoginOutcome
from argus.scraper.remote_browser import ConnectionHandle


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakePage:
    def __init__(self, url: str = "about:blank") -> None:
        self.url = url


class FakeBrowserController:
    """Records acquisitions and releases instead of talking to GoLogin."""

    def __init__(self, timeouts: int = 0, error: Optional[Exception] = None) -> None:
        self.timeouts = timeouts
        self.error = error
        self.acquire_calls = 0
        self.acquired: list[ConnectionHandle] = []
        self.released: list[ConnectionHandle] = []

    async def acquire_profile(self, profile_id=None, credentials=None) -> ConnectionHandle:
        self.acquire_calls += 1
        if self.timeouts > 0:
            self.timeouts -= 1
            raise AcquisitionTimeout("profile start timed out")
        if self.error is not None:
            raise self.error
        handle = ConnectionHandle(
            profile_id=profile_id or "profile-test",
            ws_url="wss://cloud.example.test/connect?token=secret-token&profile=profile-test",
        )
        self.acquired.append(handle)
        return handle

    async def connect(self, handle: ConnectionHandle, portal_url: Optional[str] = None) -> FakePage:
        return FakePage(portal_url or "about:blank")

    async def release(self, handle: ConnectionHandle) -> None:
        self.released.append(handle)


class FakePortalDriver:
    """Serves scripted pages; an Exception entry is raised for that page."""

    def __init__(self, pages: Optional[list[Any]] = None) -> None:
        self.pages: list[Any] = pages if pages is not None else []
        self.on_extract: Optional[Callable[[int], Awaitable[None]]] = None
        self.current = 0
        self.logins = 0
        self.opened: list[int] = []
        self.extracted: list[int] = []
        self.rate_limits = 0

    async def login(self, page, config: ScraperConfig) -> LoginOutcome:
        if config.login_mode is LoginMode.MANUAL:
            return LoginOutcome.MANUAL
        self.logins += 1
        return LoginOutcome.SUBMITTED

    async def open_portal(self, page, config: ScraperConfig, page_number: int = 1) -> None:
        self.current = page_number
        self.opened.append(page_number)

    async def extract_page(self, page, config: ScraperConfig) -> list[dict]:
        self.extracted.append(self.current)
        if self.on_extract is not None:
            await self.on_extract(self.current)
        item = self.pages[self.current - 1]
        if isinstance(item, Exception):
            raise item
        return item

    async def has_next_page(self, page, config: ScraperConfig, page_number: int) -> bool:
        limit = min(len(self.pages), config.max_pages or len(self.pages))
        return page_number < limit

    async def go_to_next_page(self, page, config: ScraperConfig, page_number: int) -> int:
        self.current = page_number + 1
        return self.current

    async def rate_limit(self, config: ScraperConfig) -> None:
        self.rate_limits += 1


def make_rows(page: int, count: int) -> list[dict]:
    return [
        {
            "policyNumber": f"GTL{page:02d}{i:03d}",
            "insured": f"Applicant {page}-{i}",
            "amount": "$10,000.00",
            "status": "Issued",
            "dob": "01/02/1990",
            "gender": "female",
        }
        for i in range(count)
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _carrier(name: str, **overrides: Any) -> ScraperConfig:
    values: dict[str, Any] = dict(
        carrier_name=name,
        login_url="https://portal.example.test/login",
        portal_url="https://portal.example.test/policies",
        username="agent@example.test",
        password="hunter2",
        username_selector="#user",
        password_selector="#pass",
        login_button_selector="#go",
        policy_table_selector="table.policies",
        policy_row_selector="tbody tr",
        page_url_template="https://portal.example.test/policies?page={page}",
        max_pages=10,
        rate_limit_ms=0,
        login_mode=LoginMode.AUTOMATIC,
    )
    values.update(overrides)
    return ScraperConfig(**values)


@pytest.fixture
def carriers(monkeypatch) -> dict[str, ScraperConfig]:
    """Register test carriers for the duration of a test."""
    configs = {
        "TESTCO": _carrier("TESTCO"),
        "MANUALCO": _carrier("MANUALCO", login_mode=LoginMode.MANUAL),
        "CAPPED": _carrier("CAPPED", max_pages=2),
        "BROKEN": _carrier("BROKEN", policy_row_selector=""),
    }
    for name, config in configs.items():
        monkeypatch.setitem(CARRIER_CONFIGS, name, config)
    return configs


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        argus_api_key="test-api-key",
        gologin_api_url="https://api.gologin.test",
        gologin_api_token="test-token",
        gologin_profile_id="profile-test",
        default_carrier="TESTCO",
        scrape_max_pages=10,
        scrape_rate_limit_ms=0,
        scrape_max_retries=1,
        max_consecutive_page_failures=2,
        login_timeout_minutes=30,
        scrape_executor="inline",
    )


@pytest.fixture
def file_settings(test_settings, tmp_path) -> Settings:
    """Settings on a file-backed SQLite database shared across event loops."""
    return test_settings.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'argus.db'}"}
    )


@pytest.fixture
def controller() -> FakeBrowserController:
    return FakeBrowserController()


@pytest.fixture
def driver() -> FakePortalDriver:
    return FakePortalDriver()


@pytest.fixture
async def context(test_settings, carriers, controller, driver):
    ctx = ServiceContext.from_settings(test_settings, controller=controller, driver=driver)
    await ctx.startup()
    yield ctx
    await ctx.aclose()


@pytest.fixture
def store(context):
    return context.store


@pytest.fixture
def manager(context):
    return context.manager
