"""Portal driver: login, listing extraction and pagination for one carrier.

The driver is stateless: every call receives the Playwright ``Page`` and the
carrier's :class:`~argus.scraper.models.ScraperConfig`. DOM parsing is done on
a snapshot of the page HTML with BeautifulSoup, so :func:`iter_rows` is a
pure function that the test suite exercises against static fixtures.

Row fields are read in this order of precedence:

1. ``field_selectors`` (``"selector"`` for text, ``"selector@attr"`` for an
   attribute) evaluated inside the row;
2. ``column_selector`` cells mapped positionally onto ``column_names``;
3. ``<td>`` cells mapped onto the table's ``<th>`` header texts;
4. ``col_0``, ``col_1`` ... for anything left unnamed.

If ``detail_selector`` is set, the detail block for the row (located by the
row's ``id``) is matched against ``detail_patterns``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Iterator

from bs4 import BeautifulSoup, Tag
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from argus.config import Settings, settings
from argus.errors import ExtractionError, LoginError
from argus.scraper.models import LoginMode, ScraperConfig

logger = logging.getLogger("argus.scraper.driver")

RawRow = dict[str, Any]


class LoginOutcome(str, Enum):
    """Result of :meth:`PortalDriver.login`."""

    SUBMITTED = "submitted"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Pure row parsing
# ---------------------------------------------------------------------------


def _text(node: Tag) -> str:
    return " ".join(node.get_text(" ", strip=True).split())


def _read_selector(row: Tag, expr: str) -> str | None:
    selector, _, attr = expr.partition("@")
    node = row.select_one(selector) if selector else row
    if node is None:
        return None
    if attr:
        value = node.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        return value.strip() if isinstance(value, str) else None
    return _text(node)


def _header_names(table: Tag) -> list[str]:
    return [_text(th) for th in table.select("th")]


def _parse_row(row: Tag, doc: BeautifulSoup, config: ScraperConfig, headers: list[str]) -> RawRow:
    data: RawRow = {}

    if config.column_selector:
        cells = row.select(config.column_selector)
        names = config.column_names
    else:
        cells = row.find_all("td")
        names = headers
    for i, cell in enumerate(cells):
        name = names[i] if i < len(names) and names[i] else f"col_{i}"
        data[name] = _text(cell)

    for field_name, expr in config.field_selectors.items():
        value = _read_selector(row, expr)
        if value is not None:
            data[field_name] = value

    row_id = row.get("id")
    if isinstance(row_id, str) and row_id:
        data["row_id"] = row_id
        if config.detail_selector:
            detail = doc.select_one(config.detail_selector.format(row_id=row_id))
            if detail is not None:
                # One line per text node so patterns can anchor on line ends.
                detail_text = detail.get_text("\n", strip=True)
                for field_name, pattern in config.detail_patterns.items():
                    match = re.search(pattern, detail_text)
                    if match:
                        data[field_name] = match.group(1).strip()

    return data


def iter_rows(html: str, config: ScraperConfig) -> Iterator[RawRow]:
    """Yield one raw row per ``policy_row_selector`` match in ``html``.

    Raises
    ------
    ExtractionError
        When the policy table is absent or the row selector matches nothing.
    """
    doc = BeautifulSoup(html, "lxml")
    table = doc.select_one(config.policy_table_selector)
    if table is None:
        raise ExtractionError(
            f"Policy table {config.policy_table_selector!r} not found on page"
        )
    rows = table.select(config.policy_row_selector)
    if not rows:
        raise ExtractionError(f"No rows match {config.policy_row_selector!r}")

    headers = [] if config.column_selector else _header_names(table)
    for row in rows:
        yield _parse_row(row, doc, config, headers)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class PortalDriver:
    """Drive a carrier portal through a connected Playwright page.

    Parameters
    ----------
    config:
        Argus ``Settings``; supplies navigation retries, timeouts and the
        fallback page cap and rate limit for carriers that do not set them.
    """

    def __init__(self, config: Settings = settings) -> None:
        self.config = config

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, page: Any, config: ScraperConfig) -> LoginOutcome:
        """Log in to the portal, or do nothing for manual-login carriers.

        Raises
        ------
        LoginError
            A login field or the submit button is missing, or the submission
            did not settle.
        """
        if config.login_mode is LoginMode.MANUAL:
            logger.info("%s uses manual login; waiting for operator", config.carrier_name)
            return LoginOutcome.MANUAL

        await self._apply_headers(page, config)
        await self._navigate_with_retry(page, config.login_url)
        timeout = self._wait_timeout(config)

        await self._fill(page, config.username_selector, config.username, timeout)
        await self._fill(page, config.password_selector, config.password, timeout)
        button = page.locator(config.login_button_selector).first
        try:
            await button.wait_for(state="visible", timeout=timeout)
            await button.click()
            await page.wait_for_load_state(
                "networkidle", timeout=self.config.scrape_navigation_timeout_ms
            )
        except Exception as exc:
            raise LoginError(
                f"Login submit via {config.login_button_selector!r} failed: {exc}"
            ) from exc

        logger.info("Submitted %s login as %s", config.carrier_name, config.username)
        return LoginOutcome.SUBMITTED

    async def _fill(self, page: Any, selector: str, value: str, timeout: int) -> None:
        field = page.locator(selector).first
        try:
            await field.wait_for(state="visible", timeout=timeout)
        except Exception as exc:
            raise LoginError(f"Login field {selector!r} not found") from exc
        await field.fill(value)
        logger.debug("Filled %s", selector)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def page_url(self, config: ScraperConfig, page_number: int) -> str:
        """Listing URL for ``page_number`` (1-based)."""
        if config.page_url_template:
            return config.page_url_template.format(page=page_number)
        return config.portal_url

    def page_limit(self, config: ScraperConfig) -> int:
        return config.max_pages or self.config.scrape_max_pages

    async def open_portal(self, page: Any, config: ScraperConfig, page_number: int = 1) -> None:
        """Navigate to listing page ``page_number`` and wait for the policy table."""
        await self._apply_headers(page, config)
        url = self.page_url(config, page_number)
        if page_number > 1 and not config.page_url_template:
            logger.warning(
                "%s has no page URL template; resuming from page 1", config.carrier_name
            )
        await self._navigate_with_retry(page, url)
        await self._wait_for_table(page, config)

    def next_link_selector(self, config: ScraperConfig, page_number: int) -> str | None:
        """The next-page selector for leaving ``page_number``.

        A ``{page}`` placeholder is replaced with the number of the page that
        follows, so the link for exactly that page is looked for.
        """
        if not config.pagination_next_selector:
            return None
        return config.pagination_next_selector.replace("{page}", str(page_number + 1))

    async def has_next_page(self, page: Any, config: ScraperConfig, page_number: int) -> bool:
        """Whether a page follows ``page_number``, capped by ``max_pages``."""
        if page_number >= self.page_limit(config):
            logger.info("Reached page limit %d for %s", self.page_limit(config), config.carrier_name)
            return False
        selector = self.next_link_selector(config, page_number)
        if selector:
            try:
                return await page.locator(selector).first.is_visible()
            except Exception as exc:
                logger.debug("Next-page check failed: %s", exc)
                return False
        return bool(config.page_url_template)

    async def go_to_next_page(self, page: Any, config: ScraperConfig, page_number: int) -> int:
        """Advance from ``page_number`` and return the new page number."""
        next_number = page_number + 1
        if config.page_url_template:
            await self.open_portal(page, config, next_number)
            return next_number
        selector = self.next_link_selector(config, page_number)
        if not selector:
            raise ExtractionError(f"{config.carrier_name} has no pagination configured")

        logger.debug("Clicking %s for page %d", selector, next_number)
        await page.locator(selector).first.click()
        await page.wait_for_load_state(
            "networkidle", timeout=self.config.scrape_navigation_timeout_ms
        )
        await self._wait_for_table(page, config)
        return next_number

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract_page(self, page: Any, config: ScraperConfig) -> list[RawRow]:
        """Parse every policy row on the current page.

        Raises
        ------
        ExtractionError
            When the table or the rows are missing.
        """
        html = await page.content()
        rows = list(iter_rows(html, config))
        logger.info("Extracted %d rows from %s", len(rows), getattr(page, "url", "page"))
        return rows

    async def rate_limit(self, config: ScraperConfig) -> None:
        """Idle for the carrier's ``rate_limit_ms`` before the next navigation."""
        delay_ms = (
            config.rate_limit_ms
            if config.rate_limit_ms is not None
            else self.config.scrape_rate_limit_ms
        )
        if delay_ms > 0:
            logger.debug("Rate limit: sleeping %dms", delay_ms)
            await asyncio.sleep(delay_ms / 1000)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _wait_timeout(self, config: ScraperConfig) -> int:
        if config.wait_timeout_ms is not None:
            return config.wait_timeout_ms
        return self.config.scrape_wait_timeout_ms

    async def _apply_headers(self, page: Any, config: ScraperConfig) -> None:
        if config.headers:
            await page.set_extra_http_headers(config.headers)

    async def _wait_for_table(self, page: Any, config: ScraperConfig) -> None:
        try:
            await page.wait_for_selector(
                config.policy_table_selector, timeout=self._wait_timeout(config)
            )
        except Exception as exc:
            # Reported by extract_page against the same snapshot.
            logger.debug("Policy table not visible yet: %s", exc)

    async def _navigate_with_retry(self, page: Any, url: str) -> None:
        """Navigate to *url* with exponential-backoff retry via tenacity."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(Exception),
                stop=stop_after_attempt(self.config.scrape_max_retries),
                wait=wait_exponential(multiplier=2, min=2, max=30),
                reraise=True,
            ):
                with attempt:
                    logger.debug(
                        "Navigating to %s (attempt %d)",
                        url,
                        attempt.retry_state.attempt_number,
                    )
                    await page.goto(
                        url,
                        wait_until="domcontentloaded",
                        timeout=self.config.scrape_navigation_timeout_ms,
                    )
        except RetryError as exc:
            logger.error("Navigation to %s failed after retries: %s", url, exc)
            raise
