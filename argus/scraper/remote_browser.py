"""Remote browser controller — GoLogin cloud profiles driven over CDP.

A profile is started through the GoLogin REST API, Playwright attaches to it
with ``connect_over_cdp`` and, when the scrape is over, the connection is
closed and the profile stopped so that no billable cloud browser is leaked.

``release`` never raises: cleanup failures are logged so that they cannot
mask the result of the scrape that triggered them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from playwright.async_api import Browser, Page, Playwright, async_playwright

from argus.config import Settings, settings
from argus.errors import AcquisitionTimeout, BrowserAcquisitionError

logger = logging.getLogger("argus.scraper.browser")

# Floor for the profile-start request; cloud profiles routinely take 20-40s.
MIN_ACQUIRE_TIMEOUT_SECONDS = 60.0


@dataclass
class ConnectionHandle:
    """A started cloud profile and, once connected, its Playwright objects."""

    profile_id: str
    ws_url: str = field(repr=False)
    playwright: Optional[Playwright] = field(default=None, repr=False)
    browser: Optional[Browser] = field(default=None, repr=False)
    # API token the profile was started with; None means the configured one.
    token: Optional[str] = field(default=None, repr=False)
    released: bool = False

    @property
    def public_url(self) -> str:
        """The connection endpoint with its query string (token) removed."""
        parsed = urlparse(self.ws_url)
        return f"{parsed.scheme}://{parsed.netloc}{parsed.path}?profile={self.profile_id}"


class GoLoginController:
    """Acquire, attach to and release GoLogin cloud browser profiles.

    Parameters
    ----------
    config:
        Argus ``Settings``; supplies the API URL, token, connect-URL template
        and the acquire timeout.
    transport:
        Optional ``httpx`` transport, used by tests to stub the GoLogin API.
    """

    def __init__(
        self,
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._timeout = max(config.browser_acquire_timeout_seconds, MIN_ACQUIRE_TIMEOUT_SECONDS)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.gologin_api_url,
            headers={
                "Authorization": f"Bearer {self.config.gologin_api_token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(self._timeout),
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    async def acquire_profile(
        self, profile_id: Optional[str] = None, credentials: Optional[str] = None
    ) -> ConnectionHandle:
        """Start a cloud profile and return its connection handle.

        Parameters
        ----------
        profile_id:
            GoLogin profile; defaults to ``settings.gologin_profile_id``.
        credentials:
            API token overriding ``settings.gologin_api_token``.

        Raises
        ------
        AcquisitionTimeout
            The start request exceeded the acquire timeout.
        BrowserAcquisitionError
            Transport failure, rejected token (401/403), unknown or expired
            profile (404), or any other non-success response.
        """
        profile = profile_id or self.config.gologin_profile_id
        if not profile:
            raise BrowserAcquisitionError("No GoLogin profile id configured")
        token = credentials or self.config.gologin_api_token

        logger.info("Starting GoLogin profile %s", profile)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"/browser/{profile}/web",
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.TimeoutException as exc:
            raise AcquisitionTimeout(
                f"Timed out after {self._timeout:.0f}s starting profile {profile}"
            ) from exc
        except httpx.HTTPError as exc:
            raise BrowserAcquisitionError(f"GoLogin request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise BrowserAcquisitionError(
                f"GoLogin rejected the API token (HTTP {response.status_code})"
            )
        if response.status_code == 404:
            raise BrowserAcquisitionError(f"GoLogin profile {profile} not found or expired")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BrowserAcquisitionError(
                f"GoLogin start failed (HTTP {response.status_code})"
            ) from exc

        ws_url = self._ws_url_from(response, profile, token)
        handle = ConnectionHandle(profile_id=profile, ws_url=ws_url, token=credentials)
        logger.info("GoLogin profile %s started: %s", profile, handle.public_url)
        return handle

    def _ws_url_from(self, response: httpx.Response, profile: str, token: str) -> str:
        try:
            body: Any = response.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            for key in ("wsUrl", "ws_url", "remoteOrbitaUrl"):
                value = body.get(key)
                if isinstance(value, str) and value.startswith(("ws://", "wss://")):
                    return value
        return self.config.gologin_connect_url.format(token=token, profile_id=profile)

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(self, handle: ConnectionHandle, portal_url: Optional[str] = None) -> Page:
        """Attach Playwright to the running profile and return a page.

        Prefers a tab already open on the portal's host (the operator may
        have logged in there), then the first open tab, then a new one.
        """
        if handle.released:
            raise BrowserAcquisitionError(f"Profile {handle.profile_id} was already released")
        try:
            if handle.browser is None:
                handle.playwright = await async_playwright().start()
                handle.browser = await handle.playwright.chromium.connect_over_cdp(handle.ws_url)
            contexts = handle.browser.contexts
            context = contexts[0] if contexts else await handle.browser.new_context()
            pages = [page for ctx in contexts for page in ctx.pages]
        except Exception as exc:
            raise BrowserAcquisitionError(
                f"Could not attach to profile {handle.profile_id}: {exc}"
            ) from exc

        portal_host = urlparse(portal_url).netloc if portal_url else ""
        if portal_host:
            for page in pages:
                if urlparse(page.url).netloc == portal_host:
                    logger.info("Reusing portal tab %s", page.url)
                    return page
        if pages:
            return pages[0]
        return await context.new_page()

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, handle: Optional[ConnectionHandle]) -> None:
        """Close the CDP connection and stop the cloud profile.

        Idempotent; never raises.
        """
        if handle is None or handle.released:
            return
        handle.released = True

        if handle.browser is not None:
            try:
                await handle.browser.close()
            except Exception as exc:
                logger.warning("Error closing browser for profile %s: %s", handle.profile_id, exc)
        if handle.playwright is not None:
            try:
                await handle.playwright.stop()
            except Exception as exc:
                logger.warning("Error stopping Playwright for profile %s: %s", handle.profile_id, exc)

        headers = {"Authorization": f"Bearer {handle.token}"} if handle.token else None
        try:
            async with self._client() as client:
                response = await client.delete(f"/browser/{handle.profile_id}/web", headers=headers)
            if response.status_code >= 400:
                logger.warning(
                    "GoLogin stop for profile %s returned HTTP %d",
                    handle.profile_id,
                    response.status_code,
                )
        except httpx.HTTPError as exc:
            logger.warning("Could not stop GoLogin profile %s: %s", handle.profile_id, exc)
        logger.info("Released GoLogin profile %s", handle.profile_id)
