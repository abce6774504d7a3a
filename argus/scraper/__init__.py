"""Carrier portal scraping: browser control, portal driving, normalisation
and persistence.

The session state machine that ties these together is
:class:`argus.scraper.session_manager.SessionManager`; it is not re-exported
here because it depends on the carrier registry, which imports these models.
"""

from argus.scraper.models import (
    JobRecord,
    JobStatus,
    LoginMode,
    PolicyRecord,
    ScraperConfig,
    SessionRecord,
    SessionStatus,
    validate_config,
)
from argus.scraper.portal_driver import LoginOutcome, PortalDriver, iter_rows
from argus.scraper.remote_browser import ConnectionHandle, GoLoginController
from argus.scraper.store import SessionStore

__all__ = [
    "ConnectionHandle",
    "GoLoginController",
    "JobRecord",
    "JobStatus",
    "LoginMode",
    "LoginOutcome",
    "PolicyRecord",
    "PortalDriver",
    "ScraperConfig",
    "SessionRecord",
    "SessionStatus",
    "SessionStore",
    "iter_rows",
    "validate_config",
]
