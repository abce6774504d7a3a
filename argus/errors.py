"""Exception taxonomy shared by the store, the browser layer, the driver and
the session state machine.

The HTTP layer maps each class to a status code (see
:mod:`argus.api.routes`); everything else propagates these unchanged.
"""

from __future__ import annotations


class ArgusError(Exception):
    """Base exception for all Argus failures."""


class ValidationError(ArgusError):
    """Raised when a request or a scraper configuration is invalid.

    ``errors`` carries one human-readable message per failed check.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class NotFoundError(ArgusError):
    """Raised when a referenced job or session does not exist."""


class InvalidStateTransition(ArgusError):
    """Raised when an operation is not valid in the session's current state."""

    def __init__(self, session_id: object, current: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} session {session_id} while it is {current}"
        )
        self.session_id = session_id
        self.current = current
        self.operation = operation


class BrowserAcquisitionError(ArgusError):
    """Raised when a remote browser profile cannot be started or attached."""


class AcquisitionTimeout(BrowserAcquisitionError):
    """Raised when starting a remote profile exceeds the acquire timeout."""


class LoginError(ArgusError):
    """Raised when automatic portal login cannot be completed."""


class ExtractionError(ArgusError):
    """Raised when a listing page does not match the configured selectors."""


class PersistenceError(ArgusError):
    """Raised when the database is unavailable or rejects a write."""


class ScrapeLaunchError(ArgusError):
    """Raised when a scrape cannot be handed to a background worker."""
