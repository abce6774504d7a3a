"""Pydantic models shared by the scraper layers.

``ScraperConfig`` is the per-carrier description of a portal (URLs,
credentials, selectors, pagination and pacing). ``PolicyRecord`` is the
canonical row produced by :mod:`argus.scraper.normalizer`. ``JobRecord`` and
``SessionRecord`` are read-only snapshots returned by the session store.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class LoginMode(str, Enum):
    """How a carrier portal is authenticated."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    WAITING_FOR_LOGIN = "waiting_for_login"
    READY = "ready"
    SCRAPING = "scraping"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


NON_TERMINAL_STATUSES = (
    SessionStatus.INITIALIZING,
    SessionStatus.WAITING_FOR_LOGIN,
    SessionStatus.READY,
    SessionStatus.SCRAPING,
)


# ---------------------------------------------------------------------------
# Scraper configuration
# ---------------------------------------------------------------------------


# (field, message) pairs checked by validate_config, in report order.
REQUIRED_CONFIG_FIELDS: tuple[tuple[str, str], ...] = (
    ("carrier_name", "Carrier name is required"),
    ("login_url", "Login URL is required"),
    ("portal_url", "Portal URL is required"),
    ("username", "Username is required"),
    ("password", "Password is required"),
    ("username_selector", "Username selector is required"),
    ("password_selector", "Password selector is required"),
    ("login_button_selector", "Login button selector is required"),
    ("policy_table_selector", "Policy table selector is required"),
    ("policy_row_selector", "Policy row selector is required"),
)


class ScraperConfig(BaseModel):
    """Everything the portal driver needs to log in to and walk one carrier portal.

    Required string fields default to ``""`` so that an incomplete config can
    still be constructed and reported on by :func:`validate_config`.
    """

    carrier_name: str = ""
    login_url: str = ""
    portal_url: str = ""
    username: str = ""
    password: str = Field(default="", repr=False)
    username_selector: str = ""
    password_selector: str = ""
    login_button_selector: str = ""
    policy_table_selector: str = ""
    policy_row_selector: str = ""

    pagination_next_selector: Optional[str] = Field(
        default=None, description="Next-page link; {page} becomes the number of the page it opens"
    )
    headers: dict[str, str] = Field(default_factory=dict)
    max_pages: Optional[int] = Field(default=None, ge=1)
    rate_limit_ms: Optional[int] = Field(default=None, ge=0)

    login_mode: LoginMode = LoginMode.AUTOMATIC
    profile_id: Optional[str] = Field(
        default=None, description="GoLogin profile; falls back to settings"
    )
    page_url_template: Optional[str] = Field(
        default=None, description="Listing URL with a {page} placeholder"
    )
    column_selector: Optional[str] = None
    column_names: list[str] = Field(default_factory=list)
    field_selectors: dict[str, str] = Field(
        default_factory=dict,
        description="field -> CSS selector inside the row; 'sel@attr' reads an attribute",
    )
    detail_selector: Optional[str] = Field(
        default=None, description="Selector for a detail block, formatted with {row_id}"
    )
    detail_patterns: dict[str, str] = Field(
        default_factory=dict, description="field -> regex with one capture group"
    )
    wait_timeout_ms: Optional[int] = Field(default=None, ge=0)

    def persisted(self) -> dict[str, Any]:
        """Return the JSON form stored on the job row (password removed)."""
        return self.model_dump(mode="json", exclude={"password"})


def validate_config(config: ScraperConfig) -> list[str]:
    """Return one message per missing required field; empty when valid.

    Portal credentials are required for every login mode, manual included.
    """
    errors: list[str] = []
    for field_name, message in REQUIRED_CONFIG_FIELDS:
        value = getattr(config, field_name)
        if not value or not str(value).strip():
            errors.append(message)
    return errors


# ---------------------------------------------------------------------------
# Policy record
# ---------------------------------------------------------------------------


class PolicyRecord(BaseModel):
    """A single canonical policy row scraped from a carrier portal."""

    policy_number: str
    applicant_name: Optional[str] = None
    plan_name: Optional[str] = None
    coverage_amount: Optional[str] = None
    status: Optional[str] = None
    issue_date: Optional[str] = None
    application_date: Optional[str] = None
    premium: Optional[str] = None
    state: Optional[str] = None
    agent_name: Optional[str] = None
    agent_number: Optional[str] = None
    plan_code: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    age: Optional[int] = None
    notes: Optional[str] = None
    last_updated: Optional[datetime] = None
    raw_data: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Store snapshots
# ---------------------------------------------------------------------------


class JobRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    carrier_name: str
    job_name: str
    status: JobStatus
    total_records: int = 0
    scraped_records: int = 0
    error_message: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict)
    created_by: str = "anonymous"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SessionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: Optional[uuid.UUID] = None
    status: SessionStatus
    browser_url: Optional[str] = None
    profile_id: Optional[str] = None
    current_page: int = 0
    total_pages: Optional[int] = None
    scraped_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    job: Optional[JobRecord] = None
