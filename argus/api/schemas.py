"""Pydantic schemas for the Argus API request/response bodies.

Kept separate from the store snapshots in :mod:`argus.scraper.models` so the
public surface can evolve independently of persistence.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from argus.scraper.models import JobRecord, SessionRecord


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class StartSessionRequest(BaseModel):
    """Body of ``POST /sessions``.

    Attributes
    ----------
    job_name:
        Human-readable name for the scrape job.
    user_email:
        Requesting staff member; stored as the job's ``created_by``.
    carrier_name:
        Registered carrier; defaults to ``settings.default_carrier``.
    """

    job_name: str = Field(..., min_length=1, description="Human-readable job name")
    user_email: Optional[str] = Field(None, description="Requesting user e-mail")
    carrier_name: Optional[str] = Field(None, description="Carrier, e.g. 'GTL'")


class SessionActionRequest(BaseModel):
    """Body of ``POST /sessions/confirm-ready`` and ``POST /sessions/scrape``."""

    session_id: UUID


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    message: str


class StartSessionResponse(BaseModel):
    session_id: UUID
    job_id: UUID
    status: str
    message: str


class SessionStatusResponse(BaseModel):
    """Session snapshot joined with its job; ``job`` is null once the job is deleted."""

    session: SessionRecord
    job: Optional[JobRecord] = None

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionStatusResponse":
        return cls(session=record.model_copy(update={"job": None}), job=record.job)


class CarrierSummary(BaseModel):
    carrier_name: str
    login_mode: str
    portal_url: str
    max_pages: Optional[int] = None
    rate_limit_ms: Optional[int] = None
    credentials_configured: bool


class HealthResponse(BaseModel):
    status: str = Field(..., description="'healthy' or 'degraded'")
    version: str
    database: bool
    active_sessions: int = 0
    timestamp: datetime


class ErrorResponse(BaseModel):
    error: str


PolicyRow = dict[str, Any]
