"""SQLAlchemy ORM models for the scraper job / session / policy tables.

Column types are the portable SQLAlchemy 2.x ones (``Uuid``, ``JSON`` with a
``JSONB`` variant) so the same metadata runs on PostgreSQL in production and
on SQLite in the test suite.
"""

import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    JSON, String, Text, Integer, DateTime, ForeignKey, UniqueConstraint, Uuid, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.pool import StaticPool

from argus.config import Settings, settings

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Engine & Session ──────────────────────────────────────────────


def build_engine(config: Settings = settings) -> AsyncEngine:
    """Create the async engine for ``config.database_url``.

    In-memory SQLite URLs get a ``StaticPool`` so every session shares the
    single connection that holds the database.
    """
    url = config.database_url
    if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
        return create_async_engine(
            url,
            echo=config.database_echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=config.database_echo)
    return create_async_engine(url, echo=config.database_echo, pool_size=10, max_overflow=20)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create any missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class Base(DeclarativeBase):
    pass


# ── Scraper Domain ────────────────────────────────────────────────

class ScraperJob(Base):
    __tablename__ = "scraper_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    carrier_name: Mapped[str] = mapped_column(String(50), nullable=False)
    job_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scraped_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, default="anonymous")
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # Relationships
    sessions: Mapped[List["ScraperSession"]] = relationship(
        "ScraperSession", back_populates="job"
    )
    policies: Mapped[List["ScrapedPolicy"]] = relationship(
        "ScrapedPolicy", back_populates="job", cascade="all, delete-orphan"
    )


class ScraperSession(Base):
    __tablename__ = "scraper_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # Sessions outlive an externally deleted job; the FK is nulled instead.
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("scraper_jobs.id", ondelete="SET NULL"), index=True
    )
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="initializing", index=True
    )
    browser_url: Mapped[Optional[str]] = mapped_column(Text)
    # GoLogin profile held by the session, so any process can stop it.
    profile_id: Mapped[Optional[str]] = mapped_column(String(100))
    current_page: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pages: Mapped[Optional[int]] = mapped_column(Integer)
    scraped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    job: Mapped[Optional["ScraperJob"]] = relationship(
        "ScraperJob", back_populates="sessions"
    )


class ScrapedPolicy(Base):
    __tablename__ = "scraped_policies"
    __table_args__ = (
        UniqueConstraint("job_id", "policy_number", name="uq_scraped_policies_job_policy"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("scraper_jobs.id", ondelete="CASCADE"), nullable=False
    )
    carrier_name: Mapped[str] = mapped_column(String(50), nullable=False)
    # Scraped text is stored as found, so it is never length-bounded.
    policy_number: Mapped[str] = mapped_column(Text, nullable=False)
    applicant_name: Mapped[Optional[str]] = mapped_column(Text)
    plan_name: Mapped[Optional[str]] = mapped_column(Text)
    coverage_amount: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[Optional[str]] = mapped_column(Text)
    issue_date: Mapped[Optional[str]] = mapped_column(Text)
    application_date: Mapped[Optional[str]] = mapped_column(Text)
    premium: Mapped[Optional[str]] = mapped_column(Text)
    state: Mapped[Optional[str]] = mapped_column(Text)
    agent_name: Mapped[Optional[str]] = mapped_column(Text)
    agent_number: Mapped[Optional[str]] = mapped_column(Text)
    plan_code: Mapped[Optional[str]] = mapped_column(Text)
    date_of_birth: Mapped[Optional[str]] = mapped_column(Text)
    gender: Mapped[Optional[str]] = mapped_column(Text)
    age: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    last_updated: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    raw_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    job: Mapped["ScraperJob"] = relationship("ScraperJob", back_populates="policies")
