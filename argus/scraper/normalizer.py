"""Policy normaliser — raw portal rows to canonical :class:`PolicyRecord` values.

Carrier portals label the same logical field differently (``policyNumber``,
``policy_number``, ``Policy #`` ...) and format money and dates loosely. The
functions here are pure: they never touch the network or the database, and a
value that cannot be cleaned is passed through rather than rejected.

Dates are interpreted US month-first (``01/02/1990`` is 2 January 1990), which
is how every supported carrier portal renders them.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from argus.scraper.models import PolicyRecord

logger = logging.getLogger("argus.scraper.normalizer")

# Logical field -> accepted raw keys, in priority order.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "policy_number": ("policy_number", "policyNumber", "Policy Number", "Policy #"),
    "applicant_name": ("applicant_name", "applicantName", "insured", "Insured", "Applicant"),
    "plan_name": ("plan_name", "planName", "plan", "Plan"),
    "coverage_amount": ("coverage_amount", "amount", "coverageAmount", "Amount", "Face Amount"),
    "status": ("status", "Status"),
    "issue_date": ("issue_date", "issueDate", "Issue Date"),
    "application_date": ("application_date", "appDate", "applicationDate", "Application Date"),
    "premium": ("premium", "Premium"),
    "state": ("state", "State"),
    "agent_name": ("agent_name", "agent", "agentName", "Agent"),
    "agent_number": ("agent_number", "agentNum", "agentNumber", "Agent #"),
    "plan_code": ("plan_code", "planCode", "Plan Code"),
    "date_of_birth": ("date_of_birth", "dob", "DOB", "Date of Birth"),
    "gender": ("gender", "Gender", "sex"),
    "age": ("age", "Age"),
    "notes": ("notes", "Notes"),
}

_DATE_FORMATS = (
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y-%m-%d",
    "%m-%d-%Y",
    "%Y/%m/%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
)

_CURRENCY_STRIP = re.compile(r"[$,]")
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def pick(row: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    """Return the first present, non-empty value among ``aliases``."""
    for key in aliases:
        value = row.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def parse_currency(value: Any) -> str | None:
    """Strip ``$`` and thousands separators; ``None`` for empty input.

    >>> parse_currency("$1,250.00")
    '1250.00'
    """
    if value is None:
        return None
    cleaned = _CURRENCY_STRIP.sub("", str(value)).strip()
    return cleaned or None


def parse_date(value: Any) -> str | None:
    """Render a date as ``YYYY-MM-DD``.

    Unrecognised input is returned unchanged (stripped) and logged at debug
    level; empty input yields ``None``.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    # ISO timestamps such as "2024-03-01T12:00:00Z"
    if "T" in text and text[:4].isdigit():
        text_date = text.split("T", 1)[0]
    else:
        text_date = text
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text_date, fmt).date().isoformat()
        except ValueError:
            continue
    logger.debug("Could not parse date: %r", value)
    return text


def parse_age(value: Any) -> int | None:
    """Integer-parse the leading, optionally signed, digits of ``value``.

    ``None`` when there are none, like ``"n/a"``.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = _LEADING_INT.match(str(value))
    if not match:
        return None
    return int(match.group(1))


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ---------------------------------------------------------------------------
# Record normalisation
# ---------------------------------------------------------------------------


def normalize_row(row: Mapping[str, Any], *, now: datetime | None = None) -> PolicyRecord | None:
    """Map one raw row to a :class:`PolicyRecord`.

    Returns ``None`` (and logs) when the row carries no policy number, since
    such a row cannot be stored.

    Parameters
    ----------
    row:
        Field name to scraped value, exactly as the portal driver produced it.
    now:
        Timestamp for ``last_updated``; defaults to the current UTC time.
    """
    policy_number = _clean_text(pick(row, FIELD_ALIASES["policy_number"]))
    if not policy_number:
        logger.info("Skipping row without policy number: %s", sorted(row.keys()))
        return None

    state = _clean_text(pick(row, FIELD_ALIASES["state"]))
    gender = _clean_text(pick(row, FIELD_ALIASES["gender"]))

    return PolicyRecord(
        policy_number=policy_number,
        applicant_name=_clean_text(pick(row, FIELD_ALIASES["applicant_name"])),
        plan_name=_clean_text(pick(row, FIELD_ALIASES["plan_name"])),
        coverage_amount=parse_currency(pick(row, FIELD_ALIASES["coverage_amount"])),
        status=_clean_text(pick(row, FIELD_ALIASES["status"])),
        issue_date=parse_date(pick(row, FIELD_ALIASES["issue_date"])),
        application_date=parse_date(pick(row, FIELD_ALIASES["application_date"])),
        premium=parse_currency(pick(row, FIELD_ALIASES["premium"])),
        state=state.upper() if state else None,
        agent_name=_clean_text(pick(row, FIELD_ALIASES["agent_name"])),
        agent_number=_clean_text(pick(row, FIELD_ALIASES["agent_number"])),
        plan_code=_clean_text(pick(row, FIELD_ALIASES["plan_code"])),
        date_of_birth=parse_date(pick(row, FIELD_ALIASES["date_of_birth"])),
        gender=gender[0].upper() if gender else None,
        age=parse_age(pick(row, FIELD_ALIASES["age"])),
        notes=_clean_text(pick(row, FIELD_ALIASES["notes"])),
        last_updated=now or datetime.now(timezone.utc),
        raw_data=dict(row),
    )


def normalize_rows(
    rows: Iterable[Mapping[str, Any]], *, now: datetime | None = None
) -> list[PolicyRecord]:
    """Normalise a page of rows, dropping those without a policy number."""
    stamp = now or datetime.now(timezone.utc)
    records: list[PolicyRecord] = []
    for row in rows:
        record = normalize_row(row, now=stamp)
        if record is not None:
            records.append(record)
    return records
