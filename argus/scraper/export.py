"""Render a job's stored policies as CSV or JSON downloads."""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime
from typing import Any, Sequence

EXPORT_FORMATS = ("csv", "json")

# Leading CSV columns; any other keys follow in first-seen order.
CSV_COLUMNS = (
    "policy_number",
    "applicant_name",
    "plan_name",
    "coverage_amount",
    "status",
    "issue_date",
    "application_date",
    "premium",
    "state",
    "agent_name",
    "agent_number",
    "plan_code",
    "date_of_birth",
    "gender",
    "age",
    "notes",
    "carrier_name",
    "last_updated",
    "raw_data",
)


def _default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=_default, sort_keys=True)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def export_filename(job_id: Any, fmt: str) -> str:
    return f"policies_{job_id}.{fmt}"


def to_json(policies: Sequence[dict[str, Any]]) -> str:
    """Pretty-printed JSON array of policy dicts."""
    return json.dumps(list(policies), indent=2, default=_default)


def to_csv(policies: Sequence[dict[str, Any]]) -> str:
    """CSV with a header row; nested values are JSON-encoded.

    Returns an empty string when there is nothing to export.
    """
    if not policies:
        return ""
    columns = [c for c in CSV_COLUMNS if any(c in p for p in policies)]
    for policy in policies:
        for key in policy:
            if key not in columns:
                columns.append(key)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for policy in policies:
        writer.writerow([_cell(policy.get(column)) for column in columns])
    return buffer.getvalue()
