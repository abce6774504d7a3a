"""
Tests for argus.scraper.normalizer.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from argus.scraper.normalizer import (
    normalize_row,
    normalize_rows,
    parse_age,
    parse_currency,
    parse_date,
    pick,
)

STAMP = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestFieldHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("$1,250.00", "1250.00"),
            ("10,000", "10000"),
            ("  $5 ", "5"),
            ("", None),
            (None, None),
        ],
    )
    def test_parse_currency(self, raw, expected):
        assert parse_currency(raw) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("01/02/1990", "1990-01-02"),
            ("12/31/24", "2024-12-31"),
            ("2024-03-01", "2024-03-01"),
            ("2024-03-01T12:30:00Z", "2024-03-01"),
            ("Mar 5, 2023", "2023-03-05"),
        ],
    )
    def test_parse_date(self, raw, expected):
        assert parse_date(raw) == expected

    def test_unparseable_date_is_returned_unchanged(self):
        assert parse_date("  pending review ") == "pending review"

    def test_empty_date_is_none(self):
        assert parse_date("   ") is None
        assert parse_date(None) is None

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("42", 42),
            ("67 yrs", 67),
            (35, 35),
            ("-5", -5),
            ("+7", 7),
            ("- 5", None),
            ("n/a", None),
            ("", None),
            (None, None),
        ],
    )
    def test_parse_age(self, raw, expected):
        assert parse_age(raw) == expected

    def test_pick_skips_blank_values(self):
        row = {"policy_number": "  ", "policyNumber": "GTL123"}
        assert pick(row, ("policy_number", "policyNumber")) == "GTL123"


class TestNormalizeRow:
    def test_full_row(self):
        record = normalize_row(
            {
                "policyNumber": "GTL0001",
                "insured": "Jane Roe",
                "amount": "$1,250.00",
                "dob": "01/02/1990",
                "gender": "female",
                "state": "tx",
                "age": "58",
                "Issue Date": "03/04/2024",
            },
            now=STAMP,
        )

        assert record is not None
        assert record.policy_number == "GTL0001"
        assert record.applicant_name == "Jane Roe"
        assert record.coverage_amount == "1250.00"
        assert record.date_of_birth == "1990-01-02"
        assert record.issue_date == "2024-03-04"
        assert record.gender == "F"
        assert record.state == "TX"
        assert record.age == 58
        assert record.last_updated == STAMP

    def test_aliases_reconcile_to_same_record(self):
        camel = normalize_row({"policyNumber": "P1", "coverageAmount": "$10"}, now=STAMP)
        snake = normalize_row({"policy_number": "P1", "coverage_amount": "10"}, now=STAMP)
        label = normalize_row({"Policy #": "P1", "Face Amount": "$10"}, now=STAMP)

        assert camel.policy_number == snake.policy_number == label.policy_number == "P1"
        assert camel.coverage_amount == snake.coverage_amount == label.coverage_amount == "10"

    def test_raw_row_is_preserved(self):
        raw = {"policy_number": "P9", "weird column": "kept"}

        record = normalize_row(raw, now=STAMP)

        assert record.raw_data == raw
        assert record.raw_data is not raw

    def test_unusable_values_pass_through(self):
        record = normalize_row(
            {"policy_number": "P2", "dob": "unknown", "age": "n/a"}, now=STAMP
        )

        assert record.date_of_birth == "unknown"
        assert record.age is None

    def test_row_without_policy_number_is_dropped(self):
        assert normalize_row({"insured": "Nobody"}, now=STAMP) is None
        assert normalize_row({"policy_number": "   "}, now=STAMP) is None

    def test_normalize_rows_filters_and_shares_timestamp(self):
        records = normalize_rows(
            [{"policy_number": "A"}, {"insured": "no number"}, {"Policy Number": "B"}],
            now=STAMP,
        )

        assert [r.policy_number for r in records] == ["A", "B"]
        assert {r.last_updated for r in records} == {STAMP}
