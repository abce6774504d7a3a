"""Carrier registry — one :class:`ScraperConfig` template per supported portal.

Per-carrier behaviour lives here as data: URLs, selectors, pacing, page caps
and login mode. Credentials are never part of a template; they are injected
from ``Settings`` by :func:`get_carrier_config` each time a config is needed.
"""

from __future__ import annotations

import logging

from argus.config import Settings, settings
from argus.errors import ValidationError
from argus.scraper.models import LoginMode, ScraperConfig

logger = logging.getLogger("argus.carriers")


CARRIER_CONFIGS: dict[str, ScraperConfig] = {
    # Guarantee Trust Life, GTLink "My Business". Login is manual: the
    # portal challenges automated sign-in, so the operator authenticates in
    # the GoLogin profile and confirms readiness.
    "GTL": ScraperConfig(
        carrier_name="GTL",
        login_url="https://eapp.gtlic.com/",
        portal_url="https://gtlink.gtlic.com/MyBusiness",
        username_selector='input[name="username"]',
        password_selector='input[name="password"]',
        login_button_selector='button[type="submit"]',
        policy_table_selector=".DivTable",
        policy_row_selector='.DivTableRow[id^="GTL"]',
        pagination_next_selector='a[href$="MyBusiness?page={page}"]',
        max_pages=19,
        rate_limit_ms=1500,
        login_mode=LoginMode.MANUAL,
        page_url_template="https://gtlink.gtlic.com/MyBusiness?page={page}",
        column_selector='[class*="col-"]',
        column_names=[
            "updated",
            "policy_number",
            "plan_name",
            "applicant_name",
            "coverage_amount",
            "status",
        ],
        detail_selector='div.DivTableDetail[aria-labelledby="{row_id}"]',
        detail_patterns={
            "issue_date": r"Issue Date:\s*(\d{2}/\d{2}/\d{2,4})",
            "application_date": r"Application Date:\s*(\d{2}/\d{2}/\d{2,4})",
            "premium": r"Premium:\s*\$?([\d,]+\.?\d*)",
            "state": r"State:\s*([A-Z]{2})",
            "agent_name": r"Agent:\s*([^\n]+)",
            "agent_number": r"Agent #:\s*([^\n]+)",
            "plan_code": r"Plan Code:\s*([^\n]+)",
        },
    ),
    "ANAM": ScraperConfig(
        carrier_name="ANAM",
        login_url="https://anamportal.com/login",
        portal_url="https://anamportal.com/policies",
        username_selector='[name="email"]',
        password_selector='[name="password"]',
        login_button_selector='[type="submit"]',
        policy_table_selector="table.policies-table",
        policy_row_selector="tbody tr",
        max_pages=10,
        rate_limit_ms=800,
        login_mode=LoginMode.AUTOMATIC,
    ),
    "AETNA": ScraperConfig(
        carrier_name="AETNA",
        login_url="https://aetnaseniorproducts.com/login",
        portal_url="https://aetnaseniorproducts.com/agent-portal",
        username_selector='[name="user"]',
        password_selector='[name="password"]',
        login_button_selector=".login-btn",
        policy_table_selector=".policies-grid",
        policy_row_selector=".policy-card",
        max_pages=15,
        rate_limit_ms=1200,
        login_mode=LoginMode.AUTOMATIC,
        field_selectors={
            "policy_number": ".policy-number",
            "applicant_name": ".insured-name",
            "plan_name": ".plan-name",
            "coverage_amount": ".face-amount",
            "status": ".policy-status",
            "issue_date": ".issue-date",
        },
    ),
}


def carrier_names() -> list[str]:
    return sorted(CARRIER_CONFIGS)


def register_carrier(config: ScraperConfig) -> None:
    """Add or replace a carrier template (name is upper-cased)."""
    name = config.carrier_name.strip().upper()
    CARRIER_CONFIGS[name] = config.model_copy(update={"carrier_name": name})
    logger.info("Registered carrier %s (%s login)", name, config.login_mode.value)


def get_carrier_config(name: str, config: Settings = settings) -> ScraperConfig:
    """Return the template for ``name`` with portal credentials filled in.

    Raises
    ------
    ValidationError
        If the carrier is not registered.
    """
    key = (name or "").strip().upper()
    template = CARRIER_CONFIGS.get(key)
    if template is None:
        raise ValidationError(
            f"Unknown carrier {name!r}; expected one of {', '.join(carrier_names())}",
            [f"Unknown carrier: {name}"],
        )
    prefix = key.lower()
    username = getattr(config, f"{prefix}_username", "") or template.username
    password = getattr(config, f"{prefix}_password", "") or template.password
    return template.model_copy(update={"username": username, "password": password}, deep=True)
