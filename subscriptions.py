from __future__ import annotations

import re
import sqlite3
from datetime import date, timedelta

from billing import (
    BillingCycle,
    compute_next_renewal,
    monthly_cost,
    resolve_preserved_day,
    validate_billing_cycle,
    yearly_cost,
)
from storage import (
    SUBSCRIPTION_STATUSES,
    billing_cycle_of,
    count_subscriptions,
    fetch_renewals_between,
    fetch_subscription,
    format_date,
    insert_subscription,
    parse_date,
    query_subscriptions,
    update_subscription_fields,
)

SERVICE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
CATEGORY_MAX_LENGTH = 50
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
COLOR_PATTERN = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
URL_PATTERN = re.compile(r"^https?://.+")
NOTES_MAX_LENGTH = 1000
STATS_UPCOMING_DAYS = 30


def normalize_category_name(value: str) -> str:
    cleaned = " ".join(value.split()).strip()
    return cleaned if cleaned else "Other"


def _parse_cost(cost: object) -> tuple[dict[str, object] | None, str | None]:
    if not isinstance(cost, dict):
        return None, "cost must include amount and currency"

    amount = cost.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int):
        return None, "Amount must be an integer (minor units)"
    if amount < 0:
        return None, "Amount cannot be negative"

    currency = str(cost.get("currency", "")).strip().upper()
    if not CURRENCY_PATTERN.match(currency):
        return None, "Currency must be a valid ISO 4217 code"

    return {"amount": amount, "currency": currency}, None


def _parse_billing_cycle(cycle: object) -> tuple[BillingCycle | None, str | None]:
    if not isinstance(cycle, dict):
        return None, "billingCycle must include value and unit"

    unit = str(cycle.get("unit", "")).strip().lower()
    value = cycle.get("value")
    error = validate_billing_cycle(value, unit)
    if error:
        return None, error
    return BillingCycle(int(value), unit), None


def _parse_metadata(metadata: object) -> tuple[dict[str, object] | None, str | None]:
    if metadata is None:
        return {}, None
    if not isinstance(metadata, dict):
        return None, "metadata must be an object"

    parsed: dict[str, object] = {}
    color = str(metadata.get("color") or "").strip()
    if color:
        if not COLOR_PATTERN.match(color):
            return None, "Color must be a valid hex code (e.g., #FF5733)"
        parsed["color"] = color

    for key, label in (("logoUrl", "Logo URL"), ("url", "URL")):
        url = str(metadata.get(key) or "").strip()
        if url:
            if not URL_PATTERN.match(url):
                return None, f"{label} must be a valid URL"
            parsed[key] = url

    notes = str(metadata.get("notes") or "")
    if notes:
        if len(notes) > NOTES_MAX_LENGTH:
            return None, f"Notes must be {NOTES_MAX_LENGTH} characters or fewer"
        parsed["notes"] = notes

    return parsed, None


def parse_subscription_payload(
    body: dict[str, object],
    partial: bool = False,
) -> tuple[dict[str, object] | None, str | None]:
    payload: dict[str, object] = {}

    if not partial or "service" in body:
        service = str(body.get("service", "")).strip()
        if not service:
            return None, "Service name is required"
        if len(service) > SERVICE_MAX_LENGTH:
            return None, f"Service name must be {SERVICE_MAX_LENGTH} characters or fewer"
        payload["service"] = service

    if "description" in body:
        description = str(body.get("description") or "").strip()
        if len(description) > DESCRIPTION_MAX_LENGTH:
            return None, f"Description must be {DESCRIPTION_MAX_LENGTH} characters or fewer"
        payload["description"] = description or None

    if not partial or "category" in body:
        category = normalize_category_name(str(body.get("category") or ""))
        if len(category) > CATEGORY_MAX_LENGTH:
            return None, f"Category must be {CATEGORY_MAX_LENGTH} characters or fewer"
        payload["category"] = category

    if not partial or "cost" in body:
        cost, error = _parse_cost(body.get("cost"))
        if error or cost is None:
            return None, error or "Invalid cost"
        payload["amount"] = cost["amount"]
        payload["currency"] = cost["currency"]

    if not partial or "billingCycle" in body:
        cycle, error = _parse_billing_cycle(body.get("billingCycle"))
        if error or cycle is None:
            return None, error or "Invalid billing cycle"
        payload["billing_cycle"] = cycle

    if not partial or "firstBillingDate" in body:
        try:
            payload["first_billing_date"] = parse_date(str(body.get("firstBillingDate", "")).strip())
        except ValueError:
            return None, "firstBillingDate must be YYYY-MM-DD"

    if "status" in body:
        status = str(body.get("status", "")).strip().lower()
        if status not in SUBSCRIPTION_STATUSES:
            return None, "Status must be active, paused, cancelled, or expired"
        payload["status"] = status

    if "metadata" in body:
        metadata, error = _parse_metadata(body.get("metadata"))
        if error or metadata is None:
            return None, error or "Invalid metadata"
        payload["metadata"] = metadata

    return payload, None


def create_subscription(
    conn: sqlite3.Connection,
    user_id: str,
    payload: dict[str, object],
) -> sqlite3.Row | None:
    first_billing_date: date = payload["first_billing_date"]
    cycle: BillingCycle = payload["billing_cycle"]
    preserved_day = first_billing_date.day
    next_renewal = compute_next_renewal(first_billing_date, cycle, preserved_day)

    sub_id = insert_subscription(
        conn,
        {
            "user_id": user_id,
            "service": payload["service"],
            "description": payload.get("description"),
            "category": payload.get("category"),
            "amount": payload["amount"],
            "currency": payload["currency"],
            "billing_value": cycle.value,
            "billing_unit": cycle.unit,
            "first_billing_date": format_date(first_billing_date),
            "next_renewal": format_date(next_renewal),
            "preserved_billing_day": preserved_day,
            "status": payload.get("status", "active"),
            "metadata": payload.get("metadata"),
        },
    )
    return fetch_subscription(conn, sub_id, user_id)


def update_subscription(
    conn: sqlite3.Connection,
    sub_id: int,
    user_id: str,
    updates: dict[str, object],
) -> sqlite3.Row | None:
    current = fetch_subscription(conn, sub_id, user_id)
    if current is None:
        return None

    fields: dict[str, object] = {
        key: updates[key]
        for key in ("service", "description", "category", "amount", "currency", "status", "metadata")
        if key in updates
    }

    if "billing_cycle" in updates or "first_billing_date" in updates:
        cycle: BillingCycle = updates.get("billing_cycle") or billing_cycle_of(current)
        if "first_billing_date" in updates:
            first_billing_date: date = updates["first_billing_date"]
            preserved_day = first_billing_date.day
        else:
            first_billing_date = parse_date(current["first_billing_date"])
            preserved_day = resolve_preserved_day(current["preserved_billing_day"], first_billing_date)

        fields.update(
            {
                "billing_value": cycle.value,
                "billing_unit": cycle.unit,
                "first_billing_date": format_date(first_billing_date),
                "preserved_billing_day": preserved_day,
                "next_renewal": format_date(compute_next_renewal(first_billing_date, cycle, preserved_day)),
            }
        )

    if fields:
        update_subscription_fields(conn, sub_id, user_id, fields)
    return fetch_subscription(conn, sub_id, user_id)


def cancel_subscription(conn: sqlite3.Connection, sub_id: int, user_id: str) -> sqlite3.Row | None:
    if not update_subscription_fields(conn, sub_id, user_id, {"status": "cancelled"}):
        return None
    return fetch_subscription(conn, sub_id, user_id)


def list_subscriptions(
    conn: sqlite3.Connection,
    user_id: str,
    *,
    status: str | None = None,
    category: str | None = None,
    search: str | None = None,
) -> list[sqlite3.Row]:
    return query_subscriptions(conn, user_id, status=status, category=category, search=search)


def search_subscriptions(
    conn: sqlite3.Connection,
    user_id: str,
    query: str,
    *,
    status: str | None = None,
    category: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[sqlite3.Row], int]:
    rows = query_subscriptions(
        conn,
        user_id,
        status=status,
        category=category,
        search=query,
        limit=limit,
        offset=offset,
    )
    total = count_subscriptions(conn, user_id, status=status, category=category, search=query)
    return rows, total


def upcoming_renewals(
    conn: sqlite3.Connection,
    user_id: str,
    days_ahead: int = 7,
    today: date | None = None,
) -> list[sqlite3.Row]:
    today = today or date.today()
    return fetch_renewals_between(conn, today, today + timedelta(days=days_ahead), user_id=user_id)


def subscription_stats(
    conn: sqlite3.Connection,
    user_id: str,
    today: date | None = None,
) -> dict[str, object]:
    rows = query_subscriptions(conn, user_id)
    stats: dict[str, object] = {
        "total": len(rows),
        "active": sum(1 for row in rows if row["status"] == "active"),
        "paused": sum(1 for row in rows if row["status"] == "paused"),
        "cancelled": sum(1 for row in rows if row["status"] == "cancelled"),
        "expired": sum(1 for row in rows if row["status"] == "expired"),
        "upcomingRenewals": len(upcoming_renewals(conn, user_id, STATS_UPCOMING_DAYS, today=today)),
    }

    monthly_total = 0.0
    yearly_total = 0.0
    for row in rows:
        if row["status"] != "active":
            continue
        cycle = billing_cycle_of(row)
        monthly_total += monthly_cost(int(row["amount"]), cycle)
        yearly_total += yearly_cost(int(row["amount"]), cycle)

    stats["monthlyTotal"] = round(monthly_total, 2)
    stats["yearlyTotal"] = round(yearly_total, 2)
    return stats
