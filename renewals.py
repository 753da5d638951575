from __future__ import annotations

import json
import logging
import os
import sqlite3
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from billing import compute_next_renewal, resolve_preserved_day
from storage import (
    DB_PATH,
    billing_cycle_of,
    connect,
    fetch_due_subscriptions,
    fetch_renewals_between,
    init_db,
    parse_date,
    record_renewal,
)

DEFAULT_REMINDER_DAYS = 7
DEFAULT_LOG_LEVEL = "INFO"

logger = logging.getLogger(__name__)


def database_path() -> Path:
    raw = os.environ.get("SUBSCRIPTIONS_DB", "").strip()
    return Path(raw) if raw else DB_PATH


def log_level() -> str:
    raw = os.environ.get("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper()
    if raw in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return raw
    return DEFAULT_LOG_LEVEL


def reminder_days() -> int:
    raw = os.environ.get("NOTIFICATION_REMINDER_DAYS", "").strip()
    if not raw:
        return DEFAULT_REMINDER_DAYS
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_REMINDER_DAYS
    return value if value > 0 else DEFAULT_REMINDER_DAYS


def configure_logging() -> None:
    logging.basicConfig(level=log_level(), format="%(asctime)s %(levelname)s %(name)s %(message)s")


def build_renewal_event(event: str, **fields: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }
    for key, value in fields.items():
        if value is not None:
            payload[key] = value
    return payload


def log_event(level: int, event: str, **fields: object) -> None:
    logger.log(level, json.dumps(build_renewal_event(event, **fields), default=str))


def renew_subscription(conn: sqlite3.Connection, row: sqlite3.Row) -> date:
    current_renewal = parse_date(row["next_renewal"])
    preserved_day = resolve_preserved_day(row["preserved_billing_day"], current_renewal)
    next_renewal = compute_next_renewal(current_renewal, billing_cycle_of(row), preserved_day)

    # Releasing the savepoint commits only when no outer transaction is open.
    conn.execute("SAVEPOINT renew_subscription")
    try:
        record_renewal(conn, int(row["id"]), current_renewal, next_renewal, preserved_day)
    except Exception:
        conn.execute("ROLLBACK TO SAVEPOINT renew_subscription")
        conn.execute("RELEASE SAVEPOINT renew_subscription")
        raise
    conn.execute("RELEASE SAVEPOINT renew_subscription")
    return next_renewal


def process_renewals(conn: sqlite3.Connection, today: date | None = None) -> dict[str, int]:
    """Advance every active subscription due on or before ``today`` by one cycle.

    A failure on one subscription is logged and counted; the rest of the batch
    still runs.
    """
    today = today or date.today()
    due = fetch_due_subscriptions(conn, today)
    log_event(logging.INFO, "renewal_run_started", due=len(due), today=today.isoformat())

    renewed = 0
    failed = 0
    for row in due:
        try:
            next_renewal = renew_subscription(conn, row)
        except Exception:
            failed += 1
            logger.exception("Failed to renew subscription %s", row["id"])
            continue

        renewed += 1
        log_event(
            logging.DEBUG,
            "subscription_renewed",
            subscription_id=row["id"],
            last_renewal=row["next_renewal"],
            next_renewal=next_renewal.isoformat(),
        )

    log_event(logging.INFO, "renewal_run_completed", renewed=renewed, failed=failed)
    return {"renewed": renewed, "failed": failed}


def due_reminders(
    conn: sqlite3.Connection,
    today: date | None = None,
    days_ahead: int | None = None,
) -> list[dict[str, object]]:
    today = today or date.today()
    days_ahead = reminder_days() if days_ahead is None else days_ahead
    rows = fetch_renewals_between(conn, today, today + timedelta(days=days_ahead))

    reminders = []
    for row in rows:
        renewal_date = parse_date(row["next_renewal"])
        reminders.append(
            {
                "id": row["id"],
                "userId": row["user_id"],
                "service": row["service"],
                "nextRenewal": row["next_renewal"],
                "daysUntilRenewal": (renewal_date - today).days,
                "amount": int(row["amount"]),
                "currency": row["currency"],
            }
        )
    return reminders


def main() -> int:
    configure_logging()
    db_path = database_path()
    init_db(db_path)

    conn = connect(db_path)
    try:
        result = process_renewals(conn)
        reminders = due_reminders(conn)
    finally:
        conn.close()

    log_event(logging.INFO, "renewal_reminders_due", count=len(reminders), days_ahead=reminder_days())
    print(f"Renewed {result['renewed']} subscription(s), {result['failed']} failed")
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
