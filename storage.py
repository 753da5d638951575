from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path

from billing import BillingCycle, monthly_cost

DB_PATH = Path(__file__).with_name("subscriptions.db")
DATE_FORMAT = "%Y-%m-%d"
SUBSCRIPTION_STATUSES = ("active", "paused", "cancelled", "expired")

UPDATABLE_COLUMNS = {
    "service",
    "description",
    "category",
    "amount",
    "currency",
    "billing_value",
    "billing_unit",
    "first_billing_date",
    "next_renewal",
    "last_renewal",
    "preserved_billing_day",
    "status",
    "metadata",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def parse_date(value: str) -> date:
    return datetime.strptime(value, DATE_FORMAT).date()


def format_date(value: date | None) -> str | None:
    if value is None:
        return None
    return value.strftime(DATE_FORMAT)


def dump_metadata(metadata: dict[str, object] | None) -> str:
    return json.dumps(metadata or {}, sort_keys=True)


def load_metadata(raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    return json.loads(raw)


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def connect(db_path: Path | str | None = None) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path | str | None = None) -> None:
    with sqlite3.connect(db_path or DB_PATH) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                service TEXT NOT NULL,
                description TEXT,
                category TEXT,
                amount INTEGER NOT NULL,
                currency TEXT NOT NULL,
                billing_value INTEGER NOT NULL,
                billing_unit TEXT NOT NULL,
                first_billing_date TEXT NOT NULL,
                next_renewal TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        ensure_subscription_columns(conn)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_subscriptions_status_next_renewal "
            "ON subscriptions(status, next_renewal)"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_user_id ON subscriptions(user_id)")


def ensure_subscription_columns(conn: sqlite3.Connection) -> None:
    columns = conn.execute("PRAGMA table_info(subscriptions)").fetchall()
    column_names = {column[1] for column in columns}
    if "last_renewal" not in column_names:
        conn.execute("ALTER TABLE subscriptions ADD COLUMN last_renewal TEXT")
    if "preserved_billing_day" not in column_names:
        conn.execute("ALTER TABLE subscriptions ADD COLUMN preserved_billing_day INTEGER")
    if "metadata" not in column_names:
        conn.execute("ALTER TABLE subscriptions ADD COLUMN metadata TEXT")


def insert_subscription(conn: sqlite3.Connection, record: dict[str, object]) -> int:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO subscriptions (
            user_id, service, description, category, amount, currency,
            billing_value, billing_unit, first_billing_date, next_renewal,
            last_renewal, preserved_billing_day, status, metadata, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record["user_id"],
            record["service"],
            record.get("description"),
            record.get("category"),
            record["amount"],
            record["currency"],
            record["billing_value"],
            record["billing_unit"],
            record["first_billing_date"],
            record["next_renewal"],
            record.get("last_renewal"),
            record.get("preserved_billing_day"),
            record.get("status", "active"),
            dump_metadata(record.get("metadata")),
            now,
            now,
        ),
    )
    return int(cursor.lastrowid)


def fetch_subscription(
    conn: sqlite3.Connection,
    sub_id: int,
    user_id: str | None = None,
) -> sqlite3.Row | None:
    if user_id is None:
        return conn.execute("SELECT * FROM subscriptions WHERE id = ?", (sub_id,)).fetchone()
    return conn.execute(
        "SELECT * FROM subscriptions WHERE id = ? AND user_id = ?",
        (sub_id, user_id),
    ).fetchone()


def update_subscription_fields(
    conn: sqlite3.Connection,
    sub_id: int,
    user_id: str | None,
    fields: dict[str, object],
) -> bool:
    unknown = set(fields) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")

    if "metadata" in fields:
        fields = {**fields, "metadata": dump_metadata(fields["metadata"])}

    assignments = [f"{column} = ?" for column in fields]
    params: list[object] = list(fields.values())
    assignments.append("updated_at = ?")
    params.append(utc_now_iso())

    query = f"UPDATE subscriptions SET {', '.join(assignments)} WHERE id = ?"
    params.append(sub_id)
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)

    cursor = conn.execute(query, params)
    return cursor.rowcount > 0


def fetch_due_subscriptions(conn: sqlite3.Connection, today: date) -> list[sqlite3.Row]:
    return conn.execute(
        """
        SELECT * FROM subscriptions
        WHERE status = 'active' AND next_renewal <= ?
        ORDER BY next_renewal ASC, id ASC
        """,
        (format_date(today),),
    ).fetchall()


def fetch_renewals_between(
    conn: sqlite3.Connection,
    start: date,
    end: date,
    user_id: str | None = None,
) -> list[sqlite3.Row]:
    query = """
        SELECT * FROM subscriptions
        WHERE status = 'active' AND next_renewal >= ? AND next_renewal <= ?
    """
    params: list[object] = [format_date(start), format_date(end)]
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    query += " ORDER BY next_renewal ASC, id ASC"
    return conn.execute(query, params).fetchall()


def record_renewal(
    conn: sqlite3.Connection,
    sub_id: int,
    last_renewal: date,
    next_renewal: date,
    preserved_day: int,
) -> bool:
    return update_subscription_fields(
        conn,
        sub_id,
        None,
        {
            "last_renewal": format_date(last_renewal),
            "next_renewal": format_date(next_renewal),
            "preserved_billing_day": preserved_day,
        },
    )


def _subscription_filters(
    user_id: str,
    status: str | None,
    category: str | None,
    search: str | None,
) -> tuple[str, list[object]]:
    clauses = ["user_id = ?"]
    params: list[object] = [user_id]
    if status:
        clauses.append("status = ?")
        params.append(status)
    if category:
        clauses.append("category = ? COLLATE NOCASE")
        params.append(category)
    if search:
        pattern = f"%{escape_like(search.strip())}%"
        clauses.append(
            "(service LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\' OR category LIKE ? ESCAPE '\\')"
        )
        params.extend([pattern, pattern, pattern])
    return " AND ".join(clauses), params


def query_subscriptions(
    conn: sqlite3.Connection,
    user_id: str,
    *,
    status: str | None = None,
    category: str | None = None,
    search: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[sqlite3.Row]:
    where, params = _subscription_filters(user_id, status, category, search)
    query = f"SELECT * FROM subscriptions WHERE {where} ORDER BY next_renewal ASC, id ASC"
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])
    return conn.execute(query, params).fetchall()


def count_subscriptions(
    conn: sqlite3.Connection,
    user_id: str,
    *,
    status: str | None = None,
    category: str | None = None,
    search: str | None = None,
) -> int:
    where, params = _subscription_filters(user_id, status, category, search)
    row = conn.execute(f"SELECT COUNT(*) AS count FROM subscriptions WHERE {where}", params).fetchone()
    return int(row["count"]) if row else 0


def billing_cycle_of(row: sqlite3.Row) -> BillingCycle:
    return BillingCycle(int(row["billing_value"]), str(row["billing_unit"]))


def serialize_subscription(row: sqlite3.Row, today: date | None = None) -> dict[str, object]:
    today = today or date.today()
    next_renewal = parse_date(row["next_renewal"])
    cycle = billing_cycle_of(row)

    return {
        "id": row["id"],
        "userId": row["user_id"],
        "service": row["service"],
        "description": row["description"],
        "category": row["category"],
        "cost": {"amount": int(row["amount"]), "currency": row["currency"]},
        "billingCycle": {"value": cycle.value, "unit": cycle.unit},
        "firstBillingDate": row["first_billing_date"],
        "nextRenewal": row["next_renewal"],
        "lastRenewal": row["last_renewal"],
        "preservedBillingDay": row["preserved_billing_day"],
        "status": row["status"],
        "metadata": load_metadata(row["metadata"]),
        "daysUntilRenewal": (next_renewal - today).days,
        "monthlyCost": monthly_cost(int(row["amount"]), cycle),
    }
