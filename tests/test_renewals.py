import sqlite3
import tempfile
import unittest
from datetime import date
from pathlib import Path
from unittest.mock import patch

import renewals
import storage


def make_record(**overrides: object) -> dict[str, object]:
    record: dict[str, object] = {
        "user_id": "user-1",
        "service": "Netflix",
        "category": "Streaming",
        "amount": 1599,
        "currency": "USD",
        "billing_value": 1,
        "billing_unit": "month",
        "first_billing_date": "2024-01-31",
        "next_renewal": "2024-02-29",
        "preserved_billing_day": 31,
    }
    record.update(overrides)
    return record


class RenewalProcessorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmpdir.name) / "test_subscriptions.db"
        storage.init_db(self.db_path)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def _connect(self) -> sqlite3.Connection:
        return storage.connect(self.db_path)

    def _insert(self, **overrides: object) -> int:
        with self._connect() as conn:
            return storage.insert_subscription(conn, make_record(**overrides))

    def _fetch(self, sub_id: int) -> sqlite3.Row:
        with self._connect() as conn:
            return storage.fetch_subscription(conn, sub_id)

    def test_process_renewals_advances_due_subscriptions(self) -> None:
        due_id = self._insert()
        future_id = self._insert(next_renewal="2024-03-15", preserved_billing_day=15)

        with self._connect() as conn:
            result = renewals.process_renewals(conn, today=date(2024, 3, 1))

        self.assertEqual(result, {"renewed": 1, "failed": 0})
        row = self._fetch(due_id)
        self.assertEqual(row["last_renewal"], "2024-02-29")
        self.assertEqual(row["next_renewal"], "2024-03-31")
        self.assertEqual(row["preserved_billing_day"], 31)
        self.assertEqual(self._fetch(future_id)["next_renewal"], "2024-03-15")

    def test_repeated_passes_keep_stored_preserved_day(self) -> None:
        sub_id = self._insert(next_renewal="2024-01-31")
        seen = []
        for today in (date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)):
            with self._connect() as conn:
                renewals.process_renewals(conn, today=today)
            seen.append(self._fetch(sub_id)["next_renewal"])

        self.assertEqual(seen, ["2024-02-29", "2024-03-31", "2024-04-30", "2024-05-31"])

    def test_yearly_leap_day_subscription(self) -> None:
        sub_id = self._insert(
            billing_unit="year",
            first_billing_date="2024-02-29",
            next_renewal="2025-02-28",
            preserved_billing_day=29,
        )
        for year in (2025, 2026, 2027):
            with self._connect() as conn:
                renewals.process_renewals(conn, today=date(year, 3, 1))

        row = self._fetch(sub_id)
        self.assertEqual(row["last_renewal"], "2027-02-28")
        self.assertEqual(row["next_renewal"], "2028-02-29")

    def test_missing_preserved_day_falls_back_to_current_renewal_once(self) -> None:
        sub_id = self._insert(next_renewal="2024-04-30", preserved_billing_day=None)

        with self._connect() as conn:
            renewals.process_renewals(conn, today=date(2024, 4, 30))

        row = self._fetch(sub_id)
        self.assertEqual(row["preserved_billing_day"], 30)
        self.assertEqual(row["next_renewal"], "2024-05-30")

    def test_failures_are_counted_without_stopping_the_batch(self) -> None:
        bad_unit_id = self._insert(billing_unit="fortnight", next_renewal="2024-02-01")
        bad_day_id = self._insert(preserved_billing_day=40, next_renewal="2024-02-02")
        good_id = self._insert(next_renewal="2024-02-03", preserved_billing_day=3)

        with self._connect() as conn:
            with self.assertLogs("renewals", level="ERROR") as logs:
                result = renewals.process_renewals(conn, today=date(2024, 2, 10))

        self.assertEqual(result, {"renewed": 1, "failed": 2})
        self.assertEqual(len(logs.records), 2)
        self.assertEqual(self._fetch(good_id)["next_renewal"], "2024-03-03")
        self.assertEqual(self._fetch(bad_unit_id)["next_renewal"], "2024-02-01")
        self.assertIsNone(self._fetch(bad_day_id)["last_renewal"])

    def test_process_renewals_does_not_commit_caller_transaction(self) -> None:
        due_id = self._insert()

        conn = self._connect()
        try:
            storage.insert_subscription(conn, make_record(service="Uncommitted", next_renewal="2024-06-01"))
            self.assertTrue(conn.in_transaction)

            result = renewals.process_renewals(conn, today=date(2024, 3, 1))

            self.assertTrue(conn.in_transaction)
            conn.rollback()
        finally:
            conn.close()

        self.assertEqual(result, {"renewed": 1, "failed": 0})
        with self._connect() as check:
            services = [row["service"] for row in check.execute("SELECT service FROM subscriptions")]
        self.assertEqual(services, ["Netflix"])
        self.assertEqual(self._fetch(due_id)["next_renewal"], "2024-02-29")

    def test_process_renewals_commits_on_a_fresh_connection(self) -> None:
        due_id = self._insert()

        conn = self._connect()
        try:
            renewals.process_renewals(conn, today=date(2024, 3, 1))
            self.assertFalse(conn.in_transaction)
        finally:
            conn.close()

        self.assertEqual(self._fetch(due_id)["next_renewal"], "2024-03-31")

    def test_inactive_subscriptions_are_skipped(self) -> None:
        for status in ("paused", "cancelled", "expired"):
            self._insert(status=status, next_renewal="2024-01-01")

        with self._connect() as conn:
            result = renewals.process_renewals(conn, today=date(2024, 2, 1))

        self.assertEqual(result, {"renewed": 0, "failed": 0})

    def test_due_reminders_window(self) -> None:
        self._insert(service="Soon", next_renewal="2024-03-05")
        self._insert(service="Today", next_renewal="2024-03-01")
        self._insert(service="Later", next_renewal="2024-03-20")
        self._insert(service="Paused", next_renewal="2024-03-02", status="paused")

        with self._connect() as conn:
            reminders = renewals.due_reminders(conn, today=date(2024, 3, 1), days_ahead=7)

        self.assertEqual([item["service"] for item in reminders], ["Today", "Soon"])
        self.assertEqual([item["daysUntilRenewal"] for item in reminders], [0, 4])

    def test_main_runs_one_pass_against_configured_database(self) -> None:
        self._insert(next_renewal="2000-01-31")

        with patch.dict("os.environ", {"SUBSCRIPTIONS_DB": str(self.db_path)}, clear=False):
            with patch("builtins.print"):
                exit_code = renewals.main()

        self.assertEqual(exit_code, 0)
        with self._connect() as conn:
            row = conn.execute("SELECT last_renewal FROM subscriptions").fetchone()
        self.assertEqual(row["last_renewal"], "2000-01-31")


class RenewalConfigTests(unittest.TestCase):
    def test_reminder_days_policy(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            self.assertEqual(renewals.reminder_days(), 7)

        with patch.dict("os.environ", {"NOTIFICATION_REMINDER_DAYS": "3"}, clear=True):
            self.assertEqual(renewals.reminder_days(), 3)

        for raw in ("soon", "0", "-2"):
            with patch.dict("os.environ", {"NOTIFICATION_REMINDER_DAYS": raw}, clear=True):
                self.assertEqual(renewals.reminder_days(), 7)

    def test_log_level_policy(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            self.assertEqual(renewals.log_level(), "INFO")

        with patch.dict("os.environ", {"LOG_LEVEL": "debug"}, clear=True):
            self.assertEqual(renewals.log_level(), "DEBUG")

        with patch.dict("os.environ", {"LOG_LEVEL": "verbose"}, clear=True):
            self.assertEqual(renewals.log_level(), "INFO")

    def test_database_path_policy(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            self.assertEqual(renewals.database_path(), storage.DB_PATH)

        with patch.dict("os.environ", {"SUBSCRIPTIONS_DB": "/tmp/subs.db"}, clear=True):
            self.assertEqual(renewals.database_path(), Path("/tmp/subs.db"))

    def test_build_renewal_event_payload(self) -> None:
        payload = renewals.build_renewal_event(
            "renewal_run_completed",
            renewed=3,
            failed=0,
            ignored_none=None,
        )
        self.assertEqual(payload["event"], "renewal_run_completed")
        self.assertEqual(payload["renewed"], 3)
        self.assertEqual(payload["failed"], 0)
        self.assertIn("timestamp", payload)
        self.assertNotIn("ignored_none", payload)


if __name__ == "__main__":
    unittest.main()
