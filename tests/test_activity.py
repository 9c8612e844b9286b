"""Tests for the activity log."""

import csv
import io
import json
import sqlite3
import tempfile
import time
from pathlib import Path

import pytest

from supamail.activity import ActivityLog
from supamail.errors import LogNotFoundError
from supamail.models import LogStatus


@pytest.fixture
def activity() -> ActivityLog:
    """Create a temporary ActivityLog for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield ActivityLog(Path(tmpdir) / "test.db")


def _log(activity: ActivityLog, message_id: str = "<m1@x>", status: LogStatus = LogStatus.BLOCKED, **kwargs):
    defaults = dict(
        user_id="u1",
        message_id=message_id,
        sender="bad@spam.com",
        subject="Buy now",
        status=status,
        ai_summary="Discount offer",
        category="Promotions",
        body_html="<p>Buy</p>",
        body_plain="Buy",
    )
    defaults.update(kwargs)
    return activity.log_activity(**defaults)


class TestLogActivity:
    def test_log_and_get(self, activity: ActivityLog) -> None:
        entry, created = _log(activity)
        assert created

        fetched = activity.get_entry(entry.id)
        assert fetched is not None
        assert fetched.status == LogStatus.BLOCKED
        assert fetched.body_html == "<p>Buy</p>"
        assert fetched.category == "Promotions"
        assert fetched.delivered_at is None

    def test_same_message_is_logged_once(self, activity: ActivityLog) -> None:
        first, created_first = _log(activity)
        second, created_second = _log(activity, status=LogStatus.FORWARDED)

        assert created_first
        assert not created_second
        assert second.id == first.id
        assert second.status == LogStatus.BLOCKED
        assert activity.get_stats()["total"] == 1

    def test_same_message_for_different_users(self, activity: ActivityLog) -> None:
        _log(activity, user_id="u1")
        _, created = _log(activity, user_id="u2")
        assert created

    def test_get_by_message_id(self, activity: ActivityLog) -> None:
        entry, _ = _log(activity)
        assert activity.get_by_message_id("u1", "<m1@x>").id == entry.id
        assert activity.get_by_message_id("u2", "<m1@x>") is None


class TestStatusTransitions:
    def test_blocked_to_forwarded(self, activity: ActivityLog) -> None:
        entry, _ = _log(activity)
        updated = activity.mark_forwarded(entry.id)
        assert updated.status == LogStatus.FORWARDED
        assert updated.updated_at is not None

    def test_forwarded_stays_forwarded(self, activity: ActivityLog) -> None:
        entry, _ = _log(activity, status=LogStatus.FORWARDED)
        assert activity.mark_forwarded(entry.id).status == LogStatus.FORWARDED

    def test_no_transition_back_to_blocked(self, activity: ActivityLog) -> None:
        entry, _ = _log(activity, status=LogStatus.FORWARDED)
        _log(activity, status=LogStatus.BLOCKED)
        activity.mark_forwarded(entry.id)
        assert activity.get_entry(entry.id).status == LogStatus.FORWARDED

    def test_unknown_entry(self, activity: ActivityLog) -> None:
        with pytest.raises(LogNotFoundError):
            activity.mark_forwarded("missing")

    def test_mark_delivered(self, activity: ActivityLog) -> None:
        entry, _ = _log(activity, status=LogStatus.FORWARDED)
        activity.mark_delivered(entry.id)
        first = activity.get_entry(entry.id).delivered_at
        assert first is not None

        activity.mark_delivered(entry.id)
        assert activity.get_entry(entry.id).delivered_at == first


class TestHistory:
    def test_filters(self, activity: ActivityLog) -> None:
        _log(activity, message_id="1")
        _log(activity, message_id="2", sender="friend@good.org", subject="Lunch", category="Personal",
             status=LogStatus.FORWARDED)
        _log(activity, message_id="3", user_id="u2")

        assert len(activity.get_history("u1")) == 2
        assert len(activity.get_history("u1", status=LogStatus.FORWARDED)) == 1
        assert [e.message_id for e in activity.get_history("u1", search="LUNCH")] == ["2"]
        assert [e.message_id for e in activity.get_history("u1", search="promo")] == ["1"]
        assert len(activity.get_history()) == 3
        assert len(activity.get_history("u1", limit=1)) == 1

    def test_stats(self, activity: ActivityLog) -> None:
        _log(activity, message_id="1")
        _log(activity, message_id="2", status=LogStatus.FORWARDED)
        _log(activity, message_id="3", status=LogStatus.FORWARDED)
        assert activity.get_stats("u1") == {"total": 3, "forwarded": 2, "blocked": 1}
        assert activity.get_stats("nobody") == {"total": 0, "forwarded": 0, "blocked": 0}

    def test_export_json(self, activity: ActivityLog) -> None:
        _log(activity)
        data = json.loads(activity.export_log("json"))
        assert data[0]["status"] == "blocked"
        assert data[0]["body_plain"] == "Buy"

    def test_export_csv_omits_bodies(self, activity: ActivityLog) -> None:
        _log(activity)
        rows = list(csv.DictReader(io.StringIO(activity.export_log("csv"))))
        assert rows[0]["sender"] == "bad@spam.com"
        assert "body_plain" not in rows[0]

    def test_export_empty(self, activity: ActivityLog) -> None:
        assert activity.export_log("csv") == ""
        assert json.loads(activity.export_log("json")) == []


class TestDeliveryClaims:
    def test_only_one_claim_wins(self, activity: ActivityLog) -> None:
        entry, _ = _log(activity, status=LogStatus.FORWARDED)
        assert activity.claim_delivery(entry.id)
        assert not activity.claim_delivery(entry.id)

    def test_release_allows_retry(self, activity: ActivityLog) -> None:
        entry, _ = _log(activity, status=LogStatus.FORWARDED)
        assert activity.claim_delivery(entry.id)
        activity.release_delivery(entry.id)
        assert activity.claim_delivery(entry.id)

    def test_delivered_entry_cannot_be_claimed(self, activity: ActivityLog) -> None:
        entry, _ = _log(activity, status=LogStatus.FORWARDED)
        assert activity.claim_delivery(entry.id)
        activity.mark_delivered(entry.id)
        activity.release_delivery(entry.id)
        assert not activity.claim_delivery(entry.id)

    def test_stale_claim_can_be_taken_over(self, temp_dir: Path) -> None:
        activity = ActivityLog(temp_dir / "test.db", claim_ttl=0)
        entry, _ = _log(activity, status=LogStatus.FORWARDED)
        assert activity.claim_delivery(entry.id)
        time.sleep(0.01)
        assert activity.claim_delivery(entry.id)

    def test_unknown_entry(self, activity: ActivityLog) -> None:
        assert not activity.claim_delivery("missing")

    def test_adds_claim_column_to_existing_table(self, temp_dir: Path) -> None:
        db_path = temp_dir / "old.db"
        with sqlite3.connect(db_path) as conn:
            conn.execute("""
                CREATE TABLE activity_log (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    sender TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    ai_summary TEXT,
                    category TEXT,
                    body_html TEXT NOT NULL,
                    body_plain TEXT NOT NULL,
                    status TEXT NOT NULL,
                    rule_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    UNIQUE (user_id, message_id)
                )
            """)
            conn.commit()

        activity = ActivityLog(db_path)
        entry, _ = _log(activity, status=LogStatus.FORWARDED)
        assert activity.claim_delivery(entry.id)
        assert activity.get_entry(entry.id).delivered_at is None
