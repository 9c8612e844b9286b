"""Activity log of processed inbound messages."""

import json
import sqlite3
import uuid
from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Literal

from .errors import LogNotFoundError
from .models import ActivityEntry, LogStatus

CSV_FIELDS = [
    "id",
    "created_at",
    "user_id",
    "message_id",
    "sender",
    "subject",
    "ai_summary",
    "category",
    "status",
    "rule_id",
    "delivered_at",
]


class ActivityLog:
    """Records one entry per processed message, with SQLite persistence.

    Entries are keyed by (user_id, message_id) so that re-processing the
    same inbound message returns the existing entry instead of logging it
    twice. The only status change allowed after creation is
    blocked -> forwarded.

    Forwarding is guarded by a delivery claim: a sender must win
    ``claim_delivery`` before talking to the relay, so overlapping runs for
    the same entry send at most once.
    """

    def __init__(self, db_path: Path, claim_ttl: float = 300.0) -> None:
        """Initialize the activity log with the given database path.

        Args:
            db_path: Path to the SQLite database file.
            claim_ttl: Seconds after which an unfinished delivery claim is
                       considered abandoned and can be taken over.
        """
        self.db_path = db_path
        self.claim_ttl = claim_ttl
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure the database and table exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_log (
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
                    delivered_at TEXT,
                    delivery_claimed_at TEXT,
                    UNIQUE (user_id, message_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_activity_user_created
                ON activity_log (user_id, created_at DESC)
            """)
            self._migrate_activity_log(conn)
            conn.commit()

    def _migrate_activity_log(self, conn: sqlite3.Connection) -> None:
        """Add new columns to an existing activity_log table if needed."""
        cursor = conn.execute("PRAGMA table_info(activity_log)")
        columns = {row[1] for row in cursor.fetchall()}

        migrations = [
            ("delivered_at", "TEXT"),
            ("delivery_claimed_at", "TEXT"),
        ]

        for col_name, col_type in migrations:
            if col_name not in columns:
                conn.execute(f"ALTER TABLE activity_log ADD COLUMN {col_name} {col_type}")

    def log_activity(
        self,
        user_id: str,
        message_id: str,
        sender: str,
        subject: str,
        status: LogStatus,
        *,
        ai_summary: str | None = None,
        category: str | None = None,
        body_html: str = "",
        body_plain: str = "",
        rule_id: str | None = None,
    ) -> tuple[ActivityEntry, bool]:
        """Record the outcome of processing a message.

        Returns:
            (entry, created). ``created`` is False when an entry for this
            message already existed; the stored entry is returned unchanged.
        """
        entry = ActivityEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            message_id=message_id,
            sender=sender,
            subject=subject or "",
            ai_summary=ai_summary,
            category=category,
            body_html=body_html or "",
            body_plain=body_plain or "",
            status=status,
            rule_id=rule_id,
            created_at=datetime.now(),
        )

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO activity_log (
                    id, user_id, message_id, sender, subject, ai_summary, category,
                    body_html, body_plain, status, rule_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.message_id,
                    entry.sender,
                    entry.subject,
                    entry.ai_summary,
                    entry.category,
                    entry.body_html,
                    entry.body_plain,
                    entry.status.value,
                    entry.rule_id,
                    entry.created_at.isoformat(),
                ),
            )
            conn.commit()
            created = cursor.rowcount > 0

        if created:
            return entry, True

        existing = self.get_by_message_id(user_id, message_id)
        if existing is None:
            raise LogNotFoundError(message_id)
        return existing, False

    def get_entry(self, entry_id: str) -> ActivityEntry | None:
        """Get a specific entry by ID."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute("SELECT * FROM activity_log WHERE id = ?", (entry_id,)).fetchone()
            return self._row_to_entry(row) if row else None

    def get_by_message_id(self, user_id: str, message_id: str) -> ActivityEntry | None:
        """Get the entry recorded for a message, if any."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM activity_log WHERE user_id = ? AND message_id = ?",
                (user_id, message_id),
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def mark_forwarded(self, entry_id: str) -> ActivityEntry:
        """Move a blocked entry to forwarded.

        Forwarded entries are returned unchanged.

        Raises:
            LogNotFoundError: No such entry.
        """
        now = datetime.now().isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE activity_log SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (LogStatus.FORWARDED.value, now, entry_id, LogStatus.BLOCKED.value),
            )
            conn.commit()

        entry = self.get_entry(entry_id)
        if entry is None:
            raise LogNotFoundError(entry_id)
        return entry

    def claim_delivery(self, entry_id: str) -> bool:
        """Reserve the right to forward an entry.

        Succeeds for exactly one caller while the entry is undelivered and no
        live claim exists. A claim older than ``claim_ttl`` seconds is treated
        as abandoned and can be taken over.

        Returns:
            True if the caller now holds the claim and should send.
        """
        now = datetime.now()
        stale_before = (now - timedelta(seconds=self.claim_ttl)).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE activity_log SET delivery_claimed_at = ?
                WHERE id = ? AND delivered_at IS NULL
                  AND (delivery_claimed_at IS NULL OR delivery_claimed_at < ?)
                """,
                (now.isoformat(), entry_id, stale_before),
            )
            conn.commit()
            return cursor.rowcount == 1

    def release_delivery(self, entry_id: str) -> None:
        """Drop a claim after a failed send so a later retry can deliver."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE activity_log SET delivery_claimed_at = NULL WHERE id = ? AND delivered_at IS NULL",
                (entry_id,),
            )
            conn.commit()

    def mark_delivered(self, entry_id: str) -> None:
        """Record that the forward for this entry went through."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE activity_log SET delivered_at = ? WHERE id = ? AND delivered_at IS NULL",
                (datetime.now().isoformat(), entry_id),
            )
            conn.commit()

    def get_history(
        self,
        user_id: str | None = None,
        *,
        status: LogStatus | None = None,
        search: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[ActivityEntry]:
        """Get activity with optional filters, newest first.

        Args:
            user_id: Only entries owned by this user.
            status: Filter by final status.
            search: Case-insensitive substring of sender, subject or category.
            since: Only entries created at or after this time.
            limit: Maximum number of entries to return.
        """
        query = "SELECT * FROM activity_log WHERE 1=1"
        params: list = []

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        if status:
            query += " AND status = ?"
            params.append(status.value)

        if search:
            like = f"%{search.lower()}%"
            query += " AND (lower(sender) LIKE ? OR lower(subject) LIKE ? OR lower(coalesce(category, '')) LIKE ?)"
            params.extend([like, like, like])

        if since:
            query += " AND created_at >= ?"
            params.append(since.isoformat())

        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            return [self._row_to_entry(row) for row in conn.execute(query, params).fetchall()]

    def iter_all(self, user_id: str | None = None) -> Iterator[ActivityEntry]:
        """Iterate over entries, newest first."""
        query = "SELECT * FROM activity_log"
        params: list = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC"

        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            for row in conn.execute(query, params):
                yield self._row_to_entry(row)

    def get_stats(self, user_id: str | None = None) -> dict[str, int]:
        """Count entries by status."""
        query = "SELECT status, COUNT(*) FROM activity_log"
        params: list = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " GROUP BY status"

        with sqlite3.connect(self.db_path) as conn:
            counts = dict(conn.execute(query, params).fetchall())

        forwarded = counts.get(LogStatus.FORWARDED.value, 0)
        blocked = counts.get(LogStatus.BLOCKED.value, 0)
        return {"total": forwarded + blocked, "forwarded": forwarded, "blocked": blocked}

    def export_log(self, format: Literal["json", "csv"] = "json", *, user_id: str | None = None) -> str:
        """Export the activity log. CSV leaves out message bodies."""
        entries = list(self.iter_all(user_id))

        if format == "json":
            return json.dumps([entry.model_dump(mode="json") for entry in entries], indent=2, default=str)

        import csv
        import io

        output = io.StringIO()
        if entries:
            writer = csv.DictWriter(output, fieldnames=CSV_FIELDS, extrasaction="ignore")
            writer.writeheader()
            for entry in entries:
                writer.writerow(entry.model_dump(mode="json"))
        return output.getvalue()

    def _row_to_entry(self, row: sqlite3.Row) -> ActivityEntry:
        """Convert a database row to an ActivityEntry."""
        return ActivityEntry(
            id=row["id"],
            user_id=row["user_id"],
            message_id=row["message_id"],
            sender=row["sender"],
            subject=row["subject"],
            ai_summary=row["ai_summary"],
            category=row["category"],
            body_html=row["body_html"],
            body_plain=row["body_plain"],
            status=LogStatus(row["status"]),
            rule_id=row["rule_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
            delivered_at=datetime.fromisoformat(row["delivered_at"]) if row["delivered_at"] else None,
        )
