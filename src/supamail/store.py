"""Users, rules and category vocabulary with SQLite persistence."""

import logging
import re
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from .errors import UsernameTakenError
from .integrations.mailgun import parse_recipient
from .models import Rule, RuleAction, RuleType, User

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")


def normalize_username(username: str) -> str:
    """Lower-case and validate a Supamail ID.

    Raises:
        ValueError: The name can't be used as the local part of an address.
    """
    name = username.strip().lower()
    if not USERNAME_RE.match(name):
        raise ValueError(f"Invalid Supamail ID: {username!r}")
    return name


class RuleStore:
    """Read/write access to users, their rules, and the category vocabulary.

    The inbound pipeline only reads from this store; rules are written by
    the dashboard and CLI.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure the database and tables exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    username TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS rules (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    pattern TEXT NOT NULL,
                    type TEXT NOT NULL,
                    action TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_rules_user
                ON rules (user_id, created_at)
            """)

            # Case-sensitive on insert: "Promotions" and "promotions" are distinct rows
            conn.execute("""
                CREATE TABLE IF NOT EXISTS categories (
                    name TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL
                )
            """)

            conn.commit()

    # ========== Users ==========

    def create_user(self, email: str, username: str | None = None, *, user_id: str | None = None) -> User:
        """Create a user profile.

        Raises:
            UsernameTakenError: The Supamail ID is already claimed.
        """
        now = datetime.now()
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email.strip(),
            username=normalize_username(username) if username else None,
            created_at=now,
            updated_at=now,
        )
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, email, username, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user.id, user.email, user.username, now.isoformat(), now.isoformat()),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise UsernameTakenError(f"Supamail ID already taken: {user.username}") from e
        return user

    def get_user(self, user_id: str) -> User | None:
        """Get a user by ID."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> User | None:
        """Get a user by Supamail ID (case-insensitive)."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM users WHERE username = ?",
                (username.strip().lower(),),
            ).fetchone()
            return self._row_to_user(row) if row else None

    def get_user_by_address(self, address: str, domain: str) -> User | None:
        """Resolve a masked address to its owner.

        Only addresses under ``domain`` resolve; anything else is None.
        """
        username = parse_recipient(address, domain)
        if not username:
            return None
        return self.get_user_by_username(username)

    def set_username(self, user_id: str, username: str) -> User:
        """Claim a new Supamail ID for a user.

        Raises:
            KeyError: No such user.
            UsernameTakenError: Another user owns the ID.
        """
        name = normalize_username(username)
        try:
            with sqlite3.connect(self.db_path) as conn:
                cursor = conn.execute(
                    "UPDATE users SET username = ?, updated_at = ? WHERE id = ?",
                    (name, datetime.now().isoformat(), user_id),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise UsernameTakenError(f"Supamail ID already taken: {name}") from e
        if cursor.rowcount == 0:
            raise KeyError(user_id)
        user = self.get_user(user_id)
        if user is None:
            raise KeyError(user_id)
        return user

    def list_users(self) -> list[User]:
        """List all users, oldest first."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("SELECT * FROM users ORDER BY created_at").fetchall()
            return [self._row_to_user(row) for row in rows]

    # ========== Rules ==========

    def add_rule(
        self,
        user_id: str,
        pattern: str,
        rule_type: RuleType | str,
        action: RuleAction | str,
    ) -> Rule:
        """Create a rule for a user.

        Raises:
            ValueError: Blank pattern or unknown type/action.
        """
        if not pattern or not pattern.strip():
            raise ValueError("Rule pattern must not be empty")

        rule = Rule(
            id=str(uuid.uuid4()),
            user_id=user_id,
            pattern=pattern.strip(),
            type=RuleType(rule_type),
            action=RuleAction(action),
            created_at=datetime.now(),
        )
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO rules (id, user_id, pattern, type, action, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.id,
                    rule.user_id,
                    rule.pattern,
                    rule.type.value,
                    rule.action.value,
                    rule.created_at.isoformat(),
                ),
            )
            conn.commit()
        logger.info(f"Rule {rule.id[:8]} added for {user_id}: {rule.action.value} {rule.type.value} {rule.pattern}")
        return rule

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        """Delete one of the user's rules. Returns False if it didn't exist."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM rules WHERE id = ? AND user_id = ?",
                (rule_id, user_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_rules_for_user(self, user_id: str, *, newest_first: bool = False) -> list[Rule]:
        """Get a snapshot of a user's rules.

        Ordered by creation time then insertion order (oldest first unless
        ``newest_first``). Rows that no longer parse (unknown type or action)
        are skipped with a warning.
        """
        direction = "DESC" if newest_first else "ASC"
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                f"SELECT * FROM rules WHERE user_id = ? ORDER BY created_at {direction}, rowid {direction}",
                (user_id,),
            ).fetchall()

        rules: list[Rule] = []
        for row in rows:
            try:
                rules.append(self._row_to_rule(row))
            except (ValueError, ValidationError) as e:
                logger.warning(f"Skipping malformed rule {row['id']}: {e}")
        return rules

    # ========== Categories ==========

    def get_or_create_category(self, name: str) -> str:
        """Record a category name, returning the stored spelling.

        Concurrent first uses of the same name converge on one row through
        the primary key constraint.
        """
        name = name.strip()
        if not name:
            raise ValueError("Category name must not be empty")
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO categories (name, created_at) VALUES (?, ?)",
                (name, datetime.now().isoformat()),
            )
            conn.commit()
            row = conn.execute("SELECT name FROM categories WHERE name = ?", (name,)).fetchone()
        return row[0]

    def list_categories(self, defaults: list[str] | None = None) -> list[str]:
        """Category vocabulary: ``defaults`` first, then stored names."""
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute("SELECT name FROM categories ORDER BY created_at, name").fetchall()

        names = list(dict.fromkeys(defaults or []))
        for (name,) in rows:
            if name not in names:
                names.append(name)
        return names

    # ========== Helpers ==========

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            username=row["username"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_rule(self, row: sqlite3.Row) -> Rule:
        return Rule(
            id=row["id"],
            user_id=row["user_id"],
            pattern=row["pattern"],
            type=RuleType(row["type"]),
            action=RuleAction(row["action"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
