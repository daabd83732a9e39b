"""SQLite database operations for Debt Ledger."""

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

from .models import PaymentMethod

DEFAULT_CLAIM_TIMEOUT = timedelta(minutes=5)


class Database:
    """SQLite database manager.

    Holds the persistent credential store and the settlement claims that
    make marking a debt as paid a single-writer operation.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        # Settlement claims table
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS settled_debts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                debt_id TEXT NOT NULL UNIQUE,
                payment_method TEXT,
                confirmed INTEGER NOT NULL DEFAULT 0,
                claimed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        # Config table
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Config operations
    # ========================================================================

    def get_config(self, key: str) -> str | None:
        """Get a config value by key."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
        row = cursor.fetchone()
        return str(row["value"]) if row else None

    def set_config(self, key: str, value: str):
        """Set a config value."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, datetime.now().isoformat()),
        )
        self.conn.commit()

    def delete_config(self, key: str) -> bool:
        """Delete a config value. Returns True if a row was removed."""
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM config WHERE key = ?", (key,))
        self.conn.commit()
        return cursor.rowcount > 0

    # ========================================================================
    # Settlement claim operations
    # ========================================================================

    def claim_settlement(
        self,
        debt_id: str,
        payment_method: PaymentMethod | str | None = None,
        stale_after: timedelta = DEFAULT_CLAIM_TIMEOUT,
    ) -> bool:
        """
        Atomically claim the right to settle a debt.

        The UNIQUE constraint on debt_id makes this a check-and-set: only one
        caller can ever hold the claim for a given debt. An unconfirmed claim
        older than stale_after was left behind by an attempt that never
        finished, and is dropped before claiming.

        Args:
            debt_id: The debt being settled
            payment_method: Optional payment method recorded with the claim
            stale_after: Age after which an unconfirmed claim is reclaimable

        Returns:
            True if the claim was acquired, False if the debt is already claimed
        """
        method = (
            payment_method.value
            if isinstance(payment_method, PaymentMethod)
            else payment_method
        )
        now = datetime.now()
        try:
            with self.conn:
                self.conn.execute(
                    """
                    DELETE FROM settled_debts
                    WHERE debt_id = ? AND confirmed = 0 AND claimed_at < ?
                    """,
                    (debt_id, (now - stale_after).isoformat()),
                )
                self.conn.execute(
                    """
                    INSERT INTO settled_debts (debt_id, payment_method, claimed_at)
                    VALUES (?, ?, ?)
                    """,
                    (debt_id, method, now.isoformat()),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def confirm_settlement(self, debt_id: str):
        """Mark a claimed settlement as confirmed by the server."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE settled_debts SET confirmed = 1 WHERE debt_id = ?", (debt_id,)
        )
        self.conn.commit()

    def release_settlement(self, debt_id: str):
        """Drop a settlement claim (failed settlement or deleted debt)."""
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM settled_debts WHERE debt_id = ?", (debt_id,))
        self.conn.commit()

    def is_settled(self, debt_id: str, confirmed_only: bool = True) -> bool:
        """Check if a debt has a (by default, server-confirmed) settlement claim."""
        cursor = self.conn.cursor()
        query = "SELECT id FROM settled_debts WHERE debt_id = ?"
        if confirmed_only:
            query += " AND confirmed = 1"
        cursor.execute(query, (debt_id,))
        return cursor.fetchone() is not None

    def get_settled_debt_ids(self, confirmed_only: bool = True) -> list[str]:
        """Get ids of debts settled through this client."""
        cursor = self.conn.cursor()
        if confirmed_only:
            cursor.execute(
                "SELECT debt_id FROM settled_debts WHERE confirmed = 1 "
                "ORDER BY claimed_at DESC"
            )
        else:
            cursor.execute("SELECT debt_id FROM settled_debts ORDER BY claimed_at DESC")
        return [str(row["debt_id"]) for row in cursor.fetchall()]
