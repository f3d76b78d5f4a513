"""SQLite database operations for SplitLedger."""

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from .exceptions import StorageError
from .models import Bill, Group, Member, Payment, Share

logger = logging.getLogger(__name__)


class Database:
    """SQLite database manager.

    Implements the ``BillRepository`` interface used by ``LedgerService``.
    One connection is shared between threads; every statement runs under a
    lock.
    """

    def __init__(self, db_path: Path):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_groups (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        # Member ids are unique within a group, not globally
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS members (
                group_id TEXT NOT NULL REFERENCES ledger_groups(id),
                id TEXT NOT NULL,
                name TEXT NOT NULL,
                joined_at TIMESTAMP NOT NULL,
                PRIMARY KEY (group_id, id)
            )
        """
        )

        # Amounts are integer minor units
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS bills (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL REFERENCES ledger_groups(id),
                payer_id TEXT NOT NULL,
                total INTEGER NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                category TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS shares (
                bill_id TEXT NOT NULL REFERENCES bills(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                member_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                PRIMARY KEY (bill_id, position)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL REFERENCES ledger_groups(id),
                from_member_id TEXT NOT NULL,
                to_member_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                note TEXT NOT NULL DEFAULT '',
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Cursor]:
        """Run statements in one transaction, committed on success.

        Raises:
            StorageError: If SQLite rejects any statement; nothing is committed
        """
        with self._lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"Database write failed: {e}")
                raise StorageError(f"Database write failed: {e}") from e

    # ========================================================================
    # Group operations
    # ========================================================================

    def save_group(self, group: Group):
        """Insert or update a group."""
        with self._write() as cursor:
            cursor.execute(
                """
                INSERT INTO ledger_groups (id, name, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET name = excluded.name
                """,
                (group.id, group.name, group.created_at.isoformat()),
            )

    def get_group(self, group_id: str) -> Group | None:
        """Get a group by id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT id, name, created_at FROM ledger_groups WHERE id = ?",
                (group_id,),
            ).fetchone()
        if not row:
            return None
        return Group(
            id=row["id"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def list_groups(self) -> list[Group]:
        """Get all groups, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, name, created_at FROM ledger_groups ORDER BY created_at, id"
            ).fetchall()
        return [
            Group(
                id=row["id"],
                name=row["name"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def get_version(self, group_id: str) -> int:
        """Get the stored revision of a group (0 if unknown)."""
        with self._lock:
            row = self.conn.execute(
                "SELECT version FROM ledger_groups WHERE id = ?", (group_id,)
            ).fetchone()
        return int(row["version"]) if row else 0

    def bump_version(self, group_id: str) -> int:
        """Increment the stored revision of a group and return the new value."""
        with self._write() as cursor:
            cursor.execute(
                "UPDATE ledger_groups SET version = version + 1 WHERE id = ?",
                (group_id,),
            )
            row = cursor.execute(
                "SELECT version FROM ledger_groups WHERE id = ?", (group_id,)
            ).fetchone()
        if row is None:
            raise StorageError(f"Group {group_id} is not stored")
        return int(row["version"])

    # ========================================================================
    # Member operations
    # ========================================================================

    def save_member(self, member: Member):
        """Insert a member."""
        with self._write() as cursor:
            cursor.execute(
                """
                INSERT INTO members (group_id, id, name, joined_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    member.group_id,
                    member.id,
                    member.name,
                    member.joined_at.isoformat(),
                ),
            )

    def delete_member(self, group_id: str, member_id: str):
        """Delete a member from one group."""
        with self._write() as cursor:
            cursor.execute(
                "DELETE FROM members WHERE group_id = ? AND id = ?",
                (group_id, member_id),
            )

    def load_members(self, group_id: str) -> list[Member]:
        """Get the current members of a group in joining order."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT id, group_id, name, joined_at FROM members
                WHERE group_id = ?
                ORDER BY joined_at, rowid
                """,
                (group_id,),
            ).fetchall()
        return [
            Member(
                id=row["id"],
                group_id=row["group_id"],
                name=row["name"],
                joined_at=datetime.fromisoformat(row["joined_at"]),
            )
            for row in rows
        ]

    # ========================================================================
    # Bill operations
    # ========================================================================

    def save_bill(self, bill: Bill):
        """Insert or replace a bill together with its shares."""
        with self._write() as cursor:
            cursor.execute(
                """
                INSERT INTO bills (
                    id, group_id, payer_id, total, description,
                    category, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    payer_id = excluded.payer_id,
                    total = excluded.total,
                    description = excluded.description,
                    category = excluded.category,
                    status = excluded.status
                """,
                (
                    bill.id,
                    bill.group_id,
                    bill.payer_id,
                    bill.total,
                    bill.description,
                    bill.category,
                    bill.status,
                    bill.created_at.isoformat(),
                ),
            )
            cursor.execute("DELETE FROM shares WHERE bill_id = ?", (bill.id,))
            cursor.executemany(
                """
                INSERT INTO shares (bill_id, position, member_id, amount)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (bill.id, position, share.member_id, share.amount)
                    for position, share in enumerate(bill.shares)
                ],
            )

    def delete_bill(self, bill_id: str):
        """Delete a bill and its shares."""
        with self._write() as cursor:
            cursor.execute("DELETE FROM bills WHERE id = ?", (bill_id,))

    def find_bill_group(self, bill_id: str) -> str | None:
        """Get the id of the group a bill belongs to."""
        with self._lock:
            row = self.conn.execute(
                "SELECT group_id FROM bills WHERE id = ?", (bill_id,)
            ).fetchone()
        return str(row["group_id"]) if row else None

    def load_bills(self, group_id: str) -> list[Bill]:
        """Get all bills of a group with their shares, oldest first."""
        with self._lock:
            bill_rows = self.conn.execute(
                """
                SELECT id, group_id, payer_id, total, description,
                       category, status, created_at
                FROM bills
                WHERE group_id = ?
                ORDER BY created_at, rowid
                """,
                (group_id,),
            ).fetchall()
            share_rows = self.conn.execute(
                """
                SELECT s.bill_id, s.member_id, s.amount
                FROM shares s JOIN bills b ON b.id = s.bill_id
                WHERE b.group_id = ?
                ORDER BY s.bill_id, s.position
                """,
                (group_id,),
            ).fetchall()

        shares: dict[str, list[Share]] = {}
        for row in share_rows:
            shares.setdefault(row["bill_id"], []).append(
                Share(member_id=row["member_id"], amount=row["amount"])
            )

        return [
            Bill(
                id=row["id"],
                group_id=row["group_id"],
                payer_id=row["payer_id"],
                total=row["total"],
                shares=tuple(shares.get(row["id"], [])),
                description=row["description"],
                category=row["category"],
                status=row["status"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in bill_rows
        ]

    # ========================================================================
    # Payment operations
    # ========================================================================

    def save_payment(self, payment: Payment):
        """Insert a recorded payment."""
        with self._write() as cursor:
            cursor.execute(
                """
                INSERT INTO payments (
                    id, group_id, from_member_id, to_member_id,
                    amount, note, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payment.id,
                    payment.group_id,
                    payment.from_member_id,
                    payment.to_member_id,
                    payment.amount,
                    payment.note,
                    payment.created_at.isoformat(),
                ),
            )

    def load_payments(self, group_id: str) -> list[Payment]:
        """Get all recorded payments of a group, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT id, group_id, from_member_id, to_member_id,
                       amount, note, created_at
                FROM payments
                WHERE group_id = ?
                ORDER BY created_at, rowid
                """,
                (group_id,),
            ).fetchall()
        return [
            Payment(
                id=row["id"],
                group_id=row["group_id"],
                from_member_id=row["from_member_id"],
                to_member_id=row["to_member_id"],
                amount=row["amount"],
                note=row["note"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]
