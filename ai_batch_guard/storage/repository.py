"""
Repository pattern for data access.

Handles SQLite persistence for idempotency records and daily spend.
"""

import json
import sqlite3
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from ai_batch_guard.core.errors import StoreUnavailableError

from .db import DEFAULT_DB_PATH, get_connection
from .models import IdempotencyRecord

_IDEMPOTENCY_COLUMNS = "fingerprint, owner_user_id, created_at, expires_at, item_summary, result"


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the idempotency and spend tables if they don't exist.

    Args:
        db_path: Path to SQLite database file

    Raises:
        StoreUnavailableError: If the schema cannot be created
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS idempotency_record (
                fingerprint TEXT PRIMARY KEY,
                owner_user_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                item_summary TEXT NOT NULL,
                result TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS spend_bucket (
                user_id TEXT NOT NULL,
                date_bucket TEXT NOT NULL,
                spent TEXT NOT NULL,
                PRIMARY KEY (user_id, date_bucket)
            );
            CREATE TABLE IF NOT EXISTS spend_record (
                batch_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                date_bucket TEXT NOT NULL,
                amount TEXT NOT NULL,
                recorded_at REAL NOT NULL
            );
        """)
        conn.commit()
    except sqlite3.Error as e:
        raise StoreUnavailableError(f"Cannot initialize schema in {db_path}: {e}") from e
    finally:
        conn.close()


def _row_to_record(row: Tuple) -> IdempotencyRecord:
    return IdempotencyRecord(
        fingerprint=row[0],
        owner_user_id=row[1],
        created_at=row[2],
        expires_at=row[3],
        item_summary=json.loads(row[4]),
        result=json.loads(row[5]),
    )


class IdempotencyRepository:
    """Fingerprint to outcome records with a TTL.

    Expiry is passive: expired rows are ignored by lookups and replaced
    by the next ``store`` for the same fingerprint. Any SQLite failure is
    raised as StoreUnavailableError and never read as "not a duplicate".
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.clock = clock
        initialize_schema(db_path)

    def exists(self, fingerprint: str) -> bool:
        """Check whether an unexpired record exists for the fingerprint."""
        return self.lookup(fingerprint) is not None

    def lookup(self, fingerprint: str) -> Optional[IdempotencyRecord]:
        """Get the unexpired record for a fingerprint.

        Args:
            fingerprint: Batch fingerprint

        Returns:
            The record, or None if absent or expired

        Raises:
            StoreUnavailableError: If the database cannot be read
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_IDEMPOTENCY_COLUMNS} FROM idempotency_record WHERE fingerprint = ? AND expires_at > ?",
                (fingerprint, self.clock()),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Idempotency lookup failed: {e}") from e
        finally:
            conn.close()
        return _row_to_record(row) if row else None

    def store(
        self,
        fingerprint: str,
        owner_user_id: str,
        item_summary: List[Dict[str, Any]],
        result: Dict[str, Any],
        ttl_seconds: float,
    ) -> Tuple[bool, IdempotencyRecord]:
        """Insert a record unless an unexpired one already exists.

        The insert and the read-back of the winning row happen in one
        immediate transaction, so of two concurrent identical submissions
        exactly one observes ``inserted=True``. A second call inside the
        TTL never overwrites the original ``created_at``.

        Args:
            fingerprint: Batch fingerprint
            owner_user_id: Submitting user
            item_summary: Items of the accepted submission
            result: Admission summary to replay for duplicates
            ttl_seconds: Record lifetime

        Returns:
            (inserted, record) where record is the row now stored

        Raises:
            StoreUnavailableError: If the database cannot be written
        """
        now = self.clock()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                f"""
                INSERT INTO idempotency_record ({_IDEMPOTENCY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(fingerprint) DO UPDATE SET
                    owner_user_id = excluded.owner_user_id,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at,
                    item_summary = excluded.item_summary,
                    result = excluded.result
                WHERE idempotency_record.expires_at <= excluded.created_at
                """,
                (
                    fingerprint,
                    owner_user_id,
                    now,
                    now + ttl_seconds,
                    json.dumps(item_summary),
                    json.dumps(result),
                ),
            )
            inserted = cursor.rowcount == 1
            row = conn.execute(
                f"SELECT {_IDEMPOTENCY_COLUMNS} FROM idempotency_record WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailableError(f"Idempotency store failed: {e}") from e
        finally:
            conn.close()
        return inserted, _row_to_record(row)

    def delete(self, fingerprint: str) -> None:
        """Remove the record for a fingerprint, e.g. when its batch never started."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM idempotency_record WHERE fingerprint = ?", (fingerprint,))
            conn.commit()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Idempotency delete failed: {e}") from e
        finally:
            conn.close()

    def purge_expired(self) -> int:
        """Delete expired records.

        Returns:
            Number of records removed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM idempotency_record WHERE expires_at <= ?", (self.clock(),))
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Idempotency purge failed: {e}") from e
        finally:
            conn.close()


class SpendRepository:
    """Daily spend per user, shared by every process using the same database.

    Amounts are stored as decimal strings so repeated additions never
    drift. Each batch is recorded at most once.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def get_spent(self, user_id: str, date_bucket: str) -> Decimal:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT spent FROM spend_bucket WHERE user_id = ? AND date_bucket = ?",
                (user_id, date_bucket),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Spend lookup failed: {e}") from e
        finally:
            conn.close()
        return Decimal(row[0]) if row else Decimal("0")

    def add_spend(
        self,
        user_id: str,
        date_bucket: str,
        batch_id: str,
        amount: Decimal,
    ) -> Optional[Tuple[Decimal, Decimal]]:
        """Add a batch's spend to the user's bucket.

        Args:
            user_id: User to charge
            date_bucket: ISO calendar date (UTC)
            batch_id: Batch being charged
            amount: Actual cost

        Returns:
            (previous_total, new_total), or None if the batch was already recorded

        Raises:
            StoreUnavailableError: If the database cannot be written
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO spend_record (batch_id, user_id, date_bucket, amount, recorded_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (batch_id, user_id, date_bucket, str(amount), time.time()),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return None
            row = conn.execute(
                "SELECT spent FROM spend_bucket WHERE user_id = ? AND date_bucket = ?",
                (user_id, date_bucket),
            ).fetchone()
            previous = Decimal(row[0]) if row else Decimal("0")
            total = previous + amount
            conn.execute(
                "INSERT OR REPLACE INTO spend_bucket (user_id, date_bucket, spent) VALUES (?, ?, ?)",
                (user_id, date_bucket, str(total)),
            )
            conn.commit()
            return previous, total
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreUnavailableError(f"Spend record failed: {e}") from e
        finally:
            conn.close()
