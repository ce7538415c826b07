"""
User Store - SQLite-based local storage for enrolled users and verification events.
Provides the user records for the face database and records every verified boarding.
"""

import json
import math
import os
import shutil
import sqlite3
import threading
import time
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional, Iterable
import logging

import numpy as np

from .face_db import EnrolledUser


logger = logging.getLogger(__name__)


@dataclass
class VerificationLog:
    """Represents a verification event."""
    user_id: str
    timestamp: str


def _iso_timestamp(timestamp_ms: Optional[float] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = time.time() * 1000
    dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def _validate_user(user_id: str, embedding) -> Optional[list[float]]:
    """Return the embedding as a list of floats, or None if the record is invalid."""
    if not user_id or not isinstance(user_id, str) or not user_id.strip():
        logger.error(f"Invalid userId: {user_id!r}")
        return None

    try:
        values = [float(v) for v in embedding]
    except (TypeError, ValueError):
        logger.error("Invalid embedding: not an array or array-like object")
        return None

    if not values or not all(math.isfinite(v) for v in values):
        logger.error("Invalid embedding: empty or contains non-numeric values")
        return None

    return values


class UserStore:
    """
    SQLite-based user store.
    Holds:
    - Enrolled users and their embeddings
    - Verification log (one row per verified boarding)
    """

    def __init__(self, db_path: str = "data/shuttle.db"):
        self.db_path = db_path
        self._lock = threading.Lock()

        # Ensure directory exists
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)

        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self):
        """Initialize database schema."""
        with self._lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT UNIQUE NOT NULL,
                    embedding TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS verification_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_user_id ON users(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_logs_user_id ON verification_logs(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_logs_timestamp ON verification_logs(timestamp)")

            conn.commit()
            conn.close()

            logger.info(f"Initialized user database at {self.db_path}")

    # ========================
    # Users
    # ========================

    def save_user(self, user_id: str, embedding) -> None:
        """
        Insert or replace a single user.

        Raises:
            ValueError: if the user id or embedding is invalid
        """
        values = _validate_user(user_id, embedding)
        if values is None:
            raise ValueError("Invalid user data")

        with self._lock:
            conn = self._connect()
            conn.execute("""
                INSERT INTO users (user_id, embedding, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(user_id) DO UPDATE SET
                    embedding = excluded.embedding,
                    updated_at = CURRENT_TIMESTAMP
            """, (user_id, json.dumps(values)))
            conn.commit()
            conn.close()

        logger.info(f"Saved user {user_id}")

    def save_users(self, users: Iterable[tuple[str, object]]) -> int:
        """
        Save multiple users in a single transaction.
        Every record is validated before anything is written.

        Raises:
            ValueError: if any record is invalid
        """
        rows = []
        for user_id, embedding in users:
            values = _validate_user(user_id, embedding)
            if values is None:
                raise ValueError(f"Invalid data for user: {user_id}")
            rows.append((user_id, json.dumps(values)))

        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.executemany("""
                        INSERT INTO users (user_id, embedding, updated_at)
                        VALUES (?, ?, CURRENT_TIMESTAMP)
                        ON CONFLICT(user_id) DO UPDATE SET
                            embedding = excluded.embedding,
                            updated_at = CURRENT_TIMESTAMP
                    """, rows)
            finally:
                conn.close()

        logger.info(f"Saved {len(rows)} users")
        return len(rows)

    def list_users(self) -> list[EnrolledUser]:
        """Get all users in insertion order. Rows with unreadable embeddings are skipped."""
        with self._lock:
            conn = self._connect()
            cursor = conn.execute("SELECT user_id, embedding FROM users ORDER BY id ASC")
            rows = cursor.fetchall()
            conn.close()

        users = []
        for user_id, raw in rows:
            try:
                embedding = np.asarray(json.loads(raw), dtype=np.float64)
            except (TypeError, ValueError) as e:
                logger.error(f"Error parsing embedding for user {user_id}: {e}")
                continue
            users.append(EnrolledUser(user_id=user_id, embedding=embedding))

        return users

    def get_user(self, user_id: str) -> Optional[EnrolledUser]:
        """Get a single user by id."""
        with self._lock:
            conn = self._connect()
            row = conn.execute(
                "SELECT user_id, embedding FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
            conn.close()

        if row is None:
            return None
        return EnrolledUser(user_id=row[0], embedding=np.asarray(json.loads(row[1]), dtype=np.float64))

    def delete_user(self, user_id: str) -> bool:
        """Delete a user (and, by cascade, their verification logs)."""
        with self._lock:
            conn = self._connect()
            cursor = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
            deleted = cursor.rowcount
            conn.commit()
            conn.close()

        if deleted:
            logger.info(f"Deleted user {user_id}")
        return deleted > 0

    def count(self) -> int:
        """Return the number of enrolled users."""
        with self._lock:
            conn = self._connect()
            total = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            conn.close()
            return total

    # ========================
    # Verification events
    # ========================

    def record_verification(self, user_id: str, timestamp_ms: Optional[float] = None) -> bool:
        """
        Log a verification event.

        Returns:
            True if the event was written
        """
        timestamp = _iso_timestamp(timestamp_ms)
        try:
            with self._lock:
                conn = self._connect()
                try:
                    conn.execute(
                        "INSERT INTO verification_logs (user_id, timestamp) VALUES (?, ?)",
                        (user_id, timestamp),
                    )
                    conn.commit()
                finally:
                    conn.close()
        except sqlite3.Error as e:
            logger.error(f"Error logging verification for {user_id}: {e}")
            return False

        logger.info(f"Logged verification: {user_id} at {timestamp}")
        return True

    def get_verification_logs(self, limit: int = 100) -> list[VerificationLog]:
        """Get recent verification events, newest first."""
        with self._lock:
            conn = self._connect()
            rows = conn.execute("""
                SELECT user_id, timestamp
                FROM verification_logs
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (limit,)).fetchall()
            conn.close()

        return [VerificationLog(user_id=row[0], timestamp=row[1]) for row in rows]

    def get_user_verification_logs(self, user_id: str, limit: int = 20) -> list[str]:
        """Get verification timestamps for one user, newest first."""
        with self._lock:
            conn = self._connect()
            rows = conn.execute("""
                SELECT timestamp
                FROM verification_logs
                WHERE user_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (user_id, limit)).fetchall()
            conn.close()

        return [row[0] for row in rows]

    # ========================
    # Maintenance
    # ========================

    def backup(self, backup_path: str) -> bool:
        """Copy the database file to backup_path."""
        with self._lock:
            os.makedirs(os.path.dirname(backup_path) or ".", exist_ok=True)
            shutil.copyfile(self.db_path, backup_path)
        logger.info(f"Database backup written to {backup_path}")
        return True

    def restore(self, backup_path: str) -> bool:
        """Replace the database file with a backup."""
        if not os.path.exists(backup_path):
            logger.error(f"Backup not found: {backup_path}")
            return False

        with self._lock:
            shutil.copyfile(backup_path, self.db_path)
        logger.info(f"Database restored from {backup_path}")
        return True

    def get_stats(self) -> dict:
        """Get storage statistics."""
        with self._lock:
            conn = self._connect()
            users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            events = conn.execute("SELECT COUNT(*) FROM verification_logs").fetchone()[0]
            conn.close()

        return {
            "total_users": users,
            "verification_events": events,
        }
