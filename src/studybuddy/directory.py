"""
StudyBuddy - Public key directory and conversation id resolution.

The directory maps user ids to their published RSA public keys (PEM text).
It is the only place public keys are shared; private keys never reach it.

Conversation ids are opaque strings. For two matched users the id is
derived from the unordered pair of user ids, so either side resolves the
same conversation without a round trip.
"""

import hashlib
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

from .errors import DirectoryError, ErrorCode
from .utils import format_timestamp, utc_now

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


def conversation_id_for(user_a: str, user_b: str) -> str:
    """
    Stable, order-independent conversation id for two users.

    Raises:
        ValueError: If the ids are empty or identical
    """
    if not user_a or not user_b:
        raise ValueError("Both user ids are required")
    if user_a == user_b:
        raise ValueError("A conversation needs two different users")
    first, second = sorted((user_a, user_b))
    digest = hashlib.sha256(f"{first}\x00{second}".encode("utf-8")).hexdigest()
    return f"c{digest[:31]}"


class UserDirectory:
    """SQLite-backed user id -> public key directory."""

    def __init__(self, db_path: Union[str, Path] = MEMORY_DB):
        """
        Initialize user directory.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        if self.db_path != MEMORY_DB:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db_lock = threading.Lock()
        with self._db_lock:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS public_keys (
                    user_id TEXT PRIMARY KEY,
                    public_key TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            self.conn.commit()

    def get_public_key(self, user_id: str) -> Optional[str]:
        """Published public key PEM for a user, or None if absent."""
        try:
            with self._db_lock:
                row = self.conn.execute(
                    "SELECT public_key FROM public_keys WHERE user_id = ?", (user_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise DirectoryError(
                ErrorCode.E410_DIRECTORY_ERROR,
                f"Failed to look up public key: {e}",
                {"user_id": user_id},
            ) from e
        return row[0] if row else None

    def set_public_key(self, user_id: str, public_key: str) -> None:
        """
        Publish (or replace) a user's public key.

        Raises:
            DirectoryError: If the arguments are empty or the write fails
        """
        if not user_id or not public_key:
            raise DirectoryError(
                ErrorCode.E410_DIRECTORY_ERROR,
                "user_id and public_key are required",
                {"user_id": user_id},
            )
        try:
            with self._db_lock:
                self.conn.execute(
                    """
                    INSERT INTO public_keys (user_id, public_key, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        public_key = excluded.public_key,
                        updated_at = excluded.updated_at
                """,
                    (user_id, public_key, format_timestamp(utc_now())),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            raise DirectoryError(
                ErrorCode.E410_DIRECTORY_ERROR,
                f"Failed to store public key: {e}",
                {"user_id": user_id},
            ) from e
        logger.info(f"Public key published for user {user_id}")

    def close(self) -> None:
        """Close the database connection."""
        with self._db_lock:
            self.conn.close()
