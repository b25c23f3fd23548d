"""
StudyBuddy - Conversation store.

Durable, append-only log of envelopes keyed by conversation id.

Envelopes are never updated. Each append stamps the envelope's creation
time, clamped so it never goes backwards within a conversation; listing
orders by that timestamp and then by insertion sequence, so a conversation
is always returned in send order.

Thread safety:
- All database operations are serialized by a threading.Lock
- The SQLite connection is shared across threads (check_same_thread=False)
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Union

from .envelope import Envelope
from .errors import ErrorCode, StoreError, ValidationError
from .utils import format_timestamp, utc_now

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


class ConversationStore:
    """
    SQLite-backed append-only envelope log.

    Pass ``":memory:"`` as the path for an ephemeral store.
    """

    def __init__(self, db_path: Union[str, Path] = MEMORY_DB):
        """
        Initialize conversation store.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        if self.db_path != MEMORY_DB:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn: Optional[sqlite3.Connection] = None
        self._db_lock = threading.Lock()

        # Latest timestamp handed out per conversation
        self._last_stamp: Dict[str, str] = {}

        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._db_lock:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row

            cursor = self.conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS envelopes (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    receiver_id TEXT NOT NULL,
                    ciphertext TEXT NOT NULL,
                    key_for_sender TEXT NOT NULL,
                    key_for_receiver TEXT NOT NULL,
                    iv TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_conversation
                ON envelopes (conversation_id, created_at, seq)
            """
            )
            self.conn.commit()

        logger.info(f"Conversation store initialized: {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        with self._db_lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def _next_stamp(self, conversation_id: str) -> str:
        """Creation timestamp for the next envelope, never before the last one."""
        stamp = format_timestamp(utc_now())
        last = self._last_stamp.get(conversation_id)
        if last is None:
            row = self.conn.execute(
                "SELECT MAX(created_at) FROM envelopes WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            last = row[0]
        if last is not None and stamp < last:
            stamp = last
        self._last_stamp[conversation_id] = stamp
        return stamp

    def _participants_locked(self, conversation_id: str) -> Optional[FrozenSet[str]]:
        row = self.conn.execute(
            "SELECT sender_id, receiver_id FROM envelopes WHERE conversation_id = ? LIMIT 1",
            (conversation_id,),
        ).fetchone()
        if row is None:
            return None
        return frozenset((row["sender_id"], row["receiver_id"]))

    def append(self, envelope: Envelope) -> Envelope:
        """
        Persist one envelope.

        Args:
            envelope: Validated envelope (any client createdAt is replaced)

        Returns:
            The stored envelope, with createdAt stamped

        Raises:
            ValidationError: If the envelope's participants differ from the
                pair already recorded for the conversation
            StoreError: If the database write fails
        """
        try:
            with self._db_lock:
                if self.conn is None:
                    raise StoreError(ErrorCode.E401_APPEND_FAILED, "Conversation store is closed")

                existing = self._participants_locked(envelope.conversation_id)
                if existing is not None and existing != envelope.participants:
                    raise ValidationError(
                        ErrorCode.E304_PARTICIPANT_MISMATCH,
                        "Envelope participants do not match the conversation",
                        {"conversation_id": envelope.conversation_id},
                    )

                stored = envelope.stamped(self._next_stamp(envelope.conversation_id))
                self.conn.execute(
                    """
                    INSERT INTO envelopes
                    (conversation_id, sender_id, receiver_id, ciphertext,
                     key_for_sender, key_for_receiver, iv, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        stored.conversation_id,
                        stored.sender_id,
                        stored.receiver_id,
                        stored.ciphertext,
                        stored.key_for_sender,
                        stored.key_for_receiver,
                        stored.iv,
                        stored.created_at,
                    ),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to append envelope: {e}", exc_info=True)
            raise StoreError(
                ErrorCode.E401_APPEND_FAILED,
                f"Failed to append envelope: {e}",
                {"conversation_id": envelope.conversation_id},
            ) from e

        logger.debug(f"Appended envelope to {stored.conversation_id} at {stored.created_at}")
        return stored

    def list_by_conversation(
        self, conversation_id: str, offset: int = 0, limit: Optional[int] = None
    ) -> List[Envelope]:
        """
        Get envelopes for a conversation, oldest first.

        Stateless: every call reads from scratch. Without a limit the full
        history is returned. Appends always land at the end of this order,
        so an offset stays valid while new messages arrive.

        Args:
            conversation_id: Conversation to list
            offset: Number of leading envelopes to skip
            limit: Maximum number of envelopes to return (None for all)

        Raises:
            StoreError: If the query fails
        """
        try:
            with self._db_lock:
                if self.conn is None:
                    raise StoreError(ErrorCode.E402_QUERY_FAILED, "Conversation store is closed")
                rows = self.conn.execute(
                    """
                    SELECT * FROM envelopes
                    WHERE conversation_id = ?
                    ORDER BY created_at ASC, seq ASC
                    LIMIT ? OFFSET ?
                """,
                    (conversation_id, -1 if limit is None else limit, max(offset, 0)),
                ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to list envelopes: {e}", exc_info=True)
            raise StoreError(
                ErrorCode.E402_QUERY_FAILED,
                f"Failed to list envelopes: {e}",
                {"conversation_id": conversation_id},
            ) from e

        return [self._row_to_envelope(row) for row in rows]

    def participants(self, conversation_id: str) -> Optional[FrozenSet[str]]:
        """The two user ids of a conversation, or None if it has no envelopes."""
        try:
            with self._db_lock:
                if self.conn is None:
                    raise StoreError(ErrorCode.E402_QUERY_FAILED, "Conversation store is closed")
                return self._participants_locked(conversation_id)
        except sqlite3.Error as e:
            logger.error(f"Failed to read participants: {e}", exc_info=True)
            raise StoreError(
                ErrorCode.E402_QUERY_FAILED,
                f"Failed to read participants: {e}",
                {"conversation_id": conversation_id},
            ) from e

    def count(self, conversation_id: str) -> int:
        """Number of envelopes stored for a conversation."""
        try:
            with self._db_lock:
                if self.conn is None:
                    raise StoreError(ErrorCode.E402_QUERY_FAILED, "Conversation store is closed")
                row = self.conn.execute(
                    "SELECT COUNT(*) FROM envelopes WHERE conversation_id = ?",
                    (conversation_id,),
                ).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Failed to count envelopes: {e}", exc_info=True)
            raise StoreError(
                ErrorCode.E402_QUERY_FAILED,
                f"Failed to count envelopes: {e}",
                {"conversation_id": conversation_id},
            ) from e
        return row[0]

    def delete_conversation(self, conversation_id: str) -> int:
        """
        Delete a whole conversation.

        This is the only way envelopes leave the store; it is driven by the
        conversation lifecycle (unmatching), never by individual messages.

        Returns:
            Number of envelopes deleted
        """
        try:
            with self._db_lock:
                if self.conn is None:
                    raise StoreError(ErrorCode.E400_STORE_ERROR, "Conversation store is closed")
                cursor = self.conn.execute(
                    "DELETE FROM envelopes WHERE conversation_id = ?", (conversation_id,)
                )
                self.conn.commit()
                self._last_stamp.pop(conversation_id, None)
                deleted = cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f"Failed to delete conversation: {e}", exc_info=True)
            raise StoreError(
                ErrorCode.E400_STORE_ERROR,
                f"Failed to delete conversation: {e}",
                {"conversation_id": conversation_id},
            ) from e

        logger.info(f"Deleted {deleted} envelopes for conversation {conversation_id}")
        return deleted

    @staticmethod
    def _row_to_envelope(row: sqlite3.Row) -> Envelope:
        return Envelope(
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            receiver_id=row["receiver_id"],
            ciphertext=row["ciphertext"],
            key_for_sender=row["key_for_sender"],
            key_for_receiver=row["key_for_receiver"],
            iv=row["iv"],
            created_at=row["created_at"],
        )
