"""
StudyBuddy - Client session cache.

In-memory, per-conversation cache of already-decrypted messages on the
receiving client. It merges history fetches and live deliveries so that
every envelope is decrypted at most once per session.

- History for a conversation is fetched and decrypted once; later opens are
  served straight from the cache.
- Live envelopes are decrypted once and inserted into their conversation,
  whether or not that conversation has been opened yet.
- A live envelope that arrives while a history fetch is in flight is merged
  by envelope id, so the fetch snapshot never duplicates or drops it.

Each conversation's list is kept in (createdAt, arrival) order.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from cryptography.hazmat.primitives.asymmetric import rsa

from .codec import EnvelopeCodec
from .constants import UNDECRYPTABLE_PLACEHOLDER
from .envelope import Envelope
from .errors import DecodingError

logger = logging.getLogger(__name__)

HistoryFetcher = Callable[[str], Awaitable[Iterable[Envelope]]]


@dataclass
class DecryptedMessage:
    """One message as shown to the local user."""

    envelope_id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at: Optional[str]
    decrypted: bool = True
    arrival: int = field(default=0, compare=False, repr=False)

    def is_from(self, user_id: str) -> bool:
        return self.sender_id == user_id

    @property
    def sort_key(self):
        return (self.created_at or "", self.arrival)


class SessionCache:
    """Conversation id -> ordered decrypted messages for one local user."""

    def __init__(
        self,
        user_id: str,
        codec: EnvelopeCodec,
        private_key: Optional[rsa.RSAPrivateKey] = None,
    ):
        """
        Initialize the cache.

        Args:
            user_id: Local user id (selects which wrapped key to open)
            codec: Envelope codec used for decryption
            private_key: Local private key (may be set later)
        """
        self.user_id = user_id
        self.codec = codec
        self.private_key = private_key

        self._messages: Dict[str, List[DecryptedMessage]] = {}
        self._seen: Dict[str, Set[str]] = {}
        self._history_loaded: Set[str] = set()
        self._fetch_locks: Dict[str, asyncio.Lock] = {}
        self._arrivals = itertools.count()

    def set_private_key(self, private_key: rsa.RSAPrivateKey) -> None:
        self.private_key = private_key

    async def _decrypt(self, envelope: Envelope) -> DecryptedMessage:
        """Decode one envelope, falling back to the undecryptable placeholder."""
        try:
            text = await self.codec.decode(envelope, self.user_id, self.private_key)
            decrypted = True
        except DecodingError as e:
            logger.warning(f"Cannot decrypt envelope {envelope.envelope_id[:12]}: {e}")
            text = UNDECRYPTABLE_PLACEHOLDER
            decrypted = False

        return DecryptedMessage(
            envelope_id=envelope.envelope_id,
            conversation_id=envelope.conversation_id,
            sender_id=envelope.sender_id,
            receiver_id=envelope.receiver_id,
            text=text,
            created_at=envelope.created_at,
            decrypted=decrypted,
            arrival=next(self._arrivals),
        )

    def _insert(self, message: DecryptedMessage) -> bool:
        """Insert in time order. Returns False if the envelope is already cached."""
        seen = self._seen.setdefault(message.conversation_id, set())
        if message.envelope_id in seen:
            return False
        seen.add(message.envelope_id)

        messages = self._messages.setdefault(message.conversation_id, [])
        index = len(messages)
        while index > 0 and messages[index - 1].sort_key > message.sort_key:
            index -= 1
        messages.insert(index, message)
        return True

    def _is_seen(self, conversation_id: str, envelope_id: str) -> bool:
        return envelope_id in self._seen.get(conversation_id, ())

    async def load_history(
        self, conversation_id: str, fetch: HistoryFetcher
    ) -> List[DecryptedMessage]:
        """
        Return a conversation's messages, fetching and decrypting history once.

        Args:
            conversation_id: Conversation to open
            fetch: Coroutine function returning the stored envelopes

        Returns:
            The conversation's decrypted messages, oldest first
        """
        if conversation_id in self._history_loaded:
            return self.get(conversation_id)

        lock = self._fetch_locks.setdefault(conversation_id, asyncio.Lock())
        async with lock:
            if conversation_id not in self._history_loaded:
                envelopes = await fetch(conversation_id)
                decoded = 0
                for envelope in envelopes:
                    if self._is_seen(conversation_id, envelope.envelope_id):
                        continue
                    message = await self._decrypt(envelope)
                    if self._insert(message):
                        decoded += 1
                self._messages.setdefault(conversation_id, [])
                self._history_loaded.add(conversation_id)
                logger.debug(f"Cached {decoded} history messages for {conversation_id}")

        return self.get(conversation_id)

    async def add_live(self, envelope: Envelope) -> Optional[DecryptedMessage]:
        """
        Merge one live envelope into its conversation.

        Returns:
            The new cached message, or None if the envelope was already cached
        """
        if self._is_seen(envelope.conversation_id, envelope.envelope_id):
            return None
        message = await self._decrypt(envelope)
        if not self._insert(message):
            return None
        return message

    def get(self, conversation_id: str) -> List[DecryptedMessage]:
        """Cached messages for a conversation (a copy), oldest first."""
        return list(self._messages.get(conversation_id, ()))

    def is_cached(self, conversation_id: str) -> bool:
        """True once the conversation's history has been loaded."""
        return conversation_id in self._history_loaded

    def conversations(self) -> List[str]:
        return list(self._messages)

    def invalidate(self, conversation_id: str) -> None:
        """Drop one conversation so the next open fetches it again."""
        self._messages.pop(conversation_id, None)
        self._seen.pop(conversation_id, None)
        self._history_loaded.discard(conversation_id)

    def clear(self) -> None:
        self._messages.clear()
        self._seen.clear()
        self._history_loaded.clear()
