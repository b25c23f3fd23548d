"""
StudyBuddy - Client API for the message channel.

StudyBuddyClient connects one user to a MessageChannel over asyncio
streams. It owns the user's session cache, keeps the local keypair
published, encrypts outgoing messages and decrypts everything that arrives.

Requests that expect a reply carry a ``requestId``; the channel echoes it and
the receive loop resolves the matching future. Everything else arriving on
the connection is pushed to registered callbacks:

- ``message``: a new DecryptedMessage was added to the cache
- ``reject``: the channel refused an envelope
- ``status``: a user went online or offline
- ``typing``: a peer is typing
- ``error``: the channel reported a connection-level error
"""

import asyncio
import contextlib
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .codec import EnvelopeCodec
from .constants import (
    CONNECTION_TIMEOUT,
    DEFAULT_CHANNEL_HOST,
    DEFAULT_CHANNEL_PORT,
    READ_CHUNK_SIZE,
    REQUEST_TIMEOUT,
)
from .directory import conversation_id_for
from .envelope import Envelope
from .errors import (
    ChannelError,
    EncodingError,
    ErrorCode,
    StoreError,
    StudyBuddyError,
    ValidationError,
)
from .keystore import KeyStore
from .protocol import STATUS_OFFLINE, STATUS_ONLINE, EventType, pack_frame, unpack_frame
from .session_cache import DecryptedMessage, SessionCache

logger = logging.getLogger(__name__)

Reply = Tuple[str, Dict[str, Any]]

# Error code prefix -> exception raised for a failed request
_REPLY_ERRORS = {"E3": ValidationError, "E4": StoreError, "E5": ChannelError}


def _reply_error(data: Dict[str, Any]) -> StudyBuddyError:
    """Rebuild the exception reported by an error or envelope-reject reply."""
    try:
        code = ErrorCode(data.get("code"))
    except ValueError:
        code = ErrorCode.E500_CHANNEL_ERROR
    error_cls = _REPLY_ERRORS.get(code.value[:2], ChannelError)
    return error_cls(code, data.get("reason") or "Request failed", data.get("details") or {})


class StudyBuddyClient:
    """Async client for one user of the message channel."""

    def __init__(
        self,
        user_id: str,
        key_store: KeyStore,
        host: str = DEFAULT_CHANNEL_HOST,
        port: int = DEFAULT_CHANNEL_PORT,
        codec: Optional[EnvelopeCodec] = None,
        request_timeout: float = REQUEST_TIMEOUT,
    ):
        """
        Initialize client.

        Args:
            user_id: Authenticated user id
            key_store: Key store for this user; if it has no directory the
                client publishes through the channel
            host: Channel host
            port: Channel port
            codec: Envelope codec (a new one if None)
            request_timeout: Seconds to wait for a reply event
        """
        self.user_id = user_id
        self.key_store = key_store
        if key_store.directory is None:
            key_store.directory = self
        self.host = host
        self.port = port
        self.codec = codec or EnvelopeCodec()
        self.request_timeout = request_timeout

        self.cache = SessionCache(user_id, self.codec)
        self.online_users: Set[str] = set()

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.connected = False

        # Receive task
        self.receive_task: Optional[asyncio.Task] = None
        self.running = False
        self.buffer = b""

        # Event callbacks
        self.event_callbacks: Dict[str, List[Callable]] = {}

        # requestId -> future resolved with the reply event
        self._pending: Dict[str, asyncio.Future] = {}
        self._peer_keys: Dict[str, str] = {}

        self._handlers = {
            EventType.ENVELOPE_DELIVER.value: self._on_deliver,
            EventType.ENVELOPE_REJECT.value: self._on_reject,
            EventType.USER_STATUS.value: self._on_status,
            EventType.TYPING_INDICATOR.value: self._on_typing,
            EventType.ERROR.value: self._on_error,
        }

    async def connect(self) -> bool:
        """Connect to the channel."""
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=CONNECTION_TIMEOUT
            )
            self.connected = True

            # Start receive task
            self.running = True
            self.receive_task = asyncio.create_task(self._receive_loop())

            logger.info(f"Connected to channel at {self.host}:{self.port}")
            return True

        except asyncio.TimeoutError:
            logger.error("Connection timeout")
            self.connected = False
            return False
        except OSError as e:
            logger.error(f"Connection failed: {e}")
            self.connected = False
            return False

    async def start(self) -> str:
        """
        Connect, make sure the keypair is published, then announce presence.

        Deliveries only start after the announce, so the cache can always
        open them with the private key.

        Returns:
            The user's public key PEM

        Raises:
            ChannelError: If the channel cannot be reached
            KeyGenerationError: If no keypair can be generated
            PublishError: If the public key cannot be published
        """
        if not self.connected and not await self.connect():
            raise ChannelError(
                ErrorCode.E502_NOT_CONNECTED,
                f"Cannot reach channel at {self.host}:{self.port}",
                {"host": self.host, "port": self.port},
            )
        public_key = await self.key_store.ensure_keypair(self.user_id)
        self.cache.set_private_key(await self.key_store.get_private_key())
        await self.announce()
        return public_key

    async def disconnect(self):
        """Disconnect from the channel."""
        self.running = False
        self.connected = False

        if self.receive_task and not self.receive_task.done():
            self.receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.receive_task

        if self.writer:
            try:
                self.writer.close()
                await self.writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error closing writer: {e}")
            self.writer = None

        self.reader = None
        self._fail_pending()

    def _fail_pending(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(
                    ChannelError(ErrorCode.E502_NOT_CONNECTED, "Connection closed")
                )
        self._pending.clear()

    async def _receive_loop(self):
        """Background task for receiving events."""
        logger.debug("Receive loop started")

        try:
            while self.running and self.connected:
                try:
                    data = await asyncio.wait_for(self.reader.read(READ_CHUNK_SIZE), timeout=1.0)
                    if not data:
                        logger.warning("Channel closed connection")
                        break

                    self.buffer += data

                    # Process complete frames (newline-delimited JSON)
                    while b"\n" in self.buffer:
                        line, self.buffer = self.buffer.split(b"\n", 1)
                        if line.strip():
                            try:
                                event, payload = unpack_frame(line)
                            except ChannelError as e:
                                logger.warning(f"Invalid frame from channel: {e}")
                                continue
                            await self._handle_event(event, payload)

                except asyncio.TimeoutError:
                    continue
                except (ConnectionError, OSError) as e:
                    logger.error(f"Error in receive loop: {e}")
                    break
        finally:
            self.connected = False
            self._fail_pending()
            logger.debug("Receive loop ended")

    async def _handle_event(self, event: str, data: Dict[str, Any]) -> None:
        """Run the local handler for an event, then resolve any waiting request."""
        handler = self._handlers.get(event)
        if handler is not None:
            await handler(data)

        request_id = data.get("requestId")
        future = self._pending.pop(request_id, None) if request_id else None
        if future is not None and not future.done():
            future.set_result((event, data))

    async def _emit(self, event_name: str, payload: Any) -> None:
        for callback in list(self.event_callbacks.get(event_name, ())):
            try:
                # Handle both sync and async callbacks
                if asyncio.iscoroutinefunction(callback):
                    await callback(payload)
                else:
                    callback(payload)
            except Exception as e:
                logger.error(f"Error in {event_name} callback: {e}", exc_info=True)

    def on(self, event_name: str, callback: Callable):
        """
        Register callback for event.

        Args:
            event_name: One of message, reject, status, typing, error
            callback: Function to call when event occurs
        """
        if event_name not in self.event_callbacks:
            self.event_callbacks[event_name] = []
        self.event_callbacks[event_name].append(callback)

    def off(self, event_name: str, callback: Callable):
        """
        Unregister callback for event.

        Args:
            event_name: Name of event
            callback: Callback to remove
        """
        if event_name in self.event_callbacks:
            with contextlib.suppress(ValueError):
                self.event_callbacks[event_name].remove(callback)

    # Incoming events

    async def _on_deliver(self, data: Dict[str, Any]) -> None:
        try:
            envelope = Envelope.from_dict(data.get("envelope"))
        except ValidationError as e:
            logger.warning(f"Dropping malformed delivery: {e}")
            return
        message = await self.cache.add_live(envelope)
        if message is not None:
            await self._emit("message", message)

    async def _on_reject(self, data: Dict[str, Any]) -> None:
        await self._emit("reject", data)

    async def _on_status(self, data: Dict[str, Any]) -> None:
        user_id = data.get("userId")
        status = data.get("status")
        if status == STATUS_ONLINE:
            self.online_users.add(user_id)
        elif status == STATUS_OFFLINE:
            self.online_users.discard(user_id)
        await self._emit("status", data)

    async def _on_typing(self, data: Dict[str, Any]) -> None:
        await self._emit("typing", data)

    async def _on_error(self, data: Dict[str, Any]) -> None:
        if "requestId" not in data:
            logger.warning(f"Channel error: {data.get('reason')}")
        await self._emit("error", data)

    # Requests

    async def _send(self, event: EventType, data: Optional[Dict[str, Any]] = None) -> None:
        if not self.connected or self.writer is None:
            raise ChannelError(ErrorCode.E502_NOT_CONNECTED, "Not connected to channel")
        self.writer.write(pack_frame(event, data))
        await self.writer.drain()

    async def _request(self, event: EventType, data: Optional[Dict[str, Any]] = None) -> Reply:
        """
        Send an event and wait for the reply carrying the same requestId.

        Raises:
            ChannelError: If not connected or no reply arrives in time
            StudyBuddyError: The error reported by the channel
        """
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(event, dict(data or {}, requestId=request_id))
            reply_event, reply = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Request timeout for event: {event.value}")
            raise ChannelError(
                ErrorCode.E506_REQUEST_TIMEOUT,
                f"No reply to {event.value}",
                {"timeout": self.request_timeout},
            ) from e
        finally:
            self._pending.pop(request_id, None)

        if reply_event in (EventType.ERROR.value, EventType.ENVELOPE_REJECT.value):
            raise _reply_error(reply)
        return reply_event, reply

    async def announce(self) -> None:
        """Register this connection as the user's presence."""
        await self._send(EventType.PRESENCE_ANNOUNCE, {"userId": self.user_id})

    async def ping(self) -> bool:
        """Ping channel to check connectivity."""
        try:
            reply_event, _ = await self._request(EventType.PING)
        except StudyBuddyError:
            return False
        return reply_event == EventType.PONG.value

    # Directory

    async def set_public_key(self, user_id: str, public_key: str) -> None:
        """Publish a public key through the channel's directory."""
        await self._request(EventType.KEY_PUBLISH, {"userId": user_id, "publicKey": public_key})
        self._peer_keys[user_id] = public_key

    async def lookup_key(self, user_id: str) -> Optional[str]:
        """Public key PEM for a user, or None if they never published one."""
        if user_id in self._peer_keys:
            return self._peer_keys[user_id]
        _, reply = await self._request(EventType.KEY_LOOKUP, {"userId": user_id})
        public_key = reply.get("publicKey")
        if public_key:
            self._peer_keys[user_id] = public_key
        return public_key

    # Messages

    async def send_message(self, receiver_id: str, text: str) -> Envelope:
        """
        Encrypt a message for a peer and hand it to the channel.

        Returns:
            The envelope as stored by the channel

        Raises:
            EncodingError: If either party has no usable public key
            ValidationError: If the channel rejected the envelope
            StoreError: If the channel could not persist the envelope
        """
        receiver_key = await self.lookup_key(receiver_id)
        if receiver_key is None:
            raise EncodingError(
                ErrorCode.E202_INVALID_PUBLIC_KEY,
                f"No public key published for {receiver_id}",
                {"user_id": receiver_id},
            )
        sender_key = await self.key_store.get_public_key()

        envelope = await self.codec.encode(
            text,
            sender_key,
            receiver_key,
            conversation_id_for(self.user_id, receiver_id),
            self.user_id,
            receiver_id,
        )
        _, reply = await self._request(EventType.ENVELOPE_SEND, {"envelope": envelope.to_dict()})
        return Envelope.from_dict(reply["envelope"])

    async def send_typing(self, receiver_id: str) -> None:
        await self._send(EventType.TYPING, {"receiverId": receiver_id, "userId": self.user_id})

    async def fetch_history(self, conversation_id: str) -> List[Envelope]:
        """Stored envelopes of a conversation, oldest first, collected page by page."""
        envelopes = []
        offset: Optional[int] = 0
        while offset is not None:
            _, reply = await self._request(
                EventType.HISTORY_REQUEST,
                {"conversationId": conversation_id, "offset": offset},
            )
            for payload in reply.get("envelopes", []):
                try:
                    envelopes.append(Envelope.from_dict(payload))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed history entry: {e}")

            next_offset = reply.get("nextOffset")
            if next_offset is not None and next_offset <= offset:
                raise ChannelError(
                    ErrorCode.E503_INVALID_FRAME,
                    "History paging did not advance",
                    {"offset": offset, "next_offset": next_offset},
                )
            offset = next_offset
        return envelopes

    async def open_conversation(self, peer_id: str) -> List[DecryptedMessage]:
        """Decrypted messages with a peer, fetched once and then served from the cache."""
        conversation_id = conversation_id_for(self.user_id, peer_id)
        return await self.cache.load_history(conversation_id, self.fetch_history)
