"""
StudyBuddy - Real-time message channel.

Asyncio server that routes encrypted envelopes between connected users,
tracks presence, and hands every accepted envelope to the conversation
store before delivering it.

Each accepted connection gets one dispatch table (event kind -> handler)
built at accept time. Frames from one connection are handled strictly in
order, one at a time.

Delivery rules for envelope-send:
- Invalid envelope: envelope-reject to the sender only, nothing persisted
- Persistence failure: envelope-reject to the sender only
- Otherwise: envelope-deliver to the receiver if online (failures dropped,
  the store holds the durable copy) and an envelope-deliver echo to the
  sender as confirmation
"""

import asyncio
import contextlib
import functools
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import crypto
from .constants import (
    DEFAULT_CHANNEL_HOST,
    DEFAULT_CHANNEL_PORT,
    HISTORY_PAGE_BYTES,
    HISTORY_PAGE_SIZE,
    MAX_FRAME_SIZE,
    MAX_HISTORY_PAGE_SIZE,
    READ_CHUNK_SIZE,
    READ_TIMEOUT,
)
from .directory import UserDirectory
from .envelope import Envelope
from .errors import (
    ChannelError,
    ErrorCode,
    StoreError,
    StudyBuddyError,
    ValidationError,
)
from .presence import PresenceTable
from .protocol import (
    STATUS_OFFLINE,
    STATUS_ONLINE,
    STATUS_TYPING,
    EventType,
    pack_frame,
    unpack_frame,
)
from .store import ConversationStore

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]

# Failures that mean the peer is gone; delivery to it is silently dropped
SEND_FAILURES = (ConnectionError, OSError, ChannelError)


class Connection:
    """One accepted transport connection."""

    _ids = itertools.count(1)

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connection_id = next(self._ids)
        self.reader = reader
        self.writer = writer
        self.peer = writer.get_extra_info("peername")
        self.closed = False

    async def send(self, event: EventType, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Write one event frame to the peer.

        Raises:
            ChannelError: If the connection is already closed
            ConnectionError: If the transport fails mid-write
        """
        if self.closed or self.writer.is_closing():
            raise ChannelError(
                ErrorCode.E502_NOT_CONNECTED,
                "Connection is closed",
                {"connection_id": self.connection_id},
            )
        self.writer.write(pack_frame(event, data))
        await self.writer.drain()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing connection {self.connection_id}: {e}")

    def __repr__(self) -> str:
        return f"Connection(id={self.connection_id}, peer={self.peer})"


def _require_str(data: Dict[str, Any], field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise ValidationError(
            ErrorCode.E301_MISSING_FIELD,
            f"Missing required field: {field}",
            {"field": field},
        )
    return value


def _optional_int(data: Dict[str, Any], field: str, default: int, minimum: int) -> int:
    value = data.get(field, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(
            ErrorCode.E302_INVALID_FIELD,
            f"Field {field} must be an integer >= {minimum}",
            {"field": field},
        )
    return value


def _fit_page(envelopes: List[Envelope], max_bytes: int) -> List[Dict[str, Any]]:
    """Leading envelopes whose wire form fits in max_bytes (always at least one)."""
    page: List[Dict[str, Any]] = []
    used = 0
    for envelope in envelopes:
        payload = envelope.to_dict()
        size = len(json.dumps(payload)) + 1
        if page and used + size > max_bytes:
            break
        page.append(payload)
        used += size
    return page


def _with_request_id(payload: Dict[str, Any], request: Dict[str, Any]) -> Dict[str, Any]:
    """Echo a client-supplied requestId so replies can be correlated."""
    if "requestId" in request:
        payload["requestId"] = request["requestId"]
    return payload


class MessageChannel:
    """Envelope delivery server with presence tracking."""

    def __init__(
        self,
        store: ConversationStore,
        directory: UserDirectory,
        presence: Optional[PresenceTable] = None,
        host: str = DEFAULT_CHANNEL_HOST,
        port: int = DEFAULT_CHANNEL_PORT,
        read_timeout: float = READ_TIMEOUT,
    ):
        """
        Initialize the channel.

        Args:
            store: Conversation store receiving every accepted envelope
            directory: Public key directory served to clients
            presence: Presence table owned by this channel (new one if None)
            host: Interface to listen on
            port: TCP port (0 picks a free port)
            read_timeout: Seconds between idle read checks
        """
        self.store = store
        self.directory = directory
        self.presence: PresenceTable[Connection] = (
            presence if presence is not None else PresenceTable()
        )
        self.host = host
        self.port = port
        self.read_timeout = read_timeout

        self.server: Optional[asyncio.AbstractServer] = None
        self.connections: Dict[int, Connection] = {}
        self.running = False

    async def start(self) -> int:
        """
        Start listening.

        Returns:
            The TCP port actually bound

        Raises:
            ChannelError: If the server cannot be started
        """
        if self.running:
            raise ChannelError(ErrorCode.E501_START_FAILED, "Channel already running")
        try:
            self.server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        except OSError as e:
            raise ChannelError(
                ErrorCode.E501_START_FAILED,
                f"Failed to start channel: {e}",
                {"host": self.host, "port": self.port},
            ) from e

        self.port = self.server.sockets[0].getsockname()[1]
        self.running = True
        logger.info(f"Message channel listening on {self.host}:{self.port}")
        return self.port

    async def stop(self) -> None:
        """Close every connection, stop listening and clear presence."""
        logger.info("Stopping message channel...")
        self.running = False

        if self.server:
            self.server.close()

        for connection in list(self.connections.values()):
            await connection.close()
        self.connections.clear()
        self.presence.clear()

        if self.server:
            await self.server.wait_closed()
            self.server = None

        logger.info("Message channel stopped")

    async def run(self) -> None:
        """Start if needed and serve until stopped."""
        if not self.running:
            await self.start()
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.stop()

    def _build_dispatch(self, connection: Connection) -> Dict[str, Handler]:
        """Event kind -> handler table for one connection."""
        handlers = {
            EventType.PRESENCE_ANNOUNCE: self._on_presence_announce,
            EventType.ENVELOPE_SEND: self._on_envelope_send,
            EventType.HISTORY_REQUEST: self._on_history_request,
            EventType.KEY_PUBLISH: self._on_key_publish,
            EventType.KEY_LOOKUP: self._on_key_lookup,
            EventType.TYPING: self._on_typing,
            EventType.PING: self._on_ping,
        }
        return {
            event.value: functools.partial(handler, connection)
            for event, handler in handlers.items()
        }

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Serve one client connection until it closes."""
        connection = Connection(reader, writer)
        self.connections[connection.connection_id] = connection
        dispatch = self._build_dispatch(connection)
        logger.debug(f"Client connected: {connection!r}")

        buffer = b""
        try:
            while self.running and not connection.closed:
                try:
                    data = await asyncio.wait_for(
                        reader.read(READ_CHUNK_SIZE), timeout=self.read_timeout
                    )
                except asyncio.TimeoutError:
                    continue
                if not data:
                    break

                buffer += data
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if line.strip():
                        await self._dispatch(connection, dispatch, line)

                if len(buffer) > MAX_FRAME_SIZE:
                    logger.warning(f"Oversized frame from {connection!r}; closing")
                    await self._send_error(
                        connection,
                        ChannelError(ErrorCode.E503_INVALID_FRAME, "Frame too large"),
                    )
                    break
        except (ConnectionError, OSError) as e:
            logger.debug(f"Connection {connection!r} dropped: {e}")
        finally:
            await self._on_disconnect(connection)

    async def _dispatch(
        self, connection: Connection, dispatch: Dict[str, Handler], line: bytes
    ) -> None:
        """Decode one frame and run its handler, reporting errors to this connection only."""
        event = None
        request: Dict[str, Any] = {}
        try:
            event, request = unpack_frame(line)
            handler = dispatch.get(event)
            if handler is None:
                raise ChannelError(
                    ErrorCode.E504_UNKNOWN_EVENT,
                    f"Unknown event: {event}",
                    {"event": event},
                )
            await handler(request)
        except StudyBuddyError as e:
            logger.warning(f"Rejected {event or 'frame'} from {connection!r}: {e}")
            await self._send_error(connection, e, event, request)

    async def _send_error(
        self,
        connection: Connection,
        error: StudyBuddyError,
        event: Optional[str] = None,
        request: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = {"reason": error.message, "code": error.code.value, "event": event}
        with contextlib.suppress(*SEND_FAILURES):
            await connection.send(EventType.ERROR, _with_request_id(payload, request or {}))

    async def _on_disconnect(self, connection: Connection) -> None:
        self.connections.pop(connection.connection_id, None)
        user_id = self.presence.unregister(connection)
        await connection.close()
        if user_id is not None:
            logger.info(f"User {user_id} offline")
            await self.broadcast(
                EventType.USER_STATUS, {"userId": user_id, "status": STATUS_OFFLINE}
            )
        logger.debug(f"Client disconnected: {connection!r}")

    async def broadcast(
        self, event: EventType, data: Dict[str, Any], exclude: Optional[Connection] = None
    ) -> None:
        """Send an event to every open connection, dropping failed ones silently."""
        for connection in list(self.connections.values()):
            if connection is exclude:
                continue
            with contextlib.suppress(*SEND_FAILURES):
                await connection.send(event, data)

    # Presence

    async def _on_presence_announce(self, connection: Connection, request: Dict[str, Any]) -> None:
        user_id = _require_str(request, "userId")
        self.presence.register(user_id, connection)
        logger.info(f"User {user_id} online on {connection!r}")
        await self.broadcast(EventType.USER_STATUS, {"userId": user_id, "status": STATUS_ONLINE})

    def _announced_user(self, connection: Connection) -> str:
        user_id = self.presence.user_for(connection)
        if user_id is None:
            raise ChannelError(
                ErrorCode.E505_NOT_ANNOUNCED,
                "Announce presence before using this event",
                {"connection_id": connection.connection_id},
            )
        return user_id

    # Envelopes

    async def _on_envelope_send(self, connection: Connection, request: Dict[str, Any]) -> None:
        await self.send(request.get("envelope"), origin=connection, request=request)

    async def send(
        self,
        payload: Any,
        origin: Optional[Connection] = None,
        request: Optional[Dict[str, Any]] = None,
    ) -> Optional[Envelope]:
        """
        Validate, persist and route one envelope.

        Args:
            payload: Envelope in wire shape (dictionary) or an Envelope
            origin: Sending connection (None for in-process senders)
            request: Original request data, for requestId correlation

        Returns:
            The stored envelope, or None if it was rejected
        """
        request = request or {}
        try:
            if isinstance(payload, Envelope):
                envelope = payload.validated()
            else:
                envelope = Envelope.from_dict(payload)
            if origin is not None:
                sender = self._announced_user(origin)
                if envelope.sender_id != sender:
                    raise ValidationError(
                        ErrorCode.E302_INVALID_FIELD,
                        "senderId does not match the announced user",
                        {"field": "senderId"},
                    )
        except (ValidationError, ChannelError) as e:
            await self._reject(origin, e, request)
            return None

        loop = asyncio.get_running_loop()
        try:
            stored = await loop.run_in_executor(None, self.store.append, envelope)
        except (StoreError, ValidationError) as e:
            await self._reject(origin, e, request)
            return None

        deliver = {"envelope": stored.to_dict()}

        receiver = self.presence.lookup(stored.receiver_id)
        if receiver is not None and receiver is not origin:
            try:
                await receiver.send(EventType.ENVELOPE_DELIVER, deliver)
            except SEND_FAILURES as e:
                logger.debug(f"Forward to {stored.receiver_id} dropped: {e}")

        if origin is not None:
            with contextlib.suppress(*SEND_FAILURES):
                await origin.send(
                    EventType.ENVELOPE_DELIVER, _with_request_id(dict(deliver), request)
                )

        logger.debug(
            f"Envelope {stored.envelope_id[:12]} {stored.sender_id} -> {stored.receiver_id} "
            f"({'online' if receiver is not None else 'offline'})"
        )
        return stored

    async def _reject(
        self, origin: Optional[Connection], error: StudyBuddyError, request: Dict[str, Any]
    ) -> None:
        logger.warning(f"Envelope rejected: {error}")
        if origin is None:
            return
        payload = {"reason": error.message, "code": error.code.value, "details": error.details}
        with contextlib.suppress(*SEND_FAILURES):
            await origin.send(EventType.ENVELOPE_REJECT, _with_request_id(payload, request))

    # History

    async def _on_history_request(self, connection: Connection, request: Dict[str, Any]) -> None:
        conversation_id = _require_str(request, "conversationId")
        user_id = self._announced_user(connection)

        loop = asyncio.get_running_loop()
        participants = await loop.run_in_executor(None, self.store.participants, conversation_id)
        if participants is not None and user_id not in participants:
            raise ValidationError(
                ErrorCode.E304_PARTICIPANT_MISMATCH,
                "Not a participant of this conversation",
                {"conversation_id": conversation_id},
            )

        offset = _optional_int(request, "offset", 0, minimum=0)
        limit = min(
            _optional_int(request, "limit", HISTORY_PAGE_SIZE, minimum=1), MAX_HISTORY_PAGE_SIZE
        )

        # One extra row tells whether another page follows
        envelopes = await loop.run_in_executor(
            None,
            functools.partial(
                self.store.list_by_conversation, conversation_id, offset=offset, limit=limit + 1
            ),
        )
        page = _fit_page(envelopes[:limit], HISTORY_PAGE_BYTES)
        next_offset = offset + len(page) if len(envelopes) > len(page) else None

        await connection.send(
            EventType.HISTORY,
            _with_request_id(
                {
                    "conversationId": conversation_id,
                    "envelopes": page,
                    "offset": offset,
                    "nextOffset": next_offset,
                },
                request,
            ),
        )

    # Directory

    async def _on_key_publish(self, connection: Connection, request: Dict[str, Any]) -> None:
        user_id = _require_str(request, "userId")
        public_key = _require_str(request, "publicKey")

        announced = self.presence.user_for(connection)
        if announced is not None and announced != user_id:
            raise ValidationError(
                ErrorCode.E302_INVALID_FIELD,
                "Cannot publish a key for another user",
                {"field": "userId"},
            )
        try:
            crypto.load_public_key(public_key)
        except ValueError as e:
            raise ValidationError(
                ErrorCode.E302_INVALID_FIELD,
                "publicKey is not an RSA public key",
                {"field": "publicKey"},
            ) from e

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.directory.set_public_key, user_id, public_key)
        await connection.send(
            EventType.KEY_PUBLISHED, _with_request_id({"userId": user_id}, request)
        )

    async def _on_key_lookup(self, connection: Connection, request: Dict[str, Any]) -> None:
        user_id = _require_str(request, "userId")
        loop = asyncio.get_running_loop()
        public_key = await loop.run_in_executor(None, self.directory.get_public_key, user_id)
        await connection.send(
            EventType.KEY, _with_request_id({"userId": user_id, "publicKey": public_key}, request)
        )

    # Typing and liveness

    async def _on_typing(self, connection: Connection, request: Dict[str, Any]) -> None:
        receiver_id = _require_str(request, "receiverId")
        user_id = self._announced_user(connection)
        receiver = self.presence.lookup(receiver_id)
        if receiver is None:
            return
        with contextlib.suppress(*SEND_FAILURES):
            await receiver.send(
                EventType.TYPING_INDICATOR, {"userId": user_id, "status": STATUS_TYPING}
            )

    async def _on_ping(self, connection: Connection, request: Dict[str, Any]) -> None:
        await connection.send(EventType.PONG, _with_request_id({}, request))
