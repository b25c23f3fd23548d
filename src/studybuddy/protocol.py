"""
StudyBuddy - Channel wire protocol.

Every frame is one line of UTF-8 JSON terminated by a newline:

    {"event": "<kind>", "data": {...}}

Event kinds are defined in EventType. Frames larger than MAX_FRAME_SIZE
are rejected.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .constants import MAX_FRAME_SIZE
from .errors import ChannelError, ErrorCode


class EventType(str, Enum):
    """Event kinds exchanged over the message channel."""

    # Presence
    PRESENCE_ANNOUNCE = "presence-announce"
    USER_STATUS = "user-status"

    # Envelopes
    ENVELOPE_SEND = "envelope-send"
    ENVELOPE_DELIVER = "envelope-deliver"
    ENVELOPE_REJECT = "envelope-reject"

    # History
    HISTORY_REQUEST = "history-request"
    HISTORY = "history"

    # Public key directory
    KEY_PUBLISH = "key-publish"
    KEY_PUBLISHED = "key-published"
    KEY_LOOKUP = "key-lookup"
    KEY = "key"

    # Typing indicators
    TYPING = "typing"
    TYPING_INDICATOR = "typing-indicator"

    # Liveness
    PING = "ping"
    PONG = "pong"

    # Connection-level errors
    ERROR = "error"


STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_TYPING = "typing"


def pack_frame(event: EventType, data: Optional[Dict[str, Any]] = None) -> bytes:
    """
    Serialize one event as a newline-terminated JSON frame.

    Raises:
        ChannelError: If the frame would exceed MAX_FRAME_SIZE
    """
    frame = json.dumps({"event": EventType(event).value, "data": data or {}}).encode("utf-8")
    if len(frame) > MAX_FRAME_SIZE:
        raise ChannelError(
            ErrorCode.E503_INVALID_FRAME,
            f"Frame too large: {len(frame)} bytes",
            {"size": len(frame), "max_size": MAX_FRAME_SIZE},
        )
    return frame + b"\n"


def unpack_frame(line: bytes) -> Tuple[str, Dict[str, Any]]:
    """
    Parse one frame (without its trailing newline).

    Returns:
        Tuple of (event kind as sent, data dictionary)

    Raises:
        ChannelError: If the line is not a well-formed frame
    """
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ChannelError(ErrorCode.E503_INVALID_FRAME, f"Invalid JSON frame: {e}") from e

    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        raise ChannelError(ErrorCode.E503_INVALID_FRAME, "Frame has no event kind")

    data = message.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ChannelError(ErrorCode.E503_INVALID_FRAME, "Frame data must be an object")

    return message["event"], data
