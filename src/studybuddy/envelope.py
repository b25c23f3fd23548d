"""
StudyBuddy - Envelope record and wire-shape validation.

An envelope is the unit of transport and storage for one encrypted message.
Its wire/storage shape is fixed for interoperability:

    {
        "conversationId": str,
        "senderId": str,
        "receiverId": str,
        "ciphertext": base64,
        "keyForSender": base64,
        "keyForReceiver": base64,
        "iv": base64,
        "createdAt": ISO-8601 timestamp
    }

Anything that does not match this shape is rejected with ValidationError
before it can reach the conversation store.
"""

import dataclasses
import hashlib
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from .constants import IV_SIZE
from .crypto import b64decode
from .errors import ErrorCode, ValidationError
from .utils import format_timestamp, parse_timestamp

# Python attribute name -> wire field name
WIRE_FIELDS: Dict[str, str] = {
    "conversation_id": "conversationId",
    "sender_id": "senderId",
    "receiver_id": "receiverId",
    "ciphertext": "ciphertext",
    "key_for_sender": "keyForSender",
    "key_for_receiver": "keyForReceiver",
    "iv": "iv",
    "created_at": "createdAt",
}

IDENTIFIER_FIELDS = ("conversationId", "senderId", "receiverId")
BINARY_FIELDS = ("ciphertext", "keyForSender", "keyForReceiver", "iv")
REQUIRED_FIELDS = IDENTIFIER_FIELDS + BINARY_FIELDS

ROLE_SENDER = "sender"
ROLE_RECEIVER = "receiver"


@dataclass(frozen=True)
class Envelope:
    """One encrypted message with its content key wrapped for both parties."""

    conversation_id: str
    sender_id: str
    receiver_id: str
    ciphertext: str
    key_for_sender: str
    key_for_receiver: str
    iv: str
    created_at: Optional[str] = None

    @property
    def envelope_id(self) -> str:
        """Stable identity used to de-duplicate deliveries."""
        digest = hashlib.sha256()
        for part in (self.conversation_id, self.iv, self.ciphertext):
            digest.update(part.encode("utf-8"))
            digest.update(b"\x00")
        return digest.hexdigest()

    @property
    def participants(self) -> FrozenSet[str]:
        """The two user ids this envelope is exchanged between."""
        return frozenset((self.sender_id, self.receiver_id))

    def role_of(self, user_id: str) -> Optional[str]:
        """Return 'sender', 'receiver', or None if user_id is not a party."""
        if user_id == self.sender_id:
            return ROLE_SENDER
        if user_id == self.receiver_id:
            return ROLE_RECEIVER
        return None

    def wrapped_key_for(self, user_id: str) -> Optional[str]:
        """Wrapped content key matching the user's role, if any."""
        role = self.role_of(user_id)
        if role == ROLE_SENDER:
            return self.key_for_sender
        if role == ROLE_RECEIVER:
            return self.key_for_receiver
        return None

    def stamped(self, created_at: str) -> "Envelope":
        """Copy of this envelope with its creation timestamp set."""
        return dataclasses.replace(self, created_at=created_at)

    def to_dict(self) -> Dict[str, Any]:
        """Convert envelope to its wire/storage dictionary."""
        return {wire: getattr(self, attr) for attr, wire in WIRE_FIELDS.items()}

    def validated(self) -> "Envelope":
        """
        Re-check a directly constructed envelope against the wire shape.

        Raises:
            ValidationError: If any field would be rejected on the wire
        """
        return Envelope.from_dict(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> "Envelope":
        """
        Build an envelope from a wire dictionary, validating every field.

        Raises:
            ValidationError: If the payload does not match the wire shape
        """
        if not isinstance(data, dict):
            raise ValidationError(
                ErrorCode.E302_INVALID_FIELD,
                "Envelope must be an object",
                {"type": type(data).__name__},
            )

        unknown = sorted(set(data) - set(WIRE_FIELDS.values()))
        if unknown:
            raise ValidationError(
                ErrorCode.E303_UNKNOWN_FIELD,
                f"Unknown envelope fields: {', '.join(unknown)}",
                {"fields": unknown},
            )

        missing = [name for name in REQUIRED_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                ErrorCode.E301_MISSING_FIELD,
                f"Missing required fields: {', '.join(missing)}",
                {"fields": missing},
            )

        for name in REQUIRED_FIELDS:
            if not isinstance(data[name], str):
                raise ValidationError(
                    ErrorCode.E302_INVALID_FIELD,
                    f"Field {name} must be a string",
                    {"field": name},
                )

        for name in BINARY_FIELDS:
            try:
                raw = b64decode(data[name])
            except ValueError as e:
                raise ValidationError(
                    ErrorCode.E302_INVALID_FIELD,
                    f"Field {name} is not valid base64",
                    {"field": name},
                ) from e
            if name == "iv" and len(raw) != IV_SIZE:
                raise ValidationError(
                    ErrorCode.E302_INVALID_FIELD,
                    f"Field iv must decode to {IV_SIZE} bytes",
                    {"field": name, "length": len(raw)},
                )

        if data["senderId"] == data["receiverId"]:
            raise ValidationError(
                ErrorCode.E302_INVALID_FIELD,
                "Sender and receiver must be different users",
                {"field": "receiverId"},
            )

        created_at = data.get("createdAt")
        if created_at is not None:
            try:
                created_at = format_timestamp(parse_timestamp(created_at))
            except ValueError as e:
                raise ValidationError(
                    ErrorCode.E302_INVALID_FIELD,
                    "Field createdAt is not a valid timestamp",
                    {"field": "createdAt"},
                ) from e

        return cls(
            conversation_id=data["conversationId"],
            sender_id=data["senderId"],
            receiver_id=data["receiverId"],
            ciphertext=data["ciphertext"],
            key_for_sender=data["keyForSender"],
            key_for_receiver=data["keyForReceiver"],
            iv=data["iv"],
            created_at=created_at,
        )
