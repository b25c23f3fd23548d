"""
StudyBuddy - End-to-end encrypted messaging core.

Hybrid RSA-OAEP / AES-256-GCM envelopes, a real-time message channel with
presence, an append-only conversation store and a client-side cache of
decrypted conversations.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .channel import MessageChannel
from .client import StudyBuddyClient
from .codec import EnvelopeCodec
from .config import Config
from .constants import APP_NAME, VERSION
from .directory import UserDirectory, conversation_id_for
from .envelope import Envelope
from .errors import (
    ChannelError,
    ConfigError,
    DecodingError,
    DirectoryError,
    EncodingError,
    ErrorCode,
    KeyGenerationError,
    KeyStorageError,
    PublishError,
    StoreError,
    StudyBuddyError,
    ValidationError,
)
from .keystore import KeyStore, LocalKeyStorage
from .presence import PresenceTable
from .session_cache import DecryptedMessage, SessionCache
from .store import ConversationStore

__all__ = [
    "APP_NAME",
    "VERSION",
    "ChannelError",
    "Config",
    "ConfigError",
    "ConversationStore",
    "DecodingError",
    "DecryptedMessage",
    "DirectoryError",
    "EncodingError",
    "Envelope",
    "EnvelopeCodec",
    "ErrorCode",
    "KeyGenerationError",
    "KeyStorageError",
    "KeyStore",
    "LocalKeyStorage",
    "MessageChannel",
    "PresenceTable",
    "PublishError",
    "SessionCache",
    "StoreError",
    "StudyBuddyClient",
    "StudyBuddyError",
    "UserDirectory",
    "ValidationError",
    "__license__",
    "conversation_id_for",
]
