"""
StudyBuddy - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used by the
encrypted messaging core. Each error has a unique code for logging and
for reporting back to the connection that caused it.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all StudyBuddy error codes."""

    # Key Errors (E100-E199)
    E101_KEY_GENERATION_FAILED = "E101"
    E102_PUBLISH_FAILED = "E102"
    E103_PUBLISH_TIMEOUT = "E103"
    E104_KEY_STORAGE_FAILED = "E104"
    E105_KEY_STORAGE_LOCKED = "E105"

    # Codec Errors (E200-E299)
    E201_ENCODING_FAILED = "E201"
    E202_INVALID_PUBLIC_KEY = "E202"
    E203_DECODING_FAILED = "E203"
    E204_UNKNOWN_ROLE = "E204"
    E205_UNWRAP_FAILED = "E205"
    E206_AUTHENTICATION_FAILED = "E206"

    # Validation Errors (E300-E399)
    E300_VALIDATION_ERROR = "E300"
    E301_MISSING_FIELD = "E301"
    E302_INVALID_FIELD = "E302"
    E303_UNKNOWN_FIELD = "E303"
    E304_PARTICIPANT_MISMATCH = "E304"

    # Storage Errors (E400-E499)
    E400_STORE_ERROR = "E400"
    E401_APPEND_FAILED = "E401"
    E402_QUERY_FAILED = "E402"
    E410_DIRECTORY_ERROR = "E410"

    # Channel Errors (E500-E599)
    E500_CHANNEL_ERROR = "E500"
    E501_START_FAILED = "E501"
    E502_NOT_CONNECTED = "E502"
    E503_INVALID_FRAME = "E503"
    E504_UNKNOWN_EVENT = "E504"
    E505_NOT_ANNOUNCED = "E505"
    E506_REQUEST_TIMEOUT = "E506"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class StudyBuddyError(Exception):
    """Base exception class for all StudyBuddy errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class KeyGenerationError(StudyBuddyError):
    """Raised when the platform cryptography provider cannot create a keypair.

    Fatal to encrypted messaging for the session until retried.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E101_KEY_GENERATION_FAILED,
        message: str = "Keypair generation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class PublishError(StudyBuddyError):
    """Raised when the public key could not be written to the directory.

    Recoverable: the local key is kept and publishing is retried on the
    next ensure call.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E102_PUBLISH_FAILED,
        message: str = "Public key publication failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyStorageError(StudyBuddyError):
    """Raised when local key storage cannot be read or written."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E104_KEY_STORAGE_FAILED,
        message: str = "Local key storage failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class EncodingError(StudyBuddyError):
    """Raised when a plaintext cannot be turned into an envelope."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E201_ENCODING_FAILED,
        message: str = "Envelope encoding failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DecodingError(StudyBuddyError):
    """Raised when an envelope cannot be opened by the local user.

    Recoverable per message: the message is shown as a placeholder.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E203_DECODING_FAILED,
        message: str = "Envelope decoding failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ValidationError(StudyBuddyError):
    """Raised for malformed envelopes, before anything is persisted."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_VALIDATION_ERROR,
        message: str = "Envelope validation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class StoreError(StudyBuddyError):
    """Raised for conversation store failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_STORE_ERROR,
        message: str = "Conversation store operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DirectoryError(StudyBuddyError):
    """Raised for public key directory failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E410_DIRECTORY_ERROR,
        message: str = "Directory operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ChannelError(StudyBuddyError):
    """Raised for message channel and client transport failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_CHANNEL_ERROR,
        message: str = "Channel operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(StudyBuddyError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
