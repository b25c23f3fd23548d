"""
StudyBuddy - Envelope codec.

Transforms plaintext into envelopes and back:

Encoding:
1. Generate a fresh AES-256 content key and a fresh 96-bit IV
2. Encrypt the UTF-8 plaintext with AES-256-GCM
3. Wrap the raw content key with RSA-OAEP under the sender's public key
4. Wrap it again under the receiver's public key

Wrapping for both parties lets the sender read their own history later,
from any session, without keeping plaintext or content keys around.

Decoding picks the wrapped key matching the caller's role in the envelope,
unwraps it with the caller's private key, then decrypts and authenticates
the ciphertext.

All cryptography runs in an executor so the event loop is never blocked.
"""

import asyncio
import functools
import logging
from concurrent.futures import Executor
from typing import Optional

from . import crypto
from .constants import MAX_PLAINTEXT_SIZE
from .envelope import Envelope
from .errors import DecodingError, EncodingError, ErrorCode

logger = logging.getLogger(__name__)


def _encode_sync(
    plaintext: str,
    sender_public_key: crypto.PublicKeyLike,
    receiver_public_key: crypto.PublicKeyLike,
    conversation_id: str,
    sender_id: str,
    receiver_id: str,
) -> Envelope:
    if not isinstance(plaintext, str):
        raise EncodingError(
            ErrorCode.E201_ENCODING_FAILED,
            "Plaintext must be a string",
            {"type": type(plaintext).__name__},
        )
    if len(plaintext.encode("utf-8")) > MAX_PLAINTEXT_SIZE:
        raise EncodingError(
            ErrorCode.E201_ENCODING_FAILED,
            "Plaintext too large",
            {"max_size": MAX_PLAINTEXT_SIZE},
        )

    public_keys = {}
    for role, key in (("sender", sender_public_key), ("receiver", receiver_public_key)):
        if key is None:
            raise EncodingError(
                ErrorCode.E202_INVALID_PUBLIC_KEY,
                f"Missing {role} public key",
                {"role": role},
            )
        try:
            public_keys[role] = crypto.load_public_key(key)
        except ValueError as e:
            raise EncodingError(
                ErrorCode.E202_INVALID_PUBLIC_KEY,
                f"Malformed {role} public key",
                {"role": role, "error": str(e)},
            ) from e

    content_key = crypto.generate_content_key()
    iv = crypto.generate_iv()
    try:
        ciphertext = crypto.encrypt_content(plaintext, content_key, iv)
        key_for_sender = crypto.wrap_key(public_keys["sender"], content_key)
        key_for_receiver = crypto.wrap_key(public_keys["receiver"], content_key)
    except crypto.CRYPTO_FAILURES as e:
        raise EncodingError(
            ErrorCode.E201_ENCODING_FAILED,
            f"Encryption failed: {e}",
        ) from e

    return Envelope(
        conversation_id=conversation_id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        ciphertext=crypto.b64encode(ciphertext),
        key_for_sender=crypto.b64encode(key_for_sender),
        key_for_receiver=crypto.b64encode(key_for_receiver),
        iv=crypto.b64encode(iv),
    )


def _decode_sync(
    envelope: Envelope, self_id: str, self_private_key: Optional[crypto.PrivateKeyLike]
) -> str:
    wrapped = envelope.wrapped_key_for(self_id)
    if wrapped is None:
        raise DecodingError(
            ErrorCode.E204_UNKNOWN_ROLE,
            "User is neither sender nor receiver of this envelope",
            {"user_id": self_id, "conversation_id": envelope.conversation_id},
        )
    if self_private_key is None:
        raise DecodingError(
            ErrorCode.E205_UNWRAP_FAILED,
            "No private key available",
            {"user_id": self_id},
        )

    try:
        private_key = crypto.load_private_key(self_private_key)
        content_key = crypto.unwrap_key(private_key, crypto.b64decode(wrapped))
    except crypto.CRYPTO_FAILURES as e:
        raise DecodingError(
            ErrorCode.E205_UNWRAP_FAILED,
            "Could not unwrap content key",
            {"user_id": self_id, "error": str(e)},
        ) from e

    try:
        return crypto.decrypt_content(
            crypto.b64decode(envelope.ciphertext), content_key, crypto.b64decode(envelope.iv)
        )
    except crypto.CRYPTO_FAILURES as e:
        raise DecodingError(
            ErrorCode.E206_AUTHENTICATION_FAILED,
            "Ciphertext failed authentication",
            {"conversation_id": envelope.conversation_id},
        ) from e


class EnvelopeCodec:
    """Async plaintext <-> envelope transformation."""

    def __init__(self, executor: Optional[Executor] = None):
        """
        Initialize the codec.

        Args:
            executor: Executor for CPU-bound crypto (default loop executor if None)
        """
        self.executor = executor

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))

    async def encode(
        self,
        plaintext: str,
        sender_public_key: crypto.PublicKeyLike,
        receiver_public_key: crypto.PublicKeyLike,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
    ) -> Envelope:
        """
        Encrypt plaintext into a new envelope.

        A fresh content key and IV are generated on every call.

        Args:
            plaintext: Message text
            sender_public_key: Sender's RSA public key (object or PEM)
            receiver_public_key: Receiver's RSA public key (object or PEM)
            conversation_id: Opaque conversation identifier
            sender_id: Sending user id
            receiver_id: Receiving user id

        Returns:
            Envelope without a creation timestamp (stamped on persistence)

        Raises:
            EncodingError: If either public key is missing or malformed
        """
        envelope = await self._run(
            _encode_sync,
            plaintext,
            sender_public_key,
            receiver_public_key,
            conversation_id,
            sender_id,
            receiver_id,
        )
        logger.debug(f"Encoded envelope {envelope.envelope_id[:12]} for {conversation_id}")
        return envelope

    async def decode(
        self, envelope: Envelope, self_id: str, self_private_key: Optional[crypto.PrivateKeyLike]
    ) -> str:
        """
        Decrypt an envelope with the caller's private key.

        Args:
            envelope: Envelope to open
            self_id: The caller's user id (selects the wrapped key)
            self_private_key: The caller's RSA private key (object or PEM)

        Returns:
            Plaintext message

        Raises:
            DecodingError: If the role is unknown, the key cannot be
                unwrapped, or the ciphertext fails authentication
        """
        return await self._run(_decode_sync, envelope, self_id, self_private_key)
