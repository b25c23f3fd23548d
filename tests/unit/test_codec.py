"""
Unit tests for studybuddy.codec module.

Tests envelope encoding and decoding for both parties.
"""

import dataclasses

import pytest

from studybuddy import crypto
from studybuddy.codec import EnvelopeCodec
from studybuddy.errors import DecodingError, EncodingError, ErrorCode


@pytest.fixture
def codec():
    return EnvelopeCodec()


async def _encode(codec, alice_key, bob_key, conversation_id, text="hello"):
    return await codec.encode(
        text,
        alice_key.public_key(),
        bob_key.public_key(),
        conversation_id,
        "alice",
        "bob",
    )


@pytest.mark.asyncio
class TestEncode:
    """Test EnvelopeCodec.encode."""

    async def test_envelope_shape(self, codec, alice_key, bob_key, conversation_id):
        """Test that encode fills every field but createdAt."""
        envelope = await _encode(codec, alice_key, bob_key, conversation_id)

        assert envelope.conversation_id == conversation_id
        assert envelope.sender_id == "alice"
        assert envelope.receiver_id == "bob"
        assert envelope.created_at is None
        assert len(crypto.b64decode(envelope.iv)) == 12
        assert len(crypto.b64decode(envelope.key_for_sender)) == 256
        assert len(crypto.b64decode(envelope.key_for_receiver)) == 256
        assert envelope.key_for_sender != envelope.key_for_receiver
        assert "hello" not in envelope.ciphertext

    async def test_fresh_key_and_iv(self, codec, alice_key, bob_key, conversation_id):
        """Test that encoding the same text twice never repeats key material."""
        first = await _encode(codec, alice_key, bob_key, conversation_id)
        second = await _encode(codec, alice_key, bob_key, conversation_id)

        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext
        assert first.envelope_id != second.envelope_id

    async def test_accepts_pem_keys(self, codec, alice_key, bob_key, conversation_id):
        """Test that keys may be passed as PEM text."""
        envelope = await codec.encode(
            "pem",
            crypto.serialize_public_key(alice_key.public_key()),
            crypto.serialize_public_key(bob_key.public_key()),
            conversation_id,
            "alice",
            "bob",
        )
        assert await codec.decode(envelope, "bob", bob_key) == "pem"

    async def test_missing_receiver_key(self, codec, alice_key, conversation_id):
        """Test that a missing public key is an encoding error."""
        with pytest.raises(EncodingError) as exc_info:
            await codec.encode(
                "hi", alice_key.public_key(), None, conversation_id, "alice", "bob"
            )
        assert exc_info.value.code == ErrorCode.E202_INVALID_PUBLIC_KEY

    async def test_malformed_key(self, codec, alice_key, conversation_id):
        """Test that a malformed public key is an encoding error."""
        with pytest.raises(EncodingError):
            await codec.encode(
                "hi", alice_key.public_key(), "garbage", conversation_id, "alice", "bob"
            )

    async def test_non_string_plaintext(self, codec, alice_key, bob_key, conversation_id):
        """Test that plaintext must be text."""
        with pytest.raises(EncodingError) as exc_info:
            await _encode(codec, alice_key, bob_key, conversation_id, text=b"bytes")
        assert exc_info.value.code == ErrorCode.E201_ENCODING_FAILED


@pytest.mark.asyncio
class TestDecode:
    """Test EnvelopeCodec.decode."""

    async def test_receiver_decodes(self, codec, alice_key, bob_key, conversation_id):
        """Test that the receiver recovers the plaintext."""
        envelope = await _encode(codec, alice_key, bob_key, conversation_id, "see you at 5")
        assert await codec.decode(envelope, "bob", bob_key) == "see you at 5"

    async def test_sender_decodes_own_message(self, codec, alice_key, bob_key, conversation_id):
        """Test that the sender can read their own message from history."""
        envelope = await _encode(codec, alice_key, bob_key, conversation_id, "see you at 5")
        assert await codec.decode(envelope, "alice", alice_key) == "see you at 5"

    async def test_unicode_and_empty(self, codec, alice_key, bob_key, conversation_id):
        """Test non-ASCII and empty plaintexts."""
        for text in ("", "Grüße 👋 数学"):
            envelope = await _encode(codec, alice_key, bob_key, conversation_id, text)
            assert await codec.decode(envelope, "bob", bob_key) == text

    async def test_third_party_cannot_decode(
        self, codec, alice_key, bob_key, mallory_key, conversation_id
    ):
        """Test that a non-participant is refused."""
        envelope = await _encode(codec, alice_key, bob_key, conversation_id)

        with pytest.raises(DecodingError) as exc_info:
            await codec.decode(envelope, "mallory", mallory_key)
        assert exc_info.value.code == ErrorCode.E204_UNKNOWN_ROLE

    async def test_wrong_private_key(
        self, codec, alice_key, bob_key, mallory_key, conversation_id
    ):
        """Test that the wrong private key cannot unwrap the content key."""
        envelope = await _encode(codec, alice_key, bob_key, conversation_id)

        with pytest.raises(DecodingError) as exc_info:
            await codec.decode(envelope, "bob", mallory_key)
        assert exc_info.value.code == ErrorCode.E205_UNWRAP_FAILED

    async def test_missing_private_key(self, codec, alice_key, bob_key, conversation_id):
        """Test that decoding without a private key fails cleanly."""
        envelope = await _encode(codec, alice_key, bob_key, conversation_id)

        with pytest.raises(DecodingError):
            await codec.decode(envelope, "bob", None)

    async def test_tampered_ciphertext(self, codec, alice_key, bob_key, conversation_id):
        """Test that modified ciphertext fails authentication."""
        envelope = await _encode(codec, alice_key, bob_key, conversation_id)
        raw = bytearray(crypto.b64decode(envelope.ciphertext))
        raw[-1] ^= 0x01
        tampered = dataclasses.replace(envelope, ciphertext=crypto.b64encode(bytes(raw)))

        with pytest.raises(DecodingError) as exc_info:
            await codec.decode(tampered, "bob", bob_key)
        assert exc_info.value.code == ErrorCode.E206_AUTHENTICATION_FAILED
