"""
Unit tests for studybuddy.envelope module.

Tests wire-shape validation and envelope helpers.
"""

import dataclasses

import pytest

from studybuddy.envelope import Envelope
from studybuddy.errors import ErrorCode, ValidationError


class TestEnvelopeValidation:
    """Test Envelope.from_dict validation."""

    def test_valid_envelope(self, sample_envelope_data):
        """Test that a well-formed payload is accepted unchanged."""
        envelope = Envelope.from_dict(sample_envelope_data)

        assert envelope.sender_id == "alice"
        assert envelope.receiver_id == "bob"
        assert envelope.to_dict() == sample_envelope_data

    def test_created_at_optional(self, sample_envelope_data):
        """Test that createdAt may be omitted by senders."""
        del sample_envelope_data["createdAt"]
        envelope = Envelope.from_dict(sample_envelope_data)

        assert envelope.created_at is None

    @pytest.mark.parametrize(
        "field",
        ["conversationId", "senderId", "receiverId", "ciphertext", "keyForSender",
         "keyForReceiver", "iv"],
    )
    def test_missing_field(self, sample_envelope_data, field):
        """Test that every required field is enforced."""
        del sample_envelope_data[field]

        with pytest.raises(ValidationError) as exc_info:
            Envelope.from_dict(sample_envelope_data)
        assert exc_info.value.code == ErrorCode.E301_MISSING_FIELD
        assert field in exc_info.value.details["fields"]

    def test_empty_field(self, sample_envelope_data):
        """Test that empty strings count as missing."""
        sample_envelope_data["ciphertext"] = ""

        with pytest.raises(ValidationError) as exc_info:
            Envelope.from_dict(sample_envelope_data)
        assert exc_info.value.code == ErrorCode.E301_MISSING_FIELD

    def test_unknown_field(self, sample_envelope_data):
        """Test that extra fields are rejected."""
        sample_envelope_data["plaintext"] = "oops"

        with pytest.raises(ValidationError) as exc_info:
            Envelope.from_dict(sample_envelope_data)
        assert exc_info.value.code == ErrorCode.E303_UNKNOWN_FIELD

    def test_not_a_dict(self):
        """Test that non-object payloads are rejected."""
        with pytest.raises(ValidationError):
            Envelope.from_dict(["not", "an", "envelope"])
        with pytest.raises(ValidationError):
            Envelope.from_dict(None)

    def test_non_string_field(self, sample_envelope_data):
        """Test that identifiers must be strings."""
        sample_envelope_data["senderId"] = 42

        with pytest.raises(ValidationError) as exc_info:
            Envelope.from_dict(sample_envelope_data)
        assert exc_info.value.code == ErrorCode.E302_INVALID_FIELD

    def test_invalid_base64(self, sample_envelope_data):
        """Test that binary fields must be base64."""
        sample_envelope_data["keyForReceiver"] = "%%%"

        with pytest.raises(ValidationError) as exc_info:
            Envelope.from_dict(sample_envelope_data)
        assert exc_info.value.details["field"] == "keyForReceiver"

    def test_wrong_iv_length(self, sample_envelope_data):
        """Test that the IV must be 96 bits."""
        sample_envelope_data["iv"] = "AAAAAAAAAAAAAAAA"

        with pytest.raises(ValidationError) as exc_info:
            Envelope.from_dict(sample_envelope_data)
        assert exc_info.value.details["field"] == "iv"

    def test_self_addressed(self, sample_envelope_data):
        """Test that sender and receiver must differ."""
        sample_envelope_data["receiverId"] = "alice"

        with pytest.raises(ValidationError):
            Envelope.from_dict(sample_envelope_data)

    def test_invalid_timestamp(self, sample_envelope_data):
        """Test that createdAt must parse."""
        sample_envelope_data["createdAt"] = "yesterday"

        with pytest.raises(ValidationError):
            Envelope.from_dict(sample_envelope_data)

    def test_validated_object(self, sample_envelope_data):
        """Test that directly built envelopes go through the same checks."""
        envelope = Envelope.from_dict(sample_envelope_data)
        assert envelope.validated() == envelope

        partial = dataclasses.replace(envelope, ciphertext="", key_for_receiver="")
        with pytest.raises(ValidationError) as exc_info:
            partial.validated()
        assert exc_info.value.code == ErrorCode.E301_MISSING_FIELD


class TestEnvelopeHelpers:
    """Test roles, identity and stamping."""

    def test_roles(self, sample_envelope_data):
        """Test role lookup and wrapped key selection."""
        envelope = Envelope.from_dict(sample_envelope_data)

        assert envelope.role_of("alice") == "sender"
        assert envelope.role_of("bob") == "receiver"
        assert envelope.role_of("mallory") is None
        assert envelope.wrapped_key_for("alice") == sample_envelope_data["keyForSender"]
        assert envelope.wrapped_key_for("bob") == sample_envelope_data["keyForReceiver"]
        assert envelope.wrapped_key_for("mallory") is None
        assert envelope.participants == frozenset({"alice", "bob"})

    def test_envelope_id_ignores_timestamp(self, sample_envelope_data):
        """Test that stamping does not change the envelope identity."""
        envelope = Envelope.from_dict(sample_envelope_data)
        stamped = envelope.stamped("2030-01-01T00:00:00.000000+00:00")

        assert stamped.created_at == "2030-01-01T00:00:00.000000+00:00"
        assert envelope.created_at == sample_envelope_data["createdAt"]
        assert stamped.envelope_id == envelope.envelope_id
        assert len(envelope.envelope_id) == 64

    def test_envelope_id_differs_per_message(self, sample_envelope_data):
        """Test that different ciphertexts give different ids."""
        first = Envelope.from_dict(sample_envelope_data)
        sample_envelope_data["iv"] = "AQEBAQEBAQEBAQEB"
        second = Envelope.from_dict(sample_envelope_data)

        assert first.envelope_id != second.envelope_id
