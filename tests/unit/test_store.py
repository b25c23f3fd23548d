"""
Unit tests for studybuddy.store module.

Tests the append-only conversation store.
"""

import dataclasses
import threading

import pytest

from studybuddy.envelope import Envelope
from studybuddy.errors import ErrorCode, StoreError, ValidationError
from studybuddy.store import ConversationStore


@pytest.fixture
def store():
    store = ConversationStore()
    yield store
    store.close()


@pytest.fixture
def envelope(sample_envelope_data):
    return Envelope.from_dict(sample_envelope_data)


def _with_iv(envelope, n):
    """Distinct envelope in the same conversation."""
    iv = "{:016d}".format(n)
    return dataclasses.replace(envelope, iv=iv)


class TestAppend:
    """Test ConversationStore.append."""

    def test_append_stamps_created_at(self, store, envelope):
        """Test that the store replaces the client timestamp."""
        stored = store.append(envelope)

        assert stored.created_at is not None
        assert stored.created_at != envelope.created_at
        assert stored.envelope_id == envelope.envelope_id
        assert store.count(envelope.conversation_id) == 1

    def test_append_unstamped(self, store, envelope):
        """Test that envelopes without createdAt are accepted."""
        stored = store.append(dataclasses.replace(envelope, created_at=None))
        assert stored.created_at is not None

    def test_participant_mismatch(self, store, envelope):
        """Test that a conversation keeps its original pair of users."""
        store.append(envelope)
        intruder = dataclasses.replace(envelope, sender_id="mallory")

        with pytest.raises(ValidationError) as exc_info:
            store.append(intruder)
        assert exc_info.value.code == ErrorCode.E304_PARTICIPANT_MISMATCH
        assert store.count(envelope.conversation_id) == 1

    def test_reply_direction_allowed(self, store, envelope):
        """Test that the receiver can answer in the same conversation."""
        store.append(envelope)
        reply = dataclasses.replace(
            _with_iv(envelope, 1), sender_id="bob", receiver_id="alice"
        )
        store.append(reply)

        assert store.count(envelope.conversation_id) == 2
        assert store.participants(envelope.conversation_id) == frozenset({"alice", "bob"})

    def test_append_after_close(self, envelope):
        """Test that a closed store refuses writes."""
        store = ConversationStore()
        store.close()

        with pytest.raises(StoreError):
            store.append(envelope)

    def test_queries_after_close(self, envelope):
        """Test that a closed store reports every query as StoreError."""
        store = ConversationStore()
        store.append(envelope)
        store.close()
        conversation_id = envelope.conversation_id

        for query in (
            store.list_by_conversation,
            store.participants,
            store.count,
            store.delete_conversation,
        ):
            with pytest.raises(StoreError):
                query(conversation_id)

        with pytest.raises(StoreError) as exc_info:
            store.participants(conversation_id)
        assert exc_info.value.code == ErrorCode.E402_QUERY_FAILED


class TestListByConversation:
    """Test ConversationStore.list_by_conversation."""

    def test_order_matches_append_order(self, store, envelope):
        """Test that history comes back oldest first, in send order."""
        appended = [store.append(_with_iv(envelope, n)) for n in range(20)]
        listed = store.list_by_conversation(envelope.conversation_id)

        assert [e.envelope_id for e in listed] == [e.envelope_id for e in appended]
        stamps = [e.created_at for e in listed]
        assert stamps == sorted(stamps)

    def test_listed_equals_stored(self, store, envelope):
        """Test that listing returns exactly what append returned."""
        stored = store.append(envelope)
        assert store.list_by_conversation(envelope.conversation_id) == [stored]

    def test_repeatable(self, store, envelope):
        """Test that listing is stateless."""
        store.append(envelope)
        first = store.list_by_conversation(envelope.conversation_id)
        second = store.list_by_conversation(envelope.conversation_id)
        assert first == second

    def test_unknown_conversation(self, store):
        """Test that an unknown conversation has empty history."""
        assert store.list_by_conversation("c-unknown") == []
        assert store.participants("c-unknown") is None
        assert store.count("c-unknown") == 0

    def test_offset_and_limit(self, store, envelope):
        """Test that paged listing walks the same order as a full listing."""
        appended = [store.append(_with_iv(envelope, n)) for n in range(7)]
        conversation_id = envelope.conversation_id

        assert store.list_by_conversation(conversation_id, limit=3) == appended[:3]
        assert store.list_by_conversation(conversation_id, offset=3, limit=3) == appended[3:6]
        assert store.list_by_conversation(conversation_id, offset=6, limit=3) == appended[6:]
        assert store.list_by_conversation(conversation_id, offset=5) == appended[5:]
        assert store.list_by_conversation(conversation_id, offset=10) == []

    def test_conversations_isolated(self, store, envelope):
        """Test that conversations do not leak into each other."""
        store.append(envelope)
        other = dataclasses.replace(envelope, conversation_id="c-other")
        store.append(other)

        listed = store.list_by_conversation(envelope.conversation_id)
        assert [e.conversation_id for e in listed] == [envelope.conversation_id]

    def test_concurrent_appends(self, store, envelope):
        """Test that appends from several threads are all persisted in order."""
        def worker(offset):
            for n in range(10):
                store.append(_with_iv(envelope, offset * 100 + n))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        listed = store.list_by_conversation(envelope.conversation_id)
        assert len(listed) == 40
        stamps = [e.created_at for e in listed]
        assert stamps == sorted(stamps)


class TestPersistence:
    """Test on-disk persistence and deletion."""

    def test_reopen(self, temp_dir, envelope):
        """Test that envelopes survive a restart."""
        db_path = temp_dir / "conversations.db"
        store = ConversationStore(db_path)
        stored = store.append(envelope)
        store.close()

        reopened = ConversationStore(db_path)
        try:
            assert reopened.list_by_conversation(envelope.conversation_id) == [stored]
            later = reopened.append(_with_iv(envelope, 1))
            assert later.created_at >= stored.created_at
        finally:
            reopened.close()

    def test_delete_conversation(self, store, envelope):
        """Test whole-conversation removal."""
        store.append(envelope)
        store.append(_with_iv(envelope, 1))

        assert store.delete_conversation(envelope.conversation_id) == 2
        assert store.list_by_conversation(envelope.conversation_id) == []
        assert store.delete_conversation(envelope.conversation_id) == 0
