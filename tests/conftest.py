"""
Pytest configuration and fixtures for StudyBuddy tests.

Provides common fixtures and test utilities for unit and integration tests.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator, List

import pytest

from studybuddy import crypto
from studybuddy.directory import conversation_id_for
from studybuddy.envelope import Envelope


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="studybuddy_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


# RSA-2048 generation is slow; generate each test identity once per session
@pytest.fixture(scope="session")
def alice_key():
    return crypto.generate_keypair()


@pytest.fixture(scope="session")
def bob_key():
    return crypto.generate_keypair()


@pytest.fixture(scope="session")
def mallory_key():
    return crypto.generate_keypair()


@pytest.fixture
def conversation_id() -> str:
    """Conversation id for the alice/bob pair."""
    return conversation_id_for("alice", "bob")


@pytest.fixture
def sample_envelope_data() -> dict:
    """
    Provide a well-formed envelope in wire shape (not decryptable).

    Returns:
        dict: Sample envelope dictionary
    """
    return {
        "conversationId": conversation_id_for("alice", "bob"),
        "senderId": "alice",
        "receiverId": "bob",
        "ciphertext": crypto.b64encode(b"ciphertext-bytes"),
        "keyForSender": crypto.b64encode(b"k" * 256),
        "keyForReceiver": crypto.b64encode(b"r" * 256),
        "iv": crypto.b64encode(b"\x00" * 12),
        "createdAt": "2025-01-01T00:00:00.000000+00:00",
    }


@pytest.fixture
def bulk_envelopes():
    """
    Factory for many distinct, well-formed alice -> bob envelopes.

    Each one carries full-size wrapped keys (about 1 KB on the wire) but
    random content, so they are cheap to build and not decryptable.
    """

    def _make(count: int) -> List[Envelope]:
        return [
            Envelope(
                conversation_id=conversation_id_for("alice", "bob"),
                sender_id="alice",
                receiver_id="bob",
                ciphertext=crypto.b64encode(os.urandom(200)),
                key_for_sender=crypto.b64encode(os.urandom(256)),
                key_for_receiver=crypto.b64encode(os.urandom(256)),
                iv=crypto.b64encode(n.to_bytes(12, "big")),
            )
            for n in range(count)
        ]

    return _make


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to integration test modules
        if "integration" in str(item.fspath) or "channel" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
