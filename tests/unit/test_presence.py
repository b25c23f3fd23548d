"""
Unit tests for studybuddy.presence module.

Tests the user id <-> connection handle table.
"""

from studybuddy.presence import PresenceTable


class TestPresenceTable:
    """Tests for PresenceTable."""

    def test_register_and_lookup(self):
        """Test that a registered user is online."""
        table = PresenceTable()
        assert table.register("alice", "conn-1") is None

        assert table.lookup("alice") == "conn-1"
        assert table.user_for("conn-1") == "alice"
        assert table.is_online("alice")
        assert len(table) == 1

    def test_reconnect_replaces_handle(self):
        """Test that the newest connection wins."""
        table = PresenceTable()
        table.register("alice", "conn-1")

        assert table.register("alice", "conn-2") == "conn-1"
        assert table.lookup("alice") == "conn-2"
        assert table.user_for("conn-1") is None
        assert len(table) == 1

    def test_stale_disconnect_keeps_new_connection(self):
        """Test that closing a replaced connection does not log the user out."""
        table = PresenceTable()
        table.register("alice", "conn-1")
        table.register("alice", "conn-2")

        assert table.unregister("conn-1") is None
        assert table.lookup("alice") == "conn-2"

    def test_unregister(self):
        """Test that disconnect removes the owning entry."""
        table = PresenceTable()
        table.register("alice", "conn-1")
        table.register("bob", "conn-2")

        assert table.unregister("conn-1") == "alice"
        assert not table.is_online("alice")
        assert table.online_users() == ["bob"]
        assert table.unregister("conn-1") is None

    def test_handle_reannounced_as_other_user(self):
        """Test that a handle serves at most one user."""
        table = PresenceTable()
        table.register("alice", "conn-1")
        table.register("bob", "conn-1")

        assert not table.is_online("alice")
        assert table.lookup("bob") == "conn-1"
        assert table.unregister("conn-1") == "bob"
        assert len(table) == 0

    def test_clear(self):
        """Test that clearing empties both directions."""
        table = PresenceTable()
        table.register("alice", "conn-1")
        table.clear()

        assert table.lookup("alice") is None
        assert table.user_for("conn-1") is None
        assert table.handles() == []
