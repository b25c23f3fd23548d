"""
StudyBuddy - Presence table.

Ephemeral mapping from online user id to the connection handle serving it.
Owned by one MessageChannel and cleared when the channel stops; nothing here
is persisted.

The table keeps a reverse index (handle -> user id) so that removing a
connection on disconnect does not scan every online user.

All mutation happens on the event loop thread, one connection event at a
time, so no locking is needed.
"""

import logging
from typing import Dict, Generic, Hashable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

HandleT = TypeVar("HandleT", bound=Hashable)


class PresenceTable(Generic[HandleT]):
    """User id <-> connection handle mapping, one entry per online user."""

    def __init__(self):
        self._by_user: Dict[str, HandleT] = {}
        self._by_handle: Dict[HandleT, str] = {}

    def register(self, user_id: str, handle: HandleT) -> Optional[HandleT]:
        """
        Bind a connection handle to a user, replacing any previous handle.

        A handle serves at most one user, so re-announcing on the same
        connection as a different user drops the old binding.

        Returns:
            The handle that was replaced, or None
        """
        previous_user = self._by_handle.pop(handle, None)
        if previous_user is not None and previous_user != user_id:
            self._by_user.pop(previous_user, None)

        replaced = self._by_user.get(user_id)
        if replaced is not None and replaced != handle:
            self._by_handle.pop(replaced, None)
            logger.debug(f"User {user_id} reconnected; replacing previous connection")
        else:
            replaced = None

        self._by_user[user_id] = handle
        self._by_handle[handle] = user_id
        return replaced

    def unregister(self, handle: HandleT) -> Optional[str]:
        """
        Remove the entry owned by a connection handle.

        A handle that was already replaced by a newer connection owns no
        entry, so the newer connection stays registered.

        Returns:
            The user id that went offline, or None
        """
        user_id = self._by_handle.pop(handle, None)
        if user_id is None:
            return None
        if self._by_user.get(user_id) == handle:
            del self._by_user[user_id]
        return user_id

    def lookup(self, user_id: str) -> Optional[HandleT]:
        """Connection handle for an online user, or None."""
        return self._by_user.get(user_id)

    def user_for(self, handle: HandleT) -> Optional[str]:
        """User id bound to a connection handle, or None."""
        return self._by_handle.get(handle)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def online_users(self) -> List[str]:
        return list(self._by_user)

    def handles(self) -> List[HandleT]:
        return list(self._by_user.values())

    def clear(self) -> None:
        self._by_user.clear()
        self._by_handle.clear()

    def __len__(self) -> int:
        return len(self._by_user)
