"""Workspace presence tracking.

A user is online in a workspace while at least one of their connections
holds a presence reference there. References are kept per connection, so
repeated ``user_online`` events from one tab count once and a user with two
tabs stays online when one of them closes.
"""

import logging
from collections import defaultdict

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Per-workspace multiset of connection references per user."""

    def __init__(self) -> None:
        # workspace -> user -> connection ids
        self._refs: dict[str, dict[str, set[str]]] = defaultdict(dict)
        # workspace -> user -> last known display name
        self._names: dict[str, dict[str, str]] = defaultdict(dict)
        # connection -> {(workspace, user)}
        self._by_connection: dict[str, set[tuple[str, str]]] = defaultdict(set)

    def set_online(
        self,
        workspace_id: str,
        user_id: str,
        connection_id: str,
        user_name: str | None = None,
    ) -> bool:
        """Add a presence reference.

        Returns:
            True if the workspace's online set changed
        """
        users = self._refs[workspace_id]
        was_online = user_id in users
        users.setdefault(user_id, set()).add(connection_id)
        self._by_connection[connection_id].add((workspace_id, user_id))
        if user_name:
            self._names[workspace_id][user_id] = user_name

        if not was_online:
            logger.info(
                "User online",
                extra={"workspace": workspace_id, "user_id": user_id},
            )
        return not was_online

    def set_offline(self, workspace_id: str, user_id: str, connection_id: str) -> bool:
        """Drop one connection's presence reference.

        Returns:
            True if the user went offline (last reference removed)
        """
        refs = self._by_connection.get(connection_id)
        if refs is not None:
            refs.discard((workspace_id, user_id))
            if not refs:
                del self._by_connection[connection_id]
        return self._drop_ref(workspace_id, user_id, connection_id)

    def release_connection(self, workspace_id: str, connection_id: str) -> bool:
        """Drop every reference a connection holds in one workspace.

        Returns:
            True if the workspace's online set changed
        """
        refs = self._by_connection.get(connection_id)
        if not refs:
            return False

        changed = False
        for ref in [r for r in refs if r[0] == workspace_id]:
            refs.discard(ref)
            changed = self._drop_ref(ref[0], ref[1], connection_id) or changed
        if not refs:
            del self._by_connection[connection_id]
        return changed

    def get_online_users(self, workspace_id: str) -> set[str]:
        users = self._refs.get(workspace_id)
        return set(users) if users else set()

    def snapshot(self, workspace_id: str) -> list[tuple[str, str | None]]:
        """Return sorted (user_id, display name) pairs of online users."""
        names = self._names.get(workspace_id, {})
        return [
            (user_id, names.get(user_id))
            for user_id in sorted(self.get_online_users(workspace_id))
        ]

    def workspaces_of(self, connection_id: str) -> set[str]:
        return {workspace for workspace, _ in self._by_connection.get(connection_id, set())}

    def _drop_ref(self, workspace_id: str, user_id: str, connection_id: str) -> bool:
        users = self._refs.get(workspace_id)
        if not users or user_id not in users:
            return False

        connections = users[user_id]
        connections.discard(connection_id)
        if connections:
            return False

        del users[user_id]
        self._names.get(workspace_id, {}).pop(user_id, None)
        if not users:
            self._refs.pop(workspace_id, None)
            self._names.pop(workspace_id, None)

        logger.info(
            "User offline",
            extra={"workspace": workspace_id, "user_id": user_id},
        )
        return True
