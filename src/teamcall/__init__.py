"""Call signaling and session server for team workspaces.

Keeps an in-memory registry of ephemeral video call rooms per workspace,
synchronizes participant rosters, and relays peer identities so clients can
open direct media sessions with each other.
"""

__version__ = "0.1.0"
