"""
chatgraph.exceptions — Error Taxonomy
======================================

Transport failures surface from onboarding, malformed upstream responses
fail the enclosing load, and unknown teams raise on connection lookups.
Unresolvable entity references are *not* errors: lookups return ``None``.
"""

from __future__ import annotations


class ChatGraphError(Exception):
    """Base class for every error raised by chatgraph."""


class TeamNotFoundError(ChatGraphError, LookupError):
    """No credential / connection is registered for the team."""

    def __init__(self, team_id: str) -> None:
        super().__init__(f"Team not found: {team_id!r}")
        self.team_id = team_id


class MalformedResponseError(ChatGraphError):
    """A request API call returned a response missing ``ok`` or its payload."""

    def __init__(self, method: str, detail: str = "") -> None:
        message = f"Bad response from {method}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.method = method


class TransportError(ChatGraphError):
    """The streaming transport could not start a session for a credential."""

    def __init__(self, reason: str | None, payload: dict | None = None) -> None:
        super().__init__(f"Failed to start streaming session: {reason or 'unknown error'}")
        self.reason = reason
        self.payload = payload or {}
