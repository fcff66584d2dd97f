"""
chatgraph.engine.registry — Per-Team Connection Registry
==========================================================

Maps a team id to the credential that serves it: the token, the request
API client built for that token and, once a realtime session has
authenticated, the session itself.  Every team's entry is independent.
"""

from __future__ import annotations

from dataclasses import dataclass

from chatgraph.exceptions import TeamNotFoundError
from chatgraph.ports import RequestApi, StreamingSession


@dataclass(eq=False)
class TeamConnection:
    team_id: str
    token: str
    api: RequestApi
    session: StreamingSession | None = None


class ConnectionRegistry:
    """team id → :class:`TeamConnection`."""

    def __init__(self) -> None:
        self._teams: dict[str, TeamConnection] = {}

    def register(self, team_id: str, token: str, api: RequestApi) -> TeamConnection:
        """Register (or re-point) the credential for *team_id*.

        An already attached session is kept.
        """
        entry = self._teams.get(team_id)
        if entry is None:
            entry = TeamConnection(team_id=team_id, token=token, api=api)
            self._teams[team_id] = entry
        else:
            entry.token = token
            entry.api = api
        return entry

    def attach_session(self, team_id: str, session: StreamingSession | None) -> None:
        self.entry(team_id).session = session

    def remove(self, team_id: str) -> TeamConnection | None:
        return self._teams.pop(team_id, None)

    # -------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------
    def entry(self, team_id: str) -> TeamConnection:
        entry = self._teams.get(team_id)
        if entry is None:
            raise TeamNotFoundError(team_id)
        return entry

    def api(self, team_id: str) -> RequestApi:
        return self.entry(team_id).api

    def session(self, team_id: str) -> StreamingSession:
        session = self.entry(team_id).session
        if session is None:
            raise TeamNotFoundError(team_id)
        return session

    def find_api(self, team_id: str | None) -> RequestApi | None:
        entry = self._teams.get(team_id) if team_id else None
        return entry.api if entry else None

    def find_session(self, team_id: str | None) -> StreamingSession | None:
        entry = self._teams.get(team_id) if team_id else None
        return entry.session if entry else None

    def token(self, team_id: str) -> str | None:
        entry = self._teams.get(team_id)
        return entry.token if entry else None

    def has_token(self, team_id: str) -> bool:
        return team_id in self._teams

    def team_ids(self) -> list[str]:
        return list(self._teams)

    def __contains__(self, team_id: object) -> bool:
        return team_id in self._teams

    def __len__(self) -> int:
        return len(self._teams)
