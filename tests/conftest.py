"""
tests/conftest.py — Shared Test Fixtures
=========================================

In-memory fakes for the external collaborators (request API, streaming
transport, webhook transport) plus an in-memory SQLite engine.
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

from chatgraph.database.models import Base
from chatgraph.engine.events import EventBus
from chatgraph.engine.registry import ConnectionRegistry
from chatgraph.engine.store import EntityStore


# ---------------------------------------------------------------------------
# Request API
# ---------------------------------------------------------------------------
class FakeApi:
    """Request API with canned responses.

    ``responses[method]`` is either one response (reused) or a list consumed
    in order; an exception instance in either position is raised.  Methods
    without a canned response answer with a plausible default.
    """

    def __init__(self, responses: dict | None = None) -> None:
        self.responses: dict = dict(responses or {})
        self.calls: list[tuple[str, dict]] = []

    def called(self, method: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def _call(self, method: str, **kwargs):
        self.calls.append((method, kwargs))
        if method in self.responses:
            resp = self.responses[method]
            if isinstance(resp, list):
                resp = resp.pop(0)
        else:
            resp = self._default(method, kwargs)
        if isinstance(resp, Exception):
            raise resp
        return resp

    @staticmethod
    def _default(method: str, kwargs: dict) -> dict:
        if method == "team.info":
            return {"ok": True, "team": {"id": kwargs["team"], "name": f"Team {kwargs['team']}"}}
        if method == "users.info":
            return {"ok": True, "user": {"id": kwargs["user"], "profile": {"display_name": kwargs["user"]}}}
        if method == "conversations.list":
            return {"ok": True, "channels": []}
        if method == "users.list":
            return {"ok": True, "members": []}
        return {"ok": True}

    async def team_info(self, *, team):
        return await self._call("team.info", team=team)

    async def users_info(self, *, user):
        return await self._call("users.info", user=user)

    async def users_list(self, *, limit, cursor=None):
        return await self._call("users.list", limit=limit, cursor=cursor)

    async def conversations_list(self, *, types, limit, exclude_archived, cursor=None):
        return await self._call(
            "conversations.list",
            types=types, limit=limit, exclude_archived=exclude_archived, cursor=cursor,
        )

    async def conversations_create(self, *, name, is_private, team_id):
        return await self._call("conversations.create", name=name, is_private=is_private, team_id=team_id)

    async def conversations_invite(self, *, channel, users):
        return await self._call("conversations.invite", channel=channel, users=users)

    async def conversations_kick(self, *, channel, user):
        return await self._call("conversations.kick", channel=channel, user=user)

    async def conversations_leave(self, *, channel):
        return await self._call("conversations.leave", channel=channel)

    async def conversations_archive(self, *, channel):
        return await self._call("conversations.archive", channel=channel)

    async def conversations_join(self, *, channel):
        return await self._call("conversations.join", channel=channel)

    async def oauth_v2_access(self, *, client_id, client_secret, code):
        return await self._call("oauth.v2.access", client_id=client_id, client_secret=client_secret, code=code)


class FakeApiFactory:
    """One :class:`FakeApi` per token; the unauthenticated client is ``apis[None]``."""

    def __init__(self) -> None:
        self.apis: dict[str | None, FakeApi] = {}
        self.headers: dict[str | None, dict] = {}

    def __call__(self, token, headers):
        self.headers[token] = headers
        return self.apis.setdefault(token, FakeApi())

    def api(self, token) -> FakeApi:
        return self.apis.setdefault(token, FakeApi())


# ---------------------------------------------------------------------------
# Streaming transport
# ---------------------------------------------------------------------------
class FakeSession:
    def __init__(self, token: str, headers: dict, transport: FakeTransport) -> None:
        self.token = token
        self.headers = headers
        self.transport = transport
        self.handlers: dict[str, list] = {}
        self.start_calls = 0
        self.disconnect_calls = 0
        self.subscribed: list[str] = []

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def fire(self, event: str, data: dict | None = None) -> None:
        for handler in list(self.handlers.get(event, [])):
            await handler(data if data is not None else {})

    async def start(self):
        self.start_calls += 1
        await self.transport.handshake(self)

    async def disconnect(self):
        self.disconnect_calls += 1
        if self.transport.echo_disconnect:
            await self.fire("disconnected")

    async def subscribe_presence(self, user_ids):
        self.subscribed.extend(user_ids)


class FakeTransport:
    """Scripted streaming transport.

    ``teams[token]`` is ``(team_id, user_id)`` to authenticate, or a string
    reason to answer ``unable_to_start`` with.  Unknown tokens authenticate
    as ``("T1", "U1")``.
    """

    def __init__(
        self,
        teams: dict | None = None,
        *,
        fail_restart: bool = False,
        echo_disconnect: bool = False,
    ) -> None:
        self.teams = dict(teams or {})
        self.fail_restart = fail_restart
        self.echo_disconnect = echo_disconnect
        self.sessions: list[FakeSession] = []

    def session(self, token, headers):
        session = FakeSession(token, headers, self)
        self.sessions.append(session)
        return session

    def session_for(self, token: str) -> FakeSession:
        return next(s for s in reversed(self.sessions) if s.token == token)

    async def handshake(self, session: FakeSession) -> None:
        if session.start_calls > 1 and self.fail_restart:
            raise ConnectionError("restart refused")
        outcome = self.teams.get(session.token, ("T1", "U1"))
        if isinstance(outcome, str):
            await session.fire("unable_to_start", {"ok": False, "reason": outcome})
            return
        team_id, user_id = outcome
        await session.fire("authenticated", {
            "team": {"id": team_id, "name": f"Team {team_id}"},
            "self": {"id": user_id, "name": f"user-{user_id}"},
        })
        await session.fire("ready")


# ---------------------------------------------------------------------------
# Webhook transport
# ---------------------------------------------------------------------------
class FakeWebhooks:
    def __init__(self, response=(200, "")) -> None:
        self.handlers: dict[str, list] = {}
        self.response = response
        self.requests: list[tuple[bytes, dict]] = []
        self.stopped = False

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def deliver(self, event: str, data, envelope: dict | None = None) -> None:
        for handler in list(self.handlers.get(event, [])):
            await handler(data, envelope)

    async def handle_request(self, body, headers):
        self.requests.append((body, dict(headers)))
        return self.response

    async def stop(self):
        self.stopped = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
class Recorder:
    """Collects every emission of the events it is attached to."""

    def __init__(self, bus: EventBus, *events: str) -> None:
        self.events: list[tuple[str, tuple]] = []
        for event in events:
            bus.on(event, self._listener(event))

    def _listener(self, event):
        def listener(*args):
            self.events.append((str(event), args))
        return listener

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[tuple]:
        return [args for name, args in self.events if name == str(event)]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def store(bus, registry) -> EntityStore:
    return EntityStore(bus, registry)


@pytest.fixture
def api(registry) -> FakeApi:
    """A FakeApi registered as the credential of team T1."""
    fake = FakeApi()
    registry.register("T1", "xoxb-t1", fake)
    return fake


@pytest.fixture
def recorder_factory(bus):
    def make(*events):
        return Recorder(bus, *events)
    return make


@pytest.fixture
def api_factory() -> FakeApiFactory:
    return FakeApiFactory()


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine shared across threads (``run_db`` uses a
    worker thread).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def make_transport():
    """``make_transport(teams, fail_restart=..., echo_disconnect=...)``."""
    return FakeTransport


@pytest.fixture
def webhooks() -> FakeWebhooks:
    return FakeWebhooks()
