"""
chatgraph.services.supervisor — Per-Team Connection Lifecycle
===============================================================

One :class:`_Connection` per credential, fully independent of every other
team's connection::

    IDLE → CONNECTING → AUTHENTICATED → READY
                 │                        ⇅
                 ├→ WEBHOOK_ONLY      RECONNECTING
                 └→ FAILED                 │
                                           └→ FAILED  (second failure)

* ``authenticated`` tells us the real team id and self user.  The team is
  marked starting-up while it and the self user are upserted and a partial
  team is backfilled.  A caller-supplied team id that differs from the
  authenticated one is released (startup flag, registry entry).
* ``unable_to_start`` with ``not_allowed_token_type`` falls back to
  webhook-only mode for that credential when webhooks are configured;
  any other reason rejects :meth:`ConnectionSupervisor.add_token`.
* ``goodbye`` / ``disconnected`` tear the session down and schedule one
  restart after the reconnect pause.  A failed restart emits
  ``disconnected`` and is final.  A new drop replaces a pending restart.
* :meth:`ConnectionSupervisor.disconnect` cancels every pending restart
  and awaits every session teardown; no restart fires afterwards.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from functools import partial

from chatgraph.constants import NOT_ALLOWED_TOKEN_TYPE, RECONNECT_PAUSE, USER_AGENT
from chatgraph.engine.events import DomainEvent, EventBus
from chatgraph.engine.normalizer import EventNormalizer
from chatgraph.engine.registry import ConnectionRegistry
from chatgraph.engine.store import EntityStore
from chatgraph.exceptions import TransportError
from chatgraph.ports import (
    RequestApi,
    RequestApiFactory,
    StreamingSession,
    StreamingTransport,
)
from chatgraph.services.team_service import TeamService

logger = logging.getLogger(__name__)


class ConnectionState(enum.StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    RECONNECTING = "reconnecting"
    WEBHOOK_ONLY = "webhook_only"
    FAILED = "failed"


@dataclass(eq=False)
class _Connection:
    token: str
    team_id: str
    user_id: str
    api: RequestApi
    session: StreamingSession | None = None
    state: ConnectionState = ConnectionState.IDLE
    ready: asyncio.Future | None = None
    reconnect_task: asyncio.Task | None = None
    closing: bool = False  # we are tearing the session down ourselves
    restarting: bool = False  # the single restart attempt is in flight


class ConnectionSupervisor:
    """Drives streaming sessions for every credential.

    Parameters
    ----------
    transport:
        Streaming transport; ``None`` means every credential is webhook-only.
    api_factory:
        Builds a request API client for a token and header set.
    webhooks_enabled:
        Whether a webhook transport is configured.  Enables the
        ``not_allowed_token_type`` fallback and moves content events off
        the streaming sessions.
    """

    def __init__(
        self,
        store: EntityStore,
        bus: EventBus,
        registry: ConnectionRegistry,
        normalizer: EventNormalizer,
        team_service: TeamService,
        *,
        transport: StreamingTransport | None,
        api_factory: RequestApiFactory,
        cookie: str | None = None,
        no_rtm: bool = False,
        webhooks_enabled: bool = False,
        reconnect_pause: float = RECONNECT_PAUSE,
    ) -> None:
        self._store = store
        self._bus = bus
        self._registry = registry
        self._normalizer = normalizer
        self._team_service = team_service
        self._transport = transport
        self._api_factory = api_factory
        self._cookie = cookie
        self._no_rtm = no_rtm or transport is None
        self._webhooks_enabled = webhooks_enabled
        self._reconnect_pause = reconnect_pause

        self._connections: dict[str, _Connection] = {}  # by team id
        self._inflight: set[_Connection] = set()  # started, team id not yet known
        self._shutting_down = False

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def state(self, team_id: str) -> ConnectionState:
        conn = self._connections.get(team_id)
        return conn.state if conn else ConnectionState.IDLE

    def self_user_id(self, team_id: str) -> str:
        conn = self._connections.get(team_id)
        return conn.user_id if conn else ""

    def team_ids(self) -> list[str]:
        return list(self._connections)

    def pending_reconnects(self) -> int:
        return sum(
            1 for conn in self._all_connections()
            if conn.reconnect_task is not None and not conn.reconnect_task.done()
        )

    # -------------------------------------------------------------------
    # Adding credentials
    # -------------------------------------------------------------------
    async def add_token(self, token: str, team_id: str = "", user_id: str = "") -> str:
        """Connect a credential.  Returns the authoritative team id.

        Raises
        ------
        TransportError
            The streaming session could not be started.
        MalformedResponseError
            Backfilling the team failed.
        """
        logger.info("Adding token for team=%s and user=%s…", team_id or "?", user_id or "?")
        self._shutting_down = False
        conn = _Connection(
            token=token,
            team_id=team_id,
            user_id=user_id,
            api=self._api_factory(token, self._disguise_headers()),
        )

        if team_id:
            await self._prime_known_team(conn)

        if self._no_rtm:
            conn.state = ConnectionState.WEBHOOK_ONLY
            if team_id:
                self._store.end_startup(team_id)
            return conn.team_id

        try:
            await self._start_session(conn)
        except Exception:
            conn.state = ConnectionState.FAILED
            if conn.team_id:
                self._store.end_startup(conn.team_id)
            raise
        return conn.team_id

    async def _prime_known_team(self, conn: _Connection) -> None:
        """Register a caller-supplied team before any session exists."""
        team_id = conn.team_id
        self._store.begin_startup(team_id)
        try:
            self._registry.register(team_id, conn.token, conn.api)
            self._connections[team_id] = conn
            known = self._store.get_team(team_id)
            team = self._store.upsert_team({"id": team_id} if known else {"id": team_id, "name": team_id})
            if team.partial:
                await self._team_service.load_team(team)

            if conn.user_id:
                data = {"id": conn.user_id, "team_id": team_id}
                if self._store.get_user(conn.user_id, team_id) is None:
                    data["name"] = conn.user_id
                user = await self._store.upsert_user(data)
                if user is not None:
                    self._store.set_self_user(team_id, user)
                    if user.partial:
                        await self._team_service.load_user(user)
        except Exception:
            self._store.end_startup(team_id)
            raise

    def _disguise_headers(self) -> dict[str, str]:
        if not self._cookie:
            return {}
        return {"Cookie": f"d={self._cookie}", "User-Agent": USER_AGENT}

    # -------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------
    async def _start_session(self, conn: _Connection) -> None:
        logger.debug("Connecting streaming session…")
        conn.ready = asyncio.get_running_loop().create_future()
        session = self._transport.session(conn.token, self._disguise_headers())
        conn.session = session
        conn.state = ConnectionState.CONNECTING

        session.on("unable_to_start", partial(self._on_unable_to_start, conn))
        session.on("authenticated", partial(self._on_authenticated, conn))
        session.on("ready", partial(self._on_ready, conn))
        session.on("goodbye", partial(self._on_drop, conn))
        session.on("disconnected", partial(self._on_drop, conn))
        for event_type in self._normalizer.stream_events(self._webhooks_enabled):
            session.on(event_type, partial(self._on_stream_event, conn, event_type))

        self._inflight.add(conn)
        try:
            try:
                await session.start()
            except Exception as exc:
                logger.exception("Failed to start streaming session")
                self._settle(conn, TransportError(str(exc)))
            await conn.ready
        finally:
            self._inflight.discard(conn)
        logger.info("Streaming session connected for team %s", conn.team_id)

    @staticmethod
    def _settle(conn: _Connection, error: BaseException | None = None) -> None:
        if conn.ready is None or conn.ready.done():
            return
        if error is None:
            conn.ready.set_result(None)
        else:
            conn.ready.set_exception(error)

    async def _on_unable_to_start(self, conn: _Connection, data: dict | None = None) -> None:
        data = data or {}
        reason = data.get("reason")
        logger.debug("Session signal: unable_to_start (%s)", reason)
        if reason == NOT_ALLOWED_TOKEN_TYPE and self._webhooks_enabled:
            logger.info("Token cannot stream; using webhook-only mode for team %s", conn.team_id or "?")
            conn.state = ConnectionState.WEBHOOK_ONLY
            conn.session = None
            if conn.team_id:
                self._store.end_startup(conn.team_id)
            self._settle(conn)
            return
        logger.error("Failed to start streaming session: %s", reason)
        conn.state = ConnectionState.FAILED
        self._settle(conn, TransportError(reason, data))

    async def _on_authenticated(self, conn: _Connection, data: dict) -> None:
        logger.debug("Session signal: authenticated")
        team_data = data["team"]
        self_data = data["self"]
        team_id = team_data["id"]

        primed_id = conn.team_id
        if primed_id and primed_id != team_id:
            logger.info("Team %s authenticated as %s", primed_id, team_id)
            self._store.end_startup(primed_id)
            if self._connections.get(primed_id) is conn:
                del self._connections[primed_id]
                self._registry.remove(primed_id)

        conn.team_id = team_id
        conn.user_id = self_data["id"]
        conn.state = ConnectionState.AUTHENTICATED
        self._connections[team_id] = conn

        self._store.begin_startup(team_id)
        try:
            self._registry.register(team_id, conn.token, conn.api)
            self._registry.attach_session(team_id, conn.session)
            team = self._store.upsert_team(team_data)
            user = await self._store.upsert_user({
                "id": self_data["id"],
                "name": self_data.get("name", self_data["id"]),
                "team_id": team_id,
            })
            if user is not None:
                self._store.set_self_user(team_id, user)
            if team.partial:
                await self._team_service.load_team(team)
        except Exception as exc:
            logger.exception("Failed to set up team %s after authentication", team_id)
            self._settle(conn, exc)
        finally:
            self._store.end_startup(team_id)

    async def _on_ready(self, conn: _Connection, data: dict | None = None) -> None:
        logger.debug("Session signal: ready (team %s)", conn.team_id)
        if conn.state != ConnectionState.FAILED:
            conn.state = ConnectionState.READY
        self._settle(conn)

    async def _on_drop(self, conn: _Connection, data: dict | None = None) -> None:
        if conn.closing or conn.restarting or self._shutting_down:
            return
        if conn.state == ConnectionState.FAILED or conn.session is None:
            return
        logger.info("Streaming session for team %s got disconnected, reconnecting…", conn.team_id)
        conn.state = ConnectionState.RECONNECTING
        await self._close_session(conn)
        if self._shutting_down:
            return
        self._cancel_reconnect(conn)
        conn.reconnect_task = asyncio.create_task(
            self._reconnect_later(conn), name=f"reconnect-{conn.team_id}",
        )

    async def _reconnect_later(self, conn: _Connection) -> None:
        await asyncio.sleep(self._reconnect_pause)
        if self._shutting_down or conn.session is None:
            return
        conn.restarting = True
        conn.ready = asyncio.get_running_loop().create_future()
        try:
            try:
                await conn.session.start()
            except Exception as exc:
                self._settle(conn, TransportError(str(exc)))
            await conn.ready
        except Exception:
            logger.exception("Failed to re-start streaming session for team %s", conn.team_id)
            conn.state = ConnectionState.FAILED
            self._bus.emit(DomainEvent.DISCONNECTED, conn.team_id)
        else:
            if conn.state == ConnectionState.READY:
                logger.info("Reconnected team %s", conn.team_id)
        finally:
            conn.restarting = False

    def _cancel_reconnect(self, conn: _Connection) -> asyncio.Task | None:
        task = conn.reconnect_task
        conn.reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            return task
        return None

    async def _close_session(self, conn: _Connection) -> None:
        if conn.session is None:
            return
        conn.closing = True
        try:
            await conn.session.disconnect()
        except Exception:
            logger.exception("Error while disconnecting session for team %s", conn.team_id)
        finally:
            conn.closing = False

    async def _on_stream_event(self, conn: _Connection, event_type: str, data: dict | None = None) -> None:
        if not conn.team_id:
            return
        try:
            await self._normalizer.handle_stream_event(conn.team_id, event_type, data or {})
        except Exception:
            logger.exception("Error processing %s for team %s", event_type, conn.team_id)

    # -------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------
    def _all_connections(self) -> list[_Connection]:
        seen = list(self._connections.values())
        seen.extend(conn for conn in self._inflight if conn not in seen)
        return seen

    async def disconnect(self) -> None:
        """Tear down every session; no reconnect fires afterwards."""
        logger.info("Disconnecting %d streaming sessions…", len(self._connections))
        self._shutting_down = True
        connections = self._all_connections()

        cancelled = [task for conn in connections if (task := self._cancel_reconnect(conn))]
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)

        await asyncio.gather(*(self._close_session(conn) for conn in connections))
        for conn in connections:
            conn.state = ConnectionState.IDLE

    async def teardown_team(self, team_id: str) -> None:
        """Drop the session, registry entry and entities of *team_id*."""
        logger.info("Tearing down team %s", team_id)
        conn = self._connections.pop(team_id, None)
        if conn is not None:
            task = self._cancel_reconnect(conn)
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
            await self._close_session(conn)
            conn.session = None
            conn.state = ConnectionState.IDLE
        self._registry.remove(team_id)
        self._store.remove_team(team_id)
