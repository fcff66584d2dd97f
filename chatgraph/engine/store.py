"""
chatgraph.engine.store — Entity Store
=======================================

Owns every Team and, through its team, every User, Channel and Bot.  All
mutations of the graph go through the upsert path here, which is where the
``add*`` / ``change*`` events are produced.

Upsert discipline:

1. Resolve the owning team (optionally fetching ``team.info`` and
   registering it; one attempt, never recursive).
2. Existing entity → snapshot with ``clone()``, ``patch()`` in place, emit
   ``change<Entity>(old, entity)``.
3. New entity → construct, register, emit ``add<Entity>(entity)``.

While a team is *starting up* (bulk population during connect/backfill) no
``add*`` / ``change*`` events fire for it.  The flag is read at emission
time, not when the upsert was dispatched.

Concurrency: the store relies on asyncio run-to-completion between awaits;
there is no await between the existence check and the registration of a
new entity.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from chatgraph.engine.entities import Bot, Channel, Team, User
from chatgraph.engine.events import DomainEvent, EventBus
from chatgraph.engine.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class EntityStore:
    """In-memory graph of teams and everything they own.

    Usage::

        store = EntityStore(bus, registry)
        team = store.upsert_team({"id": "T1", "name": "Acme"})
        user = await store.upsert_user({"id": "U1", "team_id": "T1"})
        store.get_user("U1", "T1") is user   # True
    """

    def __init__(self, bus: EventBus, registry: ConnectionRegistry) -> None:
        self._bus = bus
        self._registry = registry
        self.teams: dict[str, Team] = {}
        # team id → the user the team's credential acts as
        self.self_users: dict[str, User] = {}
        self._startup: set[str] = set()

    # -------------------------------------------------------------------
    # Startup suppression
    # -------------------------------------------------------------------
    def begin_startup(self, team_id: str) -> None:
        self._startup.add(team_id)

    def end_startup(self, team_id: str) -> None:
        self._startup.discard(team_id)

    def is_starting_up(self, team_id: str) -> bool:
        return team_id in self._startup

    @contextmanager
    def startup(self, team_id: str) -> Iterator[None]:
        """Suppress ``add*`` / ``change*`` events for *team_id* inside the block."""
        self.begin_startup(team_id)
        try:
            yield
        finally:
            self.end_startup(team_id)

    # -------------------------------------------------------------------
    # Lookups; unknown ids give None, never raise
    # -------------------------------------------------------------------
    def get_team(self, team_id: str | None) -> Team | None:
        return self.teams.get(team_id) if team_id else None

    def get_user(self, user_id: str | None, team_id: str | None) -> User | None:
        team = self.get_team(team_id)
        if team is None or not user_id:
            return None
        return team.users.get(user_id)

    def get_channel(self, channel_id: str | None, team_id: str | None) -> Channel | None:
        team = self.get_team(team_id)
        if team is None or not channel_id:
            return None
        return team.channels.get(channel_id)

    def get_bot(self, bot_id: str | None, team_id: str | None) -> Bot | None:
        team = self.get_team(team_id)
        if team is None or not bot_id:
            return None
        return team.bots.get(bot_id)

    def get_self_user(self, team_id: str) -> User | None:
        return self.self_users.get(team_id)

    def set_self_user(self, team_id: str, user: User) -> None:
        self.self_users[team_id] = user

    # -------------------------------------------------------------------
    # Upserts
    # -------------------------------------------------------------------
    def upsert_team(self, data: dict) -> Team:
        team_id = data.get("id")
        if not team_id:
            raise ValueError(f"Team data is missing an id: {data!r}")
        has_credential = self._registry.has_token(team_id)

        team = self.teams.get(team_id)
        if team is not None:
            old = team.clone()
            team.patch(data, has_credential=has_credential)
            if not self.is_starting_up(team_id):
                self._bus.emit(DomainEvent.CHANGE_TEAM, old, team)
            return team

        team = Team(id=team_id)
        team.patch(data, has_credential=has_credential)
        self.teams[team_id] = team
        logger.debug("Registered team %s", team_id)
        if not self.is_starting_up(team_id):
            self._bus.emit(DomainEvent.ADD_TEAM, team)
        return team

    async def upsert_user(self, data: dict, auto_create_team: bool = True) -> User | None:
        user_id = data.get("id") or data.get("bot_id")
        if not user_id:
            raise ValueError(f"User data is missing an id: {data!r}")

        team = await self._resolve_team(data.get("team_id"), auto_create_team)
        if team is None:
            logger.debug("Dropping user %s: team %s unresolved", user_id, data.get("team_id"))
            return None

        user = team.users.get(user_id)
        if user is not None:
            old = user.clone()
            user.patch(data)
            if not self.is_starting_up(team.id) and not user.full_bot:
                self._bus.emit(DomainEvent.CHANGE_USER, old, user)
            return user

        user = User.from_data(data, team.id)
        team.users[user.id] = user
        await self._subscribe_presence(team.id, user.id)
        if not self.is_starting_up(team.id):
            self._bus.emit(DomainEvent.ADD_USER, user)
        return user

    async def upsert_channel(self, data: dict, auto_create_team: bool = True) -> Channel | None:
        channel_id = data.get("id")
        if not channel_id:
            raise ValueError(f"Channel data is missing an id: {data!r}")

        team_id = data.get("team_id") or next(iter(data.get("shared_team_ids") or []), None)
        team = await self._resolve_team(team_id, auto_create_team)
        if team is None:
            logger.debug("Dropping channel %s: team %s unresolved", channel_id, team_id)
            return None

        channel = team.channels.get(channel_id)
        if channel is not None:
            old = channel.clone()
            channel.patch(data)
            if not self.is_starting_up(team.id):
                self._bus.emit(DomainEvent.CHANGE_CHANNEL, old, channel)
            return channel

        channel = Channel.from_data(data, team.id)
        team.channels[channel.id] = channel
        if not self.is_starting_up(team.id):
            try:
                await self.join_channel(channel)
            except Exception:
                logger.warning(
                    "Could not join new channel %s in team %s", channel.id, team.id,
                    exc_info=True,
                )
            if not self.is_starting_up(team.id):
                self._bus.emit(DomainEvent.ADD_CHANNEL, channel)
        return channel

    def upsert_bot(self, data: dict, team_id: str) -> Bot | None:
        """Register or patch a bot record.  Bots produce no domain events."""
        bot_id = data.get("id")
        if not bot_id:
            raise ValueError(f"Bot data is missing an id: {data!r}")
        team = self.get_team(team_id)
        if team is None:
            return None
        bot = team.bots.get(bot_id)
        if bot is None:
            bot = Bot(id=bot_id, team_id=team_id)
            team.bots[bot_id] = bot
        bot.patch(data)
        return bot

    # -------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------
    def add_member(self, channel: Channel, user: User) -> None:
        channel.members[user.id] = user

    def remove_member(self, channel: Channel, user_id: str) -> User | None:
        return channel.members.pop(user_id, None)

    # -------------------------------------------------------------------
    # Side effects & teardown
    # -------------------------------------------------------------------
    async def join_channel(self, channel: Channel) -> bool:
        """Join *channel* on the server.  Only public, unarchived channels
        can be joined; anything else is a no-op returning ``False``.
        """
        if channel.kind != "public" or channel.is_archived:
            return False
        ret = await self._registry.api(channel.team_id).conversations_join(channel=channel.id)
        return bool(ret and ret.get("ok"))

    def remove_team(self, team_id: str) -> Team | None:
        """Forget *team_id* and everything it owns."""
        self.self_users.pop(team_id, None)
        self._startup.discard(team_id)
        team = self.teams.pop(team_id, None)
        if team is not None:
            team.users.clear()
            team.channels.clear()
            team.bots.clear()
            logger.info("Removed team %s from the store", team_id)
        return team

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    async def _resolve_team(self, team_id: str | None, auto_create: bool) -> Team | None:
        """Return the team for *team_id*, fetching it once if allowed."""
        if not team_id:
            return None
        team = self.teams.get(team_id)
        if team is not None or not auto_create:
            return team

        api = self._registry.find_api(team_id)
        if api is None:
            return None
        try:
            ret = await api.team_info(team=team_id)
        except Exception:
            logger.warning("team.info failed for unknown team %s", team_id, exc_info=True)
            return None
        if not ret or not ret.get("team"):
            return None
        return self.upsert_team(ret["team"])

    async def _subscribe_presence(self, team_id: str, user_id: str) -> None:
        session = self._registry.find_session(team_id)
        if session is None:
            return
        try:
            await session.subscribe_presence([user_id])
        except Exception:
            logger.warning("Presence subscription failed for %s in team %s", user_id, team_id, exc_info=True)
