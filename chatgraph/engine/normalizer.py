"""
chatgraph.engine.normalizer — Raw Event → Store Mutation + Domain Event
========================================================================

Both transports deliver the same event vocabulary.  Streaming events arrive
already bound to a team (the session's team); webhook events carry an
envelope with ``api_app_id`` and ``team_id``, and are dropped unless the app
id is ours (a shared webhook endpoint may receive other installations'
events).

When webhooks are configured, content events (messages, reactions,
membership, channel/user/team changes) are consumed from webhooks only and
streaming sessions carry the remaining events; otherwise streaming carries
everything.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from functools import partial

from chatgraph.constants import MESSAGE_CHANGED, MESSAGE_DELETED, SUPPRESSED_SUBTYPES
from chatgraph.engine.entities import Message, Reaction
from chatgraph.engine.events import DomainEvent, EventBus
from chatgraph.engine.registry import ConnectionRegistry
from chatgraph.engine.store import EntityStore

logger = logging.getLogger(__name__)

# Always taken from the streaming session
STREAM_EVENTS: tuple[str, ...] = (
    "bot_added",
    "bot_changed",
    "team_profile_change",
    "team_pref_change",
    "user_typing",
    "presence_change",
)

# Taken from webhooks when configured, from the streaming session otherwise
CONTENT_EVENTS: tuple[str, ...] = (
    "im_created",
    "channel_created",
    "channel_rename",
    "group_rename",
    "team_join",
    "user_change",
    "message",
    "reaction_added",
    "reaction_removed",
    "team_rename",
    "member_joined_channel",
    "member_left_channel",
)

APP_UNINSTALLED = "app_uninstalled"

Handler = Callable[[str, dict], Awaitable[None]]


class EventNormalizer:
    """Classifies raw events and applies them to the :class:`EntityStore`."""

    def __init__(
        self,
        store: EntityStore,
        bus: EventBus,
        registry: ConnectionRegistry,
        *,
        app_id: str | None = None,
        on_app_uninstalled: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._registry = registry
        self._app_id = app_id
        self._on_app_uninstalled = on_app_uninstalled

        self._handlers: dict[str, Handler] = {
            "bot_added": self._on_bot,
            "bot_changed": self._on_bot,
            "team_profile_change": self._on_team_profile_change,
            "team_pref_change": self._on_team_profile_change,
            "user_typing": self._on_typing,
            "presence_change": self._on_presence_change,
            "im_created": self._on_channel,
            "channel_created": self._on_channel,
            "channel_rename": self._on_channel,
            "group_rename": self._on_channel,
            "team_join": self._on_user,
            "user_change": self._on_user,
            "message": self.handle_message,
            "reaction_added": partial(self._on_reaction, DomainEvent.REACTION_ADDED),
            "reaction_removed": partial(self._on_reaction, DomainEvent.REACTION_REMOVED),
            "team_rename": self._on_team_rename,
            "member_joined_channel": partial(self._on_membership, joined=True),
            "member_left_channel": partial(self._on_membership, joined=False),
        }

    @staticmethod
    def stream_events(webhooks_enabled: bool) -> tuple[str, ...]:
        """Event names a streaming session should be subscribed to."""
        if webhooks_enabled:
            return STREAM_EVENTS
        return STREAM_EVENTS + CONTENT_EVENTS

    @staticmethod
    def webhook_events() -> tuple[str, ...]:
        return CONTENT_EVENTS + (APP_UNINSTALLED,)

    # -------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------
    async def handle_stream_event(self, team_id: str, event_type: str, data: dict) -> bool:
        logger.debug("Stream event: %s (team %s)", event_type, team_id)
        return await self._dispatch(team_id, event_type, data)

    async def handle_webhook_event(self, event_type: str, data: dict, envelope: dict) -> bool:
        """Returns ``False`` when the event was not for us or not understood."""
        app_id = envelope.get("api_app_id") or envelope.get("app_id")
        if app_id != self._app_id:
            logger.debug("Webhook event %s for foreign app %s ignored", event_type, app_id)
            return False
        team_id = envelope.get("team_id")
        if not team_id:
            return False
        logger.debug("Webhook event: %s (team %s)", event_type, team_id)

        if event_type == APP_UNINSTALLED:
            if self._on_app_uninstalled is not None:
                await self._on_app_uninstalled(team_id)
            return True
        return await self._dispatch(team_id, event_type, data)

    async def _dispatch(self, team_id: str, event_type: str, data: dict) -> bool:
        handler = self._handlers.get(event_type)
        if handler is None:
            return False
        await handler(team_id, data)
        return True

    # -------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------
    async def handle_message(self, team_id: str, data: dict) -> None:
        """Classify a message-shaped event into message / edit / delete."""
        subtype = data.get("subtype")
        if subtype in SUPPRESSED_SUBTYPES:
            return

        bot_id = data.get("bot_id")
        if bot_id and self._store.get_user(bot_id, team_id) is None:
            await self._store.upsert_user(_bot_user_data(data, team_id))

        user_id = data.get("user") or bot_id
        for key in ("message", "previous_message"):
            nested = data.get(key)
            if not user_id and nested:
                user_id = nested.get("user") or nested.get("bot_id")
        channel_id = data.get("channel") or (data.get("item") or {}).get("channel")

        if subtype == MESSAGE_CHANGED:
            old = self._message(data.get("previous_message") or {}, team_id, channel_id, user_id)
            new = self._message(data.get("message") or {}, team_id, channel_id, user_id)
            self._bus.emit(DomainEvent.MESSAGE_CHANGED, old, new)
        elif subtype == MESSAGE_DELETED:
            old = self._message(data.get("previous_message") or {}, team_id, channel_id, user_id)
            self._bus.emit(DomainEvent.MESSAGE_DELETED, old)
        else:
            self._bus.emit(DomainEvent.MESSAGE, self._message(data, team_id, channel_id, user_id))

    def _message(self, data: dict, team_id: str, channel_id: str | None, user_id: str | None) -> Message:
        message = Message.from_data(data, team_id, channel_id, user_id)
        message.team = self._store.get_team(team_id)
        message.channel = self._store.get_channel(channel_id, team_id)
        message.user = self._store.get_user(user_id, team_id)
        return message

    # -------------------------------------------------------------------
    # Reactions & membership
    # -------------------------------------------------------------------
    async def _on_reaction(self, event: DomainEvent, team_id: str, data: dict) -> None:
        reaction = Reaction.from_data(data, team_id)
        reaction.user = self._store.get_user(reaction.user_id, team_id)
        reaction.channel = self._store.get_channel(reaction.channel_id, team_id)
        self._bus.emit(event, reaction)

    async def _on_membership(self, team_id: str, data: dict, *, joined: bool) -> None:
        user = self._store.get_user(data.get("user"), team_id)
        channel = self._store.get_channel(data.get("channel"), team_id)
        if user is None or channel is None:
            logger.debug(
                "Membership event for %s/%s in team %s dropped: unresolved",
                data.get("user"), data.get("channel"), team_id,
            )
            return
        if joined:
            self._store.add_member(channel, user)
            self._bus.emit(DomainEvent.MEMBER_JOINED_CHANNEL, user, channel)
        else:
            self._store.remove_member(channel, user.id)
            self._bus.emit(DomainEvent.MEMBER_LEFT_CHANNEL, user, channel)

    # -------------------------------------------------------------------
    # Channels, users, bots
    # -------------------------------------------------------------------
    async def _on_channel(self, team_id: str, data: dict) -> None:
        payload = dict(data.get("channel") or {})
        payload["team_id"] = team_id
        if "user" in data and "user" not in payload:
            payload["user"] = data["user"]
        await self._store.upsert_channel(payload)

    async def _on_user(self, team_id: str, data: dict) -> None:
        payload = dict(data.get("user") or {})
        payload["team_id"] = team_id
        await self._store.upsert_user(payload)

    async def _on_bot(self, team_id: str, data: dict) -> None:
        bot = data.get("bot") or {}
        if not bot.get("id"):
            return
        payload = {"bot_id": bot["id"], "team_id": team_id}
        for key in ("name", "icons", "deleted"):
            if key in bot:
                payload[key] = bot[key]
        user = await self._store.upsert_user(payload)
        if user is not None:
            self._store.upsert_bot(bot, team_id)

    # -------------------------------------------------------------------
    # Team-level
    # -------------------------------------------------------------------
    async def _on_team_rename(self, team_id: str, data: dict) -> None:
        self._store.upsert_team({"id": team_id, "name": data.get("name", "")})

    async def _on_team_profile_change(self, team_id: str, data: dict) -> None:
        api = self._registry.find_api(team_id)
        if api is None:
            return
        ret = await api.team_info(team=team_id)
        if not ret or not ret.get("ok") or not ret.get("team"):
            return
        self._store.upsert_team(ret["team"])

    # -------------------------------------------------------------------
    # Ephemeral signals
    # -------------------------------------------------------------------
    async def _on_typing(self, team_id: str, data: dict) -> None:
        channel = self._store.get_channel(data.get("channel"), team_id)
        user = self._store.get_user(data.get("user") or data.get("bot_id"), team_id)
        if channel is not None and user is not None:
            self._bus.emit(DomainEvent.TYPING, channel, user)

    async def _on_presence_change(self, team_id: str, data: dict) -> None:
        user_ids = data.get("users") or [data.get("user") or data.get("bot_id")]
        for user_id in user_ids:
            user = self._store.get_user(user_id, team_id)
            if user is not None:
                self._bus.emit(DomainEvent.PRESENCE_CHANGE, user, data.get("presence"))


def _bot_user_data(data: dict, team_id: str) -> dict:
    """User payload for the bot identity behind a message."""
    profile = data.get("bot_profile") or {}
    payload = {"bot_id": data["bot_id"], "team_id": team_id}
    name = data.get("username") or profile.get("name")
    if name:
        payload["name"] = name
    icons = data.get("icons") or profile.get("icons")
    if icons:
        payload["icons"] = icons
    return payload
