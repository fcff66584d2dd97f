"""
chatgraph.services.team_service — Backfill & Application-Initiated Writes
===========================================================================

**Backfill** (``load_team``) pulls a team's metadata, then every channel
and every user through fully drained cursor pagination, and feeds each
record through the store's upsert path.  Callers normally hold the team's
startup flag while this runs, so the bulk population is silent.

**Writes** (create / invite / kick / leave / archive) call the request API
first and, on success, apply the confirmed state locally so the graph
matches the server without waiting for the echo event.

A response missing ``ok`` or its payload fails the load immediately with
:class:`~chatgraph.exceptions.MalformedResponseError`; nothing is retried.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from chatgraph.constants import BOT_TOKEN_PREFIX, CONVERSATION_TYPES, PAGE_LIMIT
from chatgraph.engine.entities import Team, User
from chatgraph.engine.registry import ConnectionRegistry
from chatgraph.engine.store import EntityStore
from chatgraph.exceptions import MalformedResponseError
from chatgraph.ports import Response

logger = logging.getLogger(__name__)


async def drain_pages(
    call: Callable[..., Awaitable[Response]],
    key: str,
    method: str,
    **kwargs: Any,
) -> list[dict]:
    """Call a cursor-paginated list method until the cursor runs dry.

    Returns the items under *key* from every page, in order.  The first call
    goes out without a cursor.
    """
    items: list[dict] = []
    cursor: str | None = None
    while True:
        ret = await call(cursor=cursor, **kwargs)
        if not ret or not ret.get("ok") or ret.get(key) is None:
            raise MalformedResponseError(method, f"missing '{key}'")
        items.extend(ret[key])
        cursor = (ret.get("response_metadata") or {}).get("next_cursor")
        if not cursor:
            return items


class TeamService:
    def __init__(self, store: EntityStore, registry: ConnectionRegistry) -> None:
        self._store = store
        self._registry = registry

    # -------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------
    async def load_team(self, team: Team) -> Team:
        """Fetch metadata, channels and users for *team*; clears ``partial``."""
        # A placeholder team only has a credential under its fake id
        api = self._registry.api(team.fake_id or team.id)
        ret = await api.team_info(team=team.id)
        if not ret or not ret.get("ok") or not ret.get("team"):
            raise MalformedResponseError("team.info", team.id)
        self._store.upsert_team(ret["team"])

        if team.fake_id:
            team.partial = False
            return team

        api = self._registry.api(team.id)
        channels = await drain_pages(
            api.conversations_list,
            "channels",
            "conversations.list",
            types=CONVERSATION_TYPES,
            limit=PAGE_LIMIT,
            exclude_archived=True,
        )
        for data in channels:
            await self._store.upsert_channel({**data, "team_id": team.id})

        members = await drain_pages(api.users_list, "members", "users.list", limit=PAGE_LIMIT)
        for data in members:
            await self._store.upsert_user({"team_id": team.id, **data})

        team.partial = False
        logger.info(
            "Loaded team %s: %d channels, %d users",
            team.id, len(channels), len(members),
        )
        return team

    async def load_user(self, user: User) -> User:
        """Fetch the full profile of a partial user."""
        ret = await self._registry.api(user.team_id).users_info(user=user.id)
        if not ret or not ret.get("ok") or not ret.get("user"):
            raise MalformedResponseError("users.info", user.id)
        await self._store.upsert_user({"team_id": user.team_id, **ret["user"]})
        return user

    async def join_all_channels(self, team_id: str) -> int:
        """Join every joinable channel of the team, loading it first if partial.

        A failing join is logged and skipped.  Returns the number joined.
        """
        team = self._store.get_team(team_id)
        if team is None:
            return 0
        if team.partial:
            await self.load_team(team)

        joined = 0
        for channel in list(team.channels.values()):
            try:
                if await self._store.join_channel(channel):
                    joined += 1
            except Exception:
                logger.warning("Failed to join channel %s in team %s", channel.id, team_id, exc_info=True)
        logger.info("Joined %d channels in team %s", joined, team_id)
        return joined

    def is_bot_token(self, team_id: str) -> bool:
        return (self._registry.token(team_id) or "").startswith(BOT_TOKEN_PREFIX)

    # -------------------------------------------------------------------
    # Application-initiated writes
    # -------------------------------------------------------------------
    async def create_channel(self, team_id: str, name: str, is_private: bool = False) -> str:
        """Create a channel; returns its id, or ``""`` when none came back."""
        ret = await self._registry.api(team_id).conversations_create(
            name=name, is_private=is_private, team_id=team_id,
        )
        created = (ret or {}).get("channel")
        if not created:
            return ""
        await self._store.upsert_channel({
            "id": created["id"],
            "name": name,
            "is_channel": created.get("is_channel", False),
            "is_group": created.get("is_group", False),
            "is_mpim": created.get("is_mpim", False),
            "is_im": created.get("is_im", False),
            "is_private": created.get("is_private", is_private),
            "team_id": team_id,
        })
        return created["id"]

    async def invite(self, team_id: str, channel_id: str, user_ids: list[str] | str) -> bool:
        """Invite users (a list or a comma separated string) to a channel."""
        if isinstance(user_ids, str):
            user_ids = [uid for uid in user_ids.split(",") if uid]
        ret = await self._registry.api(team_id).conversations_invite(
            channel=channel_id, users=",".join(user_ids),
        )
        ok = bool(ret and ret.get("ok"))
        channel = self._store.get_channel(channel_id, team_id)
        if ok and channel is not None:
            for user_id in user_ids:
                user = self._store.get_user(user_id, team_id)
                if user is not None:
                    self._store.add_member(channel, user)
        return ok

    async def kick(self, team_id: str, channel_id: str, user_id: str) -> bool:
        ret = await self._registry.api(team_id).conversations_kick(channel=channel_id, user=user_id)
        ok = bool(ret and ret.get("ok"))
        channel = self._store.get_channel(channel_id, team_id)
        if ok and channel is not None:
            self._store.remove_member(channel, user_id)
        return ok

    async def leave(self, team_id: str, channel_id: str) -> Response:
        ret = await self._registry.api(team_id).conversations_leave(channel=channel_id)
        channel = self._store.get_channel(channel_id, team_id)
        me = self._store.get_self_user(team_id)
        if ret and ret.get("ok") and channel is not None and me is not None:
            self._store.remove_member(channel, me.id)
        return ret

    async def archive(self, team_id: str, channel_id: str) -> Response:
        ret = await self._registry.api(team_id).conversations_archive(channel=channel_id)
        if ret and ret.get("ok") and self._store.get_channel(channel_id, team_id) is not None:
            await self._store.upsert_channel(
                {"id": channel_id, "team_id": team_id, "is_archived": True},
                auto_create_team=False,
            )
        return ret
