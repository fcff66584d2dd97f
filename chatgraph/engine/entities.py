"""
chatgraph.engine.entities — Teams, Users, Channels, Bots, Messages, Reactions
===============================================================================

Stored entities (Team, User, Channel, Bot) follow one discipline:

* ``patch(data)`` assigns only the fields *present* in ``data``.  A partial
  payload never resets a field to empty.
* ``clone()`` returns a structural snapshot (containers copied, not aliased)
  that is handed to ``change*`` listeners as the old value.

Entities compare by identity: the store keeps exactly one object per
(id, team) and mutates it in place.

Messages and reactions are transient value objects built per event and
never stored.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields
from typing import Any


class Entity:
    """Mixin providing the snapshot half of clone-then-patch."""

    def clone(self):
        snapshot = copy.copy(self)
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, dict):
                setattr(snapshot, f.name, dict(value))
        return snapshot


def _assign(obj: Any, data: dict, mapping: dict[str, str]) -> None:
    """Copy ``data[key]`` onto ``obj.attr`` for every key present in *data*."""
    for key, attr in mapping.items():
        if key in data:
            setattr(obj, attr, data[key])


# ---------------------------------------------------------------------------
# Team
# ---------------------------------------------------------------------------
@dataclass(eq=False)
class Team(Entity):
    id: str
    name: str = ""
    domain: str = ""
    icon: dict | None = None
    email: str | None = None
    email_domain: str | None = None
    enterprise_id: str | None = None
    enterprise_name: str | None = None
    partial: bool = True  # channels/users not yet backfilled
    fake_id: str | None = None  # placeholder identity used before the real id is known

    channels: dict[str, Channel] = field(default_factory=dict, repr=False)
    users: dict[str, User] = field(default_factory=dict, repr=False)
    bots: dict[str, Bot] = field(default_factory=dict, repr=False)

    def patch(self, data: dict, *, has_credential: bool = False) -> None:
        """Apply *data*; *has_credential* says a token exists for ``self.id``."""
        _assign(self, data, {
            "name": "name",
            "domain": "domain",
            "email": "email",
            "email_domain": "email_domain",
            "enterprise_id": "enterprise_id",
            "enterprise_name": "enterprise_name",
        })
        if "icon" in data:
            self.icon = data["icon"] or None
        if "fake_id" in data:
            self.fake_id = data["fake_id"]

        # Once the real identity has a credential the placeholder is dropped.
        # Anything loaded through the placeholder must be loaded again.
        if has_credential:
            if self.fake_id and not self.partial:
                self.partial = True
            self.fake_id = None


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------
@dataclass(eq=False)
class User(Entity):
    id: str
    team_id: str
    name: str = ""
    display_name: str = ""
    real_name: str = ""
    email: str | None = None
    icon: str | None = None
    is_bot: bool = False
    deleted: bool = False
    full_bot: bool = False  # synthetic identity built from a bot id
    partial: bool = True  # full profile not yet fetched

    @classmethod
    def from_data(cls, data: dict, team_id: str) -> User:
        user_id = data.get("id") or data.get("bot_id")
        if not user_id:
            raise ValueError(f"User data is missing an id: {data!r}")
        user = cls(
            id=user_id,
            team_id=team_id,
            full_bot="id" not in data and bool(data.get("bot_id")),
        )
        user.patch(data)
        return user

    def patch(self, data: dict) -> None:
        _assign(self, data, {
            "name": "name",
            "real_name": "real_name",
            "is_bot": "is_bot",
            "deleted": "deleted",
        })
        if "icons" in data:
            self.icon = _pick_icon(data["icons"])

        profile = data.get("profile")
        if isinstance(profile, dict):
            _assign(self, profile, {
                "display_name": "display_name",
                "real_name": "real_name",
                "email": "email",
            })
            image = _pick_icon(profile)
            if image:
                self.icon = image
            self.partial = False

    @property
    def display(self) -> str:
        """Best human-readable name available."""
        return self.display_name or self.real_name or self.name or self.id


def _pick_icon(icons: dict | None) -> str | None:
    if not icons:
        return None
    for key in ("image_original", "image_512", "image_192", "image_72", "image_48", "image_36"):
        if icons.get(key):
            return icons[key]
    return None


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------
@dataclass(eq=False)
class Channel(Entity):
    id: str
    team_id: str
    name: str = ""
    topic: str = ""
    purpose: str = ""
    user_id: str | None = None  # the other party of a direct conversation
    is_channel: bool = False
    is_group: bool = False
    is_mpim: bool = False
    is_im: bool = False
    is_private: bool = False
    is_archived: bool = False

    members: dict[str, User] = field(default_factory=dict, repr=False)

    @classmethod
    def from_data(cls, data: dict, team_id: str) -> Channel:
        if not data.get("id"):
            raise ValueError(f"Channel data is missing an id: {data!r}")
        channel = cls(id=data["id"], team_id=team_id)
        channel.patch(data)
        return channel

    def patch(self, data: dict) -> None:
        _assign(self, data, {
            "name": "name",
            "user": "user_id",
            "is_channel": "is_channel",
            "is_group": "is_group",
            "is_mpim": "is_mpim",
            "is_im": "is_im",
            "is_private": "is_private",
            "is_archived": "is_archived",
        })
        for key in ("topic", "purpose"):
            if key in data:
                value = data[key]
                setattr(self, key, value.get("value", "") if isinstance(value, dict) else value or "")

    @property
    def kind(self) -> str:
        """One of ``public``, ``private``, ``group`` or ``direct``."""
        if self.is_im:
            return "direct"
        if self.is_mpim:
            return "group"
        if self.is_private or self.is_group:
            return "private"
        return "public"


# ---------------------------------------------------------------------------
# Bot
# ---------------------------------------------------------------------------
@dataclass(eq=False)
class Bot(Entity):
    id: str
    team_id: str
    name: str = ""
    app_id: str | None = None
    user_id: str | None = None
    icons: dict | None = None
    deleted: bool = False

    def patch(self, data: dict) -> None:
        _assign(self, data, {
            "name": "name",
            "app_id": "app_id",
            "user_id": "user_id",
            "deleted": "deleted",
        })
        if "icons" in data:
            self.icons = data["icons"] or None


# ---------------------------------------------------------------------------
# Transient value objects
# ---------------------------------------------------------------------------
@dataclass
class Message:
    """One message as seen by an event.  Never stored."""

    team_id: str
    channel_id: str | None
    user_id: str | None
    text: str = ""
    ts: str | None = None
    thread_ts: str | None = None
    subtype: str | None = None
    attachments: list = field(default_factory=list)
    files: list = field(default_factory=list)
    blocks: list = field(default_factory=list)
    edited: dict | None = None
    raw: dict = field(default_factory=dict, repr=False)

    # Resolved references (None when not in the store)
    team: Team | None = field(default=None, repr=False)
    channel: Channel | None = field(default=None, repr=False)
    user: User | None = field(default=None, repr=False)

    @classmethod
    def from_data(
        cls,
        data: dict,
        team_id: str,
        channel_id: str | None,
        user_id: str | None,
    ) -> Message:
        return cls(
            team_id=team_id,
            channel_id=channel_id,
            user_id=user_id,
            text=data.get("text") or "",
            ts=data.get("ts"),
            thread_ts=data.get("thread_ts"),
            subtype=data.get("subtype"),
            attachments=list(data.get("attachments") or []),
            files=list(data.get("files") or []),
            blocks=list(data.get("blocks") or []),
            edited=data.get("edited"),
            raw=data,
        )


@dataclass
class Reaction:
    """A reaction added to or removed from a message.  Never stored."""

    team_id: str
    user_id: str | None
    emoji: str
    channel_id: str | None = None
    message_ts: str | None = None
    item_user_id: str | None = None
    event_ts: str | None = None
    raw: dict = field(default_factory=dict, repr=False)

    user: User | None = field(default=None, repr=False)
    channel: Channel | None = field(default=None, repr=False)

    @classmethod
    def from_data(cls, data: dict, team_id: str) -> Reaction:
        item = data.get("item") or {}
        return cls(
            team_id=team_id,
            user_id=data.get("user"),
            emoji=data.get("reaction", ""),
            channel_id=item.get("channel"),
            message_ts=item.get("ts"),
            item_user_id=data.get("item_user"),
            event_ts=data.get("event_ts"),
            raw=data,
        )
