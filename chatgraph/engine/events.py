"""
chatgraph.engine.events — Domain Event Vocabulary & Listener Bus
=================================================================

Every change the engine makes visible to application code goes through an
:class:`EventBus`.  Listeners may be plain callables or coroutine functions;
coroutines are scheduled on the running loop so a slow listener never
stalls event ingestion.

Payloads per event::

    connected                     ()
    disconnected                  (team_id)
    addTeam / changeTeam          (team) / (old_team, team)
    addUser / changeUser          (user) / (old_user, user)
    addChannel / changeChannel    (channel) / (old_channel, channel)
    message                       (message)
    messageChanged                (old_message, new_message)
    messageDeleted                (old_message)
    reactionAdded / Removed       (reaction)
    memberJoinedChannel / Left    (user, channel)
    typing                        (channel, user)
    presenceChange                (user, presence)
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class DomainEvent(enum.StrEnum):
    """Application-facing event names."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ADD_TEAM = "addTeam"
    CHANGE_TEAM = "changeTeam"
    ADD_USER = "addUser"
    CHANGE_USER = "changeUser"
    ADD_CHANNEL = "addChannel"
    CHANGE_CHANNEL = "changeChannel"
    MESSAGE = "message"
    MESSAGE_CHANGED = "messageChanged"
    MESSAGE_DELETED = "messageDeleted"
    REACTION_ADDED = "reactionAdded"
    REACTION_REMOVED = "reactionRemoved"
    MEMBER_JOINED_CHANNEL = "memberJoinedChannel"
    MEMBER_LEFT_CHANNEL = "memberLeftChannel"
    TYPING = "typing"
    PRESENCE_CHANGE = "presenceChange"


class EventBus:
    """Explicit listener registry with fan-out emission.

    Usage::

        bus = EventBus()

        @bus.on(DomainEvent.MESSAGE)
        async def on_message(message): ...

        bus.emit(DomainEvent.MESSAGE, message)
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def on(self, event: str, listener: Listener | None = None):
        """Register *listener* for *event*.  Usable as a decorator."""
        if listener is None:
            def decorator(fn: Listener) -> Listener:
                self._listeners[str(event)].append(fn)
                return fn
            return decorator
        self._listeners[str(event)].append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        """Unregister *listener*; unknown listeners are ignored."""
        listeners = self._listeners.get(str(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, *args: Any) -> int:
        """Call every listener of *event* with *args*.

        Returns the number of listeners invoked.  Listener exceptions are
        logged and never propagate into the engine.
        """
        listeners = list(self._listeners.get(str(event), []))
        for listener in listeners:
            try:
                result = listener(*args)
            except Exception:
                logger.exception("Listener %r for '%s' failed", listener, event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        return len(listeners)

    async def drain(self) -> None:
        """Wait until every scheduled coroutine listener has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async listener failed", exc_info=exc)
