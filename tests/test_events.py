"""
tests/test_events.py — EventBus fan-out
=========================================
"""

from __future__ import annotations

import asyncio

from chatgraph.engine.events import DomainEvent, EventBus


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


class TestEventBus:
    def test_decorator_registers_listener(self):
        bus = EventBus()
        seen = []

        @bus.on(DomainEvent.ADD_TEAM)
        def on_team(team):
            seen.append(team)

        assert bus.emit(DomainEvent.ADD_TEAM, "T1") == 1
        assert seen == ["T1"]

    def test_string_and_enum_names_are_the_same_event(self):
        bus = EventBus()
        seen = []
        bus.on("addUser", seen.append)
        bus.emit(DomainEvent.ADD_USER, "U1")
        assert seen == ["U1"]

    def test_off_removes_listener(self):
        bus = EventBus()
        seen = []
        bus.on(DomainEvent.TYPING, seen.append)
        bus.off(DomainEvent.TYPING, seen.append)
        assert bus.emit(DomainEvent.TYPING, "x") == 0
        assert seen == []

    def test_off_unknown_listener_is_ignored(self):
        EventBus().off(DomainEvent.TYPING, print)

    def test_failing_listener_does_not_stop_others(self):
        bus = EventBus()
        seen = []

        def broken(_):
            raise RuntimeError("boom")

        bus.on(DomainEvent.MESSAGE, broken)
        bus.on(DomainEvent.MESSAGE, seen.append)
        bus.emit(DomainEvent.MESSAGE, "m")
        assert seen == ["m"]

    def test_async_listener_is_scheduled(self):
        async def _inner():
            bus = EventBus()
            seen = []

            async def on_message(message):
                await asyncio.sleep(0)
                seen.append(message)

            bus.on(DomainEvent.MESSAGE, on_message)
            bus.emit(DomainEvent.MESSAGE, "m")
            assert seen == []
            await bus.drain()
            return seen

        assert run_async(_inner()) == ["m"]

    def test_failing_async_listener_is_contained(self):
        async def _inner():
            bus = EventBus()

            async def broken(_):
                raise RuntimeError("boom")

            bus.on(DomainEvent.MESSAGE, broken)
            bus.emit(DomainEvent.MESSAGE, "m")
            await bus.drain()

        run_async(_inner())
