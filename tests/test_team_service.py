"""
tests/test_team_service.py — Backfill pagination & application writes
=======================================================================
"""

from __future__ import annotations

import asyncio

import pytest

from chatgraph.constants import CONVERSATION_TYPES, PAGE_LIMIT
from chatgraph.engine.events import DomainEvent
from chatgraph.exceptions import MalformedResponseError
from chatgraph.services.team_service import TeamService, drain_pages


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def _page(key, items, cursor=""):
    return {"ok": True, key: items, "response_metadata": {"next_cursor": cursor}}


@pytest.fixture
def service(store, registry, api):
    return TeamService(store, registry)


@pytest.fixture
def team(store, api):
    return store.upsert_team({"id": "T1", "name": "Acme"})


# ===========================================================================
# Pagination
# ===========================================================================
class TestDrainPages:
    def test_follows_cursor_until_empty(self, api):
        api.responses["users.list"] = [
            _page("members", [{"id": "U1"}], "a"),
            _page("members", [{"id": "U2"}], "b"),
            _page("members", [{"id": "U3"}], ""),
        ]
        items = run_async(drain_pages(api.users_list, "members", "users.list", limit=PAGE_LIMIT))

        assert [item["id"] for item in items] == ["U1", "U2", "U3"]
        assert [call["cursor"] for call in api.called("users.list")] == [None, "a", "b"]

    def test_missing_key_fails(self, api):
        api.responses["users.list"] = {"ok": True}
        with pytest.raises(MalformedResponseError, match="users.list"):
            run_async(drain_pages(api.users_list, "members", "users.list", limit=PAGE_LIMIT))

    def test_not_ok_fails(self, api):
        api.responses["users.list"] = {"ok": False, "error": "ratelimited"}
        with pytest.raises(MalformedResponseError):
            run_async(drain_pages(api.users_list, "members", "users.list", limit=PAGE_LIMIT))


# ===========================================================================
# Backfill
# ===========================================================================
class TestLoadTeam:
    def test_full_load(self, service, api, team, store, recorder_factory):
        api.responses["conversations.list"] = [
            _page("channels", [{"id": "C1", "name": "general", "is_channel": True}], "next"),
            _page("channels", [{"id": "D1", "is_im": True, "user": "U2"}]),
        ]
        api.responses["users.list"] = [
            _page("members", [{"id": "U1", "name": "ann"}, {"id": "U2", "name": "bob"}]),
        ]
        rec = recorder_factory(DomainEvent.ADD_USER, DomainEvent.ADD_CHANNEL, DomainEvent.CHANGE_TEAM)

        async def _inner():
            with store.startup("T1"):
                await service.load_team(team)

        run_async(_inner())

        assert team.partial is False
        assert set(team.channels) == {"C1", "D1"}
        assert set(team.users) == {"U1", "U2"}
        assert rec.events == []
        first = api.called("conversations.list")[0]
        assert first["types"] == CONVERSATION_TYPES
        assert first["limit"] == PAGE_LIMIT
        assert first["exclude_archived"] is True
        assert api.called("team.info") == [{"team": "T1"}]

    def test_team_info_failure_aborts_load(self, service, api, team):
        api.responses["team.info"] = {"ok": False}
        with pytest.raises(MalformedResponseError):
            run_async(service.load_team(team))
        assert team.partial is True
        assert api.called("conversations.list") == []

    def test_malformed_users_page_aborts_load(self, service, api, team):
        api.responses["users.list"] = {"ok": True, "users": []}
        with pytest.raises(MalformedResponseError):
            run_async(service.load_team(team))
        assert team.partial is True

    def test_placeholder_team_stops_after_info(self, service, store, registry, api_factory):
        fake_api = api_factory.api("xoxp-fake")
        registry.register("FAKE", "xoxp-fake", fake_api)
        team = store.upsert_team({"id": "T5", "fake_id": "FAKE"})

        run_async(service.load_team(team))
        assert fake_api.called("team.info") == [{"team": "T5"}]
        assert fake_api.called("conversations.list") == []
        assert team.partial is False

    def test_load_user(self, service, store, api, team):
        user = run_async(store.upsert_user({"id": "U1", "team_id": "T1"}))
        run_async(service.load_user(user))
        assert user.partial is False
        assert user.display_name == "U1"


class TestJoinAllChannels:
    def test_failed_join_is_skipped(self, service, api, store, team):
        with store.startup("T1"):
            for cid in ("C1", "C2", "C3"):
                run_async(store.upsert_channel({"id": cid, "team_id": "T1", "is_channel": True}))
        run_async(store.upsert_channel({"id": "D1", "team_id": "T1", "is_im": True}))
        team.partial = False
        api.responses["conversations.join"] = [{"ok": True}, RuntimeError("nope"), {"ok": True}]

        assert run_async(service.join_all_channels("T1")) == 2
        assert [call["channel"] for call in api.called("conversations.join")] == ["C1", "C2", "C3"]

    def test_partial_team_is_loaded_first(self, service, api, team):
        run_async(service.join_all_channels("T1"))
        assert len(api.called("team.info")) == 1
        assert team.partial is False

    def test_unknown_team(self, service):
        assert run_async(service.join_all_channels("T404")) == 0


# ===========================================================================
# Writes
# ===========================================================================
class TestWrites:
    @pytest.fixture
    def channel(self, store, team):
        async def _setup():
            with store.startup("T1"):
                await store.upsert_user({"id": "U1", "team_id": "T1"})
                await store.upsert_user({"id": "U2", "team_id": "T1"})
                return await store.upsert_channel({"id": "G1", "team_id": "T1", "is_private": True})

        return run_async(_setup())

    def test_create_channel(self, service, api, store, team):
        api.responses["conversations.create"] = {"ok": True, "channel": {"id": "C9", "is_channel": True}}
        api.responses["conversations.join"] = {"ok": True}

        assert run_async(service.create_channel("T1", "launch")) == "C9"
        created = store.get_channel("C9", "T1")
        assert created.name == "launch"
        assert created.kind == "public"

    def test_create_channel_without_result(self, service, api, team):
        api.responses["conversations.create"] = {"ok": False, "error": "name_taken"}
        assert run_async(service.create_channel("T1", "launch")) == ""

    def test_invite_accepts_string_list(self, service, api, channel):
        assert run_async(service.invite("T1", "G1", "U1,U2")) is True
        assert api.called("conversations.invite") == [{"channel": "G1", "users": "U1,U2"}]
        assert set(channel.members) == {"U1", "U2"}

    def test_failed_invite_changes_nothing(self, service, api, channel):
        api.responses["conversations.invite"] = {"ok": False}
        assert run_async(service.invite("T1", "G1", ["U1"])) is False
        assert channel.members == {}

    def test_kick(self, service, api, channel, store):
        store.add_member(channel, store.get_user("U1", "T1"))
        assert run_async(service.kick("T1", "G1", "U1")) is True
        assert channel.members == {}

    def test_leave_removes_self(self, service, api, channel, store):
        me = store.get_user("U2", "T1")
        store.set_self_user("T1", me)
        store.add_member(channel, me)
        ret = run_async(service.leave("T1", "G1"))
        assert ret["ok"] is True
        assert "U2" not in channel.members

    def test_archive_patches_channel(self, service, api, channel, recorder_factory):
        rec = recorder_factory(DomainEvent.CHANGE_CHANNEL)
        run_async(service.archive("T1", "G1"))
        assert channel.is_archived is True
        assert len(rec.events) == 1

    def test_write_for_unknown_team_raises(self, service):
        from chatgraph.exceptions import TeamNotFoundError

        with pytest.raises(TeamNotFoundError):
            run_async(service.kick("T404", "C1", "U1"))

    def test_is_bot_token(self, service, registry, api):
        assert service.is_bot_token("T1") is True
        registry.register("T2", "xoxp-user", api)
        assert service.is_bot_token("T2") is False
        assert service.is_bot_token("T404") is False
