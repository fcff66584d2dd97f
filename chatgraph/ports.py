"""
chatgraph.ports — Capability Interfaces for External Collaborators
===================================================================

The engine never speaks a wire protocol itself.  It consumes:

* a **streaming transport** that opens realtime sessions for a token,
* a **request API** client per credential (``team.info``,
  ``conversations.*``, ``users.*``, OAuth code exchange),
* an optional **webhook transport** that verifies and decodes inbound
  HTTP deliveries,
* an optional **credential store** for durable token records.

Method names of :class:`RequestApi` follow the remote API's dotted method
names with dots replaced by underscores; every call returns the decoded
JSON response (a mapping carrying ``ok``).
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

Response = Mapping[str, Any]
SignalHandler = Callable[[dict], Awaitable[None]]
WebhookHandler = Callable[[dict, dict], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    """The durable unit handed to and read back from a credential store."""

    token: str
    user_id: str
    team_id: str


@runtime_checkable
class RequestApi(Protocol):
    """Request/response API client bound to one credential."""

    async def team_info(self, *, team: str) -> Response: ...

    async def users_info(self, *, user: str) -> Response: ...

    async def users_list(self, *, limit: int, cursor: str | None = None) -> Response: ...

    async def conversations_list(
        self,
        *,
        types: str,
        limit: int,
        exclude_archived: bool,
        cursor: str | None = None,
    ) -> Response: ...

    async def conversations_create(self, *, name: str, is_private: bool, team_id: str) -> Response: ...

    async def conversations_invite(self, *, channel: str, users: str) -> Response: ...

    async def conversations_kick(self, *, channel: str, user: str) -> Response: ...

    async def conversations_leave(self, *, channel: str) -> Response: ...

    async def conversations_archive(self, *, channel: str) -> Response: ...

    async def conversations_join(self, *, channel: str) -> Response: ...

    async def oauth_v2_access(self, *, client_id: str, client_secret: str, code: str) -> Response: ...


# (token or None for unauthenticated calls, extra headers) -> client
RequestApiFactory = Callable[[str | None, dict[str, str]], RequestApi]


@runtime_checkable
class StreamingSession(Protocol):
    """One realtime session.

    Emits lifecycle signals (``authenticated``, ``ready``, ``goodbye``,
    ``disconnected``, ``unable_to_start``) and raw events (``message``,
    ``reaction_added``, ...) to the handlers registered with :meth:`on`.
    Handlers are awaited by the session.
    """

    def on(self, event: str, handler: SignalHandler) -> None: ...

    async def start(self) -> Any: ...

    async def disconnect(self) -> None: ...

    async def subscribe_presence(self, user_ids: list[str]) -> None: ...


@runtime_checkable
class StreamingTransport(Protocol):
    def session(self, token: str, headers: dict[str, str]) -> StreamingSession: ...


@runtime_checkable
class WebhookTransport(Protocol):
    """Signature-verifying webhook receiver.

    Handlers receive ``(event, envelope)`` where the envelope carries
    ``api_app_id`` and ``team_id``.
    """

    def on(self, event: str, handler: WebhookHandler) -> None: ...

    async def handle_request(self, body: bytes, headers: Mapping[str, str]) -> tuple[int, Any]: ...

    async def stop(self) -> None: ...


@runtime_checkable
class CredentialStore(Protocol):
    async def store(self, record: CredentialRecord) -> None: ...

    async def list(self) -> list[CredentialRecord]: ...

    async def remove(self, team_id: str) -> None: ...
