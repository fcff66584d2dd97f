"""
chatgraph.client — Application-Facing Client
=============================================

:class:`ChatClient` wires the engine together and is the only object an
application needs::

    cfg = load_config()
    client = ChatClient(cfg, transport=rtm, api_factory=make_web_client,
                        webhooks=events_adapter,
                        credential_store=SqlCredentialStore.from_config(cfg))

    @client.on("message")
    async def on_message(message): ...

    await client.connect()

Wiring::

    StreamingTransport ─┐
                        ├→ ConnectionSupervisor ─→ EventNormalizer ─→ EntityStore ─→ EventBus
    WebhookTransport ───┘                                                   ↑
                                         OnboardingCoordinator / TeamService┘
"""

from __future__ import annotations

import logging

from chatgraph.config import ClientConfig
from chatgraph.engine.entities import Bot, Channel, Team, User
from chatgraph.engine.events import DomainEvent, EventBus, Listener
from chatgraph.engine.normalizer import EventNormalizer
from chatgraph.engine.registry import ConnectionRegistry
from chatgraph.engine.store import EntityStore
from chatgraph.ports import (
    CredentialStore,
    RequestApi,
    RequestApiFactory,
    StreamingSession,
    StreamingTransport,
    WebhookTransport,
)
from chatgraph.services.onboarding import OAuthOutcome, OnboardingCoordinator
from chatgraph.services.supervisor import ConnectionState, ConnectionSupervisor
from chatgraph.services.team_service import TeamService

logger = logging.getLogger(__name__)


class ChatClient:
    """Multi-team chat client.

    Parameters
    ----------
    cfg:
        Parsed :class:`ClientConfig`.
    transport:
        Streaming transport.  Without one every credential is webhook-only.
    api_factory:
        Builds the request API client for a token.
    webhooks:
        Webhook transport; only used when ``cfg.events`` is set.
    credential_store:
        Durable credential records; restored on :meth:`connect`.
    """

    def __init__(
        self,
        cfg: ClientConfig,
        *,
        api_factory: RequestApiFactory,
        transport: StreamingTransport | None = None,
        webhooks: WebhookTransport | None = None,
        credential_store: CredentialStore | None = None,
    ) -> None:
        self.cfg = cfg
        self._webhooks = webhooks if cfg.events is not None else None
        webhooks_enabled = self._webhooks is not None

        self.bus = EventBus()
        self.registry = ConnectionRegistry()
        self.store = EntityStore(self.bus, self.registry)
        self.teams = TeamService(self.store, self.registry)
        self.normalizer = EventNormalizer(
            self.store,
            self.bus,
            self.registry,
            app_id=cfg.events.app_id if cfg.events else None,
            on_app_uninstalled=self._on_app_uninstalled,
        )
        self.supervisor = ConnectionSupervisor(
            self.store,
            self.bus,
            self.registry,
            self.normalizer,
            self.teams,
            transport=transport,
            api_factory=api_factory,
            cookie=cfg.cookie,
            no_rtm=cfg.no_rtm,
            webhooks_enabled=webhooks_enabled,
            reconnect_pause=cfg.reconnect_pause,
        )
        self.onboarding = OnboardingCoordinator(
            self.supervisor,
            self.store,
            self.teams,
            credential_store=credential_store,
            events=cfg.events,
            oauth_api=api_factory(None, {}) if cfg.events else None,
        )

    # -------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------
    def on(self, event: str, listener: Listener | None = None):
        return self.bus.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        self.bus.off(event, listener)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def connect(self) -> None:
        """Add the configured token, start webhooks, restore stored credentials."""
        if self.cfg.token:
            await self.onboarding.add_credential(self.cfg.token)

        if self._webhooks is not None:
            for event_type in self.normalizer.webhook_events():
                self._webhooks.on(event_type, self._webhook_handler(event_type))
            self._webhooks.on("error", self._on_webhook_error)
        await self.onboarding.restore_all()

        logger.info("Client connected (%d teams)", len(self.registry))
        self.bus.emit(DomainEvent.CONNECTED)

    async def disconnect(self) -> None:
        await self.supervisor.disconnect()
        if self._webhooks is not None:
            await self._webhooks.stop()
        await self.bus.drain()
        logger.info("Client disconnected")

    # -------------------------------------------------------------------
    # Credentials & OAuth
    # -------------------------------------------------------------------
    async def add_token(self, token: str, team_id: str = "", user_id: str = "") -> Team | None:
        return await self.onboarding.add_credential(token, team_id, user_id)

    def oauth_url(self, redirect_url: str) -> str:
        return self.onboarding.oauth_url(redirect_url)

    async def complete_oauth(self, code: str) -> OAuthOutcome:
        return await self.onboarding.complete_oauth(code)

    async def handle_webhook_request(self, body: bytes, headers) -> tuple[int, object]:
        """Pass an inbound HTTP delivery to the webhook transport."""
        if self._webhooks is None:
            return 404, "Webhooks are not configured"
        return await self._webhooks.handle_request(body, headers)

    # -------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------
    def get_team(self, team_id: str) -> Team | None:
        return self.store.get_team(team_id)

    def get_user(self, user_id: str, team_id: str) -> User | None:
        return self.store.get_user(user_id, team_id)

    def get_channel(self, channel_id: str, team_id: str) -> Channel | None:
        return self.store.get_channel(channel_id, team_id)

    def get_bot(self, bot_id: str, team_id: str) -> Bot | None:
        return self.store.get_bot(bot_id, team_id)

    def get_self_user(self, team_id: str) -> User | None:
        return self.store.get_self_user(team_id)

    def web(self, team_id: str) -> RequestApi:
        """Request API client for *team_id*; raises ``TeamNotFoundError``."""
        return self.registry.api(team_id)

    def session(self, team_id: str) -> StreamingSession:
        return self.registry.session(team_id)

    def connection_state(self, team_id: str) -> ConnectionState:
        return self.supervisor.state(team_id)

    # -------------------------------------------------------------------
    # Webhook plumbing
    # -------------------------------------------------------------------
    def _webhook_handler(self, event_type: str):
        async def handler(data: dict, envelope: dict | None = None) -> None:
            try:
                await self.normalizer.handle_webhook_event(event_type, data, envelope or {})
            except Exception:
                logger.exception("Error processing webhook event %s", event_type)
        return handler

    async def _on_webhook_error(self, error, envelope: dict | None = None) -> None:
        logger.warning("Events API error: %s", error)

    async def _on_app_uninstalled(self, team_id: str) -> None:
        logger.info("App uninstalled from team %s", team_id)
        await self.onboarding.remove_credential(team_id)
