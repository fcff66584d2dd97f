"""
chatgraph.services.onboarding — Credential Onboarding & OAuth Completion
=========================================================================

Every way a credential enters the client ends up in
:meth:`OnboardingCoordinator.add_credential`:

* the token from ``config.yaml``,
* records restored from the credential store at connect time
  (:meth:`~OnboardingCoordinator.restore_all`),
* an OAuth installation completing
  (:meth:`~OnboardingCoordinator.complete_oauth`).

Once the supervisor has connected the credential, the record is written to
the credential store under the authoritative team id together with the
self user id learned from the handshake.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from urllib.parse import quote

from chatgraph.config import EventsConfig
from chatgraph.constants import OAUTH_AUTHORIZE_URL
from chatgraph.engine.entities import Team
from chatgraph.engine.store import EntityStore
from chatgraph.exceptions import ChatGraphError
from chatgraph.ports import CredentialRecord, CredentialStore, RequestApi
from chatgraph.services.supervisor import ConnectionSupervisor
from chatgraph.services.team_service import TeamService

logger = logging.getLogger(__name__)

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
\t<title>OAuth token</title>
\t<style>
\t\tbody {{
\t\t\tmargin-top: 16px;
\t\t\ttext-align: center;
\t\t}}
\t</style>
</head>
<body>
\t<h4>{title}</h4>
\t<h2>{content}</h2>
</body>
</html>"""


def render_oauth_page(title: str, content: str = "") -> str:
    """The small HTML page shown to the installing user."""
    return _PAGE_TEMPLATE.format(title=html.escape(title), content=html.escape(content))


@dataclass(frozen=True, slots=True)
class OAuthOutcome:
    """Result of an OAuth completion, ready to be rendered as a response."""

    status_code: int
    title: str
    content: str = ""
    team_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    def render(self) -> str:
        return render_oauth_page(self.title, self.content)


class OnboardingCoordinator:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        store: EntityStore,
        team_service: TeamService,
        *,
        credential_store: CredentialStore | None = None,
        events: EventsConfig | None = None,
        oauth_api: RequestApi | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._store = store
        self._team_service = team_service
        self._credential_store = credential_store
        self._events = events
        self._oauth_api = oauth_api

    # -------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------
    async def add_credential(self, token: str, team_id: str = "", user_id: str = "") -> Team | None:
        """Connect *token* and persist it on success.

        Returns the team the credential serves, or ``None`` when the team id
        is still unknown (a webhook-only credential added without one).
        Transport and load failures propagate; nothing is persisted then.
        """
        team_id = await self._supervisor.add_token(token, team_id, user_id)
        if not team_id:
            return None

        user_id = self._supervisor.self_user_id(team_id) or user_id
        if self._credential_store is not None:
            await self._credential_store.store(
                CredentialRecord(token=token, user_id=user_id, team_id=team_id)
            )
        logger.info("Token added for team %s", team_id)
        return self._store.get_team(team_id)

    async def restore_all(self) -> int:
        """Re-add every persisted credential.  Returns how many connected.

        A credential that fails to connect is logged and skipped; the others
        still come up.
        """
        if self._credential_store is None:
            return 0
        records = await self._credential_store.list()
        restored = 0
        for record in records:
            if record.team_id in self._supervisor.team_ids():
                logger.debug("Credential for team %s already connected", record.team_id)
                continue
            try:
                await self.add_credential(record.token, record.team_id, record.user_id)
            except Exception:
                logger.exception("Failed to restore credential for team %s", record.team_id)
                continue
            restored += 1
        logger.info("Restored %d of %d stored credentials", restored, len(records))
        return restored

    async def remove_credential(self, team_id: str) -> None:
        """Forget *team_id* entirely: session, entities and stored record."""
        await self._supervisor.teardown_team(team_id)
        if self._credential_store is not None:
            await self._credential_store.remove(team_id)

    # -------------------------------------------------------------------
    # OAuth
    # -------------------------------------------------------------------
    def oauth_url(self, redirect_url: str) -> str:
        """Installation URL for the configured app; ``""`` without events."""
        if self._events is None:
            return ""
        return (
            f"{OAUTH_AUTHORIZE_URL}?scope={quote(','.join(self._events.scopes), safe=',')}"
            f"&client_id={quote(self._events.client_id, safe='')}"
            f"&redirect_uri={quote(redirect_url, safe='')}"
        )

    async def complete_oauth(self, code: str) -> OAuthOutcome:
        """Exchange an authorization *code* and onboard the resulting token.

        A brand-new team has every joinable channel joined while its
        startup flag is held, so the joins produce no events.
        """
        logger.debug("New oauth request")
        if self._events is None or self._oauth_api is None:
            return OAuthOutcome(404, "OAuth is not configured")

        data = await self._oauth_api.oauth_v2_access(
            client_id=self._events.client_id,
            client_secret=self._events.client_secret,
            code=code,
        )
        if not data or not data.get("ok"):
            error = str((data or {}).get("error") or "unknown error")
            logger.warning("Failed to get OAuth token: %s", error)
            return OAuthOutcome(403, "Failed to get OAuth token", error)
        if data.get("app_id") != self._events.app_id:
            logger.warning("OAuth completion for foreign app %s ignored", data.get("app_id"))
            return OAuthOutcome(403, "Not for this app")

        team_id = (data.get("team") or {}).get("id", "")
        is_new = self._store.get_team(team_id) is None
        logger.debug("Successfully verified oauth for team %s", team_id)
        try:
            team = await self.add_credential(data["access_token"], team_id, data.get("bot_user_id", ""))
        except ChatGraphError as exc:
            logger.warning("Failed to add OAuth token for team %s: %s", team_id, exc)
            return OAuthOutcome(403, "Failed to add token", str(exc), team_id=team_id)

        if team is not None and is_new:
            with self._store.startup(team.id):
                await self._team_service.join_all_channels(team.id)
        return OAuthOutcome(200, "Successfully added bot to team", team_id=team_id)
