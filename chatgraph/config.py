"""
chatgraph.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for the client's identity and connection settings.
Secrets (tokens, cookies, OAuth client secret, signing secret) may be left
out of the YAML file and supplied through the environment instead; a local
``.env`` file is loaded first.

Usage::

    from chatgraph.config import load_config

    cfg = load_config()            # reads ./config.yaml by default
    print(cfg.reconnect_pause)     # 15.0
    print(cfg.events.app_id)       # "A0123456789"
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

from chatgraph.constants import RECONNECT_PAUSE

DEFAULT_DATABASE_URL = "sqlite:///chatgraph.db"


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EventsConfig:
    """Webhook (events API) + OAuth installation settings.

    Present only when the client receives events through webhooks.  Its
    presence also switches credential persistence and the webhook-only
    fallback on.
    """

    app_id: str
    client_id: str
    client_secret: str
    signing_secret: str
    path: str = "/slack"  # URL prefix for the mounted router
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Initial credential; more arrive via OAuth or the credential store
    token: str | None = None

    # Session cookie for user tokens; enables the browser disguise headers
    cookie: str | None = None

    # Never open streaming sessions; rely on webhooks only
    no_rtm: bool = False

    reconnect_pause: float = RECONNECT_PAUSE
    database_url: str = DEFAULT_DATABASE_URL

    events: EventsConfig | None = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ClientConfig:
    """Read *path* and return a :class:`ClientConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the ``events`` section and is not
        provided by the environment either.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    load_dotenv()

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return ClientConfig(
        token=raw.get("token") or os.getenv("CHATGRAPH_TOKEN") or None,
        cookie=raw.get("cookie") or os.getenv("CHATGRAPH_COOKIE") or None,
        no_rtm=bool(raw.get("no_rtm", False)),
        reconnect_pause=float(raw.get("reconnect_pause", RECONNECT_PAUSE)),
        database_url=(
            os.getenv("CHATGRAPH_DATABASE_URL")
            or raw.get("database_url")
            or DEFAULT_DATABASE_URL
        ),
        events=_load_events(raw["events"]) if raw.get("events") else None,
    )


def _load_events(raw: dict) -> EventsConfig:
    """Build the :class:`EventsConfig`, pulling secrets from the env."""
    client_secret = raw.get("client_secret") or os.getenv("CHATGRAPH_CLIENT_SECRET")
    signing_secret = raw.get("signing_secret") or os.getenv("CHATGRAPH_SIGNING_SECRET")
    if not client_secret:
        raise KeyError("events.client_secret (or CHATGRAPH_CLIENT_SECRET)")
    if not signing_secret:
        raise KeyError("events.signing_secret (or CHATGRAPH_SIGNING_SECRET)")

    return EventsConfig(
        app_id=str(raw["app_id"]),
        client_id=str(raw["client_id"]),
        client_secret=client_secret,
        signing_secret=signing_secret,
        path=str(raw.get("path", "/slack")).rstrip("/"),
        scopes=tuple(raw.get("scopes") or ()),
    )
