"""
chatgraph — Multi-Team Chat Client with a Live Entity Graph
=============================================================
Connects any number of team credentials to a chat platform, keeps one
consistent in-memory graph of teams, users, channels and bots across all
of them, and re-emits normalized domain events (``addUser``,
``messageChanged``, ``reactionAdded``, ...) to application code.

Package layout::

    chatgraph/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Protocol constants
    ├── exceptions.py      # Error taxonomy
    ├── ports.py           # Transport / request API / credential store protocols
    ├── client.py          # ChatClient facade
    ├── engine/
    │   ├── entities.py    # Team, User, Channel, Bot, Message, Reaction
    │   ├── events.py      # DomainEvent names + EventBus
    │   ├── registry.py    # team id → token, API client, session
    │   ├── store.py       # Entity store: upsert / clone / patch / diff
    │   └── normalizer.py  # Raw events → store mutations + domain events
    ├── services/
    │   ├── supervisor.py  # Per-team connection lifecycle + reconnect
    │   ├── onboarding.py  # add / restore credentials, OAuth completion
    │   ├── team_service.py # Backfill + application-initiated writes
    │   └── credential_store.py # SQL-backed credential persistence
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # stored_credentials table
    └── api/
        ├── main.py        # FastAPI app factory
        └── routes.py      # OAuth page, webhook intake, status
"""

__version__ = "0.1.0"
