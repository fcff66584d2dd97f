"""
chatgraph.constants — Shared Constants
========================================

Single source of truth for protocol-level constants shared by the store,
the normalizer, and the connection supervisor.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------
RECONNECT_PAUSE: float = 15.0  # seconds between a drop and the restart attempt

# unable_to_start reason that triggers the webhook-only fallback
NOT_ALLOWED_TOKEN_TYPE = "not_allowed_token_type"

BOT_TOKEN_PREFIX = "xoxb"

# Browser identity sent alongside a session cookie
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/79.0.3945.117 Safari/537.36"
)

# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------
CONVERSATION_TYPES = "public_channel,private_channel,mpim,im"
PAGE_LIMIT = 1000

# ---------------------------------------------------------------------------
# Message classification
# ---------------------------------------------------------------------------
SUPPRESSED_SUBTYPES: frozenset[str] = frozenset({
    "channel_join",
    "channel_name",
    "message_replied",
})

MESSAGE_CHANGED = "message_changed"
MESSAGE_DELETED = "message_deleted"

# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------
OAUTH_AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"
