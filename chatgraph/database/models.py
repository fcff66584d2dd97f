"""
chatgraph.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- stored_credentials — One durable token record per team, restored on connect
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all chatgraph ORM models."""


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------
class StoredCredential(Base):
    """A token the client was given (config, OAuth or ``add_token``).

    Keyed by team: re-adding a credential for the same team replaces it.
    """

    __tablename__ = "stored_credentials"

    team_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<StoredCredential team_id={self.team_id!r} user_id={self.user_id!r}>"
