"""
chatgraph.services.credential_store — SQL-backed Credential Store
==================================================================

Implements the :class:`~chatgraph.ports.CredentialStore` port on top of the
``stored_credentials`` table.  The synchronous query functions are plain
module-level helpers taking an :class:`Engine`; the async methods wrap them
with :func:`~chatgraph.database.engine.run_db`.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, delete, select

from chatgraph.config import ClientConfig
from chatgraph.database.engine import create_db_engine, get_session, init_db, run_db
from chatgraph.database.models import StoredCredential
from chatgraph.ports import CredentialRecord

logger = logging.getLogger(__name__)


def store_credential(engine: Engine, record: CredentialRecord) -> None:
    """Insert or replace the credential for ``record.team_id``."""
    with get_session(engine) as session:
        row = session.get(StoredCredential, record.team_id)
        if row is None:
            session.add(StoredCredential(
                team_id=record.team_id, token=record.token, user_id=record.user_id,
            ))
        else:
            row.token = record.token
            row.user_id = record.user_id


def list_credentials(engine: Engine) -> list[CredentialRecord]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(StoredCredential).order_by(StoredCredential.created_at, StoredCredential.team_id)
        ).all()
        return [
            CredentialRecord(token=row.token, user_id=row.user_id or "", team_id=row.team_id)
            for row in rows
        ]


def remove_credential(engine: Engine, team_id: str) -> int:
    with get_session(engine) as session:
        result = session.execute(
            delete(StoredCredential).where(StoredCredential.team_id == team_id)
        )
        return result.rowcount or 0


class SqlCredentialStore:
    """Durable credential records, one per team."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @classmethod
    def from_config(cls, cfg: ClientConfig) -> SqlCredentialStore:
        """Open ``cfg.database_url`` and make sure the table exists."""
        engine = create_db_engine(cfg.database_url)
        init_db(engine)
        return cls(engine)

    async def store(self, record: CredentialRecord) -> None:
        await run_db(store_credential, self._engine, record)
        logger.debug("Stored credential for team %s", record.team_id)

    async def list(self) -> list[CredentialRecord]:
        return await run_db(list_credentials, self._engine)

    async def remove(self, team_id: str) -> None:
        removed = await run_db(remove_credential, self._engine, team_id)
        if removed:
            logger.info("Removed stored credential for team %s", team_id)
