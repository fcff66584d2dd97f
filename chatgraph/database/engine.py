"""
chatgraph.database.engine — Database Connection & Async Helper
===============================================================

SQLAlchemy is synchronous; the client runs on an ``asyncio`` loop.  Every
database call from async code goes through :func:`run_db`, which ships the
synchronous function to a worker thread with :func:`asyncio.to_thread`.

Usage::

    from chatgraph.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine("sqlite:///chatgraph.db")
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    records = await run_db(list_credentials, engine)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from chatgraph.config import DEFAULT_DATABASE_URL
from chatgraph.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine`.

    *url* falls back to ``CHATGRAPH_DATABASE_URL`` and then to a local
    SQLite file.  SQLite engines are opened with ``check_same_thread=False``
    because :func:`run_db` uses worker threads; server databases get a
    small connection pool.
    """
    url = url or os.getenv("CHATGRAPH_DATABASE_URL") or DEFAULT_DATABASE_URL

    if url.startswith("sqlite"):
        engine = create_engine(url, echo=False, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            url,
            echo=False,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_timeout=10,
            pool_recycle=3600,
        )
    logger.info("Database engine created → %s", engine.url.render_as_string(hide_password=True))
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`chatgraph.database.models`.

    Safe to call on every startup.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that commits on success and rolls back on
    exception.
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a synchronous database function on a background thread."""
    return await asyncio.to_thread(func, *args, **kwargs)
