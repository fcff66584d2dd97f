"""
chatgraph.api.main — FastAPI application factory
==================================================

Hosts the router from :mod:`chatgraph.api.routes` and ties the client's
connect/disconnect to the application lifespan::

    app = create_app(client)
    uvicorn.run(app, port=8000)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatgraph import __version__
from chatgraph.api.routes import build_router
from chatgraph.client import ChatClient

logger = logging.getLogger(__name__)


def create_app(client: ChatClient, *, manage_client: bool = True) -> FastAPI:
    """Build the app.  With *manage_client* the lifespan connects the client
    on startup and disconnects it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_client:
            await client.connect()
        logger.info("chatgraph API started (%d teams)", len(client.registry))
        yield
        if manage_client:
            await client.disconnect()
        logger.info("chatgraph API shutting down")

    app = FastAPI(title="chatgraph", version=__version__, lifespan=lifespan)
    app.include_router(build_router(client))

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
