"""
chatgraph.api.routes — OAuth completion, webhook intake & status
=================================================================

``build_router(client)`` returns an :class:`APIRouter` to be mounted by the
hosting application.  All paths live under the configured events path
(``/slack`` by default).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

from chatgraph.client import ChatClient
from chatgraph.services.supervisor import ConnectionState

logger = logging.getLogger(__name__)


class TeamStatus(BaseModel):
    id: str
    name: str
    state: ConnectionState
    partial: bool
    users: int
    channels: int


class ClientStatus(BaseModel):
    teams: list[TeamStatus]
    webhooks: bool


def client_status(client: ChatClient) -> ClientStatus:
    teams = [
        TeamStatus(
            id=team.id,
            name=team.name,
            state=client.connection_state(team.id),
            partial=team.partial,
            users=len(team.users),
            channels=len(team.channels),
        )
        for team in client.store.teams.values()
    ]
    return ClientStatus(teams=teams, webhooks=client.cfg.events is not None)


def build_router(client: ChatClient) -> APIRouter:
    events = client.cfg.events
    prefix = events.path if events else "/slack"
    router = APIRouter(prefix=prefix, tags=["chatgraph"])

    @router.get("/oauth/{app_id}", response_class=HTMLResponse)
    async def oauth_complete(app_id: str, code: str = Query(default="")):
        if events is None or app_id != events.app_id:
            raise HTTPException(status_code=404, detail="Unknown app")
        outcome = await client.complete_oauth(code)
        return HTMLResponse(outcome.render(), status_code=outcome.status_code)

    @router.post("/events")
    async def webhook_events(request: Request) -> Response:
        body = await request.body()
        status_code, payload = await client.handle_webhook_request(body, dict(request.headers))
        if isinstance(payload, (dict, list)):
            return JSONResponse(payload, status_code=status_code)
        return PlainTextResponse("" if payload is None else str(payload), status_code=status_code)

    @router.get("/status", response_model=ClientStatus)
    def status():
        return client_status(client)

    return router
