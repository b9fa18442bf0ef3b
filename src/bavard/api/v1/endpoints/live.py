# src/bavard/api/v1/endpoints/live.py
"""WebSocket endpoint pushing live hub events to a connected client."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from bavard.services.contacts import ContactService
from bavard.services.conversation_store import ConversationStore, conversation_id_for
from bavard.services.ephemeral import StoryService
from bavard.services.fanout import ClientSession
from bavard.services.notification_ledger import NotificationLedger
from bavard.services.read_tracking import ReadTracker

from ..dependencies import BusDep, SessionFactoryDep, authenticate_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


async def _pump_events(websocket: WebSocket, session: ClientSession) -> None:
    while True:
        hub_event = await session.next_event()
        await websocket.send_json(hub_event.model_dump(mode="json"))


def _handle_command(
    session: ClientSession,
    store: ConversationStore,
    command: Any,
) -> None:
    if not isinstance(command, dict):
        return
    command_type = command.get("type")
    contact_id = command.get("contact_id")
    if command_type == "select" and isinstance(contact_id, str):
        session.select(contact_id)
    elif command_type == "typing" and contact_id in session.contact_ids:
        store.publish_typing(
            conversation_id_for(session.user_id, contact_id),
            session.user_id,
            bool(command.get("active", True)),
        )
    else:
        logger.debug("Ignoring live command %r from %s", command_type, session.user_id)


@router.websocket("/live")
async def live_updates(
    websocket: WebSocket,
    session_factory: SessionFactoryDep,
    bus: BusDep,
    token: str | None = Query(None),
    selected: str | None = Query(None, description="Contact remembered from the last visit"),
) -> None:
    """Stream hub events as ``{"type": ..., "data": ...}`` JSON frames.

    Clients may send ``{"type": "select", "contact_id": ...}`` and
    ``{"type": "typing", "contact_id": ..., "active": bool}``.
    """
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    with session_factory() as db:
        try:
            user_id = authenticate_token(db, token).id
        except HTTPException:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    await websocket.accept()
    store = ConversationStore(bus)
    session = ClientSession(
        user_id,
        session_factory,
        store,
        ReadTracker(bus),
        NotificationLedger(bus),
        StoryService(bus),
        ContactService(store),
    )
    await session.start(remembered=selected)
    pump = asyncio.create_task(_pump_events(websocket, session))
    logger.info("Live session opened for %s", user_id)
    try:
        while True:
            try:
                command = await websocket.receive_json()
            except ValueError:
                continue
            _handle_command(session, store, command)
    except WebSocketDisconnect:
        pass
    finally:
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await pump
        await session.close()
        logger.info("Live session closed for %s", user_id)
