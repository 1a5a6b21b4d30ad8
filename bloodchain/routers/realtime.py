"""
Realtime Router - WebSocket channel for ledger events
"""
import json
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, WebSocket, status
from sqlalchemy.orm import Session
from starlette.websockets import WebSocketDisconnect

from bloodchain.database import get_db
from bloodchain.logging_config import bind_request_context
from bloodchain.models import Conversation, Organization
from bloodchain.security import resolve_organization
from bloodchain.services.notifier import RealtimeNotifier, RealtimeSession

logger = structlog.get_logger()

router = APIRouter()


def _handshake_token(websocket: WebSocket) -> Optional[str]:
    """Bearer token from the Authorization header or the `token` query parameter"""
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return websocket.query_params.get("token")


@router.websocket("/ws")
async def realtime_channel(websocket: WebSocket, db: Session = Depends(get_db)):
    """
    Authenticated event stream

    Client frames: {"action": "subscribe" | "unsubscribe", "conversationId": ...}
    and {"action": "ping"}. Server frames: {"event": ..., "data": {...}}.
    """
    bind_request_context("WEBSOCKET", websocket.url.path)
    settings = websocket.app.state.settings
    org = resolve_organization(db, _handshake_token(websocket), settings)
    if org is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    notifier: RealtimeNotifier = websocket.app.state.notifier
    session = notifier.register(websocket, org.id)
    structlog.contextvars.bind_contextvars(participant_id=org.id)

    try:
        await session.send("connected", {"sessionId": session.id, "participantId": org.id})
        while True:
            raw = await websocket.receive_text()
            await _handle_frame(db, notifier, session, org, raw)
    except WebSocketDisconnect:
        pass
    finally:
        notifier.unregister(session)


async def _handle_frame(db: Session, notifier: RealtimeNotifier, session: RealtimeSession, org: Organization, raw: str):
    try:
        frame = json.loads(raw)
    except ValueError:
        await session.send("error", {"detail": "Frames must be JSON"})
        return
    if not isinstance(frame, dict):
        await session.send("error", {"detail": "Frames must be JSON objects"})
        return

    action = frame.get("action")
    conversation_id = frame.get("conversationId")

    if action == "ping":
        await session.send("pong", {})
    elif action == "subscribe":
        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if conversation is None:
            await session.send("error", {"detail": "Conversation not found", "conversationId": conversation_id})
        elif not (org.is_admin or conversation.has_participant(org.id)):
            await session.send("error", {"detail": "Not a participant", "conversationId": conversation_id})
        else:
            notifier.subscribe(session, conversation_id)
            await session.send("subscribed", {"conversationId": conversation_id})
    elif action == "unsubscribe":
        notifier.unsubscribe(session, conversation_id)
        await session.send("unsubscribed", {"conversationId": conversation_id})
    else:
        logger.debug("realtime_unknown_action", session_id=session.id, action=action)
        await session.send("error", {"detail": f"Unknown action: {action}"})
