"""
Realtime Notifier
Fans ledger events out to connected WebSocket sessions
"""
import asyncio
import contextlib
import uuid
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

import structlog
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from bloodchain.models import Message

logger = structlog.get_logger()


MESSAGE_APPENDED = "message_appended"
MESSAGE_READ = "message_read"


class RealtimeSession:
    """One live WebSocket connection of an authenticated participant"""

    def __init__(self, websocket: WebSocket, participant_id: str):
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.participant_id = participant_id
        self.channels: Set[str] = set()

    async def send(self, event: str, data: dict) -> None:
        await self.websocket.send_json({"event": event, "data": data})


class RealtimeNotifier:
    """
    Process-wide registry of realtime sessions

    Sessions are indexed by participant (every session of an organization
    receives the events addressed to it) and by the conversation channels
    they subscribed to. Delivery is best effort and at most once per
    session: nothing is queued or replayed, clients catch up by pulling.
    Sessions are sent to concurrently, each send bounded by `send_timeout`;
    a session that stalls past it is dropped and closed.
    """

    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        self._sessions: Dict[str, RealtimeSession] = {}
        self._by_participant: Dict[str, Set[str]] = defaultdict(set)
        self._by_channel: Dict[str, Set[str]] = defaultdict(set)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def register(self, websocket: WebSocket, participant_id: str) -> RealtimeSession:
        session = RealtimeSession(websocket, participant_id)
        self._sessions[session.id] = session
        self._by_participant[participant_id].add(session.id)
        logger.info("realtime_session_opened", session_id=session.id, participant_id=participant_id)
        return session

    def unregister(self, session: RealtimeSession) -> None:
        if self._sessions.pop(session.id, None) is None:
            return
        self._discard(self._by_participant, session.participant_id, session.id)
        for channel in session.channels:
            self._discard(self._by_channel, channel, session.id)
        session.channels.clear()
        logger.info("realtime_session_closed", session_id=session.id, participant_id=session.participant_id)

    def subscribe(self, session: RealtimeSession, conversation_id: str) -> None:
        session.channels.add(conversation_id)
        self._by_channel[conversation_id].add(session.id)

    def unsubscribe(self, session: RealtimeSession, conversation_id: str) -> None:
        session.channels.discard(conversation_id)
        self._discard(self._by_channel, conversation_id, session.id)

    def sessions_for(self, participants: Iterable[str], channel: Optional[str] = None) -> List[RealtimeSession]:
        """Sessions of the given participants plus channel subscribers, each once"""
        ids: Set[str] = set()
        for participant_id in participants:
            ids |= self._by_participant.get(participant_id, set())
        if channel is not None:
            ids |= self._by_channel.get(channel, set())
        return [self._sessions[i] for i in ids if i in self._sessions]

    async def publish_appended(self, message: Message) -> int:
        """Tell sender and receiver that a message joined their conversation"""
        targets = self.sessions_for([message.sender_id, message.receiver_id], channel=message.conversation_id)
        return await self._deliver(targets, MESSAGE_APPENDED, {
            "conversationId": message.conversation_id,
            "messageId": message.id,
            "sequenceNumber": message.sequence_number,
            "sosId": message.sos_id,
        })

    async def publish_read(self, message: Message) -> int:
        """Read receipt for the original sender"""
        targets = self.sessions_for([message.sender_id])
        return await self._deliver(targets, MESSAGE_READ, {
            "conversationId": message.conversation_id,
            "messageId": message.id,
            "readAt": message.read_at.isoformat() if message.read_at else None,
        })

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            try:
                await session.websocket.close()
            except RuntimeError:
                # Already closed by the peer
                pass
            self.unregister(session)

    async def _deliver(self, targets: List[RealtimeSession], event: str, data: dict) -> int:
        results = await asyncio.gather(*(self._send(session, event, data) for session in targets))
        delivered = sum(results)
        logger.debug("realtime_event_published", event=event, delivered=delivered, targets=len(targets))
        return delivered

    async def _send(self, session: RealtimeSession, event: str, data: dict) -> bool:
        """Send to one session; a session that fails or stalls is dropped"""
        try:
            await asyncio.wait_for(session.send(event, data), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("realtime_session_stalled", session_id=session.id, event=event, timeout=self.send_timeout)
            self.unregister(session)
            with contextlib.suppress(asyncio.TimeoutError, RuntimeError, OSError):
                await asyncio.wait_for(session.websocket.close(), timeout=self.send_timeout)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.warning("realtime_session_dropped", session_id=session.id, event=event, error=str(e))
            self.unregister(session)
        return False

    @staticmethod
    def _discard(index: Dict[str, Set[str]], key: str, session_id: str) -> None:
        members = index.get(key)
        if members is None:
            return
        members.discard(session_id)
        if not members:
            del index[key]
