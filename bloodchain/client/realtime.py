"""
Realtime Client
Connects to /communication/ws and dispatches ledger events to listeners
"""
import asyncio
import contextlib
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from bloodchain.client.api import TokenSource
from bloodchain.exceptions import AuthorizationError, LedgerError

logger = structlog.get_logger()


Listener = Callable[[dict], Any]

# Raised by a transport when the connection is gone
CONNECTION_ERRORS = (ConnectionClosed, ConnectionError, OSError)

# Emitted locally, never sent by the server
RECONNECTED = "reconnected"
DISCONNECTED = "disconnected"


async def websocket_transport(url: str, token: str):
    """Default transport: a websockets client connection (send/recv/close)"""
    return await websocket_connect(url, additional_headers={"Authorization": f"Bearer {token}"})


class RealtimeClient:
    """
    One realtime connection with an explicit lifecycle

    Nothing connects on import or construction; call `connect()` once the
    session is authenticated and `disconnect()` on logout. Listeners are
    kept in a registry so a component can remove exactly what it added.
    Watched conversations are re-subscribed after every reconnect. Events
    missed while offline are not replayed; a local "reconnected" event is
    emitted instead so callers can refetch.
    """

    def __init__(
        self,
        url: str,
        token: TokenSource,
        connector: Callable[[str, str], Awaitable[Any]] = websocket_transport,
        reconnect: bool = True,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
    ):
        self.url = url
        self._token = token if callable(token) else (lambda: token)
        self._connector = connector
        self.reconnect = reconnect
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay

        self._listeners: Dict[str, List[Listener]] = {}
        self._channels: Set[str] = set()
        self._transport = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self.session_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._transport is not None

    @property
    def watched(self) -> Set[str]:
        return set(self._channels)

    # Listener registry

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Optional[Listener] = None) -> None:
        """Remove one listener, or every listener for `event`"""
        if listener is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    # Conversation channels

    async def watch(self, conversation_id: str) -> None:
        self._channels.add(conversation_id)
        if self.connected:
            await self._send({"action": "subscribe", "conversationId": conversation_id})

    async def unwatch(self, conversation_id: str) -> None:
        self._channels.discard(conversation_id)
        if self.connected:
            await self._send({"action": "unsubscribe", "conversationId": conversation_id})

    # Lifecycle

    async def connect(self) -> None:
        if self.connected:
            return
        self._closing = False
        await self._open()
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("realtime_connected", url=self.url)

    async def disconnect(self) -> None:
        self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        await self._close_transport()
        self.session_id = None
        logger.info("realtime_disconnected", url=self.url)

    async def ping(self) -> None:
        await self._send({"action": "ping"})

    async def _open(self) -> None:
        token = self._token()
        if not token:
            raise AuthorizationError("No authentication token")
        self._transport = await self._connector(self.url, token)
        for conversation_id in sorted(self._channels):
            await self._send({"action": "subscribe", "conversationId": conversation_id})

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            with contextlib.suppress(*CONNECTION_ERRORS):
                await transport.close()

    async def _send(self, frame: dict) -> None:
        await self._transport.send(json.dumps(frame))

    async def _read_loop(self) -> None:
        while not self._closing:
            try:
                raw = await self._transport.recv()
            except CONNECTION_ERRORS as e:
                await self._close_transport()
                logger.warning("realtime_connection_lost", url=self.url, error=str(e))
                if self._closing or not self.reconnect or not await self._reconnect():
                    await self._dispatch(DISCONNECTED, {})
                    return
                await self._dispatch(RECONNECTED, {})
                continue
            await self._handle(raw)

    async def _reconnect(self) -> bool:
        for attempt in range(1, self.reconnect_attempts + 1):
            await asyncio.sleep(self.reconnect_delay)
            if self._closing:
                return False
            try:
                await self._open()
            except CONNECTION_ERRORS + (InvalidHandshake,) as e:
                await self._close_transport()
                logger.warning("realtime_reconnect_failed", attempt=attempt, error=str(e))
                continue
            except LedgerError as e:
                # Token cleared while offline
                await self._close_transport()
                logger.warning("realtime_reconnect_abandoned", attempt=attempt, error=str(e))
                return False
            logger.info("realtime_reconnected", attempt=attempt)
            return True
        return False

    async def _handle(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("realtime_bad_frame", frame=raw)
            return
        if not isinstance(frame, dict):
            logger.warning("realtime_bad_frame", frame=raw)
            return
        event = frame.get("event")
        data = frame.get("data") or {}
        if event == "connected":
            self.session_id = data.get("sessionId")
        if event:
            await self._dispatch(event, data)

    async def _dispatch(self, event: str, data: dict) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("realtime_listener_failed", event=event)
