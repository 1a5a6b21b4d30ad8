"""
Conversation Feed
Keeps a local view of conversations fresh from realtime hints and polling
"""
import asyncio
import contextlib
from typing import List, Optional

import httpx
import structlog

from bloodchain.client.api import CommunicationClient
from bloodchain.client.realtime import RECONNECTED, RealtimeClient
from bloodchain.exceptions import LedgerError
from bloodchain.schemas import ConversationResponse
from bloodchain.services.notifier import MESSAGE_APPENDED, MESSAGE_READ

logger = structlog.get_logger()


class ConversationFeed:
    """
    Conversation list and unread count for one organization

    Realtime events only mark the view stale; the data itself always comes
    from the REST API. A poll every `poll_interval` seconds covers anything
    the realtime channel missed.
    """

    def __init__(
        self,
        api: CommunicationClient,
        realtime: Optional[RealtimeClient] = None,
        poll_interval: float = 30.0,
    ):
        self.api = api
        self.realtime = realtime
        self.poll_interval = poll_interval

        self.conversations: List[ConversationResponse] = []
        self.unread_count = 0
        self.stale = True

        self._changed = asyncio.Event()
        self._poller: Optional[asyncio.Task] = None

    def attach(self) -> None:
        if self.realtime is None:
            return
        for event in (MESSAGE_APPENDED, MESSAGE_READ, RECONNECTED):
            self.realtime.on(event, self.invalidate)

    def detach(self) -> None:
        if self.realtime is None:
            return
        for event in (MESSAGE_APPENDED, MESSAGE_READ, RECONNECTED):
            self.realtime.off(event, self.invalidate)

    def invalidate(self, data: Optional[dict] = None) -> None:
        self.stale = True
        self._changed.set()

    async def refresh(self) -> None:
        self.conversations = await self.api.get_conversations()
        self.unread_count = await self.api.get_unread_count()
        self.stale = False

    async def refresh_if_stale(self) -> bool:
        if not self.stale:
            return False
        await self.refresh()
        return True

    async def start(self) -> None:
        self.attach()
        if self._poller is None:
            self._poller = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        self.detach()
        poller, self._poller = self._poller, None
        if poller is not None:
            poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poller

    async def _poll(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._changed.clear()
            try:
                await self.refresh()
            except (LedgerError, httpx.HTTPError) as e:
                logger.warning("conversation_feed_refresh_failed", error=str(e))
