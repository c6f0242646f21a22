"""
Real-time release feed over WebSocket.

- open_release_stream(): one connection, yielded as a lazy sequence of
  parsed ReleaseEvents; it ends when the connection closes and raises on
  transport errors. It never reconnects by itself.
- StreamIngest: the supervising loop. Forwards insert events to the
  pipeline and, after any termination, waits a fixed delay and opens a
  fresh stream. No backoff growth, no retry limit; it stops only when its
  task is cancelled at process shutdown.

Messages: {"action": "insert|update|delete|nuke|...", "row": Release}
"""
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

import aiohttp

from models.release import ReleaseEvent, parse_release_event

logger = logging.getLogger(__name__)

RECONNECT_DELAY_SEC = 5.0

EventHandler = Callable[[ReleaseEvent], Awaitable[object]]
EventSource = Callable[[], AsyncIterator[ReleaseEvent]]


class StreamError(Exception):
    """The WebSocket reported a transport error."""


async def open_release_stream(
    session: aiohttp.ClientSession,
    url: str,
    on_open: Optional[Callable[[], None]] = None,
) -> AsyncIterator[ReleaseEvent]:
    async with session.ws_connect(url, heartbeat=30) as ws:
        if on_open:
            on_open()
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                event = parse_release_event(msg.data)
                if event is not None:
                    yield event
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise StreamError(f"connection error: {ws.exception()}")
        logger.warning("[stream] Connection closed: %s", ws.close_code)


class StreamIngest:
    def __init__(
        self,
        url: str,
        handler: EventHandler,
        reconnect_delay_sec: float = RECONNECT_DELAY_SEC,
        source: Optional[EventSource] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.handler = handler
        self.reconnect_delay_sec = reconnect_delay_sec
        self._source = source
        self._sleep = sleep
        self.connected = False
        self.connections = 0
        self.disconnects = 0
        self.events_forwarded = 0

    def _mark_connected(self):
        self.connected = True
        self.connections += 1
        logger.info("[stream] Connected to real-time release stream at %s", self.url)

    async def run(self):
        if self._source is not None:
            await self._supervise(self._source)
            return
        async with aiohttp.ClientSession() as session:
            await self._supervise(lambda: open_release_stream(session, self.url, on_open=self._mark_connected))

    async def _supervise(self, source: EventSource):
        while True:
            await self._consume(source())
            logger.info("[stream] Attempting to reconnect in %ss...", self.reconnect_delay_sec)
            await self._sleep(self.reconnect_delay_sec)

    async def _consume(self, events: AsyncIterator[ReleaseEvent]):
        try:
            async for event in events:
                if event.action != "insert":
                    continue
                logger.info("[stream] Received %s: %s", event.action, event.row.name)
                self.events_forwarded += 1
                try:
                    await self.handler(event)
                except Exception as e:
                    logger.exception("[stream] Handler failed for %s: %s", event.row.name, e)
        except (aiohttp.ClientError, StreamError, asyncio.TimeoutError, OSError) as e:
            logger.error("[stream] Connection error: %s", e)
        except Exception as e:
            logger.exception("[stream] Stream terminated unexpectedly: %s", e)
        finally:
            if self.connected:
                self.disconnects += 1
            self.connected = False
