import asyncio
import logging

import websockets

from ..settings import settings
from .connection import (
    BackoffPolicy,
    ConnectionState,
    ConnectionStatus,
    needs_resubscribe,
    next_delay,
    on_connect_started,
    on_connected,
    on_disconnected,
    on_subscribed,
)
from .messages import Tick, build_subscribe_message, decode_frame, parse_message
from .session import IngestionSession

logger = logging.getLogger(__name__)


class StreamingClient:
    """
    Holds the feed connection open and turns frames into ticks.

    Ticks go onto `ticks` with `put_nowait`; a full queue drops the tick and
    counts it, so the receive loop never waits on the database.
    """

    def __init__(
        self,
        session: IngestionSession,
        ticks: asyncio.Queue,
        url: str | None = None,
        policy: BackoffPolicy | None = None,
        connect=None,
    ) -> None:
        self.session = session
        self.ticks = ticks
        self.url = url or settings.POLYMARKET_WS_URL
        self.policy = policy or BackoffPolicy.from_settings()
        self.state = ConnectionState()
        self._connect = connect or websockets.connect
        self._ws = None

    async def run(self, stop: asyncio.Event) -> None:
        """Connect, subscribe and receive until `stop` is set.

        Raises StreamExhaustedError once the reconnect budget is spent.
        """
        while not stop.is_set():
            delay = next_delay(self.state, self.policy)
            if delay > 0:
                logger.info(
                    "stream_reconnect_scheduled attempt=%s delay_seconds=%.1f",
                    self.state.attempts,
                    delay,
                )
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            self.state = on_connect_started(self.state)
            try:
                async with self._connect(
                    self.url,
                    ping_interval=settings.WS_PING_INTERVAL_SECONDS,
                    ping_timeout=settings.WS_PING_INTERVAL_SECONDS,
                    close_timeout=5,
                ) as ws:
                    self._ws = ws
                    self.state = on_connected(self.state)
                    logger.info("stream_connected url=%s", self.url)
                    await self._subscribe(ws)
                    await self._receive(ws, stop)
                if stop.is_set():
                    break
                self.state = on_disconnected(self.state, "closed by server")
                self.session.invalidate()
                logger.warning("stream_closed attempts=%s", self.state.attempts)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.state = on_disconnected(self.state, str(exc))
                self.session.invalidate()
                logger.warning("stream_error attempts=%s error=%s", self.state.attempts, exc)
            finally:
                self._ws = None

        self.state = ConnectionState(status=ConnectionStatus.DISCONNECTED)
        logger.info("stream_stopped")

    async def _receive(self, ws, stop: asyncio.Event) -> None:
        async for raw in ws:
            self.handle_frame(raw)
            if stop.is_set():
                return

    def handle_frame(self, raw) -> list[Tick]:
        message = decode_frame(raw)
        if message is None:
            return []
        self.session.record_message()
        queued = []
        for tick in parse_message(message):
            mapping = self.session.record_price(tick)
            if mapping is None and not tick.has_book:
                continue
            try:
                self.ticks.put_nowait(tick)
            except asyncio.QueueFull:
                self.session.record_dropped()
                logger.warning("tick_queue_full token_id=%s", tick.token_id)
                continue
            queued.append(tick)
        return queued

    async def resubscribe(self) -> bool:
        ws = self._ws
        if ws is None or not needs_resubscribe(self.state, self.session.token_ids):
            return False
        await self._subscribe(ws)
        return True

    async def close(self) -> None:
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def _subscribe(self, ws) -> None:
        token_ids = self.session.token_ids
        if not token_ids:
            logger.info("stream_subscribe_skipped reason=no_tokens")
            self.state = on_subscribed(self.state, [])
            return
        await ws.send(build_subscribe_message(token_ids))
        self.state = on_subscribed(self.state, token_ids)
        logger.info("stream_subscribed tokens=%s", len(token_ids))
