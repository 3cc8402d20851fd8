# order_stream.py
"""Self-healing ``account.orderUpdate`` subscription.

The stream owns a single WebSocket.  Once the socket opens it sends a signed
``SUBSCRIBE`` message; when the exchange reports that the signature window
expired, a freshly signed subscribe is sent on the same socket.  When the
socket closes for any reason, a full restart is scheduled after a fixed
delay.  There is no retry ceiling: exchange side disconnects are treated as
transient.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional, Set

import websockets

from errors import StreamDisconnected
from order_events import ORDER_EVENT_TYPES, OrderUpdateEvent
from signer import Signer
from utils import logger as app_logger

WS_ENDPOINT = "wss://ws.backpack.exchange"
ORDER_UPDATE_CHANNEL = "account.orderUpdate"
SIGNATURE_EXPIRED = "Signature expired"
DEFAULT_RECONNECT_SEC = 10.0


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"


class OrderEventStream:
    """Deliver decoded order lifecycle events to a single consumer.

    ``start`` may be called at any time; a running socket is torn down first,
    so only the most recent subscription ever delivers events.  The consumer
    may be a plain function or a coroutine function.  Coroutines are scheduled
    as tasks so a slow consumer never stalls the socket reader.
    """

    def __init__(
        self,
        api_key: str,
        signer: Signer,
        *,
        ws_url: str = WS_ENDPOINT,
        reconnect_delay: float = DEFAULT_RECONNECT_SEC,
        logger: Optional[logging.Logger] = None,
    ):
        self.api_key = api_key
        self.signer = signer
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay
        self.logger = logger or app_logger.getChild("ws")

        self._state = StreamState.DISCONNECTED
        self._callback: Optional[Callable[[OrderUpdateEvent], Any]] = None
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._pending: Set[asyncio.Task] = set()
        # Bumped on every start/stop; sockets of older generations are stale.
        self._generation = 0
        self._stopped = True

    @property
    def state(self) -> StreamState:
        return self._state

    # ------------------------------------------------------------------
    def subscribe_message(self) -> dict:
        timestamp = int(time.time() * 1000)
        window = self.signer.window_ms
        signature = self.signer.sign("subscribe", {}, timestamp, window)
        return {
            "method": "SUBSCRIBE",
            "params": [ORDER_UPDATE_CHANNEL],
            "signature": [self.api_key, signature, str(timestamp), str(window)],
        }

    async def _connect(self):
        return await websockets.connect(self.ws_url)

    async def _subscribe(self, ws) -> None:
        await ws.send(json.dumps(self.subscribe_message()))

    # ------------------------------------------------------------------
    async def start(self, callback: Callable[[OrderUpdateEvent], Any]) -> None:
        """(Re)open the socket and subscribe, delivering events to ``callback``."""
        await self._teardown()
        self._callback = callback
        self._stopped = False
        self._generation += 1
        self._task = asyncio.create_task(self._run(self._generation))

    async def stop(self) -> None:
        self._stopped = True
        await self._teardown()
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._pending.clear()

    async def _teardown(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        task, self._task = self._task, None
        # Invalidate the running socket before cancelling it so its close
        # handler does not schedule a reconnect of its own.
        self._generation += 1
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._ws = None
        self._state = StreamState.DISCONNECTED

    # ------------------------------------------------------------------
    async def _run(self, generation: int) -> None:
        self._state = StreamState.CONNECTING
        ws = None
        try:
            ws = await self._connect()
            self._ws = ws
            self.logger.info("websocket opened | url=%s", self.ws_url)
            await self._subscribe(ws)
            self._state = StreamState.SUBSCRIBED
            async for raw in ws:
                if generation != self._generation:
                    return
                await self._on_message(ws, raw)
            raise StreamDisconnected(f"socket closed by peer | url={self.ws_url}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._on_error(exc)
        finally:
            if ws is not None:
                with contextlib.suppress(Exception):
                    await ws.close()
            self._on_close(generation)

    def _on_error(self, exc: BaseException) -> None:
        # A close always follows, so reconnecting is left to ``_on_close``.
        self.logger.error("websocket error | url=%s error=%r", self.ws_url, exc)
        self._state = StreamState.DISCONNECTED

    def _on_close(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._ws = None
        self._state = StreamState.DISCONNECTED
        if self._stopped:
            return
        self.logger.warning(
            "websocket closed | reconnect_in=%.1fs", self.reconnect_delay
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopped or self._callback is None:
            return
        task = asyncio.ensure_future(self.start(self._callback))
        self._track(task)

    async def _on_message(self, ws, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            self.logger.error("unknown event | raw=%s", raw)
            return
        if not isinstance(message, dict):
            self.logger.error("unknown event | raw=%s", raw)
            return

        data = message.get("data")
        error = message.get("error")
        if isinstance(data, dict) and data.get("e") in ORDER_EVENT_TYPES:
            self._dispatch(OrderUpdateEvent.from_payload(data))
        elif isinstance(error, dict) and error.get("message") == SIGNATURE_EXPIRED:
            self.logger.warning("subscribe orderUpdate failed | reason=signature expired; retrying")
            await self._subscribe(ws)
        else:
            self.logger.error("unknown event | raw=%s", raw)

    def _dispatch(self, event: OrderUpdateEvent) -> None:
        if self._callback is None:
            return
        try:
            result = self._callback(event)
        except Exception:
            self.logger.exception("order update callback failed | kind=%s", event.kind.value)
            return
        if inspect.isawaitable(result):
            self._track(asyncio.ensure_future(result))

    def _track(self, task: asyncio.Future) -> None:
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("order update handler failed", exc_info=exc)
