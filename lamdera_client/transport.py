from __future__ import annotations
import asyncio
from contextlib import suppress
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple, Union

import websockets

from lamdera_client.state import ReadyState
from lamdera_wire.log import get_logger

logger = get_logger(__name__)

# Close code reported when the socket went away without a close frame
ABNORMAL_CLOSURE = 1006


class TransportListener(Protocol):
    def on_transport_open(self) -> None: ...

    def on_transport_message(self, raw: Union[str, bytes]) -> None: ...

    def on_transport_close(self, code: int, reason: str) -> None: ...

    def on_transport_error(self, error: BaseException) -> None: ...


class Transport(Protocol):
    """A duplex socket that reports its events to one bound listener."""

    ready_state: ReadyState

    @property
    def buffered_amount(self) -> int: ...

    def bind(self, listener: TransportListener) -> None: ...

    def unbind(self) -> None: ...

    def open(self) -> None: ...

    def send(self, data: str) -> None: ...

    def close(self, code: int = 1000, reason: str = "") -> None: ...


class WebSocketTransport:
    """
    Transport backed by the websockets asyncio client.

    open() starts a background task that connects, dispatches inbound frames to
    the listener and drains a FIFO outbox, so send() never blocks the caller.
    """

    def __init__(
        self,
        url: str,
        protocols: Optional[Sequence[str]] = None,
        headers: Optional[Dict[str, str]] = None,
        *,
        ping_interval: Optional[float] = 15,
        ping_timeout: Optional[float] = 45,
    ) -> None:
        self.url = url
        self.protocols: List[str] = list(protocols or [])
        self.headers = dict(headers or {})
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.ready_state = ReadyState.CONNECTING
        self.websocket: Optional[websockets.ClientConnection] = None
        self._listener: Optional[TransportListener] = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._queued_bytes = 0
        self._close_requested: Optional[Tuple[int, str]] = None
        self._task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def buffered_amount(self) -> int:
        return self._queued_bytes

    def bind(self, listener: TransportListener) -> None:
        self._listener = listener

    def unbind(self) -> None:
        self._listener = None

    def open(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def send(self, data: str) -> None:
        self._queued_bytes += len(data)
        self._outbox.put_nowait(data)

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self.ready_state in (ReadyState.CLOSING, ReadyState.CLOSED):
            return
        self.ready_state = ReadyState.CLOSING
        self._close_requested = (code, reason)
        if self.websocket is not None:
            self._track_background_task(asyncio.ensure_future(self.websocket.close(code=code, reason=reason)))

    def _track_background_task(self, task: asyncio.Future) -> None:
        """Keep a strong reference to background tasks until completion."""
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _emit(self, name: str, *args) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            getattr(listener, name)(*args)
        except Exception as e:
            logger.error("Listener failed handling %s: %s", name, e, exc_info=True)

    async def _run(self) -> None:
        try:
            self.websocket = await websockets.connect(
                self.url,
                additional_headers=self.headers or None,
                subprotocols=self.protocols or None,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
            )
        except Exception as e:
            logger.warning("Failed to connect to %s: %s", self.url, e)
            self.ready_state = ReadyState.CLOSED
            self._emit("on_transport_error", e)
            self._emit("on_transport_close", ABNORMAL_CLOSURE, str(e))
            return

        if self._close_requested is not None:
            code, reason = self._close_requested
            await self.websocket.close(code=code, reason=reason)
        else:
            self.ready_state = ReadyState.OPEN
            self._emit("on_transport_open")

        writer = asyncio.create_task(self._drain_outbox())
        try:
            async for raw in self.websocket:
                self._emit("on_transport_message", raw)
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning("Connection to %s closed with error: %s", self.url, e)
            self._emit("on_transport_error", e)
        finally:
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer

        self.ready_state = ReadyState.CLOSED
        code = self.websocket.close_code
        self._emit("on_transport_close",
                   ABNORMAL_CLOSURE if code is None else code,
                   self.websocket.close_reason or "")

    async def _drain_outbox(self) -> None:
        while True:
            data = await self._outbox.get()
            self._queued_bytes -= len(data)
            try:
                await self.websocket.send(data)
            except websockets.exceptions.ConnectionClosed:
                logger.warning("Connection closed while sending %d chars", len(data))
                return
