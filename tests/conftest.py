import heapq
import itertools
import json
import logging
import random
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from lamdera_client.config import ConnectionOptions
from lamdera_client.connection import ConnectionEvent, LamderaSocket
from lamdera_client.state import ReadyState
from lamdera_wire import log as wire_log


class FakeTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Virtual clock: timers only fire when a test calls advance()."""

    def __init__(self) -> None:
        self.now = 0.0
        self._seq = itertools.count()
        self._timers: list = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.now + delay, callback)
        heapq.heappush(self._timers, (timer.due, next(self._seq), timer))
        return timer

    def pending(self) -> List[FakeTimer]:
        return sorted((t for _, _, t in self._timers if not t.cancelled), key=lambda t: t.due)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._timers and self._timers[0][0] <= target:
            due, _, timer = heapq.heappop(self._timers)
            self.now = due
            if not timer.cancelled:
                timer.callback()
        self.now = target


class FakeTransport:
    def __init__(self, url: str, protocols: Sequence[str], headers: Optional[Dict[str, str]]) -> None:
        self.url = url
        self.protocols = list(protocols)
        self.headers = headers
        self.ready_state = ReadyState.CONNECTING
        self.buffered_amount = 0
        self.listener = None
        self.opened = False
        self.sent_messages: List[str] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None

    def bind(self, listener) -> None:
        self.listener = listener

    def unbind(self) -> None:
        self.listener = None

    def open(self) -> None:
        self.opened = True

    def send(self, data: str) -> None:
        self.sent_messages.append(data)

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self.ready_state = ReadyState.CLOSING

    # Drive events as the server / network would

    def simulate_open(self) -> None:
        self.ready_state = ReadyState.OPEN
        if self.listener:
            self.listener.on_transport_open()

    def simulate_message(self, payload) -> None:
        raw = payload if isinstance(payload, (str, bytes)) else json.dumps(payload)
        if self.listener:
            self.listener.on_transport_message(raw)

    def simulate_close(self, code: int = 1000, reason: str = "") -> None:
        self.ready_state = ReadyState.CLOSED
        if self.listener:
            self.listener.on_transport_close(code, reason)

    def simulate_error(self, error: BaseException) -> None:
        if self.listener:
            self.listener.on_transport_error(error)

    def sent_frames(self) -> List[dict]:
        return [json.loads(m) for m in self.sent_messages]


class TransportRecorder:
    """transport_factory that remembers every transport it created"""

    def __init__(self) -> None:
        self.transports: List[FakeTransport] = []

    def __call__(self, url, protocols, headers) -> FakeTransport:
        transport = FakeTransport(url, protocols, headers)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


class EventLog:
    def __init__(self, ws: LamderaSocket) -> None:
        self.events: Dict[ConnectionEvent, list] = {event: [] for event in ConnectionEvent}
        for event in ConnectionEvent:
            ws.on(event, self.events[event].append)

    def __getitem__(self, event: ConnectionEvent) -> list:
        return self.events[event]


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def recorder() -> TransportRecorder:
    return TransportRecorder()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def make_socket(scheduler, recorder, rng):
    def _make(**option_overrides) -> LamderaSocket:
        options = ConnectionOptions(**option_overrides)
        return LamderaSocket("ws://localhost:8000/_w", [], options,
                             transport_factory=recorder, scheduler=scheduler, rng=rng)
    return _make


def handshake(transport: FakeTransport, connection_id: str = "conn-1") -> None:
    transport.simulate_open()
    transport.simulate_message({"t": "p", "c": connection_id})


class RecordCollector(logging.Handler):
    def __init__(self) -> None:
        super().__init__(logging.DEBUG)
        self.records: List[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def debug_messages(self) -> List[str]:
        return [r.getMessage() for r in self.records if r.levelno == logging.DEBUG]


@pytest.fixture
def log_capture():
    """Attach collectors to project loggers; levels and handlers are restored afterwards."""
    saved = {name: logging.getLogger(name).level for name in wire_log._loggers_configured}
    attached = []

    def _attach(name: str) -> RecordCollector:
        collector = RecordCollector()
        logging.getLogger(name).addHandler(collector)
        attached.append((name, collector))
        return collector

    yield _attach

    for name, collector in attached:
        logging.getLogger(name).removeHandler(collector)
    for name, level in saved.items():
        logging.getLogger(name).setLevel(level)
