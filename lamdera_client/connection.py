from __future__ import annotations
import asyncio
import inspect
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Set, Tuple, Union
from urllib.parse import urlsplit

from lamdera_client.config import ConnectionOptions
from lamdera_client.scheduler import LoopScheduler, Scheduler, TimerHandle
from lamdera_client.state import ConnectionState, ReadyState
from lamdera_client.transport import Transport, WebSocketTransport
from lamdera_wire.envelope import (
    ElectionEnvelope,
    ErrorEnvelope,
    MessageEnvelope,
    ProtocolEnvelope,
    create_transport_message,
    parse_transport_message,
)
from lamdera_wire.log import get_logger, log_wire_message, set_level, truncate
from lamdera_wire.session import create_session_cookie, generate_session_id

logger = get_logger(__name__)

TransportFactory = Callable[[str, Sequence[str], Optional[Dict[str, str]]], Transport]
EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class ConnectionEvent(str, Enum):
    """Notifications a LamderaSocket delivers to the application."""
    OPEN = "open"                            # handshake completed
    MESSAGE = "message"
    CLOSE = "close"
    ERROR = "error"
    SETUP = "setup"                          # once per transport instance
    LEADER_DISCONNECT = "leaderdisconnect"   # retry ceiling exceeded, terminal


class NotOpenError(RuntimeError):
    """Raised by send() when the socket is closing or closed."""

    def __init__(self, ready_state: ReadyState) -> None:
        super().__init__(f"WebSocket is not open: readyState {int(ready_state)} ({ready_state.name})")
        self.ready_state = ready_state


@dataclass
class OpenEvent:
    client_id: Optional[str]
    target: Any = None
    type: str = "open"


@dataclass
class MessageEvent:
    """Shaped like a browser MessageEvent so handlers stay transport agnostic."""
    data: str
    target: Any = None
    origin: str = ""
    last_event_id: str = ""
    source: Any = None
    ports: Tuple[Any, ...] = ()
    type: str = "message"


@dataclass
class CloseEvent:
    code: int
    reason: str = ""
    target: Any = None
    type: str = "close"


@dataclass
class ErrorEvent:
    error: BaseException
    target: Any = None
    type: str = "error"


@dataclass
class SetupEvent:
    client_id: str
    leader_id: Optional[str]
    is_leader: bool = False


@dataclass
class LeaderDisconnectEvent:
    retry_count: int
    target: Any = None
    type: str = "leaderdisconnect"


@dataclass
class LeaderStatus:
    previous_leader: Optional[str]
    new_leader: str
    i_am_leader: bool
    action: str = field(init=False)

    def __post_init__(self) -> None:
        self.action = "disconnect" if self.i_am_leader else "continue"


def default_transport_factory(url: str, protocols: Sequence[str],
                              headers: Optional[Dict[str, str]]) -> Transport:
    return WebSocketTransport(url, protocols, headers)


class LamderaSocket:
    """
    WebSocket client that steps away whenever the server elects it leader.

    Application messages are framed and wrapped in the transport envelope on
    the way out and unwrapped on the way in. When an election names this
    client, the transport is torn down and a new one is opened under a fresh
    session id after a backoff delay, up to ``max_retries`` consecutive times.

    All state changes happen on transport callbacks or scheduler callbacks, so
    a single event loop drives everything.
    """

    CONNECTING = ReadyState.CONNECTING
    OPEN = ReadyState.OPEN
    CLOSING = ReadyState.CLOSING
    CLOSED = ReadyState.CLOSED

    def __init__(
        self,
        url: str,
        protocols: Optional[Sequence[str]] = None,
        options: Optional[ConnectionOptions] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        scheduler: Optional[Scheduler] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._url = url
        self._protocols = list(protocols or [])
        self.options = options or ConnectionOptions()
        self.retry_policy = self.options.retry_policy()
        self._transport_factory = transport_factory or default_transport_factory
        self._scheduler = scheduler or LoopScheduler()
        self._rng = rng or random.Random()
        if self.options.debug:
            set_level("DEBUG")

        session_id, cookie = self.options.resolve_identity(self._rng)
        self._state = ConnectionState(session_id=session_id, cookie=cookie)

        self.handlers: Dict[ConnectionEvent, EventHandler] = {}
        self._transport: Optional[Transport] = None
        self._init_handle: Optional[TimerHandle] = None
        self._retry_handle: Optional[TimerHandle] = None
        self._sync_handle: Optional[TimerHandle] = None
        self._background_tasks: Set[asyncio.Future] = set()

        # A random start delay makes it less likely that we are the first peer
        # to connect, and so the first one the server elects.
        initial_delay = self._rng.uniform(0, self.options.initial_delay_max)
        self._debug_log("Initial connection delay: %.0fms to reduce leadership probability", initial_delay)
        self._init_handle = self._scheduler.call_later(initial_delay / 1000, self._initial_open)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def protocols(self) -> Sequence[str]:
        return tuple(self._protocols)

    @property
    def ready_state(self) -> ReadyState:
        return self._state.ready_state

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def cookie(self) -> str:
        return self._state.cookie

    @property
    def connection_id(self) -> Optional[str]:
        return self._state.connection_id

    @property
    def client_id(self) -> Optional[str]:
        return self._state.client_id

    @property
    def leader_id(self) -> Optional[str]:
        return self._state.leader_id

    @property
    def retry_count(self) -> int:
        return self._state.retry_count

    @property
    def buffered_amount(self) -> int:
        return self._state.buffered_amount

    def on(self, event: Union[ConnectionEvent, str], handler: Optional[EventHandler]) -> None:
        """Register (or with None, remove) the handler for one event"""
        event = ConnectionEvent(event)
        if handler is None:
            self.handlers.pop(event, None)
        else:
            self.handlers[event] = handler

    def send(self, data: str) -> None:
        """
        Send one application message.

        Dropped silently while a leader retry is in flight, queued while
        connecting, written immediately when open.

        Raises:
            NotOpenError: the socket is closing or closed.
        """
        state = self._state
        if self.retry_policy.is_retrying(state.retry_count):
            self._debug_log("Blocking send - retrying connection due to leader role")
            return

        if state.ready_state == ReadyState.CONNECTING:
            self._debug_log("Queuing message while connecting: %s", data)
            state.message_queue.append(self._wrap(data))
            return

        if state.ready_state != ReadyState.OPEN or self._transport is None:
            raise NotOpenError(state.ready_state)

        transport_message = self._wrap(data)
        self._debug_log("Sending message: %s", data)
        self._debug_log("   Transport format: %s", transport_message)
        self._transport.send(transport_message)

    def close(self, code: int = 1000, reason: str = "") -> None:
        """Start a deliberate shutdown. Safe to call repeatedly."""
        self._cancel_timer("_init_handle")
        self._cancel_timer("_retry_handle")
        self._state.leader_streak = 0

        if self._state.ready_state in (ReadyState.CLOSING, ReadyState.CLOSED):
            return

        self._state.ready_state = ReadyState.CLOSING
        if self._transport is not None:
            self._transport.close(code, reason)
        else:
            self._state.ready_state = ReadyState.CLOSED
            self._cancel_timer("_sync_handle")

    # ------------------------------------------------------------------
    # Transport lifecycle
    # ------------------------------------------------------------------

    def _initial_open(self) -> None:
        self._init_handle = None
        self._open_transport()

    def _open_transport(self) -> None:
        headers = {"Cookie": self._state.cookie} if self.options.send_cookie_header else None
        try:
            transport = self._transport_factory(self._url, self._protocols, headers)
            transport.bind(self)
            self._transport = transport
            transport.open()
        except Exception as e:
            logger.error("Failed to create transport for %s: %s", self._url, e)
            self._transport = None
            self._state.ready_state = ReadyState.CLOSED
            self._emit(ConnectionEvent.ERROR, ErrorEvent(error=e, target=self))
            return

        self._start_status_sync()

    def _disconnect_internal(self) -> None:
        """Drop the current transport without letting it report anything back."""
        self._cancel_timer("_retry_handle")
        self._cancel_timer("_sync_handle")

        transport, self._transport = self._transport, None
        if transport is not None:
            transport.unbind()
            transport.close()

        state = self._state
        state.is_ready = False
        state.message_queue.clear()
        state.reset_identity()

    def _start_status_sync(self) -> None:
        self._cancel_timer("_sync_handle")
        self._sync_handle = self._scheduler.call_later(
            self.options.status_sync_interval / 1000, self._sync_ready_state)

    def _sync_ready_state(self) -> None:
        self._sync_handle = None
        if self._transport is not None:
            self._state.ready_state = self._transport.ready_state
            self._state.buffered_amount = self._transport.buffered_amount
        if self._state.ready_state != ReadyState.CLOSED:
            self._start_status_sync()

    def _cancel_timer(self, attr: str) -> None:
        handle = getattr(self, attr)
        if handle is not None:
            handle.cancel()
            setattr(self, attr, None)

    # ------------------------------------------------------------------
    # TransportListener
    # ------------------------------------------------------------------

    def on_transport_open(self) -> None:
        self._debug_log("Raw WebSocket opened, waiting for Lamdera handshake...")
        state = self._state
        state.ready_state = ReadyState.OPEN
        state.is_ready = True
        for transport_message in state.drain_queue():
            self._transport.send(transport_message)

    def on_transport_message(self, raw: Union[str, bytes]) -> None:
        self._debug_log("Raw message received: %s", raw)
        parsed = parse_transport_message(raw, self.options.discriminant, self.options.debug)
        if self.options.debug and isinstance(getattr(parsed, "data", None), dict):
            log_wire_message(logger, "debug", "Control envelope:", envelope=parsed.data,
                             max_chars=self.options.debug_max_chars)
        else:
            self._debug_log("Parsed message: %s", parsed)

        if isinstance(parsed, ProtocolEnvelope):
            self._handle_protocol(parsed)
        elif isinstance(parsed, ElectionEnvelope):
            self._handle_election(parsed)
        elif isinstance(parsed, MessageEnvelope):
            self._handle_message(parsed)
        elif isinstance(parsed, ErrorEnvelope):
            logger.warning("Message parsing error: %s", parsed.error)

    def on_transport_close(self, code: int, reason: str) -> None:
        self._state.ready_state = ReadyState.CLOSED
        self._state.is_ready = False
        self._cancel_timer("_sync_handle")
        logger.info("Connection closed (code=%s)", code, extra={"connection_id": self._state.connection_id})
        self._emit(ConnectionEvent.CLOSE, CloseEvent(code=code, reason=reason, target=self))

    def on_transport_error(self, error: BaseException) -> None:
        self._emit(ConnectionEvent.ERROR, ErrorEvent(error=error, target=self))

    # ------------------------------------------------------------------
    # Inbound envelopes
    # ------------------------------------------------------------------

    def _handle_protocol(self, parsed: ProtocolEnvelope) -> None:
        self._debug_log("Protocol message received")
        if not parsed.connection_id:
            self._debug_log("   No connectionId in protocol message")
            return

        state = self._state
        if state.connection_id:
            return

        self._debug_log("Initial Lamdera handshake, connection id %s", parsed.connection_id)
        state.connection_id = parsed.connection_id
        state.client_id = parsed.connection_id
        self._cancel_timer("_retry_handle")

        if state.retry_count > 0:
            logger.info("Reconnected after leader retry, resetting retry count",
                        extra={"connection_id": state.connection_id})
            state.retry_count = 0

        self._emit(ConnectionEvent.OPEN, OpenEvent(client_id=state.client_id, target=self))

        if not state.setup_called:
            state.setup_called = True
            self._emit(ConnectionEvent.SETUP, SetupEvent(
                client_id=state.client_id,
                leader_id=state.leader_id,
                is_leader=False,
            ))

    def _handle_election(self, parsed: ElectionEnvelope) -> None:
        self._debug_log("Leader election: new leader %s, my client id %s", parsed.leader_id, self._state.client_id)
        status = self._evaluate_leader_status(parsed.leader_id)
        if status is not None:
            self._apply_leader_status(status)

    def _evaluate_leader_status(self, new_leader_id: Optional[str]) -> Optional[LeaderStatus]:
        if not new_leader_id:
            return None
        client_id = self._state.client_id
        return LeaderStatus(
            previous_leader=self._state.leader_id,
            new_leader=new_leader_id,
            i_am_leader=client_id is not None and client_id == new_leader_id,
        )

    def _apply_leader_status(self, status: LeaderStatus) -> bool:
        """Record the leader; returns True when this client stepped away."""
        self._debug_log("Leader status evaluation: %s", status)
        self._state.leader_id = status.new_leader

        if status.i_am_leader:
            logger.warning("Detected leader role, disconnecting...",
                           extra={"connection_id": self._state.connection_id})
            self._handle_leader_disconnection()
            return True

        if self._state.client_id is not None:
            self._state.leader_streak = 0
        return False

    def _handle_leader_disconnection(self) -> None:
        state = self._state
        state.leader_streak += 1
        state.retry_count = state.leader_streak
        logger.info("Leader disconnection attempt %d/%d", state.retry_count, self.retry_policy.max_retries)

        state.ready_state = ReadyState.CONNECTING
        self._disconnect_internal()

        if self.retry_policy.should_retry(state.retry_count):
            retry_delay = self.retry_policy.delay(state.retry_count, self._rng)
            logger.info("Retrying connection in %.1fs with new session...", retry_delay / 1000)
            self._retry_handle = self._scheduler.call_later(retry_delay / 1000, self._reconnect_with_new_session)
        else:
            logger.warning("Max retries (%d) exceeded, giving up", self.retry_policy.max_retries)
            state.ready_state = ReadyState.CLOSED
            self._emit(ConnectionEvent.LEADER_DISCONNECT,
                       LeaderDisconnectEvent(retry_count=state.retry_count, target=self))

    def _reconnect_with_new_session(self) -> None:
        self._retry_handle = None
        state = self._state
        state.session_id = generate_session_id(self._rng)
        state.cookie = create_session_cookie(state.session_id)
        state.setup_called = False
        self._debug_log("New session ID: %s", state.session_id)
        self._open_transport()

    def _handle_message(self, parsed: MessageEnvelope) -> None:
        if ConnectionEvent.MESSAGE not in self.handlers:
            return
        self._debug_log("Application message: %s", parsed.message)
        self._emit(ConnectionEvent.MESSAGE, MessageEvent(
            data=parsed.message,
            target=self,
            origin=self._origin(),
        ))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _wrap(self, data: str) -> str:
        return create_transport_message(
            self._state.session_id, self._state.connection_id, data, self.options.discriminant)

    def _origin(self) -> str:
        parts = urlsplit(self._url)
        return f"{parts.scheme}://{parts.netloc}" if parts.netloc else ""

    def _emit(self, event: ConnectionEvent, payload: Any) -> None:
        handler = self.handlers.get(event)
        if handler is None:
            return
        result = handler(payload)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    def _debug_log(self, msg: str, *args: Any) -> None:
        if not self.options.debug:
            return
        max_chars = self.options.debug_max_chars
        if max_chars:
            args = tuple(arg if isinstance(arg, (int, float)) else truncate(str(arg), max_chars)
                         for arg in args)
        logger.debug(msg, *args, extra={"session_id": self._state.session_id,
                                        "connection_id": self._state.connection_id})


async def create_lamdera_socket(url: str, session_id: Optional[str] = None, **kwargs: Any) -> LamderaSocket:
    """Create a socket bound to the running loop with a given (or generated) session id"""
    options = ConnectionOptions(session_id=session_id or generate_session_id(), **kwargs)
    return LamderaSocket(url, [], options)
