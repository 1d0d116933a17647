import asyncio
import json

import pytest

from lamdera_client.connection import ConnectionEvent, LamderaSocket, NotOpenError
from lamdera_client.state import ReadyState
from lamdera_wire.envelope import create_transport_message, parse_transport_message
from tests.conftest import EventLog, handshake


def _messages(transport):
    return [parse_transport_message(raw).message for raw in transport.sent_messages]


def test_initial_open_waits_for_randomized_delay(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=1000)
    assert ws.ready_state == ReadyState.CONNECTING
    assert recorder.transports == []
    first = scheduler.pending()[0]
    assert 0 <= first.due <= 1.0

    scheduler.advance(1.0)
    assert len(recorder.transports) == 1
    transport = recorder.current
    assert transport.opened
    assert transport.listener is ws
    assert transport.headers == {"Cookie": ws.cookie}
    assert transport.url == "ws://localhost:8000/_w"


def test_cookie_header_can_be_disabled(make_socket, scheduler, recorder):
    make_socket(initial_delay_max=0, send_cookie_header=False)
    scheduler.advance(0)
    assert recorder.current.headers is None


def test_basic_handshake(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)

    handshake(recorder.current, "conn-1")

    assert ws.ready_state == ReadyState.OPEN
    assert ws.connection_id == "conn-1"
    assert ws.client_id == "conn-1"
    assert len(events[ConnectionEvent.OPEN]) == 1
    setups = events[ConnectionEvent.SETUP]
    assert len(setups) == 1
    assert (setups[0].client_id, setups[0].leader_id, setups[0].is_leader) == ("conn-1", None, False)


def test_repeat_handshake_is_a_no_op(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    handshake(recorder.current, "conn-1")

    recorder.current.simulate_message({"t": "p", "c": "conn-2"})

    assert ws.connection_id == "conn-1"
    assert len(events[ConnectionEvent.OPEN]) == 1
    assert len(events[ConnectionEvent.SETUP]) == 1


def test_protocol_message_without_connection_id_is_ignored(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    recorder.current.simulate_open()
    recorder.current.simulate_message({"t": "p"})
    assert ws.connection_id is None
    assert events[ConnectionEvent.SETUP] == []


def test_queued_sends_flush_in_order_before_new_sends(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    ws.send("a")
    ws.send("b")
    scheduler.advance(0)
    transport = recorder.current
    assert transport.sent_messages == []

    transport.simulate_open()
    ws.send("c")

    assert _messages(transport) == ["a", "b", "c"]


def test_queued_envelope_uses_session_id_before_handshake(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0, session_id="my-session")
    ws.send("early")
    scheduler.advance(0)
    recorder.current.simulate_open()
    frame = recorder.current.sent_frames()[0]
    assert frame["s"] == "my-session"
    assert frame["c"] == "my-session"


def test_send_after_handshake_uses_connection_id(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0, session_id="my-session", discriminant=2)
    scheduler.advance(0)
    handshake(recorder.current, "conn-7")
    ws.send("hello")
    raw = recorder.current.sent_messages[-1]
    assert json.loads(raw)["c"] == "conn-7"
    assert parse_transport_message(raw, 2).message == "hello"


def test_message_delivery(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    handshake(recorder.current)

    recorder.current.simulate_message(create_transport_message("s", "conn-1", "from backend"))

    [event] = events[ConnectionEvent.MESSAGE]
    assert event.data == "from backend"
    assert event.type == "message"
    assert event.target is ws
    assert event.origin == "ws://localhost:8000"
    assert event.last_event_id == ""
    assert event.source is None
    assert event.ports == ()


def test_unparseable_message_is_not_delivered(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    handshake(recorder.current)
    recorder.current.simulate_message("{broken")
    assert events[ConnectionEvent.MESSAGE] == []
    assert events[ConnectionEvent.ERROR] == []
    assert ws.ready_state == ReadyState.OPEN


def test_election_of_someone_else_only_records_leader(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    handshake(recorder.current, "conn-1")

    recorder.current.simulate_message({"t": "e", "l": "conn-2"})

    assert ws.leader_id == "conn-2"
    assert ws.ready_state == ReadyState.OPEN
    assert ws.retry_count == 0
    assert len(recorder.transports) == 1
    assert not recorder.current.closed
    assert events[ConnectionEvent.LEADER_DISCONNECT] == []


def test_election_before_handshake_never_makes_us_leader(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    scheduler.advance(0)
    recorder.current.simulate_open()
    recorder.current.simulate_message({"t": "e", "l": "conn-1"})
    assert ws.leader_id == "conn-1"
    assert ws.retry_count == 0
    assert not recorder.current.closed


def test_election_to_self_starts_leader_retry(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    old = recorder.current
    old_session = ws.session_id
    handshake(old, "conn-1")
    ws.send("queued-ok")

    old.simulate_message({"t": "e", "l": "conn-1"})

    assert ws.retry_count == 1
    assert ws.ready_state == ReadyState.CONNECTING
    assert old.closed
    assert old.listener is None
    assert ws.connection_id is None and ws.client_id is None and ws.leader_id is None
    assert events[ConnectionEvent.CLOSE] == []

    [retry] = [t for t in scheduler.pending() if t.callback == ws._reconnect_with_new_session]
    assert 2.0 <= retry.due - scheduler.now <= 3.0

    scheduler.advance(3.0)
    assert len(recorder.transports) == 2
    new = recorder.current
    assert ws.session_id != old_session
    assert ws.cookie == f"sid={ws.session_id}"
    assert new.headers == {"Cookie": ws.cookie}

    handshake(new, "conn-5")
    assert ws.retry_count == 0
    assert ws.client_id == "conn-5"
    setups = events[ConnectionEvent.SETUP]
    assert [s.client_id for s in setups] == ["conn-1", "conn-5"]


def test_stale_transport_events_are_ignored_after_retry(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    old = recorder.current
    handshake(old, "conn-1")
    old.simulate_message({"t": "e", "l": "conn-1"})

    # the old socket finishing its close must not reach the application
    old.simulate_close(1000, "bye")
    assert events[ConnectionEvent.CLOSE] == []
    assert ws.ready_state == ReadyState.CONNECTING


def test_sends_are_dropped_while_retrying(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    scheduler.advance(0)
    handshake(recorder.current, "conn-1")
    recorder.current.simulate_message({"t": "e", "l": "conn-1"})

    ws.send("dropped")
    scheduler.advance(3.0)
    new = recorder.current
    new.simulate_open()
    ws.send("also dropped, no handshake yet")
    assert new.sent_messages == []

    new.simulate_message({"t": "p", "c": "conn-2"})
    ws.send("delivered")
    assert _messages(new) == ["delivered"]


def test_retry_exhaustion_after_consecutive_promotions(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0, max_retries=2)
    events = EventLog(ws)
    scheduler.advance(0)

    for attempt, conn in enumerate(["conn-1", "conn-2", "conn-3"], start=1):
        handshake(recorder.current, conn)
        recorder.current.simulate_message({"t": "e", "l": conn})
        assert ws.retry_count == attempt
        scheduler.advance(60)

    assert ws.ready_state == ReadyState.CLOSED
    [exhausted] = events[ConnectionEvent.LEADER_DISCONNECT]
    assert exhausted.retry_count == 3
    assert exhausted.target is ws
    assert len(recorder.transports) == 3

    scheduler.advance(600)
    assert len(recorder.transports) == 3
    assert len(events[ConnectionEvent.LEADER_DISCONNECT]) == 1
    with pytest.raises(NotOpenError):
        ws.send("too late")


def test_surviving_an_election_resets_the_streak(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0, max_retries=1)
    events = EventLog(ws)
    scheduler.advance(0)

    handshake(recorder.current, "conn-1")
    recorder.current.simulate_message({"t": "e", "l": "conn-1"})
    scheduler.advance(60)
    handshake(recorder.current, "conn-2")
    recorder.current.simulate_message({"t": "e", "l": "conn-9"})
    recorder.current.simulate_message({"t": "e", "l": "conn-2"})

    assert ws.retry_count == 1
    assert events[ConnectionEvent.LEADER_DISCONNECT] == []
    scheduler.advance(60)
    assert len(recorder.transports) == 3


def test_zero_max_retries_gives_up_immediately(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0, max_retries=0)
    events = EventLog(ws)
    scheduler.advance(0)
    handshake(recorder.current, "conn-1")
    recorder.current.simulate_message({"t": "e", "l": "conn-1"})
    assert ws.ready_state == ReadyState.CLOSED
    assert events[ConnectionEvent.LEADER_DISCONNECT][0].retry_count == 1
    scheduler.advance(60)
    assert len(recorder.transports) == 1


def test_send_when_closed_raises(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    scheduler.advance(0)
    handshake(recorder.current)
    recorder.current.simulate_close(1000, "")
    with pytest.raises(NotOpenError) as excinfo:
        ws.send("x")
    assert excinfo.value.ready_state == ReadyState.CLOSED


def test_send_while_closing_raises(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    scheduler.advance(0)
    handshake(recorder.current)
    ws.close()
    with pytest.raises(NotOpenError) as excinfo:
        ws.send("x")
    assert excinfo.value.ready_state == ReadyState.CLOSING


def test_close_passes_code_and_reason(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    handshake(recorder.current)

    ws.close(4000, "done")
    assert ws.ready_state == ReadyState.CLOSING
    assert (recorder.current.close_code, recorder.current.close_reason) == (4000, "done")

    recorder.current.simulate_close(4000, "done")
    assert ws.ready_state == ReadyState.CLOSED
    [closed] = events[ConnectionEvent.CLOSE]
    assert (closed.code, closed.reason) == (4000, "done")


def test_close_before_first_open_cancels_it(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=1000)
    ws.close()
    assert ws.ready_state == ReadyState.CLOSED
    scheduler.advance(5)
    assert recorder.transports == []


def test_close_cancels_pending_retry(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    scheduler.advance(0)
    handshake(recorder.current, "conn-1")
    recorder.current.simulate_message({"t": "e", "l": "conn-1"})

    ws.close()
    assert ws.ready_state == ReadyState.CLOSED
    scheduler.advance(60)
    assert len(recorder.transports) == 1


def test_close_is_idempotent(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    scheduler.advance(0)
    handshake(recorder.current)
    ws.close()
    ws.close()
    recorder.current.simulate_close()
    ws.close()
    assert ws.ready_state == ReadyState.CLOSED


def test_transport_error_is_forwarded_without_state_change(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    events = EventLog(ws)
    scheduler.advance(0)
    handshake(recorder.current)
    boom = ConnectionError("boom")

    recorder.current.simulate_error(boom)

    [event] = events[ConnectionEvent.ERROR]
    assert event.error is boom
    assert ws.ready_state == ReadyState.OPEN


def test_transport_factory_failure_closes_and_reports(scheduler, rng):
    def failing_factory(url, protocols, headers):
        raise OSError("no network")

    ws = LamderaSocket("ws://example/_w", options=None, transport_factory=failing_factory,
                       scheduler=scheduler, rng=rng)
    events = EventLog(ws)
    scheduler.advance(1.0)
    assert ws.ready_state == ReadyState.CLOSED
    assert isinstance(events[ConnectionEvent.ERROR][0].error, OSError)


def test_status_sync_mirrors_transport_state(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0, status_sync_interval=100)
    scheduler.advance(0)
    transport = recorder.current
    transport.ready_state = ReadyState.OPEN
    transport.buffered_amount = 42

    scheduler.advance(0.1)
    assert ws.ready_state == ReadyState.OPEN
    assert ws.buffered_amount == 42

    transport.ready_state = ReadyState.CLOSED
    scheduler.advance(0.1)
    assert ws.ready_state == ReadyState.CLOSED
    assert ws._sync_handle is None
    assert scheduler.pending() == []


def test_handler_can_be_removed(make_socket, scheduler, recorder):
    ws = make_socket(initial_delay_max=0)
    seen = []
    ws.on("setup", seen.append)
    ws.on(ConnectionEvent.SETUP, None)
    scheduler.advance(0)
    handshake(recorder.current)
    assert seen == []


@pytest.mark.asyncio
async def test_coroutine_handlers_are_scheduled(scheduler, recorder, rng):
    ws = LamderaSocket("ws://localhost/_w", transport_factory=recorder, scheduler=scheduler, rng=rng)
    received = asyncio.Event()

    async def on_setup(event):
        received.set()

    ws.on(ConnectionEvent.SETUP, on_setup)
    scheduler.advance(1.0)
    handshake(recorder.current)
    await asyncio.wait_for(received.wait(), timeout=1.0)
