"""
Tests for pingback normalization, broadcasting and the agent-side listener.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from dialer.call.broadcast import PingbackBroadcaster, format_sse
from dialer.call.pingback import (
    PingbackEvent,
    PingbackKind,
    classify_event,
    normalize_call_data,
    parse_pingback,
)
from dialer.client import PingbackListener
from dialer.client.stream import parse_sse_data, reconnect_delay


def test_normalize_maps_vendor_aliases():
    """Known aliases land on canonical keys and the original is kept."""
    raw = {"callid": "555", "caller_id": "+1777", "dnis": "+91140", "event_type": "ANSWERED"}

    normalized = normalize_call_data(raw)

    assert normalized["call_id"] == "555"
    assert normalized["CALL_ID"] == "555"
    assert normalized["A_PARTY_NO"] == "+1777"
    assert normalized["B_PARTY_NO"] == "+91140"
    assert normalized["EVENT_TYPE"] == "ANSWERED"
    assert normalized["_original"] == raw
    assert normalized["CALL_START_TIME"]


def test_normalize_defaults_to_incoming_call():
    assert normalize_call_data({"CALL_ID": "1"})["EVENT_TYPE"] == "INCOMING_CALL"


@pytest.mark.parametrize("raw, expected", [
    ({"CALL_ID": "1"}, PingbackKind.INCOMING_CALL),
    ({"CALL_ID": "1", "EVENT_TYPE": "IVR_ROUTED"}, PingbackKind.INCOMING_CALL),
    ({"CALL_ID": "1", "EVENT_TYPE": "ANSWERED"}, PingbackKind.ANSWERED_CALL),
    ({"CALL_ID": "1", "EVENT_TYPE": "B Party Connected"}, PingbackKind.ANSWERED_CALL),
    ({"CALL_ID": "1", "EVENT_TYPE": "DISCONNECTED"}, PingbackKind.MISSED_CALL),
    ({"CALL_ID": "1", "Call_endtime": "2024-01-01 10:00:00"}, PingbackKind.MISSED_CALL),
    ({"CALL_ID": "1", "Call_endtime": "0"}, PingbackKind.INCOMING_CALL),
    ({"CALL_ID": "1", "EVENT_TYPE": "IVR_TIMEOUT"}, PingbackKind.IVR_MISSED_CALL),
    ({"CALL_ID": "1", "EVENT_TYPE": "Call_disconnected"}, PingbackKind.CALL_END),
    ({"CALL_ID": "1", "EVENT_TYPE": "hangup"}, PingbackKind.CALL_END),
])
def test_classify_event(raw, expected):
    assert classify_event(normalize_call_data(raw)) == expected


def test_terminal_kinds():
    assert PingbackKind.CALL_END.is_terminal
    assert PingbackKind.MISSED_CALL.is_terminal
    assert not PingbackKind.ANSWERED_CALL.is_terminal


def test_sse_frame_round_trip():
    """A broadcast frame parses back into the same pingback."""
    event = parse_pingback({"CALL_ID": "42", "EVENT_TYPE": "ANSWERED"})

    frame = format_sse(event)
    parsed = parse_sse_data(frame.strip())

    assert frame.endswith("\n\n")
    assert parsed.kind == PingbackKind.ANSWERED_CALL
    assert parsed.call_id == "42"


def test_parse_sse_ignores_comments_and_garbage():
    assert parse_sse_data(": keepalive") is None
    assert parse_sse_data("data: not-json") is None
    assert parse_sse_data('data: {"type": "unknown"}') is None


@pytest.mark.asyncio
async def test_broadcast_reaches_every_listener():
    broadcaster = PingbackBroadcaster(keepalive_interval=1)
    first = broadcaster.register()
    second = broadcaster.register()

    event = parse_pingback({"CALL_ID": "1"})
    assert broadcaster.broadcast(event) == 2
    assert first.get_nowait() is event
    assert second.get_nowait() is event

    broadcaster.unregister(first)
    assert broadcaster.broadcast(event) == 1


@pytest.mark.asyncio
async def test_stream_yields_preamble_keepalive_and_events():
    """The SSE stream opens, keeps alive and forwards pingbacks."""
    broadcaster = PingbackBroadcaster(keepalive_interval=0.01)
    stream = broadcaster.stream()

    assert await stream.__anext__() == ": connected\n\n"
    assert broadcaster.listener_count == 1
    assert await stream.__anext__() == ": keepalive\n\n"

    event = parse_pingback({"CALL_ID": "9", "EVENT_TYPE": "ANSWERED"})
    broadcaster.broadcast(event)
    frame = await stream.__anext__()
    assert json.loads(frame[len("data: "):])["type"] == "answered_call"

    await stream.aclose()
    assert broadcaster.listener_count == 0


def test_full_listener_queue_drops_instead_of_blocking():
    broadcaster = PingbackBroadcaster(max_queue_size=1)
    queue = broadcaster.register()
    event = parse_pingback({"CALL_ID": "1"})

    assert broadcaster.broadcast(event) == 1
    assert broadcaster.broadcast(event) == 0
    assert queue.qsize() == 1


def test_listener_feeds_controller():
    """Data lines reach the controller; keepalives do not."""
    controller = MagicMock()
    listener = PingbackListener(controller, base_url="http://crm.test")

    assert listener.handle_line(": keepalive") is None
    event = listener.handle_line(format_sse(parse_pingback({"CALL_ID": "3"})).strip())

    assert isinstance(event, PingbackEvent)
    controller.handle_pingback.assert_called_once_with(event)


def test_listener_survives_controller_errors():
    controller = MagicMock()
    controller.handle_pingback.side_effect = RuntimeError("bad state")
    listener = PingbackListener(controller, base_url="http://crm.test")

    event = listener.handle_line(format_sse(parse_pingback({"CALL_ID": "3"})).strip())
    assert event is not None


def make_stream(*lines):
    """aiohttp-like streaming response context yielding the given lines."""
    async def content():
        for line in lines:
            yield line.encode("utf-8") + b"\n"

    response = MagicMock()
    response.content = content()

    stream = MagicMock()
    stream.__aenter__ = AsyncMock(return_value=response)
    stream.__aexit__ = AsyncMock(return_value=False)
    return stream


def test_reconnect_delay_backs_off_and_caps():
    assert [reconnect_delay(n, 1, 30) for n in range(1, 6)] == [2, 4, 8, 16, 30]


@pytest.mark.asyncio
async def test_listener_reconnects_after_failure():
    """A refused connection is retried and the next stream is consumed."""
    controller = MagicMock()
    session = MagicMock()
    frame = format_sse(parse_pingback({"CALL_ID": "3"})).strip()
    session.get.side_effect = [
        aiohttp.ClientConnectionError("refused"),
        make_stream(": connected", frame),
    ]
    listener = PingbackListener(controller, base_url="http://crm.test", session=session)
    controller.handle_pingback.side_effect = lambda event: listener.stop()

    await listener.run_forever(max_attempts=3, base_delay=0)

    assert session.get.call_count == 2
    assert session.get.call_args.args[0] == "http://crm.test/pingback/stream"
    assert controller.handle_pingback.call_args.args[0].call_id == "3"
    assert listener.connections == 1


@pytest.mark.asyncio
async def test_listener_gives_up_after_max_attempts():
    session = MagicMock()
    session.get.side_effect = aiohttp.ClientConnectionError("refused")
    listener = PingbackListener(MagicMock(), base_url="http://crm.test", session=session)

    with pytest.raises(aiohttp.ClientConnectionError):
        await listener.run_forever(max_attempts=2, base_delay=0)

    assert session.get.call_count == 3
