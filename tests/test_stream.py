"""Tests for the server-sent event relay."""
from __future__ import annotations

import json
import time

from barbershop.notifier import QueueBroadcaster
from barbershop.stream import event_stream, format_sse


def decode(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


def test_format_sse():
    assert format_sse({"type": "heartbeat", "timestamp": 1}) == 'data: {"type": "heartbeat", "timestamp": 1}\n\n'


def test_stream_sends_connected_heartbeat_and_updates():
    broadcaster = QueueBroadcaster()
    stream = event_stream(broadcaster, heartbeat_seconds=0.01)

    assert decode(next(stream))["type"] == "connected"
    assert len(broadcaster) == 1

    assert decode(next(stream))["type"] == "heartbeat"

    event = broadcaster.notify()
    assert decode(next(stream)) == event

    stream.close()
    assert len(broadcaster) == 0


def test_stream_ends_when_broadcaster_closes():
    broadcaster = QueueBroadcaster()
    stream = event_stream(broadcaster, heartbeat_seconds=0.01)
    next(stream)

    broadcaster.close()

    assert list(stream) == []
    assert len(broadcaster) == 0


def test_stream_route_requires_session(client):
    response = client.get("/queue/stream")

    assert response.status_code == 401


def test_stream_route_sends_connected_first(client, broadcaster, make_user, auth_header):
    headers = auth_header(make_user())

    response = client.get("/queue/stream", headers=headers, buffered=False)
    try:
        assert response.status_code == 200
        assert response.mimetype == "text/event-stream"
        assert response.headers["Cache-Control"].startswith("no-cache")
        first = next(iter(response.response))
        if isinstance(first, bytes):
            first = first.decode("utf-8")
        assert decode(first)["type"] == "connected"
        assert len(broadcaster) == 1
    finally:
        response.close()

    assert len(broadcaster) == 0


def test_heartbeat_keeps_its_interval_while_updates_flow():
    broadcaster = QueueBroadcaster(channel_buffer=64)
    stream = event_stream(broadcaster, heartbeat_seconds=0.05)
    next(stream)

    kinds = []
    for _ in range(20):
        broadcaster.notify()
        kinds.append(decode(next(stream))["type"])
        time.sleep(0.03)
    stream.close()

    assert "queue_update" in kinds
    assert kinds.count("heartbeat") >= 3
