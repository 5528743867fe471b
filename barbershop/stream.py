"""Server-sent event relay between the broadcaster and one HTTP client."""
from __future__ import annotations

import json
import time
from typing import Any, Iterator

from .notifier import QueueBroadcaster

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def event_stream(broadcaster: QueueBroadcaster, heartbeat_seconds: float) -> Iterator[str]:
    """Yield SSE frames until the consumer closes the generator.

    Sends ``connected`` first. Notifications go out as ``queue_update`` frames;
    a ``heartbeat`` follows every ``heartbeat_seconds`` whether or not updates flow.
    """
    channel = broadcaster.open_channel()
    try:
        yield format_sse({"type": "connected", "timestamp": _now_ms()})
        next_heartbeat = time.monotonic() + heartbeat_seconds
        while not channel.closed:
            now = time.monotonic()
            if now >= next_heartbeat:
                yield format_sse({"type": "heartbeat", "timestamp": _now_ms()})
                next_heartbeat = now + heartbeat_seconds
                continue
            event = channel.receive(timeout=next_heartbeat - now)
            if event is not None:
                yield format_sse(event)
    finally:
        broadcaster.deregister(channel)
        channel.close()
