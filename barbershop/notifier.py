"""In-process fan-out of "queue changed" events to open streams.

The broadcaster is constructed once per application (see ``create_app``) and
handed to every ``QueueService``. Delivery is at-most-once: a channel that
cannot take an event is dropped, and clients resync by polling.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any

logger = logging.getLogger(__name__)


class ChannelClosed(Exception):
    """Raised when a channel can no longer accept events."""


class Channel:
    """Bounded mailbox feeding one streaming connection."""

    def __init__(self, maxsize: int = 32) -> None:
        self._queue: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, event: dict[str, Any]) -> None:
        if self.closed:
            raise ChannelClosed("channel is closed")
        try:
            self._queue.put_nowait(event)
        except queue.Full as exc:
            raise ChannelClosed("channel buffer is full") from exc

    def receive(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Wait for the next event; ``None`` means the timeout elapsed."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._closed.set()


class QueueBroadcaster:
    def __init__(self, channel_buffer: int = 32) -> None:
        self.channel_buffer = channel_buffer
        self._channels: set[Channel] = set()
        self._lock = threading.Lock()
        self._last_timestamp = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    def open_channel(self) -> Channel:
        channel = Channel(maxsize=self.channel_buffer)
        self.register(channel)
        return channel

    def register(self, channel: Channel) -> None:
        with self._lock:
            self._channels.add(channel)
        logger.debug("Queue stream registered (%d open)", len(self))

    def deregister(self, channel: Channel) -> None:
        with self._lock:
            self._channels.discard(channel)
        logger.debug("Queue stream deregistered (%d open)", len(self))

    def _next_timestamp(self) -> int:
        # Milliseconds since the epoch, never going backwards.
        with self._lock:
            now = int(time.time() * 1000)
            self._last_timestamp = max(now, self._last_timestamp)
            return self._last_timestamp

    def notify(self) -> dict[str, Any]:
        """Send a ``queue_update`` event to every registered channel."""
        event = {"type": "queue_update", "timestamp": self._next_timestamp()}
        with self._lock:
            channels = list(self._channels)

        dropped = []
        for channel in channels:
            try:
                channel.send(event)
            except ChannelClosed:
                dropped.append(channel)

        if dropped:
            with self._lock:
                self._channels.difference_update(dropped)
            for channel in dropped:
                channel.close()
            logger.debug("Dropped %d unresponsive queue streams", len(dropped))
        return event

    def close(self) -> None:
        with self._lock:
            channels = list(self._channels)
            self._channels.clear()
        for channel in channels:
            channel.close()
