"""Queue stream consumer with reconnect backoff and polling fallback.

``QueueStreamClient`` follows ``/queue/stream`` and re-reads ``/queue/status``
whenever the server announces a change. Notifications are best effort, so
the client also polls:

* a backup poll runs at a low frequency even while the stream is healthy;
* while the caller is in the queue it polls faster, to notice completion;
* once the reconnect attempts are exhausted it falls back to polling for the
  rest of the session (short interval while visible, long while hidden).

States::

    CONNECTING -> OPEN -> (BACKOFF -> CONNECTING)* -> OPEN | POLLING
    CONNECTING -> FAILED        (server rejected the session)
    any        -> CLOSED        (stop())
"""
from __future__ import annotations

import enum
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

import requests

logger = logging.getLogger(__name__)

StatusCallback = Callable[[dict[str, Any]], None]


class StreamState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    BACKOFF = "backoff"
    POLLING = "polling"
    FAILED = "failed"
    CLOSED = "closed"


class StreamRejected(Exception):
    """The server refused the stream; retrying will not help."""


@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay: float = 1.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


@dataclass(frozen=True)
class PollSchedule:
    """Polling intervals in seconds."""

    backup: float = 30.0
    in_queue: float = 10.0
    fallback_visible: float = 5.0
    fallback_hidden: float = 30.0

    def interval(self, *, stream_failed: bool, in_queue: bool, visible: bool) -> float:
        candidates = [self.backup]
        if in_queue:
            candidates.append(self.in_queue)
        if stream_failed:
            candidates.append(self.fallback_visible if visible else self.fallback_hidden)
        return min(candidates)


def parse_events(lines: Iterable[str | bytes]) -> Iterator[dict[str, Any]]:
    """Decode server-sent event frames into JSON payloads."""
    data: list[str] = []
    for raw in lines:
        line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if line == "":
            if data:
                payload = "\n".join(data)
                data = []
                try:
                    yield json.loads(payload)
                except ValueError:
                    logger.warning("Ignoring malformed queue event: %r", payload)
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data.append(value[1:] if value.startswith(" ") else value)


class QueueStreamClient:
    def __init__(
        self,
        base_url: str,
        on_update: StatusCallback | None = None,
        *,
        session: requests.Session | None = None,
        token: str | None = None,
        policy: ReconnectPolicy | None = None,
        schedule: PollSchedule | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 75.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.on_update = on_update
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self.policy = policy or ReconnectPolicy()
        self.schedule = schedule or PollSchedule()
        # Read timeout must exceed the server heartbeat interval.
        self.timeout = (connect_timeout, read_timeout)

        self.state = StreamState.CONNECTING
        self.attempts = 0
        self.error: str | None = None
        self.last_update: int | None = None
        self.status: dict[str, Any] = {"inQueue": False}
        self.visible = True

        self._stop = threading.Event()
        self._interrupt = threading.Event()
        self._wake = threading.Event()
        self._fetch_lock = threading.Lock()
        self._response: requests.Response | None = None
        self._stream_thread: threading.Thread | None = None
        self._poll_thread: threading.Thread | None = None

    @property
    def in_queue(self) -> bool:
        return bool(self.status.get("inQueue"))

    @property
    def is_connected(self) -> bool:
        return self.state is StreamState.OPEN

    # -------------------- lifecycle --------------------

    def start(self) -> None:
        self._stop.clear()
        self._start_stream_thread()
        self._poll_thread = threading.Thread(target=self.run_polling, name="queue-poll", daemon=True)
        self._poll_thread.start()

    def stop(self) -> None:
        """Tear down the stream, the timers and both threads."""
        self._stop.set()
        self._interrupt.set()
        self._wake.set()
        self._close_response()
        self._set_state(StreamState.CLOSED)
        for thread in (self._stream_thread, self._poll_thread):
            if thread and thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=1.0)

    def reconnect(self) -> None:
        """Reconnect now with a fresh attempt budget."""
        self.attempts = 0
        self.error = None
        if self._stream_thread and self._stream_thread.is_alive():
            self._interrupt.set()
            self._close_response()
        elif not self._stop.is_set():
            self._start_stream_thread()

    def set_visible(self, visible: bool) -> None:
        """Tell the client whether its view is on screen."""
        became_visible = visible and not self.visible
        self.visible = visible
        if became_visible:
            self.refresh()
            if self.state in (StreamState.POLLING, StreamState.BACKOFF):
                self.reconnect()
        self._wake.set()

    def _start_stream_thread(self) -> None:
        self._stream_thread = threading.Thread(target=self.run_stream, name="queue-stream", daemon=True)
        self._stream_thread.start()

    # -------------------- status --------------------

    def refresh(self) -> dict[str, Any] | None:
        """Fetch ``/queue/status``; skipped when a fetch is already running."""
        if not self._fetch_lock.acquire(blocking=False):
            return None
        try:
            response = self.session.get(f"{self.base_url}/queue/status", timeout=self.timeout)
            response.raise_for_status()
            status = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Failed to refresh queue status: %s", exc)
            return None
        finally:
            self._fetch_lock.release()

        was_in_queue = self.in_queue
        self.status = status
        if self.in_queue != was_in_queue:
            self._wake.set()
        if self.on_update:
            self.on_update(status)
        return status

    def poll_interval(self) -> float:
        return self.schedule.interval(
            stream_failed=self.state in (StreamState.POLLING, StreamState.FAILED),
            in_queue=self.in_queue,
            visible=self.visible,
        )

    def run_polling(self) -> None:
        """Blocking poll loop; ``start()`` runs it on a daemon thread."""
        self.refresh()
        while not self._stop.is_set():
            self._wake.clear()
            if self._wake.wait(self.poll_interval()):
                # Woken to recompute the interval.
                continue
            self.refresh()

    # -------------------- stream --------------------

    def _set_state(self, state: StreamState) -> None:
        if self.state is not state:
            logger.debug("Queue stream %s -> %s", self.state.value, state.value)
            self.state = state
            self._wake.set()

    def _close_response(self) -> None:
        response = self._response
        if response is not None:
            response.close()

    def _handle_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == "queue_update":
            self.last_update = event.get("timestamp")
            self.refresh()
        elif kind not in ("connected", "heartbeat"):
            logger.debug("Ignoring unknown queue event %r", kind)

    def _consume(self) -> None:
        response = self.session.get(
            f"{self.base_url}/queue/stream", stream=True, timeout=self.timeout,
        )
        if response.status_code in (401, 403):
            response.close()
            raise StreamRejected(f"stream rejected with HTTP {response.status_code}")
        response.raise_for_status()

        self._response = response
        try:
            self._set_state(StreamState.OPEN)
            self.attempts = 0
            self.error = None
            for event in parse_events(response.iter_lines(decode_unicode=True)):
                if self._stop.is_set() or self._interrupt.is_set():
                    break
                self._handle_event(event)
        finally:
            self._response = None
            response.close()

    def run_stream(self) -> None:
        """Blocking stream loop; ``start()`` runs it on a daemon thread."""
        while not self._stop.is_set():
            self._interrupt.clear()
            self._set_state(StreamState.CONNECTING)
            try:
                self._consume()
                reason = "stream closed by server"
            except StreamRejected as exc:
                self.error = str(exc)
                logger.error("Queue stream unavailable: %s", exc)
                self._set_state(StreamState.FAILED)
                return
            except requests.RequestException as exc:
                reason = str(exc)

            if self._stop.is_set():
                return
            if self._interrupt.is_set():
                continue

            if self.policy.exhausted(self.attempts):
                self.error = "Could not connect to the server. Check your connection."
                logger.warning(
                    "Queue stream gave up after %d attempts; polling instead", self.attempts,
                )
                self._set_state(StreamState.POLLING)
                return

            delay = self.policy.delay(self.attempts)
            self.attempts += 1
            logger.warning(
                "Queue stream interrupted (%s); reconnecting in %.1fs (attempt %d/%d)",
                reason, delay, self.attempts, self.policy.max_attempts,
            )
            self._set_state(StreamState.BACKOFF)
            self._interrupt.wait(delay)
