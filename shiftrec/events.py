"""In-process fan-out of recording lifecycle events.

Handlers publish facts such as ``audio_start`` or ``recording_evicted``; the web
app streams them to admin listeners as Server-Sent Events.
"""

from __future__ import annotations

import asyncio
import copy
import threading
import time
from collections import deque
from typing import Any, Deque

AUDIO_START = "audio_start"
AUDIO_STOP = "audio_stop"
RECORDING_MERGED = "recording_merged"
RECORDING_FALLBACK = "recording_fallback"
RECORDING_EVICTED = "recording_evicted"

EVENT_TYPES = frozenset(
    {AUDIO_START, AUDIO_STOP, RECORDING_MERGED, RECORDING_FALLBACK, RECORDING_EVICTED}
)


class RecordingEventBus:
    """Keeps a short replay history and a bounded queue per subscriber."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        max_queue_size: int = 64,
        history_limit: int = 128,
    ) -> None:
        if max_queue_size <= 0 or history_limit <= 0:
            raise ValueError("queue and history sizes must be positive")
        self._loop = loop
        self._max_queue_size = max_queue_size
        self._history: Deque[dict[str, Any]] = deque(maxlen=history_limit)
        self._subscribers: set[asyncio.Queue] = set()
        self._seq = 0
        self._lock = threading.Lock()

    async def subscribe(self, *, last_event_id: str | None = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._subscribers.add(queue)
            history = list(self._history)

        after = _event_seq(last_event_id)
        for event in history:
            if after is None or event["seq"] > after:
                _offer(queue, event)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.discard(queue)

    def publish(self, event_type: str, payload: Any) -> str:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {event_type!r}")
        with self._lock:
            self._seq += 1
            event = {
                "id": str(self._seq),
                "seq": self._seq,
                "type": event_type,
                "timestamp": time.time(),
                "payload": copy.deepcopy(payload),
            }
            self._history.append(event)
            loop = self._loop
            targets = list(self._subscribers)

        if not targets:
            return event["id"]

        def _deliver() -> None:
            for queue in targets:
                _offer(queue, event)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is None or loop is running:
            _deliver()
        else:
            loop.call_soon_threadsafe(_deliver)
        return event["id"]

    def history_snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._history)

    def close(self) -> None:
        """Wake every subscriber with ``None`` so open streams can finish."""

        with self._lock:
            targets = list(self._subscribers)
        for queue in targets:
            _offer(queue, None)


def _offer(queue: asyncio.Queue, event: dict[str, Any] | None) -> None:
    """Enqueue ``event``, dropping the oldest queued item when full."""

    if queue.full():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        pass


def _event_seq(candidate: str | None) -> int | None:
    if not candidate:
        return None
    try:
        return int(candidate)
    except ValueError:
        return None


_installed: RecordingEventBus | None = None
_installed_lock = threading.Lock()


def install_event_bus(bus: RecordingEventBus) -> None:
    global _installed
    with _installed_lock:
        _installed = bus


def uninstall_event_bus(bus: RecordingEventBus) -> None:
    global _installed
    with _installed_lock:
        if _installed is bus:
            _installed = None


def get_event_bus() -> RecordingEventBus | None:
    with _installed_lock:
        return _installed


def publish(event_type: str, payload: Any) -> str | None:
    """Publish on the installed bus; a no-op when none is installed."""

    bus = get_event_bus()
    if bus is None:
        return None
    return bus.publish(event_type, payload)


def reset_for_tests() -> None:
    global _installed
    with _installed_lock:
        _installed = None
