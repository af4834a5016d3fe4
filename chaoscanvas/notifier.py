# chaoscanvas/notifier.py
"""
Best-effort fan-out of JSON events to watchers of a canvas region.

A watcher is any object with a ``send(event)`` method (``Sink``). Sinks
that raise on send are treated as gone and pruned; the publisher never sees
the failure. There is no replay: a sink that is not attached when an event
is published misses it.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from .exporter import NOTIFIER_DELIVERIES

logger = logging.getLogger(__name__)


class SinkClosed(Exception):
    """Raised by a sink whose underlying connection has gone away."""


class Sink(Protocol):
    def send(self, event: Mapping[str, Any]) -> None:
        ...


class Topic:
    """A single region key and the sinks currently subscribed to it."""

    def __init__(self, key: str) -> None:
        self.key = key
        self._sinks: Set[Sink] = set()

    def subscribe(self, sink: Sink) -> None:
        self._sinks.add(sink)

    def unsubscribe(self, sink: Sink) -> None:
        self._sinks.discard(sink)

    def sinks(self) -> List[Sink]:
        return list(self._sinks)

    def publish(self, event: Mapping[str, Any]) -> List[Sink]:
        """Send to every sink; returns the sinks that failed."""
        return _fan_out(self.key, self.sinks(), event)

    def __len__(self) -> int:
        return len(self._sinks)


def _fan_out(key: str, sinks: List[Sink], event: Mapping[str, Any]) -> List[Sink]:
    dead: List[Sink] = []
    for sink in sinks:
        try:
            sink.send(event)
        except SinkClosed:
            dead.append(sink)
        except Exception:
            logger.warning("sink send failed on topic %s", key, exc_info=True)
            dead.append(sink)
    return dead


class ChangeNotifier:
    """
    Registry of region key -> Topic.

    Each sink belongs to at most one region; joining another region moves
    it. Empty topics are dropped from the registry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._topics: Dict[str, Topic] = {}
        self._membership: Dict[Sink, str] = {}

    def _detach(self, sink: Sink) -> None:
        key = self._membership.pop(sink, None)
        if key is None:
            return
        topic = self._topics.get(key)
        if topic is None:
            return
        topic.unsubscribe(sink)
        if len(topic) == 0:
            del self._topics[key]

    def join(self, sink: Sink, region_key: str) -> None:
        with self._lock:
            self._detach(sink)
            topic = self._topics.get(region_key)
            if topic is None:
                topic = self._topics[region_key] = Topic(region_key)
            topic.subscribe(sink)
            self._membership[sink] = region_key

    def leave(self, sink: Sink) -> None:
        with self._lock:
            self._detach(sink)

    def publish(self, region_key: str, event: Mapping[str, Any]) -> int:
        """Fire-and-forget; returns how many sinks accepted the event."""
        with self._lock:
            topic = self._topics.get(region_key)
            if topic is None:
                return 0
            attached = topic.sinks()
        # send outside the lock; a slow sink must not block join/leave
        dead = _fan_out(region_key, attached, event)
        if dead:
            with self._lock:
                for sink in dead:
                    if self._membership.get(sink) == region_key:
                        self._detach(sink)
            NOTIFIER_DELIVERIES.labels(outcome="pruned").inc(len(dead))
        delivered = len(attached) - len(dead)
        if delivered:
            NOTIFIER_DELIVERIES.labels(outcome="sent").inc(delivered)
        return delivered

    def region_of(self, sink: Sink) -> Optional[str]:
        with self._lock:
            return self._membership.get(sink)

    def watchers(self, region_key: str) -> int:
        with self._lock:
            topic = self._topics.get(region_key)
            return len(topic) if topic is not None else 0

    def regions(self) -> List[str]:
        with self._lock:
            return sorted(self._topics)


class QueueSink:
    """
    Bridges a websocket connection to the synchronous ``send`` capability.

    ``send`` may be called from any thread; events are handed to the owning
    event loop and drained by the connection's writer task. When the queue
    is full the event is dropped.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 256) -> None:
        self._loop = loop
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def _offer(self, event: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("websocket queue full; dropping %s event", event.get("type"))

    def send(self, event: Mapping[str, Any]) -> None:
        if self.closed:
            raise SinkClosed()
        try:
            self._loop.call_soon_threadsafe(self._offer, dict(event))
        except RuntimeError as exc:
            # loop closed underneath us
            self.closed = True
            raise SinkClosed() from exc

    async def next_event(self) -> Dict[str, Any]:
        return await self._queue.get()

    def close(self) -> None:
        self.closed = True


__all__ = ["Sink", "SinkClosed", "Topic", "ChangeNotifier", "QueueSink"]
