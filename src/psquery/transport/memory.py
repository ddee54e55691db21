"""In-process publish/subscribe transport.

Every :class:`MemoryTransport` attached to the same :class:`MemoryBroker`
sees the others' publications, as if they shared a remote broker. Each
transport delivers on its own dispatch thread, in publish order.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Dict, Optional, Set

from .base import Transport, TransportConnectionError


logger = logging.getLogger(__name__)


class MemoryBroker:
    """Route published bodies to the transports subscribed to a channel."""

    def __init__(self):
        self.available = True
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Set["MemoryTransport"]] = {}

    def _check(self) -> None:
        if not self.available:
            raise TransportConnectionError("memory broker is unavailable")

    def subscribe(self, channel: str, transport: "MemoryTransport") -> None:
        self._check()
        with self._lock:
            self._subscribers.setdefault(channel, set()).add(transport)

    def unsubscribe(self, channel: str, transport: "MemoryTransport") -> None:
        with self._lock:
            subscribers = self._subscribers.get(channel)
            if subscribers is None:
                return
            subscribers.discard(transport)
            if not subscribers:
                del self._subscribers[channel]

    def detach(self, transport: "MemoryTransport") -> None:
        with self._lock:
            for channel in list(self._subscribers):
                self._subscribers[channel].discard(transport)
                if not self._subscribers[channel]:
                    del self._subscribers[channel]

    def publish(self, channel: str, body: bytes) -> None:
        self._check()
        with self._lock:
            targets = list(self._subscribers.get(channel, ()))
        for transport in targets:
            transport._deliver(channel, body)

    def subscribers(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))


default_broker = MemoryBroker()


class MemoryTransport(Transport):
    """Transport over a :class:`MemoryBroker` in this process."""

    name = "memory"

    def __init__(self, broker: Optional[MemoryBroker] = None):
        Transport.__init__(self)
        self.broker = broker if broker is not None else default_broker
        self._inbox: Optional[queue.SimpleQueue] = None
        self._thread: Optional[threading.Thread] = None

    def _open(self) -> None:
        self.broker._check()
        self._inbox = queue.SimpleQueue()
        self._thread = threading.Thread(
            target=self.run, args=(self._inbox,), name="psquery-memory", daemon=True
        )
        self._thread.start()

    def _close(self) -> None:
        self.broker.detach(self)
        inbox, thread = self._inbox, self._thread
        self._inbox = self._thread = None
        if inbox is not None:
            inbox.put(None)
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _subscribe(self, channel: str) -> None:
        self.broker.subscribe(channel, self)

    def _unsubscribe(self, channel: str) -> None:
        self.broker.unsubscribe(channel, self)

    def _publish(self, channel: str, body: bytes) -> None:
        self.broker.publish(channel, bytes(body))

    def _deliver(self, channel: str, body: bytes) -> None:
        inbox = self._inbox
        if inbox is not None:
            inbox.put((channel, body))

    def run(self, inbox: queue.SimpleQueue) -> None:
        while True:
            dequeued = inbox.get()
            if dequeued is None:
                break
            self.dispatch(*dequeued)
