"""ZeroMQ publish/subscribe transport.

Two sockets, one per role, both connected to a :class:`psquery.broker.Broker`:

    PUSH -> broker frontend     publish role
    SUB  <- broker backend      subscribe role

PUSH queues messages rather than dropping them while the broker connection
is being established, which a PUB socket would not do. The SUB socket is
owned by a background thread; subscription changes from other threads are
handed over through a queue and an inproc signal socket, since ZeroMQ
makes no attempt to be thread-safe.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from typing import Optional, Sequence

import zmq
from zmq.utils.monitor import recv_monitor_message

from ... import config
from ..base import Transport, TransportConnectionError, TransportError
from .framing import from_frames, to_frames, topic


logger = logging.getLogger(__name__)

zmq_context = zmq.Context()
_signal_ids = itertools.count()


class _Command:
    """A subscription change waiting for the socket thread."""

    def __init__(self, option: int, channel: str):
        self.option = option
        self.channel = channel
        self.done = threading.Event()
        self.error: Optional[BaseException] = None


def _connect(socket: zmq.Socket, endpoint: str, deadline: float) -> None:
    """Connect *socket* and block until the TCP connection is up."""

    monitor = socket.get_monitor_socket(zmq.EVENT_CONNECTED)
    try:
        socket.connect(endpoint)

        poller = zmq.Poller()
        poller.register(monitor, zmq.POLLIN)

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportConnectionError(f"no broker reachable at {endpoint}")
            if not poller.poll(remaining * 1000):
                continue
            event = recv_monitor_message(monitor)
            if event["event"] == zmq.EVENT_CONNECTED:
                return
    finally:
        socket.disable_monitor()
        monitor.close()


class ZmqTransport(Transport):
    """Transport through the psquery ZeroMQ broker."""

    name = "zmq"

    def __init__(
        self,
        frontend: Optional[str] = None,
        backend: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        context: Optional[zmq.Context] = None,
    ):
        Transport.__init__(self)

        settings = config.settings()
        self.frontend = frontend or settings.zmq_frontend
        self.backend = backend or settings.zmq_backend
        if connect_timeout is None:
            connect_timeout = settings.connect_timeout_ms
        self.connect_timeout = connect_timeout
        self.context = context or zmq_context

        self.push: Optional[zmq.Socket] = None
        self.socket: Optional[zmq.Socket] = None
        self.push_lock = threading.Lock()

        self._commands: queue.SimpleQueue = queue.SimpleQueue()
        self._signal_lock = threading.Lock()
        self._signal_rx: Optional[zmq.Socket] = None
        self._signal_tx: Optional[zmq.Socket] = None

        self.shutdown = False
        self.thread: Optional[threading.Thread] = None

    # --- connection ---

    def _open(self) -> None:
        deadline = time.monotonic() + self.connect_timeout / 1000.0

        push = self.context.socket(zmq.PUSH)
        push.setsockopt(zmq.LINGER, 0)
        sub = self.context.socket(zmq.SUB)
        sub.setsockopt(zmq.LINGER, 0)

        try:
            _connect(push, self.frontend, deadline)
            _connect(sub, self.backend, deadline)
        except BaseException:
            push.close()
            sub.close()
            raise

        internal = f"inproc://psquery.ZmqTransport:signal:{next(_signal_ids)}"
        self._signal_rx = self.context.socket(zmq.PAIR)
        self._signal_rx.bind(internal)
        self._signal_tx = self.context.socket(zmq.PAIR)
        self._signal_tx.connect(internal)

        self.push = push
        self.socket = sub
        self.shutdown = False

        self.thread = threading.Thread(target=self.run, name="psquery-zmq", daemon=True)
        self.thread.start()

        logger.debug("zmq transport publishing to %s, subscribed via %s", self.frontend, self.backend)

    def _close(self) -> None:
        self.shutdown = True
        self._signal()

        thread = self.thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        with self.push_lock:
            if self.push is not None:
                self.push.close()
                self.push = None

        with self._signal_lock:
            if self._signal_tx is not None:
                self._signal_tx.close()
                self._signal_tx = None

    # --- publish role ---

    def _publish(self, channel: str, body: bytes) -> None:
        frames = to_frames(channel, body)

        # The lock around the ZeroMQ socket is necessary in a multithreaded
        # application; otherwise, if two different threads both invoke
        # send_multipart(), the message parts can and will get mixed together.

        with self.push_lock:
            if self.push is None:
                raise TransportConnectionError("zmq: not connected")
            self.push.send_multipart(frames, flags=zmq.NOBLOCK)

    # --- subscribe role ---

    def _subscribe(self, channel: str) -> None:
        self._command(zmq.SUBSCRIBE, channel)

    def _unsubscribe(self, channel: str) -> None:
        self._command(zmq.UNSUBSCRIBE, channel)

    def _command(self, option: int, channel: str) -> None:
        if threading.current_thread() is self.thread:
            self.socket.setsockopt(option, topic(channel))
            return

        command = _Command(option, channel)
        self._commands.put(command)
        self._signal()

        if not command.done.wait(self.connect_timeout / 1000.0):
            raise TransportError(f"zmq: socket thread did not apply change to {channel}")
        if command.error is not None:
            raise command.error

    def _signal(self) -> None:
        with self._signal_lock:
            if self._signal_tx is not None:
                self._signal_tx.send(b"")

    def _apply_commands(self) -> None:
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                break

            try:
                self.socket.setsockopt(command.option, topic(command.channel))
            except zmq.ZMQError as exc:
                command.error = exc
            command.done.set()

    def _incoming(self, parts: Sequence[bytes]) -> None:
        try:
            channel, body = from_frames(parts)
        except ValueError as exc:
            logger.warning("zmq: dropping malformed message: %s", exc)
            return

        self.dispatch(channel, body)

    def run(self) -> None:
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self._signal_rx, zmq.POLLIN)

        try:
            while not self.shutdown:
                for active, _flag in poller.poll(1000):
                    if active == self._signal_rx:
                        self._signal_rx.recv()
                        self._apply_commands()
                    elif active == self.socket:
                        self._incoming(self.socket.recv_multipart())
        finally:
            self.socket.close()
            self._signal_rx.close()

            # Anybody still waiting on a subscription change would otherwise
            # wait out the full timeout.

            while True:
                try:
                    command = self._commands.get_nowait()
                except queue.Empty:
                    break
                command.error = TransportConnectionError("zmq: transport closed")
                command.done.set()
