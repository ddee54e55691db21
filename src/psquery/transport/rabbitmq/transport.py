"""RabbitMQ publish/subscribe transport.

Channels map onto routing keys of a direct exchange, which gives exact
channel matching. Each transport holds two blocking connections, one per
role, each driven by its own thread:

    publish role      basic_publish(exchange, routing_key=channel)
    subscribe role    exclusive auto-named queue, one binding per channel

pika connections are not thread-safe; other threads hand work over via
add_callback_threadsafe().
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

import pika

from ... import config
from ..base import Transport, TransportConnectionError, TransportError


logger = logging.getLogger(__name__)


class RabbitTransport(Transport):
    """Transport through a RabbitMQ broker."""

    name = "rabbitmq"

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        exchange: Optional[str] = None,
        connect_timeout: Optional[float] = None,
    ):
        Transport.__init__(self)

        settings = config.settings()
        self.host = host or settings.amqp_host
        self.port = int(port) if port is not None else settings.amqp_port
        self.exchange = exchange or settings.amqp_exchange
        if connect_timeout is None:
            connect_timeout = settings.connect_timeout_ms
        self.connect_timeout = connect_timeout

        self.shutdown = False
        self._lost_lock = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}
        self._ready: Dict[str, threading.Event] = {}
        self._errors: Dict[str, BaseException] = {}

        self._pub_connection = None
        self._pub_channel = None
        self._sub_connection = None
        self._sub_channel = None
        self._queue_name: Optional[str] = None

    def _parameters(self) -> pika.ConnectionParameters:
        return pika.ConnectionParameters(
            host=self.host,
            port=self.port,
            heartbeat=600,
            blocked_connection_timeout=300,
            socket_timeout=self.connect_timeout / 1000.0,
        )

    def _connection(self) -> pika.BlockingConnection:
        return pika.BlockingConnection(self._parameters())

    # --- connection ---

    def _open(self) -> None:
        self.shutdown = False
        self._errors.clear()

        for role, setup in (("publish", self._setup_publisher), ("subscribe", self._setup_subscriber)):
            ready = threading.Event()
            thread = threading.Thread(
                target=self._run, args=(role, setup, ready), name=f"psquery-amqp-{role}", daemon=True
            )
            self._ready[role] = ready
            self._threads[role] = thread
            thread.start()

        timeout = self.connect_timeout / 1000.0
        for role, ready in self._ready.items():
            if not ready.wait(timeout):
                self._close()
                raise TransportConnectionError(
                    f"rabbitmq: {role} connection to {self.host}:{self.port} timed out"
                )

        if self._errors:
            self._close()
            role, error = next(iter(self._errors.items()))
            raise TransportConnectionError(
                f"rabbitmq: {role} connection to {self.host}:{self.port} failed: {error}"
            ) from error

    def _close(self) -> None:
        self.shutdown = True
        current = threading.current_thread()
        for thread in list(self._threads.values()):
            if thread is not current:
                thread.join()
        self._threads.clear()
        self._ready.clear()
        self._pub_connection = self._pub_channel = None
        self._sub_connection = self._sub_channel = None

    def _setup_publisher(self):
        connection = self._connection()
        channel = connection.channel()
        channel.exchange_declare(exchange=self.exchange, exchange_type="direct", durable=False)

        self._pub_connection = connection
        self._pub_channel = channel
        return connection

    def _setup_subscriber(self):
        connection = self._connection()
        channel = connection.channel()
        channel.exchange_declare(exchange=self.exchange, exchange_type="direct", durable=False)

        # Exclusive auto-delete queue; bindings are added per channel.
        result = channel.queue_declare(queue="", exclusive=True)
        self._queue_name = result.method.queue

        channel.basic_consume(
            queue=self._queue_name,
            on_message_callback=self._on_message,
            auto_ack=True,
        )

        # After a lost connection the channel table still holds every
        # subscription; the new queue needs them bound again.

        for name in self.channels:
            channel.queue_bind(exchange=self.exchange, queue=self._queue_name, routing_key=name)

        self._sub_connection = connection
        self._sub_channel = channel
        return connection

    def _run(self, role: str, setup: Callable[[], Any], ready: threading.Event) -> None:
        try:
            connection = setup()
        except Exception as exc:
            self._errors[role] = exc
            ready.set()
            return

        ready.set()
        failure: Optional[BaseException] = None

        try:
            while not self.shutdown:
                connection.process_data_events(time_limit=1)
        except Exception as exc:
            failure = exc
            logger.exception("rabbitmq: %s connection failed", role)
        finally:
            if connection.is_open:
                try:
                    connection.close()
                except Exception as exc:
                    logger.warning("rabbitmq: closing %s connection failed: %s", role, exc)

        if failure is not None and not self.shutdown:
            self._lost(role, failure)

    def _lost(self, role: str, failure: BaseException) -> None:
        """ One connection dropped on its own. Stop the other one, and mark
            the transport disconnected so the next :func:`connect` opens
            both again; the channel table survives, and is bound anew.
        """

        with self._lost_lock:
            if self.shutdown:
                return
            self.shutdown = True

        self._close()

        self._disconnected(TransportConnectionError(f"rabbitmq: {role} connection lost: {failure}"))

    # --- publish role ---

    def _publish(self, channel: str, body: bytes) -> None:
        self._on_thread("publish", self._publish_now, channel=channel, body=body)

    def _publish_now(self, channel: str, body: bytes) -> None:
        """Called on the publish connection thread."""

        self._pub_channel.basic_publish(exchange=self.exchange, routing_key=channel, body=body)

    # --- subscribe role ---

    def _subscribe(self, channel: str) -> None:
        self._on_thread("subscribe", self._bind, channel=channel)

    def _unsubscribe(self, channel: str) -> None:
        self._on_thread("subscribe", self._unbind, channel=channel)

    def _bind(self, channel: str) -> None:
        self._sub_channel.queue_bind(exchange=self.exchange, queue=self._queue_name, routing_key=channel)

    def _unbind(self, channel: str) -> None:
        self._sub_channel.queue_unbind(exchange=self.exchange, queue=self._queue_name, routing_key=channel)

    def _on_thread(self, role: str, function: Callable[..., Any], **kwargs) -> None:
        """ Run *function* on the connection thread for *role* and wait for
            it to complete; whatever it raises is raised here.
        """

        if threading.current_thread() is self._threads.get(role):
            function(**kwargs)
            return

        if role == "publish":
            connection = self._pub_connection
        else:
            connection = self._sub_connection

        if connection is None:
            raise TransportConnectionError(f"rabbitmq: {role} connection is down")

        done = threading.Event()
        outcome: Dict[str, BaseException] = {}

        def call() -> None:
            try:
                function(**kwargs)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        connection.add_callback_threadsafe(call)

        if not done.wait(self.connect_timeout / 1000.0):
            raise TransportError(f"rabbitmq: {role} connection did not complete {function.__name__}")
        if "error" in outcome:
            raise outcome["error"]

    def _on_message(self, _ch, method, _properties, body: bytes) -> None:
        self.dispatch(method.routing_key, body)
