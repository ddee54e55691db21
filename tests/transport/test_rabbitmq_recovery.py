import queue
import threading
import time
import types

import pytest

from psquery.transport import State, TransportError
from psquery.transport.rabbitmq.transport import RabbitTransport


class FakeChannel:

    def __init__(self):
        self.published = list()
        self.bound = list()
        self.refuse = False

    def exchange_declare(self, exchange, exchange_type, durable):
        pass

    def queue_declare(self, queue, exclusive):
        return types.SimpleNamespace(method=types.SimpleNamespace(queue='amq.gen-fake'))

    def basic_consume(self, queue, on_message_callback, auto_ack):
        pass

    def basic_publish(self, exchange, routing_key, body):
        if self.refuse:
            raise ConnectionError('channel closed by broker')
        self.published.append((routing_key, body))

    def queue_bind(self, exchange, queue, routing_key):
        self.bound.append(routing_key)

    def queue_unbind(self, exchange, queue, routing_key):
        self.bound.remove(routing_key)


class FakeConnection:
    """ Stands in for a pika.BlockingConnection: runs queued callbacks
        from process_data_events(), and raises from it once told to drop.
    """

    def __init__(self):
        self.is_open = True
        self.drop = threading.Event()
        self.callbacks = queue.SimpleQueue()
        self.fake_channel = FakeChannel()

    def channel(self):
        return self.fake_channel

    def process_data_events(self, time_limit):
        try:
            callback = self.callbacks.get(timeout=0.01)
        except queue.Empty:
            callback = None

        if callback is not None:
            callback()

        if self.drop.is_set():
            raise ConnectionError('connection reset by peer')

    def add_callback_threadsafe(self, callback):
        self.callbacks.put(callback)

    def close(self):
        self.is_open = False


@pytest.fixture
def rabbit():

    transport = RabbitTransport(host='broker.invalid', connect_timeout=1000)
    opened = list()

    def connection():
        opened.append(FakeConnection())
        return opened[-1]

    transport._connection = connection
    transport.opened = opened

    yield transport

    transport.close()


def wait_for(condition, timeout=3):

    expiration = time.monotonic() + timeout
    while time.monotonic() < expiration:
        if condition():
            return True
        time.sleep(0.01)
    return False


def test_publish_and_bind(rabbit):

    rabbit.connect()
    rabbit.subscribe('query:auth:check', lambda body: None)
    rabbit.publish('query:auth:check', b'{}')

    assert rabbit._sub_connection.fake_channel.bound == ['query:auth:check']
    assert rabbit._pub_connection.fake_channel.published == [('query:auth:check', b'{}')]


def test_publish_failure_reaches_caller(rabbit):

    rabbit.connect()
    rabbit._pub_connection.fake_channel.refuse = True

    with pytest.raises(TransportError):
        rabbit.publish('query:auth:check', b'{}')


def test_lost_connection_reconnects(rabbit):

    rabbit.connect()
    rabbit.subscribe('query:auth:check', lambda body: None)

    publisher = rabbit._pub_connection
    subscriber = rabbit._sub_connection
    subscriber.drop.set()

    assert wait_for(lambda: rabbit.state is State.DISCONNECTED)

    # Both connections are gone, not just the one that dropped.

    assert publisher.is_open == False
    assert subscriber.is_open == False

    rabbit.connect()

    assert rabbit.state is State.CONNECTED
    assert len(rabbit.opened) == 4
    assert rabbit._sub_connection is not subscriber
    assert rabbit._sub_connection.fake_channel.bound == ['query:auth:check']

    rabbit.publish('query:auth:check', b'again')
    assert rabbit._pub_connection.fake_channel.published == [('query:auth:check', b'again')]


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
