import pytest
import zmq

import psquery
from psquery.broker import Broker
from psquery.transport import MemoryBroker, MemoryTransport


@pytest.fixture
def memory_broker():
    return MemoryBroker()


@pytest.fixture
def responder(memory_broker):

    bus = psquery.Bus(MemoryTransport(memory_broker), workers=4)
    yield bus
    bus.close()


@pytest.fixture
def caller(memory_broker):

    bus = psquery.Bus(MemoryTransport(memory_broker), timeout=1000, workers=4)
    yield bus
    bus.close()


@pytest.fixture
def raw_responder(memory_broker):
    """ Answer every query published on a channel with a fixed reply body,
        bypassing the Bus entirely. Returns the list of query bodies seen.
    """

    transports = list()

    def start(channel, reply):

        seen = list()
        transport = MemoryTransport(memory_broker)
        transport.connect()

        def answer(body):
            seen.append(body)
            response_channel = psquery.json.loads(body)['responseChannel']
            if reply is not None:
                transport.publish(response_channel, reply)

        transport.subscribe(channel, answer)
        transports.append(transport)
        return seen

    yield start

    for transport in transports:
        transport.close()


@pytest.fixture
def zmq_broker():

    # A private context, so that terminating it cannot interfere with the
    # sockets held by transports on the shared context.

    context = zmq.Context()
    broker = Broker('tcp://127.0.0.1:*', 'tcp://127.0.0.1:*', context=context)
    broker.start()

    yield broker

    broker.stop()
    context.term()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
