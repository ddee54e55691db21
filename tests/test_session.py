import asyncio
import concurrent.futures
import logging
import queue
import random
import threading
import time
from datetime import datetime
from typing import Dict

import pytest
from pydantic import BaseModel, TypeAdapter

import psquery
from psquery import session
from psquery.protocol import Response
from psquery.session import PendingQuery, make_validator
from psquery.transport import MemoryTransport


class Decision(BaseModel):
    allowed: bool


def test_reply(responder, caller):

    responder.listen('auth', 'check-file-access', lambda data, request_id, date, channel: {'allowed': True})

    assert caller.query('auth', 'check-file-access', {'sessionId': 's1', 'fileId': 'f1'}) == {'allowed': True}
    assert caller.pending == 0
    assert caller.transport.channels == frozenset()


def test_handler_arguments(responder, caller):

    seen = list()

    def handler(data, request_id, date, response_channel):
        seen.append((data, request_id, date, response_channel))
        return 'ok'

    responder.listen('auth', 'inspect', handler)
    caller.query('auth', 'inspect', [1, 2, 3])

    data, request_id, date, response_channel = seen[0]

    assert data == [1, 2, 3]
    assert response_channel == 'response:auth:' + request_id
    assert isinstance(date, datetime)
    assert date.tzinfo is not None


def test_validators(responder, caller):

    responder.listen('auth', 'decide', lambda data, request_id, date, channel: {'allowed': data})

    decision = caller.query('auth', 'decide', True, Decision)
    assert isinstance(decision, Decision)
    assert decision.allowed == True

    assert caller.query('auth', 'decide', False, Dict[str, bool]) == {'allowed': False}
    assert caller.query('auth', 'decide', True, TypeAdapter(Dict[str, bool])) == {'allowed': True}
    assert caller.query('auth', 'decide', True, lambda value: value['allowed']) == True


def test_make_validator():

    assert make_validator(None)(5) == 5
    assert make_validator(int)('5') == 5

    with pytest.raises(TypeError):
        make_validator(5)


def test_timeout(caller):

    begin = time.monotonic()

    with pytest.raises(psquery.QueryTimeout) as caught:
        caller.query('auth', 'nobody-home', {}, timeout=100)

    elapsed = time.monotonic() - begin

    assert elapsed >= 0.1
    assert elapsed < 0.5
    assert caught.value.channel.startswith('response:auth:')
    assert isinstance(caught.value, TimeoutError)
    assert caller.pending == 0
    assert caller.transport.channels == frozenset()


def test_repeated_timeouts_leave_nothing_behind(caller, memory_broker):

    channels = list()

    for count in range(20):
        with pytest.raises(psquery.QueryTimeout) as caught:
            caller.query('auth', 'nobody-home', count, timeout=10)
        channels.append(caught.value.channel)

    assert len(set(channels)) == 20
    assert caller.pending == 0
    assert caller.transport.channels == frozenset()

    for channel in channels:
        assert memory_broker.subscribers(channel) == 0


def test_invalid_timeout(caller):

    with pytest.raises(ValueError):
        caller.query('auth', 'check-file-access', {}, timeout=0)

    with pytest.raises(ValueError):
        caller.query('auth', 'check-file-access', {}, timeout=-5)


def test_unencodable_payload(caller):

    with pytest.raises(TypeError):
        caller.query('auth', 'check-file-access', object())

    assert caller.pending == 0
    assert caller.transport.channels == frozenset()


def test_no_cross_delivery(responder, caller):

    def double(data, request_id, date, channel):
        time.sleep(random.random() * 0.02)
        return data * 2

    responder.listen('math', 'double', double)

    with concurrent.futures.ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda number: caller.query('math', 'double', number), range(50)))

    assert results == [number * 2 for number in range(50)]
    assert caller.pending == 0
    assert caller.transport.channels == frozenset()


def test_reply_and_timeout_race(responder, caller):

    def slow(data, request_id, date, channel):
        time.sleep(0.02)
        return data

    responder.listen('slow', 'echo', slow)

    outcomes = list()

    for number in range(30):
        try:
            outcomes.append(caller.query('slow', 'echo', number, timeout=20))
        except psquery.QueryTimeout:
            outcomes.append(None)

    for number, outcome in enumerate(outcomes):
        assert outcome in (number, None)

    # Late replies land on channels nobody subscribes to any more.

    time.sleep(0.1)
    assert caller.pending == 0
    assert caller.transport.channels == frozenset()


def test_reply_then_deadline(caller):

    caller.transport.connect()

    pending = PendingQuery(caller, 'response:auth:r1', make_validator(None), 1000)
    caller.transport.subscribe(pending.channel, pending.receive)
    pending.start()

    pending.receive(Response(5).encode())
    pending.expire()
    pending.receive(Response(6).encode())

    assert pending.future.result() == 5
    assert pending.timer.finished.is_set()
    assert caller.transport.channels == frozenset()


def test_deadline_then_reply(caller):

    caller.transport.connect()

    pending = PendingQuery(caller, 'response:auth:r2', make_validator(None), 1000)
    caller.transport.subscribe(pending.channel, pending.receive)
    pending.start()

    pending.expire()
    pending.receive(Response(5).encode())

    with pytest.raises(psquery.QueryTimeout):
        pending.future.result()

    assert caller.transport.channels == frozenset()


@pytest.mark.parametrize('reply', (b'not json', b'[1, 2]', b'{"date": "2024-03-01T12:30:45.000Z"}'))
def test_undecodable_reply(caller, raw_responder, reply):

    raw_responder('query:auth:check-file-access', reply)

    with pytest.raises(psquery.DecodeError) as caught:
        caller.query('auth', 'check-file-access', {})

    assert caught.value.body == reply
    assert caller.pending == 0
    assert caller.transport.channels == frozenset()


def test_rejected_reply(caller, raw_responder):

    raw_responder('query:auth:check-file-access', Response({'allowed': 'perhaps'}).encode())

    with pytest.raises(psquery.DecodeError) as caught:
        caller.query('auth', 'check-file-access', {}, Decision)

    assert caught.value.__cause__ is not None
    assert caller.transport.channels == frozenset()


def test_query_envelope(caller, raw_responder):

    seen = raw_responder('query:auth:check-file-access', Response(True).encode())

    caller.query('auth', 'check-file-access', {'fileId': 'f1'})
    caller.query('auth', 'check-file-access', {'fileId': 'f2'})

    first = psquery.json.loads(seen[0])
    second = psquery.json.loads(seen[1])

    assert first['data'] == {'fileId': 'f1'}
    assert first['responseChannel'] == 'response:auth:' + first['requestId']
    assert first['requestId'] != second['requestId']
    assert second['id'] > first['id']


def test_handler_failure_keeps_listening(responder, caller, caplog):

    def picky(data, request_id, date, channel):
        if data == 'bad':
            raise RuntimeError('refusing bad input')
        return data

    responder.listen('picky', 'echo', picky)

    with caplog.at_level(logging.ERROR, logger='psquery'):
        with pytest.raises(psquery.QueryTimeout):
            caller.query('picky', 'echo', 'bad', timeout=100)

    assert any('picky:echo' in record.getMessage() for record in caplog.records)
    assert caller.query('picky', 'echo', 'good') == 'good'


def test_unencodable_result(responder, caller, caplog):

    responder.listen('odd', 'thing', lambda data, request_id, date, channel: object())

    with caplog.at_level(logging.ERROR, logger='psquery'):
        with pytest.raises(psquery.QueryTimeout):
            caller.query('odd', 'thing', None, timeout=100)

    assert any('cannot encode' in record.getMessage() for record in caplog.records)


def test_undecodable_query_ignored(responder, caller):

    calls = list()
    responder.listen('auth', 'check', lambda *args: calls.append(args))

    caller.transport.connect()
    caller.transport.publish('query:auth:check', b'not json')
    caller.transport.publish('query:auth:check', b'{"data": 1}')

    time.sleep(0.1)
    assert calls == []

    assert caller.query('auth', 'check', 1) is None
    assert len(calls) == 1


def test_async_handler(responder, caller):

    async def handler(data, request_id, date, channel):
        await asyncio.sleep(0.01)
        return data + 1

    responder.listen('math', 'increment', handler)

    assert caller.query('math', 'increment', 41) == 42


def test_query_async(responder, caller):

    responder.listen('math', 'negate', lambda data, request_id, date, channel: -data)

    async def ask():
        return await asyncio.gather(*(caller.query_async('math', 'negate', number) for number in range(5)))

    assert asyncio.run(ask()) == [0, -1, -2, -3, -4]


def test_cancel(caller):

    future = caller.query_future('auth', 'nobody-home', {}, timeout=5000)

    assert caller.pending == 1
    assert future.cancel() == True
    assert caller.pending == 0
    assert caller.transport.channels == frozenset()


def test_close_fails_pending(memory_broker):

    bus = psquery.Bus(psquery.transport.MemoryTransport(memory_broker))
    future = bus.query_future('auth', 'nobody-home', {}, timeout=5000)

    bus.close()

    assert isinstance(future.exception(timeout=1), psquery.TransportError)
    assert bus.pending == 0


def test_broker_unavailable(memory_broker):

    memory_broker.available = False
    bus = psquery.Bus(psquery.transport.MemoryTransport(memory_broker))

    with pytest.raises(psquery.TransportConnectionError):
        bus.query('auth', 'check-file-access', {})

    memory_broker.available = True
    bus.transport.connect()
    memory_broker.available = False

    with pytest.raises(psquery.TransportError):
        bus.query('auth', 'check-file-access', {})

    assert bus.pending == 0
    assert bus.transport.channels == frozenset()

    memory_broker.available = True
    bus.close()


def test_listen_bindings(responder, caller):

    responder.listen('auth', 'check', lambda *args: 1)

    with pytest.raises(ValueError):
        responder.listen('auth', 'check', lambda *args: 2)

    responder.unlisten('auth', 'check')
    responder.unlisten('auth', 'check')

    @responder.handler('auth', 'check')
    def check(data, request_id, date, channel):
        return 3

    assert caller.query('auth', 'check') == 3

    with pytest.raises(TypeError):
        responder.listen('auth', 'other', 'not callable')


def test_concurrent_handlers(responder, caller):

    # Each handler only returns once the other one has started, which can
    # only happen if both run at the same time.

    barrier = threading.Barrier(2, timeout=2)

    def rendezvous(data, request_id, date, channel):
        barrier.wait()
        return data

    responder.listen('sync', 'meet', rendezvous)

    first = caller.query_future('sync', 'meet', 'a', timeout=3000)
    second = caller.query_future('sync', 'meet', 'b', timeout=3000)

    assert first.result() == 'a'
    assert second.result() == 'b'


class StickyTransport(MemoryTransport):
    """A memory transport whose broker refuses every unsubscribe."""

    def _unsubscribe(self, channel):
        raise OSError('broker refused unsubscribe')


def test_unsubscribe_failure_is_logged(responder, memory_broker, caplog):

    bus = psquery.Bus(StickyTransport(memory_broker))
    responder.listen('auth', 'check', lambda data, request_id, date, channel: data)

    try:
        with caplog.at_level(logging.WARNING, logger='psquery.session'):
            assert bus.query('auth', 'check', 'yes') == 'yes'

            with pytest.raises(psquery.QueryTimeout):
                bus.query('auth', 'nobody-home', None, timeout=50)

        warnings = [record for record in caplog.records if 'unsubscribe from response:auth:' in record.getMessage()]
        assert len(warnings) == 2
        assert all(record.levelno == logging.WARNING for record in warnings)

        assert bus.pending == 0
        assert bus.transport.channels == frozenset()
    finally:
        bus.close()


def test_unreadable_reply_date(caller, raw_responder):

    raw_responder('query:auth:check-file-access', b'{"data": {"allowed": true}, "date": "not-a-date", "id": 1}')

    assert caller.query('auth', 'check-file-access', {}, Decision, timeout=300) == Decision(allowed=True)


def test_unreadable_query_date(responder, caller):

    seen = list()

    def handler(data, request_id, date, channel):
        seen.append(date)
        return data

    responder.listen('auth', 'check', handler)

    replies = queue.Queue()
    caller.transport.connect()
    caller.transport.subscribe('response:auth:by-hand', replies.put)

    query = {'data': 'yes', 'requestId': 'by-hand', 'responseChannel': 'response:auth:by-hand', 'date': 'garbage', 'id': 1}
    caller.transport.publish('query:auth:check', psquery.json.dumps(query))

    assert Response.decode(replies.get(timeout=2)).data == 'yes'
    assert seen == [None]


@pytest.fixture
def default_bus(monkeypatch):

    monkeypatch.setenv('PSQUERY_TRANSPORT', 'memory')
    monkeypatch.setattr(session, '_default', None)

    yield

    if session._default is not None:
        session._default.close()


def test_default_bus(default_bus):

    bus = psquery.default()

    assert psquery.default() is bus
    assert isinstance(bus.transport, MemoryTransport)

    psquery.listen('echo', 'twice', lambda data, request_id, date, channel: data * 2)

    assert psquery.query('echo', 'twice', 4) == 8
    assert asyncio.run(psquery.query_async('echo', 'twice', 'ab')) == 'abab'
    assert psquery.default() is bus


def test_default_bus_created_once(default_bus):

    buses = list()

    def create():
        buses.append(psquery.default())

    threads = [threading.Thread(target=create) for count in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(map(id, buses))) == 1


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
