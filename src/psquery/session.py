""" Request/response correlation over a publish/subscribe transport.

    A :class:`Bus` wraps a single :class:`psquery.transport.Transport` and
    offers two operations on top of it:

    * :func:`Bus.query` publishes a :class:`psquery.protocol.Query` on
      ``query:<service>:<event>`` and waits for exactly one reply on a
      private channel, ``response:<service>:<request id>``, created for that
      request alone. The reply channel is the correlation key.

    * :func:`Bus.listen` binds a handler to ``query:<service>:<event>`` and
      publishes each handler's return value to the reply channel named in
      the inbound query.

    The transport delivers inbound messages on its own thread; a query only
    blocks the thread that issued it, and inbound queries are handled on a
    pool of worker threads.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, TypeAdapter

from . import config
from .errors import DecodeError, HandlerError, QueryTimeout
from .protocol import fields
from .protocol.envelope import Query, Response
from .transport import Transport, TransportError, create


logger = logging.getLogger(__name__)

Handler = Callable[..., Any]
Validator = Callable[[Any], Any]


def _accept(value):
    return value


def make_validator(validator: Any) -> Validator:
    """ Normalize the *validator* given to :func:`Bus.query` into a callable
        that returns the validated value or raises.

        * None accepts any decoded value.
        * A pydantic model class validates with ``model_validate`` and
          returns the model instance.
        * A :class:`pydantic.TypeAdapter` validates with
          ``validate_python``.
        * Any other type, or typing construct such as ``Dict[str, bool]``,
          is wrapped in a TypeAdapter.
        * Any other callable is used as-is.
    """

    if validator is None:
        return _accept

    if isinstance(validator, TypeAdapter):
        return validator.validate_python

    if isinstance(validator, type):
        if issubclass(validator, BaseModel):
            return validator.model_validate
        return TypeAdapter(validator).validate_python

    if getattr(validator, '__origin__', None) is not None:
        return TypeAdapter(validator).validate_python

    if callable(validator):
        return validator

    raise TypeError(f"not a validator: {validator!r}")


class PendingQuery:
    """ One in-flight query, from publication to settlement.

        The outcome is delivered through :attr:`future`. Settlement happens
        exactly once, on whichever comes first: a reply, the deadline, a
        transport failure, or cancellation of the future by the caller. The
        first of these claims the future under :attr:`lock`; any later
        arrival finds the future already claimed and does nothing.

        Claiming the future releases the pending query's resources: the
        deadline timer is cancelled, the reply channel unsubscribed, and the
        record dropped from the owning :class:`Bus`.
    """

    def __init__(self, bus: 'Bus', channel: str, check: Validator, timeout: float):
        self.bus = bus
        self.channel = channel
        self.check = check
        self.timeout = timeout

        self.future: concurrent.futures.Future = concurrent.futures.Future()
        self.lock = threading.Lock()

        self.timer = threading.Timer(timeout / 1000.0, self.expire)
        self.timer.daemon = True

        self.future.add_done_callback(self._done)

    def __repr__(self):
        return f"PendingQuery({self.channel!r}, {self.future!r})"

    def start(self) -> None:
        self.timer.start()

    def receive(self, body: bytes) -> None:
        """Transport callback for the reply channel."""

        if not self._claim():
            return

        try:
            response = Response.decode(body)
        except DecodeError as exc:
            self.future.set_exception(exc)
            return

        try:
            value = self.check(response.data)
        except Exception as exc:
            error = DecodeError(f"reply on {self.channel} failed validation: {exc}", body)
            error.__cause__ = exc
            self.future.set_exception(error)
            return

        logger.debug("reply on %s (id %s)", self.channel, response.id)
        self.future.set_result(value)

    def expire(self) -> None:
        """Timer callback."""

        if self._claim():
            logger.debug("no reply on %s within %g ms", self.channel, self.timeout)
            self.future.set_exception(QueryTimeout(self.channel, self.timeout))

    def fail(self, exc: BaseException) -> None:
        if self._claim():
            self.future.set_exception(exc)

    def _claim(self) -> bool:
        with self.lock:
            if self.future.done() or self.future.running():
                return False
            claimed = self.future.set_running_or_notify_cancel()

        # A False return means the caller cancelled the future.
        self._release()
        return claimed

    def _done(self, future: concurrent.futures.Future) -> None:
        if future.cancelled():
            self._release()

    def _release(self) -> None:
        self.timer.cancel()

        try:
            self.bus.transport.unsubscribe(self.channel)
        except Exception as exc:
            logger.warning("unsubscribe from %s failed: %s", self.channel, exc)

        self.bus._forget(self)


# end of class PendingQuery



class Binding:
    """ A handler bound to one (*service*, *event*) pair. The *handler* is
        called with the query data, the request id, the send date and the
        reply channel; a coroutine function or any other callable returning
        an awaitable is run to completion on the worker thread.
    """

    def __init__(self, service: str, event: str, handler: Handler):
        if not callable(handler):
            raise TypeError('handler must be callable')

        self.service = service
        self.event = event
        self.handler = handler
        self.channel = fields.query_channel(service, event)

    def __repr__(self):
        return f"Binding({self.channel!r}, {self.handler!r})"

    def invoke(self, query: Query) -> Any:
        try:
            result = self.handler(query.data, query.request_id, query.date, query.response_channel)
            if inspect.isawaitable(result):
                result = asyncio.run(_resolve(result))
        except Exception as exc:
            raise HandlerError(self.channel, query.request_id) from exc

        return result


# end of class Binding



async def _resolve(awaitable):
    return await awaitable




class Bus:
    """ Queries and handlers over one transport. If no *transport* is
        provided, one is created from the PSQUERY_TRANSPORT environment
        variable. *timeout* is the default query timeout in milliseconds,
        and *workers* the number of threads handling inbound queries.
    """

    def __init__(self, transport: Optional[Transport] = None, timeout: Optional[float] = None, workers: Optional[int] = None):

        settings = config.settings()

        if transport is None:
            transport = create()
        if timeout is None:
            timeout = settings.timeout_ms
        if workers is None:
            workers = settings.workers

        self.transport = transport
        self.timeout = timeout

        self._pending: Dict[str, PendingQuery] = {}
        self._pending_lock = threading.Lock()

        self._bindings: Dict[Tuple[str, str], Binding] = {}
        self._bindings_lock = threading.Lock()

        self.workers = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix='psquery-handler'
        )

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def pending(self) -> int:
        """Number of queries awaiting settlement."""
        with self._pending_lock:
            return len(self._pending)

    # --- query path ---

    def query_future(self, service: str, event: str, payload: Any = None, validator: Any = None, timeout: Optional[float] = None) -> concurrent.futures.Future:
        """ Issue a query and return a :class:`concurrent.futures.Future`
            for its outcome without blocking. The future resolves with the
            validated reply, or fails with
            :class:`psquery.errors.QueryTimeout`,
            :class:`psquery.errors.DecodeError` or
            :class:`psquery.transport.TransportError`. Cancelling the future
            releases the reply channel; a later reply is dropped.

            A TypeError is raised immediately if *payload* cannot be
            encoded as JSON.
        """

        if timeout is None:
            timeout = self.timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, not {timeout}")

        check = make_validator(validator)
        channel = fields.query_channel(service, event)

        request_id = str(uuid.uuid4())
        reply_channel = fields.response_channel(service, request_id)

        pending = PendingQuery(self, reply_channel, check, timeout)

        try:
            self.transport.connect()
        except TransportError as exc:
            pending.fail(exc)
            return pending.future

        query = Query(payload, request_id, reply_channel, id=self.transport.sequence.next())
        body = query.encode()

        with self._pending_lock:
            self._pending[reply_channel] = pending

        # The reply channel must be subscribed before the query goes out,
        # otherwise a fast responder could reply before anyone listens.

        try:
            self.transport.subscribe(reply_channel, pending.receive)
            pending.start()
            self.transport.publish(channel, body)
        except TransportError as exc:
            pending.fail(exc)
            return pending.future

        logger.debug("query %s on %s (id %s)", request_id, channel, query.id)
        return pending.future

    def query(self, service: str, event: str, payload: Any = None, validator: Any = None, timeout: Optional[float] = None) -> Any:
        """ Issue a query and block until it settles. The validated reply
            is returned; the failure is raised otherwise. See
            :func:`query_future` for the arguments.
        """

        return self.query_future(service, event, payload, validator, timeout).result()

    async def query_async(self, service: str, event: str, payload: Any = None, validator: Any = None, timeout: Optional[float] = None) -> Any:
        """ Coroutine flavor of :func:`query`; the event loop is not
            blocked while the query is in flight. Cancelling the awaiting
            task cancels the query.
        """

        future = self.query_future(service, event, payload, validator, timeout)
        return await asyncio.wrap_future(future)

    def _forget(self, pending: PendingQuery) -> None:
        with self._pending_lock:
            if self._pending.get(pending.channel) is pending:
                del self._pending[pending.channel]

    # --- listen path ---

    def listen(self, service: str, event: str, handler: Handler) -> Binding:
        """ Answer every query for (*service*, *event*) with the return
            value of *handler*. Only one handler may be bound to a pair.
        """

        binding = Binding(service, event, handler)
        key = (service, event)

        with self._bindings_lock:
            if key in self._bindings:
                raise ValueError(f"already listening on {binding.channel}")
            self._bindings[key] = binding

        try:
            self.transport.connect()
            self.transport.subscribe(binding.channel, lambda body: self._incoming(binding, body))
        except BaseException:
            with self._bindings_lock:
                self._bindings.pop(key, None)
            raise

        logger.info("listening on %s", binding.channel)
        return binding

    def handler(self, service: str, event: str) -> Callable[[Handler], Handler]:
        """ Decorator flavor of :func:`listen`.
        """

        def decorator(function: Handler) -> Handler:
            self.listen(service, event, function)
            return function

        return decorator

    def unlisten(self, service: str, event: str) -> None:
        """ Remove the handler for (*service*, *event*), if any.
        """

        with self._bindings_lock:
            binding = self._bindings.pop((service, event), None)

        if binding is None:
            return

        self.transport.unsubscribe(binding.channel)
        logger.info("stopped listening on %s", binding.channel)

    def _incoming(self, binding: Binding, body: bytes) -> None:
        self.workers.submit(self._respond, binding, body)

    def _respond(self, binding: Binding, body: bytes) -> None:
        """ Handle one inbound query on a worker thread. Nothing raised
            here may escape; a bad request must not affect the next one.
        """

        try:
            query = Query.decode(body)
        except DecodeError as exc:
            logger.warning("%s: dropping undecodable query: %s", binding.channel, exc)
            return

        try:
            result = binding.invoke(query)
        except HandlerError as exc:
            logger.error("%s", exc, exc_info=exc.__cause__)
            return

        response = Response(result, id=self.transport.sequence.next())

        try:
            reply = response.encode()
        except TypeError as exc:
            logger.error("%s: cannot encode reply to request %s: %s", binding.channel, query.request_id, exc)
            return

        try:
            self.transport.publish(query.response_channel, reply)
        except TransportError as exc:
            logger.error("%s: reply to request %s failed: %s", binding.channel, query.request_id, exc)

    # --- teardown ---

    def close(self) -> None:
        """ Fail every pending query with a TransportError, drop every
            binding, stop the workers and close the transport.
        """

        with self._pending_lock:
            pending = list(self._pending.values())

        for entry in pending:
            entry.fail(TransportError('bus closed'))

        with self._bindings_lock:
            self._bindings.clear()

        self.workers.shutdown(wait=False)
        self.transport.close()


# end of class Bus



_default = None
_default_lock = threading.Lock()


def default() -> Bus:
    """ Return the process-wide :class:`Bus`, creating it on first use from
        the environment. Use of this method is encouraged to streamline
        re-use of established connections.
    """

    global _default

    with _default_lock:
        if _default is None:
            _default = Bus()
        return _default


def query(service, event, payload=None, validator=None, timeout=None):
    return default().query(service, event, payload, validator, timeout)


async def query_async(service, event, payload=None, validator=None, timeout=None):
    return await default().query_async(service, event, payload, validator, timeout)


def listen(service, event, handler):
    return default().listen(service, event, handler)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
