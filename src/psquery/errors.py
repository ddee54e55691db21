""" Exceptions reported to the caller of a query. Transport-level failures
    are defined alongside the transports in :mod:`psquery.transport.base`,
    and are also :class:`QueryError` subclasses so that a caller can catch
    every failure of a query with a single except clause.
"""

from __future__ import annotations

from typing import Optional


class QueryError(Exception):
    """Base class for every error a query can end with."""


class QueryTimeout(QueryError, TimeoutError):
    """ No reply arrived on the reply *channel* within *timeout*
        milliseconds.
    """

    def __init__(self, channel: str, timeout: float):
        self.channel = channel
        self.timeout = timeout
        QueryError.__init__(self, f"no reply on {channel} within {timeout:g} ms")


class DecodeError(QueryError, ValueError):
    """ A message body could not be decoded, or the decoded value was
        rejected by the validator. The undecoded *body* is retained for
        diagnostics.
    """

    def __init__(self, message: str, body: Optional[bytes] = None):
        self.body = body
        QueryError.__init__(self, message)


class HandlerError(Exception):
    """ A responder handler raised while handling a query. This never
        reaches the caller of the query; the responder logs it and sends
        no reply, so the caller experiences a timeout.
    """

    def __init__(self, channel: str, request_id: str):
        self.channel = channel
        self.request_id = request_id
        Exception.__init__(self, f"handler for {channel} failed on request {request_id}")


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
