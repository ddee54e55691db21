""" Class representations of the two envelopes that travel over the bus:
    the :class:`Query` published on a query channel, and the
    :class:`Response` published on the private reply channel named in the
    query.
"""

import itertools
import logging
import threading
from datetime import datetime, timezone

from .. import json
from ..errors import DecodeError


logger = logging.getLogger(__name__)


def now():
    return datetime.now(timezone.utc)


def format_date(date):
    """ Render a datetime as an ISO-8601 string with millisecond precision
        and a trailing 'Z', the same shape produced by a JavaScript
        Date.toISOString() call.
    """

    date = date.astimezone(timezone.utc)
    milliseconds = date.microsecond // 1000
    return date.strftime('%Y-%m-%dT%H:%M:%S') + '.%03dZ' % (milliseconds)


def parse_date(text):
    """ Inverse of :func:`format_date`. Any ISO-8601 string accepted by
        :func:`datetime.fromisoformat` is accepted here, with or without
        the trailing 'Z'; naive values are assumed to be UTC.
    """

    if text.endswith('Z'):
        text = text[:-1] + '+00:00'

    date = datetime.fromisoformat(text)

    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)

    return date


def _decode_object(body, kind):

    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as e:
        raise DecodeError('%s is not valid JSON: %s' % (kind, e), body) from e

    if isinstance(decoded, dict):
        pass
    else:
        raise DecodeError('%s is not a JSON object' % (kind), body)

    return decoded


def _decode_date(decoded, kind):
    """ The date is diagnostic only; a value that cannot be parsed is
        logged and treated as absent, never as a decoding failure.
    """

    try:
        date = decoded['date']
    except KeyError:
        return None

    if date is None:
        return None

    try:
        return parse_date(date)
    except (AttributeError, TypeError, ValueError):
        logger.debug('%s has an unreadable date: %r', kind, date)
        return None



class Sequence:
    """ Thread-safe counter for the diagnostic ``id`` field of outbound
        envelopes. The counter is not used for correlation; it only
        establishes an ordering within the logs of a single bus. Values
        wrap back to *start* after reaching :attr:`maximum`.
    """

    maximum = 0xFFFFFFFF

    def __init__(self, start=1):

        self.start = start
        self._lock = threading.Lock()
        self._ticker = itertools.count(start)


    def next(self):

        with self._lock:
            value = next(self._ticker)

            if value >= self.maximum:
                self._ticker = itertools.count(self.start)

        return value


# end of class Sequence



class Query:
    """ A request for a remote handler. The *data* is any JSON-serializable
        value; the *request_id* is unique to this request, and the
        *response_channel* is where the responder is expected to publish its
        :class:`Response`.

        :ivar date: A timezone-aware datetime for the message send time.
        :ivar id: The sequence number assigned by the sending bus.
    """

    def __init__(self, data, request_id, response_channel, date=None, id=None):

        if date is None:
            date = now()

        self.data = data
        self.date = date
        self.id = id
        self.request_id = request_id
        self.response_channel = response_channel


    def __repr__(self):
        return 'Query(%r, %r, %r)' % (self.request_id, self.response_channel, self.data)


    def to_dict(self):

        envelope = dict()
        envelope['data'] = self.data
        envelope['requestId'] = self.request_id
        envelope['responseChannel'] = self.response_channel
        envelope['date'] = format_date(self.date)
        envelope['id'] = self.id

        return envelope


    def encode(self):
        """ Return the JSON encoding of this envelope as bytes. A TypeError
            is raised if the data is not JSON-serializable.
        """

        return json.dumps(self.to_dict())


    @classmethod
    def decode(cls, body):
        """ Construct a :class:`Query` from the raw bytes received on a
            query channel. :class:`psquery.errors.DecodeError` is raised if
            the body is not a query envelope.
        """

        decoded = _decode_object(body, 'query')

        try:
            request_id = decoded['requestId']
            response_channel = decoded['responseChannel']
        except KeyError as e:
            raise DecodeError('query is missing field %s' % (e), body) from None

        for value in (request_id, response_channel):
            if isinstance(value, str) and value != '':
                continue
            raise DecodeError('query has an invalid reply address: %r' % (value,), body)

        date = _decode_date(decoded, 'query')

        return cls(decoded.get('data'), request_id, response_channel, date, decoded.get('id'))


# end of class Query



class Response:
    """ The reply to a :class:`Query`. A response carries no request
        identifier: the channel it arrives on is the correlation key.
    """

    def __init__(self, data, date=None, id=None):

        if date is None:
            date = now()

        self.data = data
        self.date = date
        self.id = id


    def __repr__(self):
        return 'Response(%r)' % (self.data,)


    def to_dict(self):

        envelope = dict()
        envelope['data'] = self.data
        envelope['date'] = format_date(self.date)
        envelope['id'] = self.id

        return envelope


    def encode(self):
        return json.dumps(self.to_dict())


    @classmethod
    def decode(cls, body):

        decoded = _decode_object(body, 'response')

        try:
            data = decoded['data']
        except KeyError:
            raise DecodeError('response is missing field data', body) from None

        date = _decode_date(decoded, 'response')

        return cls(data, date, decoded.get('id'))


# end of class Response


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
