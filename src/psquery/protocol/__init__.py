"""
psquery Protocol Layer
======================

Channel names and envelopes exchanged over the bus. The protocol layer
MUST NOT depend on any transport implementation.

    Session (session.py)
        query() / listen()
        │
        ▼
    Envelopes (envelope.py)
        Query, Response, Sequence
        │
        ▼
    Channel vocabulary (fields.py)
        query:<service>:<event>
        response:<service>:<request id>

Wire format, both directions, is a UTF-8 JSON object:

    query       {data, requestId, responseChannel, date, id}
    response    {data, date, id}
"""

from . import fields
from .envelope import Query, Response, Sequence, format_date, parse_date
from .fields import query_channel, response_channel


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
