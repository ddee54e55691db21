""" Request/response queries over a publish/subscribe broker. A caller
    issues :func:`query` and receives exactly one validated reply, or an
    error; a responder registers a handler with :func:`listen` and has its
    return values routed back to the right caller.
"""

# Utility components.

from . import json
from . import config

# Submodules used by multiple other components.

from . import errors
from . import protocol
from . import transport

# Primary public-facing interfaces.

from .errors import DecodeError, HandlerError, QueryError, QueryTimeout
from .transport import TransportConnectionError, TransportError
from .session import Bus, default, listen, query, query_async

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
