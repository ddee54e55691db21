"""Transport layer implementations."""

from __future__ import annotations

from typing import Optional

from .. import config
from .base import (
    State,
    Transport,
    TransportConnectionError,
    TransportError,
)
from .memory import MemoryBroker, MemoryTransport


backends = ("zmq", "rabbitmq", "memory")


def create(name: Optional[str] = None, **kwargs) -> Transport:
    """Instantiate the transport backend *name*.

    The backend defaults to the PSQUERY_TRANSPORT environment variable.
    Keyword arguments are handed to the backend's constructor.
    """

    if name is None:
        name = config.settings().transport

    if name == "zmq":
        from .zmq.transport import ZmqTransport
        return ZmqTransport(**kwargs)
    elif name == "rabbitmq":
        from .rabbitmq.transport import RabbitTransport
        return RabbitTransport(**kwargs)
    elif name == "memory":
        return MemoryTransport(**kwargs)
    else:
        raise ValueError(f"unknown transport backend: {name!r}")
