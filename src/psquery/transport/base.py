"""Transport interface.

This is the (small) contract that transport implementations should follow.
It lives outside :mod:`psquery.session` so the correlation logic remains
transport-agnostic.

A transport plays two roles over one broker: publishing bodies to named
channels, and delivering bodies received on subscribed channels to exactly
one callback per channel. The connection state machine, the channel table
and the sequence counter live here; subclasses implement the ``_open``,
``_close``, ``_subscribe``, ``_unsubscribe`` and ``_publish`` hooks.
"""

from __future__ import annotations

import enum
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, FrozenSet, Optional

from ..errors import QueryError
from ..protocol.envelope import Sequence


logger = logging.getLogger(__name__)

Callback = Callable[[bytes], None]


# Transport agnostic exceptions

class TransportError(QueryError):
    """Base class for all transport-layer errors."""


class TransportConnectionError(TransportError):
    """The transport could not establish or maintain a connection."""


class State(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Transport(ABC):
    """Minimal contract for a publish/subscribe transport."""

    name = "transport"

    def __init__(self):
        self.sequence = Sequence()

        self._state = State.DISCONNECTED
        self._state_changed = threading.Condition()
        self._last_error: Optional[BaseException] = None

        self._channels: Dict[str, Callback] = {}
        self._channels_lock = threading.Lock()

    # --- connection state machine ---

    @property
    def state(self) -> State:
        return self._state

    @property
    def is_open(self) -> bool:
        """Whether the transport is currently connected."""
        return self._state is State.CONNECTED

    def connect(self) -> None:
        """Establish both connections, once.

        Redundant calls are no-ops once connected. Callers arriving while
        another thread is connecting wait for that attempt rather than
        starting their own; if it fails, every waiter sees the failure.
        """

        with self._state_changed:
            if self._state is State.CONNECTED:
                return

            if self._state is State.CONNECTING:
                while self._state is State.CONNECTING:
                    self._state_changed.wait()

                if self._state is State.CONNECTED:
                    return

                raise TransportConnectionError(
                    f"{self.name}: connect failed: {self._last_error}"
                ) from self._last_error

            self._state = State.CONNECTING

        try:
            self._open()
        except BaseException as exc:
            with self._state_changed:
                self._state = State.DISCONNECTED
                self._last_error = exc
                self._state_changed.notify_all()

            if isinstance(exc, TransportError):
                raise
            if isinstance(exc, Exception):
                raise TransportConnectionError(f"{self.name}: connect failed: {exc}") from exc
            raise

        with self._state_changed:
            self._state = State.CONNECTED
            self._last_error = None
            self._state_changed.notify_all()

        logger.info("%s transport connected", self.name)

    def close(self) -> None:
        """Tear down both connections. Subscriptions do not survive."""

        with self._state_changed:
            while self._state is State.CONNECTING:
                self._state_changed.wait()

            if self._state is State.DISCONNECTED:
                closed = True
            else:
                closed = False
                self._state = State.DISCONNECTED
                self._state_changed.notify_all()

        with self._channels_lock:
            self._channels.clear()

        if closed:
            return

        try:
            self._close()
        finally:
            logger.info("%s transport closed", self.name)

    def _disconnected(self, reason: BaseException) -> None:
        """Called by an implementation whose connection dropped on its own.

        The channel table is kept, so that a later :func:`connect` can
        restore the subscriptions it holds.
        """

        with self._state_changed:
            if self._state is not State.CONNECTED:
                return

            self._state = State.DISCONNECTED
            self._last_error = reason
            self._state_changed.notify_all()

        logger.warning("%s transport disconnected: %s", self.name, reason)

    def _require_open(self) -> None:
        if self._state is not State.CONNECTED:
            raise TransportConnectionError(f"{self.name}: not connected")

    # --- channel table ---

    @property
    def channels(self) -> FrozenSet[str]:
        """Snapshot of the channels with a registered callback."""
        with self._channels_lock:
            return frozenset(self._channels)

    def subscribe(self, channel: str, callback: Callback) -> None:
        """Deliver every body arriving on *channel* to *callback*.

        Only one callback may be registered per channel.
        """

        if not callable(callback):
            raise TypeError("callback must be callable")

        self._require_open()

        with self._channels_lock:
            if channel in self._channels:
                raise ValueError(f"already subscribed: {channel!r}")
            self._channels[channel] = callback

        try:
            self._subscribe(channel)
        except Exception as exc:
            with self._channels_lock:
                self._channels.pop(channel, None)
            raise self._wrap("subscribe", channel, exc) from exc

    def unsubscribe(self, channel: str) -> None:
        """Remove the callback for *channel*; a no-op if there is none."""

        with self._channels_lock:
            callback = self._channels.pop(channel, None)

        if callback is None or not self.is_open:
            return

        try:
            self._unsubscribe(channel)
        except Exception as exc:
            raise self._wrap("unsubscribe", channel, exc) from exc

    def publish(self, channel: str, body: bytes) -> None:
        """Send *body* to every subscriber of *channel*; fire-and-forget."""

        self._require_open()

        try:
            self._publish(channel, body)
        except Exception as exc:
            raise self._wrap("publish", channel, exc) from exc

    def dispatch(self, channel: str, body: bytes) -> None:
        """Hand an arriving *body* to the callback registered for *channel*.

        Implementations call this from their receive thread. The lookup is
        an exact match on the channel name, whatever matching the broker
        itself applies.
        """

        with self._channels_lock:
            callback = self._channels.get(channel)

        if callback is None:
            return

        try:
            callback(body)
        except Exception:
            logger.exception("%s: callback for %s failed", self.name, channel)

    def _wrap(self, operation: str, channel: str, exc: Exception) -> TransportError:
        if isinstance(exc, TransportError):
            return exc
        return TransportError(f"{self.name}: {operation} {channel} failed: {exc}")

    # --- implementation hooks ---

    @abstractmethod
    def _open(self) -> None:
        """Establish the underlying connections."""

    @abstractmethod
    def _close(self) -> None:
        """Tear down the underlying connections."""

    @abstractmethod
    def _subscribe(self, channel: str) -> None:
        """Ask the broker for messages published on *channel*."""

    @abstractmethod
    def _unsubscribe(self, channel: str) -> None:
        """Stop receiving messages published on *channel*."""

    @abstractmethod
    def _publish(self, channel: str, body: bytes) -> None:
        """Publish *body* on *channel*."""
