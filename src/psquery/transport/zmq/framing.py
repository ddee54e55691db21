"""ZMQ multipart framing for channel messages.

Publish (PUSH -> broker -> SUB)
    channel_with_trailing_dot, body
"""

from __future__ import annotations

from typing import Sequence, Tuple


def topic(channel: str) -> bytes:
    """Subscription prefix for *channel*.

    ZeroMQ subscriptions match by prefix; the trailing dot keeps
    ``query:auth:check`` from also matching ``query:auth:checkout``.
    """
    return (channel + ".").encode()


def to_frames(channel: str, body: bytes) -> Tuple[bytes, bytes]:
    return (topic(channel), bytes(body))


def from_frames(parts: Sequence[bytes]) -> Tuple[str, bytes]:
    if len(parts) != 2:
        raise ValueError(f"expected 2 frames, received {len(parts)}")

    channel = parts[0].decode()
    if not channel.endswith("."):
        raise ValueError(f"channel frame lacks trailing separator: {channel!r}")

    return channel[:-1], parts[1]
