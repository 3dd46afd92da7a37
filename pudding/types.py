"""Core message types, trigger statuses and shared defaults."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

import msgpack

# Topic used when a produced message names none.
DEFAULT_TOPIC = "default"
# Consumer group used when none is given.
DEFAULT_GROUP = "default_group"
# Topic carrying time-slice tokens.
TOKEN_TOPIC = "token"
# Consumer group reading time-slice tokens.
TOKEN_GROUP = "token_group"

# Maximum loop times of a trigger template: 1024.
DEFAULT_MAXIMUM_LOOP_TIMES = 1 << 10
# Default active duration of a trigger template: 30 days.
DEFAULT_TEMPLATE_ACTIVE_DURATION = timedelta(days=30)


@dataclass
class Message:
    """A message to be delivered at a given time."""

    topic: str = ""
    key: str = ""
    payload: bytes = b""
    # Seconds to wait before delivery.
    deliver_after: int = 0
    # Unix timestamp (seconds) of delivery.
    deliver_at: int = 0


HandleMessage = Callable[[Message], None]
"""A callable that handles one message; it signals failure by raising."""


class TriggerStatus(enum.IntEnum):
    """Lifecycle status of a trigger template."""

    UNKNOWN_UNSPECIFIED = 0
    ENABLED = 1
    DISABLED = 2
    OFFLINE = 3
    MAX_TIMES = 4
    MAX_AGE = 5


@dataclass
class PageQuery:
    """Offset and limit of a paged query."""

    offset: int = 0
    limit: int = 0


_FIELDS = ("topic", "key", "payload", "deliver_after", "deliver_at")


def encode_message(msg: Message) -> bytes:
    """Serialise a message with msgpack."""
    return msgpack.packb(
        {
            "topic": msg.topic,
            "key": msg.key,
            "payload": bytes(msg.payload),
            "deliver_after": msg.deliver_after,
            "deliver_at": msg.deliver_at,
        },
        use_bin_type=True,
    )


def decode_message(data: bytes) -> Message:
    """Deserialise a message produced by :func:`encode_message`."""
    try:
        raw = msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError, msgpack.UnpackException) as exc:
        raise ValueError(f"cannot decode message: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("cannot decode message: expected a map")
    return Message(**{name: raw[name] for name in _FIELDS if name in raw})