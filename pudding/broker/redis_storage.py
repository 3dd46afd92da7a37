"""Delay storage that keeps messages in Redis sorted sets per time slice."""

from __future__ import annotations

import abc
import logging
from typing import Any

from pudding.errors import DuplicateMessageError
from pudding.types import HandleMessage, Message, decode_message, encode_message

log = logging.getLogger(__name__)

PUSH_SCRIPT = """
-- KEYS[1]: ZSet topic
-- KEYS[2]: Hashtable topic
-- ARGV[1]: Message Key
-- ARGV[2]: Message
-- ARGV[3]: Message Ready Time (now + delay)
local zset = KEYS[1]
local hashtable = KEYS[2]
local key = ARGV[1]
local message = ARGV[2]
local readyTime = tonumber(ARGV[3])
local count = redis.call("zadd", zset, readyTime, key)
if count == 0 then
   return 0
end
redis.call("hsetnx", hashtable, key, message)
return 1
"""

DELETE_SCRIPT = """
-- KEYS[1]: zset Name
-- KEYS[2]: hashtable Name
-- ARGV[1]: Message Key
local zset = KEYS[1]
local hashtable = KEYS[2]
local key = ARGV[1]
redis.call("zrem", zset, key)
redis.call("hdel", hashtable, key)
return 1
"""

_TIME_SLICE_FORMAT = "{}~{}"
_ZSET_NAME_FORMAT = "zset_timeSlice_{}_bucket_{}"
_HASHTABLE_NAME_FORMAT = "hashTable_timeSlice_{}_bucket_{}"
_DEFAULT_BUCKET = 1


class DelayStorage(abc.ABC):
    """Stores messages until their delivery time."""

    @abc.abstractmethod
    def produce(self, msg: Message) -> None:
        """Store a message; raise DuplicateMessageError if its key exists."""

    @abc.abstractmethod
    def consume(self, now: int, batch_size: int, fn: HandleMessage) -> None:
        """Hand every message due at ``now`` to ``fn`` and remove it."""

    @abc.abstractmethod
    def close(self) -> None:
        """Release the storage."""


class RedisDelayStorage(DelayStorage):
    """Delay storage on a redis-py client (``decode_responses`` must be off)."""

    def __init__(self, client: Any, interval: int) -> None:
        if interval <= 0:
            raise ValueError("time slice interval must be greater than 0")
        self._client = client
        self.interval = interval
        # time slice name -> number of buckets in that slice
        self._buckets: dict[str, int] = {}
        self._push = client.register_script(PUSH_SCRIPT)
        self._delete = client.register_script(DELETE_SCRIPT)

    def produce(self, msg: Message) -> None:
        time_slice = self.time_slice(msg.deliver_at)
        body = encode_message(msg)
        try:
            count = self._push(
                keys=[self.zset_name(time_slice), self.hashtable_name(time_slice)],
                args=[msg.key, body, msg.deliver_at],
            )
        except Exception as exc:
            raise RuntimeError(f"failed to push message: {exc}") from exc
        if int(count) == 0:
            raise DuplicateMessageError()

    def consume(self, now: int, batch_size: int, fn: HandleMessage) -> None:
        time_slice = self.time_slice(now)
        keys = [self.zset_name(time_slice), self.hashtable_name(time_slice)]
        while True:
            messages = self.fetch_ready(time_slice, now, batch_size)
            if not messages:
                break
            for msg in messages:
                try:
                    fn(msg)
                except Exception as exc:
                    log.error("failed to handle message: %s, caused by: %s", msg, exc)
                self._delete(keys=keys, args=[msg.key])

    def fetch_ready(self, time_slice: str, now: int, batch_size: int) -> list[Message]:
        """Return up to ``batch_size`` messages of the slice scored exactly ``now``."""
        try:
            members = self._client.zrangebyscore(
                self.zset_name(time_slice), now, now, start=0, num=batch_size
            )
        except Exception as exc:
            raise RuntimeError(f"failed to get messages from zset: {exc}") from exc

        hashtable = self.hashtable_name(time_slice)
        result: list[Message] = []
        for member in members:
            key = member.decode() if isinstance(member, bytes) else str(member)
            body = self._client.hget(hashtable, key)
            if body is None:
                log.error("failed to get message body of [%s] from hashTable", key)
                continue
            try:
                msg = decode_message(body)
            except ValueError as exc:
                log.error("failed to decode message body: %s", exc)
                continue
            log.debug("get message from zset: %s", msg)
            result.append(msg)
        return result

    def close(self) -> None:
        """Forget the bucket bookkeeping; the client is owned by the caller."""
        self._buckets.clear()

    def time_slice(self, ready_time: int) -> str:
        """Name of the left-closed, right-open slice holding ``ready_time``."""
        start = (ready_time // self.interval) * self.interval
        return _TIME_SLICE_FORMAT.format(start, start + self.interval)

    def zset_name(self, time_slice: str) -> str:
        return _ZSET_NAME_FORMAT.format(time_slice, self.bucket(time_slice))

    def hashtable_name(self, time_slice: str) -> str:
        return _HASHTABLE_NAME_FORMAT.format(time_slice, self.bucket(time_slice))

    def bucket(self, time_slice: str) -> int:
        """Bucket number of a time slice; every slice uses a single bucket."""
        return self._buckets.setdefault(time_slice, _DEFAULT_BUCKET)