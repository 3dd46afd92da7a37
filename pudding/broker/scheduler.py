"""Scheduler that moves messages from delay storage to the real-time queue."""

from __future__ import annotations

import abc
import logging
import threading
import uuid
from datetime import datetime, timedelta

from pudding.broker.connector import RealTimeConnector
from pudding.broker.redis_storage import DelayStorage
from pudding.errors import DuplicateMessageError
from pudding.types import DEFAULT_TOPIC, HandleMessage, Message

log = logging.getLogger(__name__)

ERR_INVALID_MESSAGE_DELAY = "message delay must be greater than 0"
ERR_INVALID_MESSAGE_READY = "DeliverAt must be greater than the current time"

_LOCKER_NAME_FORMAT = "pudding_locker_time:{}"
_LOCK_TTL = timedelta(seconds=3)
_RETRIES = 3
_CONSUME_BATCH_SIZE = 100


class LockedError(Exception):
    """The lock is already held elsewhere."""


class Locker(abc.ABC):
    """A distributed mutex."""

    @abc.abstractmethod
    def lock(self) -> None:
        """Acquire the lock; raise LockedError if it is held elsewhere."""

    @abc.abstractmethod
    def unlock(self) -> None:
        """Release the lock."""


class Cluster(abc.ABC):
    """Cluster services the scheduler relies on."""

    @abc.abstractmethod
    def wall_clock(self) -> datetime:
        """Current time agreed by the cluster."""

    @abc.abstractmethod
    def mutex(self, name: str, ttl: timedelta) -> Locker:
        """Create a named distributed mutex that expires after ``ttl``."""


class Scheduler:
    """Accepts delayed messages and forwards them once they are due."""

    def __init__(
        self,
        delay: DelayStorage,
        connector: RealTimeConnector,
        cluster: Cluster,
        message_topic: str = DEFAULT_TOPIC,
    ) -> None:
        self._delay = delay
        self._connector = connector
        self._cluster = cluster
        self.message_topic = message_topic
        # Set when the scheduler closes, to stop background workers.
        self.quit = threading.Event()

    def produce(self, msg: Message) -> None:
        """Validate ``msg`` and store it, retrying transient failures."""
        try:
            self.check_params(msg)
        except ValueError as exc:
            log.error("check message params failed: %s", exc)
            raise ValueError(f"check message params failed: {exc}") from exc

        last_error: Exception | None = None
        for attempt in range(_RETRIES):
            try:
                self._delay.produce(msg)
            except DuplicateMessageError as exc:
                log.error("DelayStorage: failed to produce message: %s, retry in [%d] times", exc, attempt)
                raise
            except Exception as exc:
                log.error("DelayStorage: failed to produce message: %s, retry in [%d] times", exc, attempt)
                last_error = exc
            else:
                log.info("success produce message: %s", msg)
                return
        assert last_error is not None
        raise last_error

    def check_params(self, msg: Message) -> None:
        """Fill in delivery time, key and topic; raise ValueError if invalid."""
        now = self._cluster.wall_clock()
        if msg.deliver_at <= 0:
            if msg.deliver_after <= 0:
                raise ValueError(ERR_INVALID_MESSAGE_DELAY)
            msg.deliver_at = int(now.timestamp()) + msg.deliver_after
        elif msg.deliver_at < now.timestamp():
            raise ValueError(ERR_INVALID_MESSAGE_READY)

        if not msg.key:
            msg.key = str(uuid.uuid4())
        if not msg.topic:
            msg.topic = self.message_topic

    def consume_delay_message(self, t: int) -> None:
        """Forward the messages of second ``t`` while holding its lock."""
        name = self.locker_name(t)
        try:
            locker = self._cluster.mutex(name, _LOCK_TTL)
        except Exception as exc:
            raise RuntimeError(f"failed to get timeSlice locker [{name}]: {exc}") from exc

        try:
            locker.lock()
        except LockedError:
            raise
        except Exception as exc:
            log.error("failed to get timeSlice locker [%s]: %s", name, exc)
            raise

        try:
            self._delay.consume(t, _CONSUME_BATCH_SIZE, self.produce_realtime)
        except Exception as exc:
            log.error("failed to consume timeSlice [%d] message: %s", t, exc)
        finally:
            try:
                locker.unlock()
            except Exception as exc:
                log.error("failed to release timeSlice locker [%s]: %s", name, exc)

    def locker_name(self, t: int) -> str:
        """Name of the lock guarding second ``t``."""
        return _LOCKER_NAME_FORMAT.format(t)

    def produce_realtime(self, msg: Message) -> None:
        """Send ``msg`` to the real-time queue, retrying on failure."""
        last_error: Exception | None = None
        for attempt in range(_RETRIES):
            try:
                self._connector.produce(msg)
            except Exception as exc:
                log.error(
                    "RealTimeConnector: failed to produce message to topic %s, err: %s, retry in %d times",
                    msg.topic,
                    exc,
                    attempt,
                )
                last_error = exc
            else:
                return
        assert last_error is not None
        raise last_error

    def new_consumer(self, topic: str, group: str, batch_size: int, fn: HandleMessage) -> None:
        """Consume ``topic`` from the real-time queue in the background."""
        self._connector.new_consumer(topic, group, batch_size, fn)

    def close(self) -> None:
        """Signal background workers and close the connector."""
        self.quit.set()
        self._connector.close()