"""Connectors that push due messages to a real-time queue."""

from __future__ import annotations

import abc
import logging
import threading
import uuid
from typing import Any, Callable, Protocol

from pudding.types import HandleMessage, Message, decode_message, encode_message

log = logging.getLogger(__name__)


class RealTimeConnector(abc.ABC):
    """A queue that stores and delivers messages in real time."""

    @abc.abstractmethod
    def produce(self, msg: Message) -> None:
        """Send a message to the real-time queue."""

    @abc.abstractmethod
    def new_consumer(self, topic: str, group: str, batch_size: int, fn: HandleMessage) -> None:
        """Start consuming ``topic`` in the background, handing messages to ``fn``."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop consumers and close the queue."""


class _KafkaConsumer(Protocol):
    def run(self) -> None: ...

    def close(self) -> None: ...


KafkaHandler = Callable[[str, bytes, bytes], None]


class KafkaClient(abc.ABC):
    """The Kafka operations a connector needs."""

    @abc.abstractmethod
    def send_message(self, topic: str, key: bytes, value: bytes) -> None:
        """Publish one record."""

    @abc.abstractmethod
    def new_consumer(self, topic: str, group: str, handler: KafkaHandler) -> _KafkaConsumer:
        """Create a consumer calling ``handler(topic, key, value)`` per record."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the client."""


class KafkaConnector(RealTimeConnector):
    """Real-time connector backed by Kafka."""

    def __init__(self, client: KafkaClient) -> None:
        self._client = client
        self._consumers: dict[str, _KafkaConsumer] = {}

    def produce(self, msg: Message) -> None:
        try:
            self._client.send_message(msg.topic, msg.key.encode(), bytes(msg.payload))
        except Exception as exc:
            log.error("SendMessage [%s] error: %s", msg.key, exc)
            raise

    def new_consumer(self, topic: str, group: str, batch_size: int, fn: HandleMessage) -> None:
        def handler(record_topic: str, key: bytes, value: bytes) -> None:
            fn(Message(topic=record_topic, key=key.decode(), payload=value))

        try:
            consumer = self._client.new_consumer(topic, group, handler)
        except Exception as exc:
            log.error("NewConsumer error: %s", exc)
            raise
        consumer.run()
        self._consumers[f"{topic}{group}{uuid.uuid4()}"] = consumer

    def close(self) -> None:
        for name, consumer in self._consumers.items():
            try:
                consumer.close()
            except Exception as exc:
                log.error("consumer [%s] close error: %s", name, exc)
        self._client.close()


class RedisConnector(RealTimeConnector):
    """Real-time connector backed by Redis streams and consumer groups."""

    _BLOCK_MS = 1000
    _ERROR_BACKOFF = 1.0

    def __init__(self, client: Any, consumer_name: str = "pudding") -> None:
        self._client = client
        self.consumer_name = consumer_name
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def produce(self, msg: Message) -> None:
        body = encode_message(msg)
        self._client.xadd(msg.topic, {"body": body})

    def new_consumer(self, topic: str, group: str, batch_size: int, fn: HandleMessage) -> None:
        try:
            self._client.xgroup_create(topic, group, id="0", mkstream=True)
        except Exception as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        thread = threading.Thread(
            target=self._consume_loop, args=(topic, group, batch_size, fn), daemon=True
        )
        self._threads.append(thread)
        thread.start()

    def _read(self, topic: str, group: str, start_id: str, batch_size: int) -> list:
        block = self._BLOCK_MS if start_id == ">" else None
        reply = self._client.xreadgroup(
            group, self.consumer_name, {topic: start_id}, count=batch_size, block=block
        )
        return [entry for _, entries in reply or [] for entry in entries]

    def _consume_loop(self, topic: str, group: str, batch_size: int, fn: HandleMessage) -> None:
        while not self._stop.is_set():
            # Unacknowledged messages first, so each is handled at least once.
            try:
                pending = self._read(topic, group, "0", batch_size)
            except Exception as exc:
                log.error("XGroupConsume unack message error: %s", exc)
                self._stop.wait(self._ERROR_BACKOFF)
                continue
            self.handle_messages(pending, topic, group, fn)
            if len(pending) == batch_size:
                continue
            try:
                fresh = self._read(topic, group, ">", batch_size)
            except Exception as exc:
                log.error("XGroupConsume message error: %s", exc)
                self._stop.wait(self._ERROR_BACKOFF)
                continue
            self.handle_messages(fresh, topic, group, fn)

    def handle_messages(self, messages: list, topic: str, group: str, fn: HandleMessage) -> None:
        """Handle stream entries and acknowledge those handled successfully."""
        for message_id, fields in messages:
            body = fields.get(b"body", fields.get("body"))
            try:
                msg = decode_message(body)
            except (ValueError, TypeError) as exc:
                log.error("decode message error: %s", exc)
                continue
            try:
                fn(msg)
            except Exception as exc:
                log.error("handle message error: %s", exc)
                continue
            try:
                self._client.xack(topic, group, message_id)
            except Exception as exc:
                log.error("XAck message error: %s", exc)

    def close(self) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=5)
        self._client.close()