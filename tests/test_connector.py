import threading
import time

import pytest

from pudding.broker.connector import (
    KafkaClient,
    KafkaConnector,
    RedisConnector,
)
from pudding.types import Message, encode_message


class FakeConsumer:
    def __init__(self, handler, fail_close=False):
        self.handler = handler
        self.ran = False
        self.closed = False
        self.fail_close = fail_close

    def run(self):
        self.ran = True

    def close(self):
        self.closed = True
        if self.fail_close:
            raise RuntimeError("close failed")


class FakeKafka(KafkaClient):
    def __init__(self, fail_send=False, fail_consumer=False, fail_close=False):
        self.sent = []
        self.consumers = []
        self.closed = False
        self.fail_send = fail_send
        self.fail_consumer = fail_consumer
        self.fail_close = fail_close

    def send_message(self, topic, key, value):
        if self.fail_send:
            raise ConnectionError("broken connection")
        self.sent.append((topic, key, value))

    def new_consumer(self, topic, group, handler):
        if self.fail_consumer:
            raise ConnectionError("no broker")
        consumer = FakeConsumer(handler, self.fail_close)
        self.consumers.append(consumer)
        return consumer

    def close(self):
        self.closed = True


class FakeStreams:
    def __init__(self):
        self.entries = {}
        self.delivered = {}
        self.pending = {}
        self.acked = []
        self.groups = []
        self.closed = False

    def xadd(self, name, fields):
        entries = self.entries.setdefault(name, [])
        message_id = f"{len(entries) + 1}-0".encode()
        encoded = {(k.encode() if isinstance(k, str) else k): v for k, v in fields.items()}
        entries.append((message_id, encoded))
        return message_id

    def xgroup_create(self, name, groupname, id="0", mkstream=False):
        self.groups.append((name, groupname))

    def xreadgroup(self, groupname, consumername, streams, count=None, block=None):
        ((name, start),) = streams.items()
        if start == "0":
            batch = list(self.pending.get(name, {}).items())[:count]
        else:
            index = self.delivered.get(name, 0)
            batch = self.entries.get(name, [])[index:index + count]
            self.delivered[name] = index + len(batch)
            self.pending.setdefault(name, {}).update(batch)
        if not batch:
            time.sleep(0.01)
            return []
        return [[name.encode(), batch]]

    def xack(self, name, groupname, *ids):
        for message_id in ids:
            self.pending.get(name, {}).pop(message_id, None)
            self.acked.append(message_id)

    def close(self):
        self.closed = True


def test_kafka_produce_sends_key_and_payload():
    client = FakeKafka()
    KafkaConnector(client).produce(Message(topic="t", key="k", payload=b"p"))
    assert client.sent == [("t", b"k", b"p")]


def test_kafka_produce_error_propagates():
    connector = KafkaConnector(FakeKafka(fail_send=True))
    with pytest.raises(ConnectionError):
        connector.produce(Message(topic="t", key="k"))


def test_kafka_consumer_converts_records():
    client = FakeKafka()
    connector = KafkaConnector(client)
    received = []
    connector.new_consumer("t", "g", 10, received.append)
    consumer = client.consumers[0]
    assert consumer.ran
    consumer.handler("t", b"k", b"v")
    assert received == [Message(topic="t", key="k", payload=b"v")]


def test_kafka_new_consumer_error_propagates():
    connector = KafkaConnector(FakeKafka(fail_consumer=True))
    with pytest.raises(ConnectionError):
        connector.new_consumer("t", "g", 10, lambda m: None)


def test_kafka_close_closes_client_even_if_consumer_fails():
    client = FakeKafka(fail_close=True)
    connector = KafkaConnector(client)
    connector.new_consumer("t", "g", 10, lambda m: None)
    connector.new_consumer("t", "g", 10, lambda m: None)
    connector.close()
    assert all(c.closed for c in client.consumers)
    assert client.closed


def test_redis_produce_writes_encoded_body():
    client = FakeStreams()
    msg = Message(topic="t", key="k", payload=b"p", deliver_at=5)
    RedisConnector(client).produce(msg)
    (_, fields), = client.entries["t"]
    assert fields[b"body"] == encode_message(msg)


def test_redis_handle_messages_acks_only_successes():
    client = FakeStreams()
    connector = RedisConnector(client)
    good = Message(topic="t", key="good")
    bad = Message(topic="t", key="bad")
    entries = [
        (b"1-0", {b"body": encode_message(good)}),
        (b"2-0", {b"body": encode_message(bad)}),
        (b"3-0", {b"body": b"\xc1"}),
    ]

    def handler(msg):
        if msg.key == "bad":
            raise RuntimeError("handler broken")

    connector.handle_messages(entries, "t", "g", handler)
    assert client.acked == [b"1-0"]


def test_redis_consumer_receives_and_acks():
    client = FakeStreams()
    connector = RedisConnector(client)
    msg = Message(topic="t", key="k", payload=b"p")
    connector.produce(msg)
    received = []
    done = threading.Event()

    def handler(m):
        received.append(m)
        done.set()

    connector.new_consumer("t", "g", 10, handler)
    assert done.wait(5)
    connector.close()
    assert received == [msg]
    assert client.pending["t"] == {}
    assert client.groups == [("t", "g")]
    assert client.closed