# pudding

A library for scheduling delayed messages. A message is held in
time-sliced delay storage until it is due. It is then passed to a real-time
queue. The library also has cron and webhook triggers. These produce delayed
messages from templates stored in a SQL database through SQLAlchemy.

## Install

```
pip install .
```

The Redis-backed classes accept any client object that offers the redis-py
interface. They do not import a Redis library themselves. If you use them,
install `redis` alongside this package.

## Parts

- `pudding.types` holds the shared types and helpers:
  - the `Message` dataclass, with `topic`, `key`, `payload`, `deliver_after` and `deliver_at`;
  - the `TriggerStatus` enum and the `PageQuery` dataclass;
  - `encode_message` and `decode_message`, which use msgpack;
  - the defaults `DEFAULT_TOPIC`, `DEFAULT_MAXIMUM_LOOP_TIMES` (1024) and
    `DEFAULT_TEMPLATE_ACTIVE_DURATION` (30 days).
- `pudding.errors` holds the exceptions:
  - `PuddingError`, the base class;
  - `BadRequestError`, which carries `FieldViolation` items;
  - `InternalError`, which carries a reason, a domain and metadata;
  - `DuplicateMessageError`.
- `pudding.broker.redis_storage` has the abstract `DelayStorage` and
  `RedisDelayStorage`. `RedisDelayStorage` keeps each time slice in one
  sorted set and one hash table, and uses Lua scripts for push and delete.
  Slices are left-closed and right-open. With an interval of 60, time 59
  falls in `"0~60"` and time 60 falls in `"60~120"`.
- `pudding.broker.connector` has the real-time connectors, all built on the
  abstract `RealTimeConnector`:
  - `KafkaConnector` runs on top of any `KafkaClient` implementation you supply;
  - `RedisConnector` uses Redis streams and consumer groups. It reads
    unacknowledged entries first and acknowledges each entry only after it
    has been handled.
- `pudding.broker.scheduler` has `Scheduler`. It works against an abstract
  `Cluster` (a wall clock and a `Locker` factory). It does four things:
  - `check_params` fills in `deliver_at`, `key` and `topic`;
  - `produce` stores a message, with up to three attempts, and does not
    retry when it gets `DuplicateMessageError`;
  - `consume_delay_message(t)` forwards the messages due at second `t`
    while it holds the lock `pudding_locker_time:<t>`;
  - `produce_realtime` sends one message to the connector, with retries.
- `pudding.broker.handler` has `BrokerHandler.send_delay_message`, which
  takes a `SendDelayMessageRequest`.
- `pudding.trigger.models` has the two entities, `CronTemplate` and
  `WebhookTemplate`. It also has their SQLAlchemy records,
  `CronTemplateRecord` and `WebhookTemplateRecord`, and converters between
  each entity and its record.
- `pudding.trigger.repo` has:
  - `create_tables(engine)`;
  - `CronTemplateRepository`, which finds, pages, inserts, updates status
    and batch-handles due enabled templates;
  - `WebhookTemplateRepository`.
- `pudding.trigger.cron` has:
  - `CronSchedule`, a cron expression parser that takes 5, 6 or 7 fields
    and macros such as `@hourly`;
  - the abstract `SchedulerClient`;
  - `CronTrigger`, which registers templates, tracks them and runs a loop
    once a second until a `threading.Event` is set.
- `pudding.trigger.cron_handler` has `CronHandler` and `CronRegisterRequest`.
- `pudding.trigger.webhook` has `WebhookTrigger`. It registers templates,
  builds the URL `<prefix>/pudding/trigger/webhook/v1/call/<id>`, and sends
  a delayed message on `call`.
- `pudding.trigger.webhook_handler` has `WebhookHandler` and
  `WebhookRegisterRequest`.

## Example

```python
import redis

from pudding.broker.redis_storage import RedisDelayStorage
from pudding.types import Message

storage = RedisDelayStorage(redis.Redis(), interval=60)
storage.produce(Message(topic="orders", key="order-1", payload=b"hi", deliver_at=120))

def handle(msg):
    print(msg.key, msg.payload)

storage.consume(120, 100, handle)
```

A due message goes to the handler and is then removed from storage. If the
same key is produced again in the same time slice, `produce` raises
`DuplicateMessageError`.

The triggers work against any SQLAlchemy engine:

```python
from sqlalchemy import create_engine

from pudding.trigger.repo import CronTemplateRepository, create_tables

engine = create_engine("sqlite://")
create_tables(engine)
repo = CronTemplateRepository(engine)
```

## What it does not do

This is a library only. It has no command-line program, no network server
(RPC or HTTP) and no service registration.

It also leaves several pieces to the caller:

- `Cluster`, `Locker`, `KafkaClient` and `SchedulerClient` are abstract.
  You supply the distributed lock, the cluster clock, the Kafka client and
  the client that talks to the broker.
- Nothing here produces time-slice tokens. `Scheduler` has no loop that
  drives `consume_delay_message`, so your code has to call it for each second.

## Tests

```
pip install ".[test]"
pytest
```