import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

from pudding.trigger.cron import SchedulerClient
from pudding.trigger.models import WebhookTemplate
from pudding.trigger.repo import WebhookTemplateRepository, create_tables
from pudding.trigger.webhook import WebhookTrigger
from pudding.types import (
    DEFAULT_MAXIMUM_LOOP_TIMES,
    DEFAULT_TEMPLATE_ACTIVE_DURATION,
    PageQuery,
    TriggerStatus,
)

TEST_HTTP_DOMAIN = "http://localhost:8080"
NOW = datetime(2022, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class _RecordingClient(SchedulerClient):
    def __init__(self, fail=False):
        self.requests = []
        self.fail = fail

    def send_delay_message(self, request):
        if self.fail:
            raise ConnectionError("broken connection")
        self.requests.append(request)


@pytest.fixture
def repo(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'webhook.db'}")
    create_tables(engine)
    return WebhookTemplateRepository(engine)


@pytest.fixture
def client():
    return _RecordingClient()


@pytest.fixture
def trigger(repo, client):
    return WebhookTrigger(repo, client, TEST_HTTP_DOMAIN, clock=lambda: NOW)


def _template(**overrides):
    values = dict(
        topic="test",
        payload=b"hello",
        deliver_after=10,
        looped_times=0,
        excepted_loop_times=10,
    )
    values.update(overrides)
    return WebhookTemplate(**values)


def test_register_stores_template(trigger):
    temp = _template()
    trigger.register(temp)
    assert temp.id > 0
    assert trigger.find_by_id(temp.id) == temp


def test_register_rejects_missing_deliver_after(trigger):
    with pytest.raises(ValueError, match="deliver_after"):
        trigger.register(_template(deliver_after=0))


def test_check_register_params_sets_defaults(trigger):
    temp = WebhookTemplate(topic="test", payload=b"hello", deliver_after=10)
    trigger.check_register_params(temp)
    assert temp == WebhookTemplate(
        topic="test",
        payload=b"hello",
        deliver_after=10,
        excepted_end_time=NOW + DEFAULT_TEMPLATE_ACTIVE_DURATION,
        excepted_loop_times=DEFAULT_MAXIMUM_LOOP_TIMES,
        status=TriggerStatus.DISABLED,
    )


@pytest.mark.parametrize(
    "temp",
    [
        WebhookTemplate(payload=b"hello"),
        WebhookTemplate(topic="test"),
    ],
    ids=["topic not found", "payload not found"],
)
def test_check_register_params_errors_leave_template_unchanged(trigger, temp):
    before = dataclasses.replace(temp)
    with pytest.raises(ValueError):
        trigger.check_register_params(temp)
    assert temp == before


def test_check_register_params_keeps_given_values(trigger):
    end = NOW + timedelta(days=400)
    temp = _template(excepted_end_time=end)
    trigger.check_register_params(temp)
    assert temp.excepted_end_time == end
    assert temp.excepted_loop_times == 10


@pytest.mark.parametrize("status", [TriggerStatus.ENABLED, TriggerStatus.DISABLED])
def test_update_status(trigger, status):
    temp = _template(excepted_end_time=NOW + timedelta(days=396))
    trigger.register(temp)
    assert trigger.update_status(temp.id, status) == 1
    assert trigger.find_by_id(temp.id).status == status


@pytest.mark.parametrize("template_id", [1, 2])
def test_webhook_url(trigger, template_id):
    expected = TEST_HTTP_DOMAIN + "/pudding/trigger/webhook/v1/call/" + str(template_id)
    assert trigger.webhook_url(template_id) == expected


def test_find_by_id_rejects_non_positive_id(trigger):
    with pytest.raises(ValueError, match="invalid id"):
        trigger.find_by_id(0)


def test_find_by_id_missing(trigger):
    with pytest.raises(LookupError):
        trigger.find_by_id(999)


def test_page_query_filters_by_status(trigger):
    templates = [_template() for _ in range(3)]
    for temp in templates:
        trigger.register(temp)
    trigger.update_status(templates[0].id, TriggerStatus.ENABLED)

    enabled, count = trigger.page_query(PageQuery(offset=0, limit=10), TriggerStatus.ENABLED)
    assert count == 1
    assert [t.id for t in enabled] == [templates[0].id]

    everything, total = trigger.page_query(
        PageQuery(offset=0, limit=10), TriggerStatus.UNKNOWN_UNSPECIFIED
    )
    assert total == len(templates)
    assert {t.id for t in everything} == {t.id for t in templates}


@pytest.mark.parametrize("page", [PageQuery(offset=-1, limit=10), PageQuery(offset=0, limit=0)])
def test_page_query_rejects_bad_page(trigger, page):
    with pytest.raises(ValueError, match="invalid offset or limit"):
        trigger.page_query(page, TriggerStatus.ENABLED)


def test_call_sends_delay_message(trigger, client):
    temp = _template()
    trigger.register(temp)
    key = trigger.call(temp.id)
    assert len(client.requests) == 1
    request = client.requests[0]
    assert request.key == key
    assert request.topic == "test"
    assert request.payload == b"hello"
    assert request.deliver_after == 10
    assert request.deliver_at == 0


def test_call_unknown_template(trigger, client):
    with pytest.raises(RuntimeError, match="failed to find webhook template"):
        trigger.call(12345)
    assert client.requests == []


def test_call_send_failure(repo):
    failing = WebhookTrigger(repo, _RecordingClient(fail=True), TEST_HTTP_DOMAIN, clock=lambda: NOW)
    temp = _template()
    failing.register(temp)
    with pytest.raises(RuntimeError, match="failed to send delay message"):
        failing.call(temp.id)