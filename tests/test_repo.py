from datetime import datetime

import pytest
from sqlalchemy import create_engine

from pudding.trigger.models import CronTemplateRecord, WebhookTemplateRecord
from pudding.trigger.repo import (
    CronTemplateRepository,
    WebhookTemplateRepository,
    create_tables,
)
from pudding.types import PageQuery, TriggerStatus


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def cron_repo(engine):
    return CronTemplateRepository(engine)


@pytest.fixture
def webhook_repo(engine):
    return WebhookTemplateRepository(engine)


def _cron(**overrides):
    values = dict(
        cron_expr="0 0 0 * * *",
        topic="test",
        payload=b"hello",
        last_execution_time=datetime(2022, 1, 1),
        excepted_end_time=datetime(2025, 1, 1),
        excepted_loop_times=1,
        looped_times=1,
        status=TriggerStatus.DISABLED,
    )
    values.update(overrides)
    return CronTemplateRecord(**values)


def _webhook(**overrides):
    values = dict(
        topic="test",
        payload=b"hello",
        deliver_after=10,
        excepted_end_time=datetime(2025, 1, 1),
        excepted_loop_times=1,
        looped_times=1,
        status=TriggerStatus.DISABLED,
    )
    values.update(overrides)
    return WebhookTemplateRecord(**values)


def test_cron_insert_normal(cron_repo):
    p = _cron()
    cron_repo.insert(p)
    assert p.id is not None and p.id > 0
    res = cron_repo.find_by_id(p.id)
    res.created_at, res.updated_at = p.created_at, p.updated_at
    assert res == p


def test_cron_insert_without_cron_expr(cron_repo):
    p = _cron(cron_expr="")
    with pytest.raises(ValueError, match="cron expression is empty"):
        cron_repo.insert(p)
    assert p.id is None


def test_cron_find_missing(cron_repo):
    with pytest.raises(LookupError):
        cron_repo.find_by_id(12345)


def test_cron_update_status(cron_repo):
    e = _cron()
    cron_repo.insert(e)

    assert cron_repo.update_status(e.id, TriggerStatus.ENABLED) == 1
    assert cron_repo.find_by_id(e.id).status == TriggerStatus.ENABLED

    assert cron_repo.update_status(e.id, TriggerStatus.DISABLED) == 1
    assert cron_repo.find_by_id(e.id).status == TriggerStatus.DISABLED

    assert cron_repo.update_status(e.id + 100, TriggerStatus.DISABLED) == 0


def test_cron_update_status_unknown_rejected(cron_repo):
    e = _cron()
    cron_repo.insert(e)
    with pytest.raises(ValueError):
        cron_repo.update_status(e.id, TriggerStatus.UNKNOWN_UNSPECIFIED)
    assert cron_repo.find_by_id(e.id).status == TriggerStatus.DISABLED


def test_cron_batch_handle_records(cron_repo):
    e = _cron(excepted_loop_times=10, status=TriggerStatus.ENABLED)
    cron_repo.insert(e)
    seen = []

    def handler(record):
        seen.append(
            (record.id, record.cron_expr, record.topic, record.payload,
             record.last_execution_time, record.looped_times, record.status)
        )
        record.looped_times = 2

    cron_repo.batch_handle_records(datetime(2023, 1, 1), 10, handler)

    assert seen == [
        (e.id, "0 0 0 * * *", "test", b"hello", datetime(2022, 1, 1), 1, TriggerStatus.ENABLED)
    ]
    assert cron_repo.find_by_id(e.id).looped_times == 2


def test_cron_batch_handle_skips_disabled_and_future(cron_repo):
    disabled = _cron(status=TriggerStatus.DISABLED)
    future = _cron(status=TriggerStatus.ENABLED, last_execution_time=datetime(2024, 1, 1))
    due = _cron(status=TriggerStatus.ENABLED)
    for record in (disabled, future, due):
        cron_repo.insert(record)
    handled = []
    cron_repo.batch_handle_records(datetime(2023, 1, 1), 10, lambda r: handled.append(r.id))
    assert handled == [due.id]


def test_cron_batch_handle_failure_not_saved(cron_repo):
    e = _cron(status=TriggerStatus.ENABLED, looped_times=3)
    cron_repo.insert(e)

    def handler(record):
        record.looped_times = 9
        raise RuntimeError("boom")

    cron_repo.batch_handle_records(datetime(2023, 1, 1), 10, handler)
    assert cron_repo.find_by_id(e.id).looped_times == 3


def test_cron_batch_handle_in_several_batches(cron_repo):
    records = [_cron(status=TriggerStatus.ENABLED) for _ in range(5)]
    for record in records:
        cron_repo.insert(record)
    handled = []
    cron_repo.batch_handle_records(datetime(2023, 1, 1), 2, lambda r: handled.append(r.id))
    assert handled == [r.id for r in records]


def test_cron_batch_handle_rejects_zero_batch(cron_repo):
    with pytest.raises(ValueError):
        cron_repo.batch_handle_records(datetime(2023, 1, 1), 0, lambda r: None)


def test_cron_page_query(cron_repo):
    for _ in range(3):
        cron_repo.insert(_cron(status=TriggerStatus.ENABLED))
    for _ in range(2):
        cron_repo.insert(_cron(status=TriggerStatus.DISABLED))

    res, count = cron_repo.page_query(PageQuery(offset=0, limit=2), TriggerStatus.ENABLED)
    assert count == 3
    assert len(res) == 2
    assert all(r.status == TriggerStatus.ENABLED for r in res)

    res, count = cron_repo.page_query(PageQuery(offset=0, limit=10), TriggerStatus.UNKNOWN_UNSPECIFIED)
    assert count == 5
    assert len(res) == 5

    res, count = cron_repo.page_query(PageQuery(offset=4, limit=10), 99)
    assert count == 5
    assert len(res) == 1


def test_webhook_insert_normal(webhook_repo):
    p = _webhook()
    webhook_repo.insert(p)
    res = webhook_repo.find_by_id(p.id)
    res.created_at, res.updated_at = p.created_at, p.updated_at
    assert res == p


def test_webhook_update_status(webhook_repo):
    p = _webhook()
    webhook_repo.insert(p)

    assert webhook_repo.update_status(p.id, TriggerStatus.ENABLED) == 1
    assert webhook_repo.find_by_id(p.id).status == TriggerStatus.ENABLED

    assert webhook_repo.update_status(p.id, TriggerStatus.DISABLED) == 1
    assert webhook_repo.find_by_id(p.id).status == TriggerStatus.DISABLED

    assert webhook_repo.update_status(p.id * 100, TriggerStatus.DISABLED) == 0


def test_webhook_find_missing(webhook_repo):
    with pytest.raises(LookupError):
        webhook_repo.find_by_id(7)


def test_webhook_page_query(webhook_repo):
    webhook_repo.insert(_webhook(status=TriggerStatus.ENABLED))
    webhook_repo.insert(_webhook(status=TriggerStatus.OFFLINE))
    res, count = webhook_repo.page_query(PageQuery(offset=0, limit=10), TriggerStatus.OFFLINE)
    assert count == 1
    assert [r.status for r in res] == [TriggerStatus.OFFLINE]


def test_repositories_use_separate_tables(cron_repo, webhook_repo):
    cron_repo.insert(_cron())
    res, count = webhook_repo.page_query(PageQuery(offset=0, limit=10), 0)
    assert (res, count) == ([], 0)