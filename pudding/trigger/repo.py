"""Database repositories of the cron and webhook trigger templates."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Tuple, Type, TypeVar, Union

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from pudding.trigger.models import Base, CronTemplateRecord, WebhookTemplateRecord
from pudding.types import PageQuery, TriggerStatus

log = logging.getLogger(__name__)

_R = TypeVar("_R", CronTemplateRecord, WebhookTemplateRecord)

CronTemplateHandler = Callable[[CronTemplateRecord], None]
"""Handles one due cron template; signals failure by raising."""


def create_tables(engine: Engine) -> None:
    """Create the trigger template tables if they do not exist."""
    Base.metadata.create_all(engine)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _valid_status(status: Union[TriggerStatus, int]) -> bool:
    return TriggerStatus.UNKNOWN_UNSPECIFIED < status <= TriggerStatus.MAX_AGE


def _alive(model):
    return model.deleted_at.is_(None)


def _find_by_id(sessions: sessionmaker, model: Type[_R], template_id: int) -> _R:
    with sessions() as session:
        record = session.scalars(
            select(model).where(model.id == template_id, _alive(model)).limit(1)
        ).first()
    if record is None:
        raise LookupError(f"record not found: {model.__tablename__} id {template_id}")
    return record


def _page_query(
    sessions: sessionmaker,
    model: Type[_R],
    page: PageQuery,
    status: Union[TriggerStatus, int],
) -> Tuple[List[_R], int]:
    conditions = [_alive(model)]
    if _valid_status(status):
        conditions.append(model.status == TriggerStatus(status))
    with sessions() as session:
        count = session.scalar(select(func.count()).select_from(model).where(*conditions))
        records = list(
            session.scalars(
                select(model)
                .where(*conditions)
                .order_by(model.id)
                .offset(page.offset)
                .limit(page.limit)
            )
        )
    return records, int(count or 0)


def _insert(sessions: sessionmaker, record) -> None:
    now = _now()
    if record.created_at is None:
        record.created_at = now
    if record.updated_at is None:
        record.updated_at = now
    with sessions.begin() as session:
        session.add(record)


def _update_status(
    sessions: sessionmaker,
    model: Type[_R],
    template_id: int,
    status: Union[TriggerStatus, int],
) -> int:
    if status <= 0:
        raise ValueError(f"invalid status [{int(status)}]: nothing to update")
    with sessions.begin() as session:
        result = session.execute(
            update(model).where(model.id == template_id).values(status=TriggerStatus(status))
        )
        return int(result.rowcount or 0)


class CronTemplateRepository:
    """Repository of cron trigger templates."""

    def __init__(self, engine: Engine) -> None:
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    def find_by_id(self, template_id: int) -> CronTemplateRecord:
        """Return the template with ``template_id``; raise LookupError if absent."""
        return _find_by_id(self._sessions, CronTemplateRecord, template_id)

    def page_query(
        self, page: PageQuery, status: Union[TriggerStatus, int]
    ) -> Tuple[List[CronTemplateRecord], int]:
        """Return one page of templates and the total number matching.

        The status filter applies only to a known status; any other value
        selects templates of every status.
        """
        return _page_query(self._sessions, CronTemplateRecord, page, status)

    def insert(self, record: CronTemplateRecord) -> None:
        """Store a new cron template; the cron expression is required."""
        if not record.cron_expr:
            raise ValueError("cron expression is empty")
        _insert(self._sessions, record)

    def update_status(self, template_id: int, status: Union[TriggerStatus, int]) -> int:
        """Set the status of a template and return the number of rows changed."""
        return _update_status(self._sessions, CronTemplateRecord, template_id, status)

    def batch_handle_records(
        self, t: datetime, batch_size: int, handler: CronTemplateHandler
    ) -> None:
        """Hand every enabled template last run at or before ``t`` to ``handler``.

        Rows are read in batches of ``batch_size``, locked while handled and
        skipped if locked elsewhere. A template is saved with the changes
        the handler made only if the handler returns without raising.
        """
        if batch_size <= 0:
            raise ValueError("batch size must be greater than 0")
        model = CronTemplateRecord
        last_id = 0
        with self._sessions() as session:
            while True:
                batch = list(
                    session.scalars(
                        select(model)
                        .where(
                            _alive(model),
                            model.last_execution_time <= t,
                            model.status == TriggerStatus.ENABLED,
                            model.id > last_id,
                        )
                        .order_by(model.id)
                        .limit(batch_size)
                        .with_for_update(skip_locked=True)
                    )
                )
                if not batch:
                    break
                for item in batch:
                    try:
                        handler(item)
                    except Exception as exc:
                        log.error("handle cron template [%s] failed: %s", item.id, exc)
                        session.refresh(item)
                        continue
                    item.updated_at = _now()
                    log.info("update record: %s", item)
                last_id = batch[-1].id
                session.commit()
                if len(batch) < batch_size:
                    break


class WebhookTemplateRepository:
    """Repository of webhook trigger templates."""

    def __init__(self, engine: Engine) -> None:
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    def find_by_id(self, template_id: int) -> WebhookTemplateRecord:
        """Return the template with ``template_id``; raise LookupError if absent."""
        return _find_by_id(self._sessions, WebhookTemplateRecord, template_id)

    def page_query(
        self, page: PageQuery, status: Union[TriggerStatus, int]
    ) -> Tuple[List[WebhookTemplateRecord], int]:
        """Return one page of templates and the total number matching.

        The status filter applies only to a known status; any other value
        selects templates of every status.
        """
        return _page_query(self._sessions, WebhookTemplateRecord, page, status)

    def insert(self, record: WebhookTemplateRecord) -> None:
        """Store a new webhook template; its id is set on ``record``."""
        _insert(self._sessions, record)

    def update_status(self, template_id: int, status: Union[TriggerStatus, int]) -> int:
        """Set the status of a template and return the number of rows changed."""
        return _update_status(self._sessions, WebhookTemplateRecord, template_id, status)