"""Trigger template entities, their database records and conversions."""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import BigInteger, DateTime, Integer, LargeBinary, String
from sqlalchemy.orm import DeclarativeBase, Mapped, MappedAsDataclass, mapped_column
from sqlalchemy.types import TypeDecorator

from pudding.types import TriggerStatus


@dataclass
class CronTemplate:
    """A template producing a message on every match of a cron expression."""

    id: int = 0
    cron_expr: str = ""
    topic: str = ""
    payload: bytes = b""
    # Last time a message was scheduled.
    last_execution_time: Optional[datetime] = None
    looped_times: int = 0
    # Expected end time; None means not set.
    excepted_end_time: Optional[datetime] = None
    excepted_loop_times: int = 0
    status: TriggerStatus = TriggerStatus.UNKNOWN_UNSPECIFIED


@dataclass
class WebhookTemplate:
    """A template producing a delayed message each time its webhook is called."""

    id: int = 0
    topic: str = ""
    payload: bytes = b""
    # Delay of the produced message, in seconds.
    deliver_after: int = 0
    looped_times: int = 0
    excepted_end_time: Optional[datetime] = None
    excepted_loop_times: int = 0
    status: TriggerStatus = TriggerStatus.UNKNOWN_UNSPECIFIED


class _StatusType(TypeDecorator):
    """Stores a TriggerStatus as an integer."""

    impl = Integer
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else int(value)

    def process_result_value(self, value, dialect):
        return None if value is None else TriggerStatus(value)


class Base(MappedAsDataclass, DeclarativeBase):
    """Declarative base of the trigger tables."""


class CronTemplateRecord(Base):
    """Stored row of a cron trigger template."""

    __tablename__ = "cron_trigger_template"

    id: Mapped[Optional[int]] = mapped_column(Integer, primary_key=True, default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), default=None, index=True
    )
    cron_expr: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    topic: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, default=b"")
    last_execution_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=False, default=None
    )
    looped_times: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    excepted_end_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=False, default=None
    )
    excepted_loop_times: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[TriggerStatus] = mapped_column(
        _StatusType(), nullable=False, default=TriggerStatus.UNKNOWN_UNSPECIFIED
    )


class WebhookTemplateRecord(Base):
    """Stored row of a webhook trigger template."""

    __tablename__ = "webhook_trigger_template"

    id: Mapped[Optional[int]] = mapped_column(Integer, primary_key=True, default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), default=None, index=True
    )
    topic: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, default=b"")
    deliver_after: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    looped_times: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    excepted_end_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=False, default=None
    )
    excepted_loop_times: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[TriggerStatus] = mapped_column(
        _StatusType(), nullable=False, default=TriggerStatus.UNKNOWN_UNSPECIFIED
    )


def cron_entity_to_record(entity: CronTemplate) -> CronTemplateRecord:
    """Build a database record from a cron template."""
    return CronTemplateRecord(
        id=entity.id or None,
        cron_expr=entity.cron_expr,
        topic=entity.topic,
        payload=entity.payload,
        last_execution_time=entity.last_execution_time,
        looped_times=entity.looped_times,
        excepted_end_time=entity.excepted_end_time,
        excepted_loop_times=entity.excepted_loop_times,
        status=entity.status,
    )


def cron_record_to_entity(record: CronTemplateRecord) -> CronTemplate:
    """Build a cron template from its database record."""
    return CronTemplate(
        id=record.id or 0,
        cron_expr=record.cron_expr,
        topic=record.topic,
        payload=record.payload,
        last_execution_time=record.last_execution_time,
        looped_times=record.looped_times,
        excepted_end_time=record.excepted_end_time,
        excepted_loop_times=record.excepted_loop_times,
        status=TriggerStatus(record.status),
    )


def cron_records_to_entities(records: List[CronTemplateRecord]) -> List[CronTemplate]:
    """Convert several cron records."""
    return [cron_record_to_entity(record) for record in records]


def webhook_entity_to_record(entity: WebhookTemplate) -> WebhookTemplateRecord:
    """Build a database record from a webhook template."""
    return WebhookTemplateRecord(
        id=entity.id or None,
        topic=entity.topic,
        payload=entity.payload,
        deliver_after=entity.deliver_after,
        looped_times=entity.looped_times,
        excepted_end_time=entity.excepted_end_time,
        excepted_loop_times=entity.excepted_loop_times,
        status=entity.status,
    )


def webhook_record_to_entity(record: WebhookTemplateRecord) -> WebhookTemplate:
    """Build a webhook template from its database record."""
    return WebhookTemplate(
        id=record.id or 0,
        topic=record.topic,
        payload=record.payload,
        deliver_after=record.deliver_after,
        looped_times=record.looped_times,
        excepted_end_time=record.excepted_end_time,
        excepted_loop_times=record.excepted_loop_times,
        status=TriggerStatus(record.status),
    )


def webhook_records_to_entities(records: List[WebhookTemplateRecord]) -> List[WebhookTemplate]:
    """Convert several webhook records."""
    return [webhook_record_to_entity(record) for record in records]