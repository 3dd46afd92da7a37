"""Webhook trigger: template management and producing messages on calls."""

from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple, Union

from pudding.broker.handler import SendDelayMessageRequest
from pudding.trigger.cron import SchedulerClient
from pudding.trigger.models import (
    WebhookTemplate,
    WebhookTemplateRecord,
    webhook_entity_to_record,
    webhook_record_to_entity,
)
from pudding.trigger.repo import WebhookTemplateRepository
from pudding.types import (
    DEFAULT_MAXIMUM_LOOP_TIMES,
    DEFAULT_TEMPLATE_ACTIVE_DURATION,
    PageQuery,
    TriggerStatus,
)

log = logging.getLogger(__name__)

ERR_TOPIC_NOT_FOUND = "webhook template topic not found"
ERR_PAYLOAD_NOT_FOUND = "webhook template topic payload not found"

_WEBHOOK_URL_FORMAT = "{}/pudding/trigger/webhook/v1/call/{}"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_entity(record: WebhookTemplateRecord) -> WebhookTemplate:
    entity = webhook_record_to_entity(record)
    return dataclasses.replace(entity, excepted_end_time=_as_utc(entity.excepted_end_time))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookTrigger:
    """Manages webhook templates and turns webhook calls into delayed messages."""

    def __init__(
        self,
        repo: WebhookTemplateRepository,
        scheduler_client: SchedulerClient,
        webhook_prefix: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repo
        self._client = scheduler_client
        self.webhook_prefix = webhook_prefix
        self._clock = clock or _utc_now

    def find_by_id(self, template_id: int) -> WebhookTemplate:
        """Return the template with ``template_id``."""
        if template_id <= 0:
            message = f"invalid id, id: {template_id}"
            log.error(message)
            raise ValueError(message)
        try:
            record = self._repo.find_by_id(template_id)
        except Exception as exc:
            log.error("failed to find webhook template, caused by %s", exc)
            raise
        return _to_entity(record)

    def page_query(
        self, page: PageQuery, status: Union[TriggerStatus, int]
    ) -> Tuple[List[WebhookTemplate], int]:
        """Return one page of templates and the total number matching."""
        if page.offset < 0 or page.limit <= 0:
            message = f"invalid offset or limit, offset: {page.offset}, limit: {page.limit}"
            log.error(message)
            raise ValueError(message)
        try:
            records, count = self._repo.page_query(page, status)
        except Exception as exc:
            log.error("failed to PageQuery webhook template, caused by %s", exc)
            raise
        return [_to_entity(record) for record in records], count

    def register(self, temp: WebhookTemplate) -> None:
        """Validate ``temp``, fill in defaults and store it; sets ``temp.id``."""
        try:
            self.check_register_params(temp)
        except ValueError as exc:
            log.error("failed to check params, caused by %s", exc)
            raise
        self._validate(temp)
        record = webhook_entity_to_record(temp)
        try:
            self._repo.insert(record)
        except Exception as exc:
            log.error("failed to insert webhook template, caused by %s", exc)
            raise
        temp.id = record.id or 0

    @staticmethod
    def _validate(temp: WebhookTemplate) -> None:
        missing = [
            name
            for name, value in (
                ("topic", temp.topic),
                ("payload", temp.payload),
                ("deliver_after", temp.deliver_after),
                ("status", temp.status),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"invalid validation error: required {', '.join(missing)}")

    def check_register_params(self, temp: WebhookTemplate) -> None:
        """Check a template to register and set its defaults."""
        if not temp.topic:
            log.error(ERR_TOPIC_NOT_FOUND)
            raise ValueError(ERR_TOPIC_NOT_FOUND)
        if not temp.payload:
            log.error(ERR_PAYLOAD_NOT_FOUND)
            raise ValueError(ERR_PAYLOAD_NOT_FOUND)

        if temp.excepted_end_time is None:
            temp.excepted_end_time = self._clock() + DEFAULT_TEMPLATE_ACTIVE_DURATION
        if temp.excepted_loop_times == 0:
            temp.excepted_loop_times = DEFAULT_MAXIMUM_LOOP_TIMES
        temp.status = TriggerStatus.DISABLED

    def update_status(self, template_id: int, status: Union[TriggerStatus, int]) -> int:
        """Set a template's status; return the number of rows changed."""
        try:
            return self._repo.update_status(template_id, status)
        except Exception as exc:
            log.error("failed to update webhook template, caused by %s", exc)
            raise

    def webhook_url(self, template_id: int) -> str:
        """URL that fires the template with ``template_id``."""
        return _WEBHOOK_URL_FORMAT.format(self.webhook_prefix, template_id)

    def call(self, template_id: int) -> str:
        """Send the delayed message of a template; return the message key."""
        try:
            template = self.find_by_id(template_id)
        except Exception as exc:
            raise RuntimeError(f"failed to find webhook template, caused by {exc}") from exc

        message_key = str(uuid.uuid4())
        request = SendDelayMessageRequest(
            topic=template.topic,
            key=message_key,
            payload=template.payload,
            deliver_after=template.deliver_after,
        )
        try:
            self._client.send_delay_message(request)
        except Exception as exc:
            raise RuntimeError(f"failed to send delay message, caused by {exc}") from exc
        return message_key