"""Request handler of the webhook trigger service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple, Union

from pudding.errors import BadRequestError, FieldViolation, InternalError
from pudding.trigger.models import WebhookTemplate
from pudding.trigger.webhook import WebhookTrigger
from pudding.types import PageQuery, TriggerStatus

_DOMAIN = "pudding.trigger.webhook"


@dataclass
class WebhookRegisterRequest:
    """A request to register a webhook template."""

    topic: str = ""
    payload: bytes = b""
    deliver_after: int = 0
    excepted_end_time: Optional[datetime] = None
    excepted_loop_times: int = 0


def _check_id(template_id: int) -> None:
    if template_id <= 0:
        raise BadRequestError(
            "Invalid ID",
            FieldViolation("ID", f"ID [{template_id}] should be greater than zero"),
        )


class WebhookHandler:
    """Validates requests and turns trigger failures into service errors."""

    def __init__(self, trigger: WebhookTrigger) -> None:
        self._trigger = trigger

    def find_one_by_id(self, template_id: int) -> WebhookTemplate:
        """Return one template by id."""
        _check_id(template_id)
        try:
            return self._trigger.find_by_id(template_id)
        except Exception as exc:
            raise InternalError(
                "can not find trigger by id",
                reason=str(exc),
                domain=_DOMAIN,
                metadata={"id": str(template_id)},
            ) from exc

    def page_query_template(
        self, offset: int, limit: int, status: Union[TriggerStatus, int]
    ) -> Tuple[List[WebhookTemplate], int]:
        """Return one page of templates and the total number matching."""
        try:
            return self._trigger.page_query(PageQuery(offset=offset, limit=limit), status)
        except Exception as exc:
            raise InternalError(
                "can not pageQuery Webhook trigger",
                reason=str(exc),
                domain=_DOMAIN,
                metadata={"offset": str(offset), "limit": str(limit)},
            ) from exc

    def register(self, request: WebhookRegisterRequest) -> str:
        """Register a webhook template; return the URL that fires it."""
        temp = WebhookTemplate(
            topic=request.topic,
            payload=request.payload,
            deliver_after=request.deliver_after,
            excepted_end_time=request.excepted_end_time,
            excepted_loop_times=request.excepted_loop_times,
        )
        try:
            self._trigger.register(temp)
        except Exception as exc:
            raise InternalError(
                "can not register trigger",
                reason=str(exc),
                domain=_DOMAIN,
                metadata={"request body": str(request)},
            ) from exc
        return self._trigger.webhook_url(temp.id)

    def update_status(self, template_id: int, status: Union[TriggerStatus, int]) -> int:
        """Set a template's status; return the number of rows changed."""
        _check_id(template_id)
        if status > TriggerStatus.MAX_AGE or status <= TriggerStatus.UNKNOWN_UNSPECIFIED:
            raise BadRequestError(
                "Invalid status code",
                FieldViolation(
                    "status",
                    f"Invalid status code [{int(status)}], please use proto define status code",
                ),
            )
        try:
            return self._trigger.update_status(template_id, status)
        except Exception as exc:
            raise InternalError(
                "can not update trigger by id",
                reason=str(exc),
                domain=_DOMAIN,
                metadata={"id": str(template_id), "status": str(int(status))},
            ) from exc

    def call(self, template_id: int) -> str:
        """Fire a webhook template; return the key of the produced message."""
        try:
            return self._trigger.call(template_id)
        except Exception as exc:
            raise InternalError(
                "can not call webhook",
                reason=str(exc),
                domain=_DOMAIN,
                metadata={"id": str(template_id)},
            ) from exc