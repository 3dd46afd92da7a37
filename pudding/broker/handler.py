"""Request handler of the broker's delay-message service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pudding.errors import BadRequestError, FieldViolation, InternalError
from pudding.types import Message

if TYPE_CHECKING:
    from pudding.broker.scheduler import Scheduler

_DOMAIN = "pudding.scheduler"


@dataclass
class SendDelayMessageRequest:
    """A request to deliver a message later."""

    topic: str = ""
    key: str = ""
    payload: bytes = b""
    deliver_after: int = 0
    deliver_at: int = 0


class BrokerHandler:
    """Validates requests and hands them to the scheduler."""

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler

    def send_delay_message(self, request: SendDelayMessageRequest) -> None:
        """Schedule the message of ``request``."""
        msg = Message(
            topic=request.topic,
            key=request.key,
            payload=request.payload,
            deliver_after=request.deliver_after,
            deliver_at=request.deliver_at,
        )
        if msg.deliver_at <= 0 and msg.deliver_after <= 0:
            raise BadRequestError(
                "deliver_at and deliver_after can't be both zero",
                FieldViolation(
                    "deliver_after",
                    f"deliver_after [{request.deliver_after}] should be greater than zero",
                ),
                FieldViolation(
                    "deliver_at",
                    f"deliver_at [{request.deliver_at}] should be greater than zero",
                ),
            )
        try:
            self._scheduler.produce(msg)
        except Exception as exc:
            raise InternalError(
                "can not produce message",
                reason=str(exc),
                domain=_DOMAIN,
                metadata={"body": str(request)},
            ) from exc