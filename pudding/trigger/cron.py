"""Cron trigger: template management and the loop producing cron messages."""

from __future__ import annotations

import abc
import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, FrozenSet, List, Optional, Tuple, Union

from pudding.broker.handler import SendDelayMessageRequest
from pudding.trigger.models import (
    CronTemplate,
    CronTemplateRecord,
    cron_entity_to_record,
    cron_record_to_entity,
)
from pudding.trigger.repo import CronTemplateRepository
from pudding.types import (
    DEFAULT_MAXIMUM_LOOP_TIMES,
    DEFAULT_TEMPLATE_ACTIVE_DURATION,
    PageQuery,
    TriggerStatus,
)

log = logging.getLogger(__name__)

_MESSAGE_KEY_FORMAT = "pudding_cron_trigger_template_{}_{}"
_BATCH_SIZE = 100

ERR_TOPIC_NOT_FOUND = "cron template topic not found"
ERR_PAYLOAD_NOT_FOUND = "cron template topic payload not found"

# Last execution time given to newly registered templates.
DEFAULT_LAST_EXECUTION_TIME = datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)


class SchedulerClient(abc.ABC):
    """Client of the broker's delay-message service."""

    @abc.abstractmethod
    def send_delay_message(self, request: SendDelayMessageRequest) -> None:
        """Ask the broker to deliver a message later."""


_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"),
        start=1,
    )
}
_DOW_NAMES = {
    name: number
    for number, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))
}
_MACROS = {
    "@yearly": "0 0 0 1 1 * *",
    "@annually": "0 0 0 1 1 * *",
    "@monthly": "0 0 0 1 * * *",
    "@weekly": "0 0 0 * * 0 *",
    "@daily": "0 0 0 * * * *",
    "@midnight": "0 0 0 * * * *",
    "@hourly": "0 0 * * * * *",
}
_MIN_YEAR, _MAX_YEAR = 1970, 2099


def _parse_value(token: str, low: int, high: int, names: dict) -> int:
    lowered = token.lower()
    if lowered in names:
        return names[lowered]
    if not token.isdigit():
        raise ValueError(f"invalid value [{token}]")
    value = int(token)
    if not low <= value <= high:
        raise ValueError(f"value [{value}] out of range [{low}, {high}]")
    return value


def _parse_field(text: str, low: int, high: int, names: dict | None = None) -> FrozenSet[int]:
    names = names or {}
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ValueError(f"empty item in field [{text}]")
        span, slash, step_text = part.partition("/")
        step = 1
        if slash:
            if not step_text.isdigit():
                raise ValueError(f"invalid step [{step_text}]")
            step = int(step_text)
            if not 1 <= step <= high - low + 1:
                raise ValueError(f"step [{step}] out of range")
        if span in ("*", "?"):
            start, end = low, high
        elif "-" in span:
            first, _, last = span.partition("-")
            start = _parse_value(first, low, high, names)
            end = _parse_value(last, low, high, names)
            if start > end:
                raise ValueError(f"invalid range [{span}]")
        else:
            start = _parse_value(span, low, high, names)
            end = high if slash else start
        values.update(range(start, end + 1, step))
    return frozenset(values)


def _first_of_next_month(t: datetime) -> datetime:
    if t.month == 12:
        return t.replace(year=t.year + 1, month=1, day=1, hour=0, minute=0, second=0)
    return t.replace(month=t.month + 1, day=1, hour=0, minute=0, second=0)


@dataclass(frozen=True)
class CronSchedule:
    """A parsed cron expression.

    Accepts five fields (minute hour day month weekday), six fields
    (the same plus year) or seven fields (second first, year last).
    """

    seconds: FrozenSet[int]
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    years: FrozenSet[int]
    any_day: bool
    any_weekday: bool

    @classmethod
    def parse(cls, expr: str) -> "CronSchedule":
        """Parse ``expr``; raise ValueError if it is not a valid expression."""
        text = _MACROS.get(expr.strip().lower(), expr)
        fields = text.split()
        if len(fields) == 5:
            fields = ["0", *fields, "*"]
        elif len(fields) == 6:
            fields = ["0", *fields]
        elif len(fields) != 7:
            raise ValueError(f"expression [{expr}] must have 5, 6 or 7 fields")
        second, minute, hour, day, month, weekday, year = fields
        weekdays = _parse_field(weekday, 0, 7, _DOW_NAMES)
        return cls(
            seconds=_parse_field(second, 0, 59),
            minutes=_parse_field(minute, 0, 59),
            hours=_parse_field(hour, 0, 23),
            days=_parse_field(day, 1, 31),
            months=_parse_field(month, 1, 12, _MONTH_NAMES),
            weekdays=frozenset(7 if False else value % 7 for value in weekdays),
            years=_parse_field(year, _MIN_YEAR, _MAX_YEAR),
            any_day=day in ("*", "?"),
            any_weekday=weekday in ("*", "?"),
        )

    def _day_matches(self, t: datetime) -> bool:
        day_ok = t.day in self.days
        weekday_ok = (t.weekday() + 1) % 7 in self.weekdays
        if self.any_day and self.any_weekday:
            return True
        if self.any_day:
            return weekday_ok
        if self.any_weekday:
            return day_ok
        return day_ok or weekday_ok

    def next(self, after: datetime) -> datetime:
        """First matching time strictly after ``after``, to the second.

        Raises LookupError if no time up to the last supported year matches.
        """
        t = after.replace(microsecond=0) + timedelta(seconds=1)
        while t.year <= _MAX_YEAR:
            if t.year not in self.years:
                t = t.replace(year=t.year + 1, month=1, day=1, hour=0, minute=0, second=0)
            elif t.month not in self.months:
                t = _first_of_next_month(t)
            elif not self._day_matches(t):
                t = t.replace(hour=0, minute=0, second=0) + timedelta(days=1)
            elif t.hour not in self.hours:
                t = t.replace(minute=0, second=0) + timedelta(hours=1)
            elif t.minute not in self.minutes:
                t = t.replace(second=0) + timedelta(minutes=1)
            elif t.second not in self.seconds:
                t = t + timedelta(seconds=1)
            else:
                return t
        raise LookupError(f"no time after {after} matches the expression")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_entity(record: CronTemplateRecord) -> CronTemplate:
    entity = cron_record_to_entity(record)
    return dataclasses.replace(
        entity,
        last_execution_time=_as_utc(entity.last_execution_time),
        excepted_end_time=_as_utc(entity.excepted_end_time),
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CronTrigger:
    """Manages cron templates and turns due ones into delayed messages."""

    def __init__(
        self,
        repo: CronTemplateRepository,
        scheduler_client: SchedulerClient,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repo
        self._client = scheduler_client
        self._clock = clock or _utc_now

    def find_by_id(self, template_id: int) -> CronTemplate:
        """Return the template with ``template_id``."""
        if template_id <= 0:
            message = f"invalid id, id: {template_id}"
            log.error(message)
            raise ValueError(message)
        try:
            record = self._repo.find_by_id(template_id)
        except Exception as exc:
            log.error("failed to find cron template, caused by %s", exc)
            raise
        return _to_entity(record)

    def page_query(
        self, page: PageQuery, status: Union[TriggerStatus, int]
    ) -> Tuple[List[CronTemplate], int]:
        """Return one page of templates and the total number matching."""
        if page.offset < 0 or page.limit <= 0:
            message = f"invalid offset or limit, offset: {page.offset}, limit: {page.limit}"
            log.error(message)
            raise ValueError(message)
        try:
            records, count = self._repo.page_query(page, status)
        except Exception as exc:
            log.error("failed to PageQuery cron template, caused by %s", exc)
            raise
        return [_to_entity(record) for record in records], count

    def register(self, temp: CronTemplate) -> None:
        """Validate ``temp``, fill in defaults and store it; sets ``temp.id``."""
        try:
            self.check_register_params(temp)
        except ValueError as exc:
            log.error("failed to check params, caused by %s", exc)
            raise
        self._validate(temp)
        record = cron_entity_to_record(temp)
        try:
            self._repo.insert(record)
        except Exception as exc:
            log.error("failed to insert cron template, caused by %s", exc)
            raise
        temp.id = record.id or 0

    @staticmethod
    def _validate(temp: CronTemplate) -> None:
        missing = [
            name
            for name, value in (
                ("cron_expr", temp.cron_expr),
                ("topic", temp.topic),
                ("payload", temp.payload),
                ("status", temp.status),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"invalid validation error: required {', '.join(missing)}")

    def check_register_params(self, temp: CronTemplate) -> None:
        """Check a template to register and set its defaults."""
        try:
            CronSchedule.parse(temp.cron_expr)
        except ValueError as exc:
            log.error("Invalid cron expression: %s", exc)
            raise ValueError(f"invalid cron expression: {exc}") from exc
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
        temp.last_execution_time = DEFAULT_LAST_EXECUTION_TIME
        temp.status = TriggerStatus.DISABLED

    def update_status(self, template_id: int, status: Union[TriggerStatus, int]) -> int:
        """Set a template's status; return the number of rows changed."""
        try:
            return self._repo.update_status(template_id, status)
        except Exception as exc:
            log.error("failed to update cron template, caused by %s", exc)
            raise

    def _until_next_second(self) -> float:
        return 1.0 - self._clock().microsecond / 1_000_000

    def run(self, stop: threading.Event) -> None:
        """Track due templates once a second until ``stop`` is set."""
        log.info("start cron trigger loop")
        while not stop.wait(self._until_next_second()):
            now = self._clock()
            try:
                self._repo.batch_handle_records(now, _BATCH_SIZE, self.tracking)
            except Exception as exc:
                log.error("failed to find enable cron template, caused by %s", exc)

    def tracking(self, temp: CronTemplateRecord) -> None:
        """Produce the next message of ``temp`` and advance its counters."""
        try:
            next_time = self.next_time(temp.cron_expr)
        except (ValueError, LookupError) as exc:
            log.error("failed to get next time, caused by %s", exc)
            raise

        if not self.should_run(temp, next_time):
            return

        request = SendDelayMessageRequest(
            topic=temp.topic,
            key=self.message_key(temp.id, temp.looped_times),
            payload=temp.payload,
            deliver_at=int(next_time.timestamp()),
        )
        try:
            self._client.send_delay_message(request)
        except Exception as exc:
            log.error("failed to send DelayMessage, caused by %s", exc)
            raise

        temp.last_execution_time = next_time
        temp.looped_times += 1
        if temp.looped_times == temp.excepted_loop_times:
            log.info(
                "cron template [%s] has reached the maximum loop times, "
                "update status to MAX_TIMES",
                temp.id,
            )
            temp.status = TriggerStatus.MAX_TIMES
        log.info("cron template [%s] looped times: %d", temp.id, temp.looped_times)

    def should_run(self, temp: CronTemplateRecord, next_time: datetime) -> bool:
        """Whether ``temp`` may fire at ``next_time``; marks it finished if not."""
        if temp.looped_times >= temp.excepted_loop_times:
            log.warning(
                "cron template [%s] has reached the maximum loop times, but it has been tracked",
                temp.id,
            )
            temp.status = TriggerStatus.MAX_TIMES
            return False
        end = _as_utc(temp.excepted_end_time)
        if end is not None and _as_utc(next_time) > end:
            log.warning("cron template [%s] has reached the maximum age", temp.id)
            temp.status = TriggerStatus.MAX_AGE
            return False
        return True

    def next_time(self, expr: str) -> datetime:
        """Next time after now matching ``expr``."""
        return CronSchedule.parse(expr).next(self._clock())

    def message_key(self, template_id: int, looped_times: int) -> str:
        """Key of the message of loop ``looped_times`` of a template."""
        return _MESSAGE_KEY_FORMAT.format(template_id, looped_times)