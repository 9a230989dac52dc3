"""
Event types held by the scheduler.

There are three kinds of events, one per scheduler category:

- ``OneTimeEvent``: fires once at its start time, then it is dropped.
- ``RepeatingEvent``: fires every ``interval`` (a ``timedelta``) from its start time.
- ``WeeklyEvent``: fires at the time of day of its start time, on every weekday in ``interval``.

All events share the fields of ``EventBase``, and carry exactly one payload: either an opaque string (``task_data``)
or a structured ``ActionChain`` (``task_chain``). The payload is handed to the processor when the event fires.

.. code-block:: python

    event = WeeklyEvent(
        start_time=datetime(2024, 1, 1, 9, 0),
        interval={Weekday.MONDAY, Weekday.WEDNESDAY},
        task_data="send-report",
        title="Weekly report",
    )

Events are pydantic models. When serialized (``model_dump(by_alias=True)``) the field names are PascalCase, so the
persisted state reads ``StartTime``, ``MaxStartDelay``, ``Interval`` and so on.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Annotated, Any, ClassVar, Literal, NamedTuple

import arrow
from humps import pascalize
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_serializer, field_validator, model_validator

__all__ = [
    "ActionChain",
    "ActionStep",
    "Event",
    "EventBase",
    "EventCategory",
    "OneTimeEvent",
    "Payload",
    "RepeatingEvent",
    "ScheduleDecision",
    "WeeklyEvent",
    "Weekday",
]

DEFAULT_MAX_START_DELAY = timedelta(hours=7)


class SchedulerModel(BaseModel):
    """
    Base model for everything the scheduler persists, setting PascalCase aliases.
    """

    model_config = ConfigDict(
        alias_generator=pascalize,
        populate_by_name=True,
        extra="forbid",
    )


class EventCategory(Enum):
    """
    The scheduler categories. Each category has its own store and lock.
    """

    ONE_TIME = "one_time"
    REPEATING = "repeating"
    WEEKLY = "weekly"


class Weekday(Enum):
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @classmethod
    def _missing_(cls, value: object) -> "Weekday":
        if not isinstance(value, str):
            raise ValueError(f"{value} is not a valid weekday")
        for member in cls:
            if member.value.lower() == value.lower():
                return member
        raise ValueError(f"{value} is not a valid weekday")

    @classmethod
    def of(cls, timestamp: datetime) -> "Weekday":
        """
        Weekday of the given timestamp.
        """
        return list(cls)[timestamp.weekday()]


class ActionStep(SchedulerModel):
    action: str
    input: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class ActionChain(SchedulerModel):
    """
    A structured payload: an ordered list of actions for the processor to run. The scheduler never looks inside it.
    """

    name: str | None = None
    steps: list[ActionStep] = Field(min_length=1)


Payload = str | ActionChain


class ScheduleDecision(NamedTuple):
    """
    Outcome of evaluating an event.

    Attributes:
        remove: The event should be taken out of its store. Recurring events are rescheduled and put back unless they
            have expired.
        execute: The payload should be handed to the processor.
    """

    remove: bool
    execute: bool


def _format_time(timestamp: datetime) -> str:
    return arrow.get(timestamp).format("YY-MMM-DD YYYY HH:mm:ss")


class EventBase(SchedulerModel, ABC):
    """
    Fields and evaluation logic shared by all event types.

    Args:
        start_time: After this time, the event will fire. Recurring events move this forward after each firing, so it
            always holds the next due time.
        end_time: After this time, the event is removed without firing.
        max_start_delay: If the event has not fired within this delay after ``start_time`` (for example because the
            process was down), it is skipped instead of fired late.
        task_data: Opaque string payload.
        task_chain: Structured payload. Exactly one of ``task_data`` and ``task_chain`` must be set.
        executed: When the event last fired. Used to avoid firing twice for the same start time.
        title: Label used when displaying the event.
    """

    CATEGORY: ClassVar[EventCategory]
    RECURRING: ClassVar[bool] = False

    start_time: datetime
    end_time: datetime | None = None
    max_start_delay: timedelta = DEFAULT_MAX_START_DELAY
    task_data: str | None = None
    task_chain: ActionChain | None = None
    executed: datetime | None = None
    title: str | None = None

    _execution_lock: Lock = PrivateAttr(default_factory=Lock)

    @model_validator(mode="after")
    def _check_payload(self) -> "EventBase":
        if self.task_data is None and self.task_chain is None:
            raise ValueError("Either task_data or task_chain must be set")
        if self.task_data is not None and self.task_chain is not None:
            raise ValueError("Only one of task_data and task_chain can be set")
        return self

    @property
    def payload(self) -> Payload:
        """
        The payload given to the processor when this event fires.
        """
        return self.task_data if self.task_data is not None else self.task_chain  # type: ignore  # one is always set

    def is_expired(self, now: datetime) -> bool:
        return self.end_time is not None and now > self.end_time

    def evaluate_schedule(self, now: datetime | None = None) -> ScheduleDecision:
        """
        Decide whether this event should fire, and whether it should be taken out of its store.

        Marks the event as executed when the decision is to fire. This is the only side effect, and it happens under
        the event's own lock so that two concurrent evaluations can never both decide to fire for the same start time.

        Args:
            now: The current time. Defaults to ``datetime.now()``.

        Returns:
            A ``ScheduleDecision`` with the ``remove`` and ``execute`` flags.
        """
        now = now or datetime.now()

        if self.is_expired(now):
            return ScheduleDecision(remove=True, execute=False)

        if now < self.start_time:
            return ScheduleDecision(remove=False, execute=False)

        if not self._runs_on(now):
            return ScheduleDecision(remove=True, execute=False)

        if now > self.start_time + self.max_start_delay:
            return ScheduleDecision(remove=True, execute=False)

        with self._execution_lock:
            if self.executed is not None and self.executed >= self.start_time:
                return ScheduleDecision(remove=True, execute=False)
            self.executed = now

        return ScheduleDecision(remove=True, execute=True)

    def _runs_on(self, now: datetime) -> bool:
        return True

    @abstractmethod
    def adjust_to_next_execution_time(self, now: datetime | None = None) -> None:
        """
        Move ``start_time`` forward to the next time this event should fire.
        """
        pass

    def __str__(self) -> str:
        return f"{_format_time(self.start_time)} - {self.title or 'Unnamed'}"


class OneTimeEvent(EventBase):
    """
    An event that fires once, and is removed after it has been evaluated as due.
    """

    CATEGORY: ClassVar[EventCategory] = EventCategory.ONE_TIME

    type: Literal["OneTime"] = "OneTime"

    def adjust_to_next_execution_time(self, now: datetime | None = None) -> None:
        raise NotImplementedError("One time events can not be rescheduled")


class _RecurringEvent(EventBase, ABC):
    RECURRING: ClassVar[bool] = True

    def __str__(self) -> str:
        if self.end_time is None:
            return super().__str__()
        return f"{super().__str__()} - {_format_time(self.end_time)}"


class RepeatingEvent(_RecurringEvent):
    """
    An event that fires every ``interval``, counting from ``start_time``.

    Missed slots are skipped, not caught up: after firing, the next start time is the first slot on the
    ``start_time + k * interval`` grid that lies in the future.
    """

    CATEGORY: ClassVar[EventCategory] = EventCategory.REPEATING

    type: Literal["Repeating"] = "Repeating"
    interval: timedelta

    @field_validator("interval")
    @classmethod
    def _check_interval(cls, interval: timedelta) -> timedelta:
        if interval <= timedelta(0):
            raise ValueError("Interval must be positive")
        return interval

    def adjust_to_next_execution_time(self, now: datetime | None = None) -> None:
        now = now or datetime.now()
        if self.start_time > now:
            return

        missed_slots = (now - self.start_time) // self.interval
        self.start_time += (missed_slots + 1) * self.interval


class WeeklyEvent(_RecurringEvent):
    """
    An event that fires on the given weekdays, at the time of day of ``start_time``.
    """

    CATEGORY: ClassVar[EventCategory] = EventCategory.WEEKLY

    type: Literal["Weekly"] = "Weekly"
    interval: set[Weekday]

    @field_validator("interval")
    @classmethod
    def _check_days(cls, interval: set[Weekday]) -> set[Weekday]:
        if not interval:
            raise ValueError("Days cannot be empty")
        return interval

    @field_serializer("interval")
    def _serialize_days(self, interval: set[Weekday]) -> list[str]:
        return [day.value for day in Weekday if day in interval]

    def _runs_on(self, now: datetime) -> bool:
        return Weekday.of(now) in self.interval

    def adjust_to_next_execution_time(self, now: datetime | None = None) -> None:
        now = now or datetime.now()
        reference = max(now, self.start_time)

        # Offsets 1 through 7 cover every weekday, all of them later than the reference
        for offset in range(8):
            candidate = datetime.combine(reference.date() + timedelta(days=offset), self.start_time.timetz())
            if candidate > reference and Weekday.of(candidate) in self.interval:
                self.start_time = candidate
                return

        raise ValueError("Days cannot be empty")


Event = Annotated[OneTimeEvent | RepeatingEvent | WeeklyEvent, Field(discriminator="type")]
