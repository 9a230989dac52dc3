"""
Lock guarded event storage, one store per scheduler category.

A ``ScheduleStore`` keeps its events ordered by due time. Several events may share the same due time, in which case
they keep their insertion order. All access goes through the store's methods, which take the store's lock, so callers
never handle the lock themselves. Each store has its own lock, so evaluating one category never blocks another.
"""

import bisect
import itertools
from collections.abc import Iterable, Iterator
from datetime import datetime
from threading import RLock
from typing import Any, Generic, NamedTuple, TypeVar

from simplescheduler.events import EventBase, EventCategory, ScheduleDecision
from simplescheduler.exceptions import InvalidEventError

__all__ = ["Evaluation", "ScheduleStore"]

_E = TypeVar("_E", bound=EventBase)


class Evaluation(NamedTuple):
    """
    Result of evaluating the earliest event of a store.

    Attributes:
        event: The evaluated event.
        decision: What the event decided.
        requeued: The event was rescheduled and put back in the store.
    """

    event: EventBase
    decision: ScheduleDecision
    requeued: bool

    @property
    def changed(self) -> bool:
        return self.decision.remove


class ScheduleStore(Generic[_E]):
    """
    Ordered collection of events of one category, sorted by ``start_time``.

    This class is thread-safe.

    Args:
        category: The category this store holds.
        event_type: Event class accepted by this store.
    """

    def __init__(self, category: EventCategory, event_type: type[_E]) -> None:
        self.category = category
        self.event_type = event_type

        self._lock = RLock()
        self._keys: list[tuple[datetime, int]] = []
        self._events: list[_E] = []
        self._sequence = itertools.count()

    def check_type(self, event: EventBase) -> None:
        if not isinstance(event, self.event_type):
            raise InvalidEventError(
                f"Can not add {type(event).__name__} to the {self.category.value} store, "
                f"expected {self.event_type.__name__}"
            )

    def _insert(self, event: _E) -> None:
        key = (event.start_time, next(self._sequence))
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._events.insert(index, event)

    def add(self, event: _E) -> None:
        """
        Insert an event, keyed by its ``start_time``.

        Raises:
            InvalidEventError: If the event is of the wrong type for this store.
        """
        self.check_type(event)
        with self._lock:
            self._insert(event)

    def evaluate_next(self, now: datetime) -> Evaluation | None:
        """
        Evaluate the earliest event in the store, and remove, reschedule or keep it depending on the outcome.

        Only the earliest event is looked at, so at most one event per store is handled per call. The processor is
        never called from here; if the returned decision says ``execute``, the caller is responsible for running the
        payload after this method has returned and the lock is released.

        Args:
            now: The current time.

        Returns:
            The evaluation, or ``None`` if the store is empty.
        """
        with self._lock:
            if not self._events:
                return None

            event = self._events[0]
            decision = event.evaluate_schedule(now)
            requeued = False

            if decision.remove:
                del self._keys[0]
                del self._events[0]

                if event.RECURRING and not event.is_expired(now):
                    event.adjust_to_next_execution_time(now)
                    self._insert(event)
                    requeued = True

            return Evaluation(event=event, decision=decision, requeued=requeued)

    def upcoming(self, start: datetime, end: datetime) -> list[_E]:
        """
        Get the events due between ``start`` and ``end``, both inclusive, in order.
        """
        with self._lock:
            return [event for event in self._events if start <= event.start_time <= end]

    def snapshot(self) -> list[_E]:
        with self._lock:
            return list(self._events)

    def to_records(self) -> list[dict[str, Any]]:
        """
        Serialize all events, taken while holding the lock so that no event is rescheduled halfway through.
        """
        with self._lock:
            return [event.model_dump(mode="json", by_alias=True) for event in self._events]

    def replace(self, events: Iterable[_E]) -> None:
        """
        Replace the content of the store.

        Raises:
            InvalidEventError: If any event is of the wrong type for this store. The store is left untouched then.
        """
        events = list(events)
        for event in events:
            self.check_type(event)

        with self._lock:
            self._keys.clear()
            self._events.clear()
            for event in events:
                self._insert(event)

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def __iter__(self) -> Iterator[_E]:
        """
        Iterate over a snapshot of the events, in order.
        """
        yield from self.snapshot()

    def __repr__(self) -> str:
        return f"<ScheduleStore {self.category.value}: {len(self)} events>"
