import random
from datetime import datetime, timedelta
from threading import Barrier, Lock, Thread

import pytest
from pydantic import ValidationError

from simplescheduler.events import (
    ActionChain,
    ActionStep,
    OneTimeEvent,
    RepeatingEvent,
    ScheduleDecision,
    WeeklyEvent,
    Weekday,
)

from tests.conftest import MONDAY_MORNING

NOT_DUE = ScheduleDecision(remove=False, execute=False)
FIRE = ScheduleDecision(remove=True, execute=True)
DROP = ScheduleDecision(remove=True, execute=False)


def test_one_time_event_fires_once() -> None:
    event = OneTimeEvent(start_time=MONDAY_MORNING, task_data="backup")

    assert event.evaluate_schedule(MONDAY_MORNING - timedelta(seconds=1)) == NOT_DUE
    assert event.executed is None

    assert event.evaluate_schedule(MONDAY_MORNING) == FIRE
    assert event.executed == MONDAY_MORNING

    for seconds in range(1, 5):
        assert event.evaluate_schedule(MONDAY_MORNING + timedelta(seconds=seconds)) == DROP


def test_one_time_event_can_not_be_rescheduled() -> None:
    event = OneTimeEvent(start_time=MONDAY_MORNING, task_data="backup")

    with pytest.raises(NotImplementedError):
        event.adjust_to_next_execution_time(MONDAY_MORNING)


def test_payload_is_required() -> None:
    with pytest.raises(ValidationError, match="Either task_data or task_chain must be set"):
        OneTimeEvent(start_time=MONDAY_MORNING)


def test_only_one_payload_allowed() -> None:
    with pytest.raises(ValidationError, match="Only one of task_data and task_chain can be set"):
        OneTimeEvent(
            start_time=MONDAY_MORNING,
            task_data="backup",
            task_chain=ActionChain(steps=[ActionStep(action="summarize")]),
        )


def test_chain_payload() -> None:
    chain = ActionChain(name="morning", steps=[ActionStep(action="fetch", parameters={"url": "https://example.com"})])
    event = RepeatingEvent(start_time=MONDAY_MORNING, interval=timedelta(hours=1), task_chain=chain)

    assert event.payload is chain

    with pytest.raises(ValidationError):
        ActionChain(steps=[])


def test_expired_event_is_evicted() -> None:
    end = MONDAY_MORNING - timedelta(minutes=1)

    one_time = OneTimeEvent(start_time=MONDAY_MORNING + timedelta(days=1), end_time=end, task_data="a")
    repeating = RepeatingEvent(start_time=MONDAY_MORNING, end_time=end, interval=timedelta(hours=1), task_data="b")
    weekly = WeeklyEvent(start_time=MONDAY_MORNING, end_time=end, interval={Weekday.MONDAY}, task_data="c")

    for event in (one_time, repeating, weekly):
        assert event.is_expired(MONDAY_MORNING)
        assert event.evaluate_schedule(MONDAY_MORNING) == DROP
        assert event.executed is None


def test_missed_window_is_dropped_without_firing() -> None:
    event = OneTimeEvent(start_time=MONDAY_MORNING, task_data="backup")
    assert event.max_start_delay == timedelta(hours=7)

    assert event.evaluate_schedule(MONDAY_MORNING + timedelta(hours=7, seconds=1)) == DROP
    assert event.executed is None

    late = OneTimeEvent(start_time=MONDAY_MORNING, max_start_delay=timedelta(minutes=5), task_data="backup")
    assert late.evaluate_schedule(MONDAY_MORNING + timedelta(minutes=4)) == FIRE


def test_concurrent_evaluation_fires_once() -> None:
    for _ in range(20):
        event = RepeatingEvent(start_time=MONDAY_MORNING, interval=timedelta(minutes=5), task_data="ping")
        barrier = Barrier(8)
        decisions: list[ScheduleDecision] = []
        lock = Lock()

        def evaluate() -> None:
            barrier.wait()
            decision = event.evaluate_schedule(MONDAY_MORNING + timedelta(seconds=1))
            with lock:
                decisions.append(decision)

        threads = [Thread(target=evaluate) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for d in decisions if d.execute) == 1
        assert all(d.remove for d in decisions)


def test_repeating_event_skips_missed_slots() -> None:
    event = RepeatingEvent(start_time=MONDAY_MORNING, interval=timedelta(minutes=15), task_data="ping")

    event.adjust_to_next_execution_time(MONDAY_MORNING + timedelta(hours=1, minutes=7))
    assert event.start_time == MONDAY_MORNING + timedelta(hours=1, minutes=15)

    # Exactly on a slot moves to the next one
    event.adjust_to_next_execution_time(MONDAY_MORNING + timedelta(hours=1, minutes=15))
    assert event.start_time == MONDAY_MORNING + timedelta(hours=1, minutes=30)


def test_repeating_event_stays_on_grid() -> None:
    interval = timedelta(minutes=7, seconds=30)
    event = RepeatingEvent(start_time=MONDAY_MORNING, interval=interval, task_data="ping")
    rng = random.Random(1234)

    now = MONDAY_MORNING
    for _ in range(50):
        now = max(now, event.start_time) + timedelta(seconds=rng.randint(0, 3600))
        event.adjust_to_next_execution_time(now)

        assert event.start_time > now
        assert event.start_time - interval <= now
        assert (event.start_time - MONDAY_MORNING) % interval == timedelta(0)


def test_repeating_event_in_future_is_not_moved() -> None:
    start = MONDAY_MORNING + timedelta(hours=2)
    event = RepeatingEvent(start_time=start, interval=timedelta(minutes=15), task_data="ping")

    event.adjust_to_next_execution_time(MONDAY_MORNING)
    assert event.start_time == start


def test_repeating_event_needs_positive_interval() -> None:
    with pytest.raises(ValidationError, match="Interval must be positive"):
        RepeatingEvent(start_time=MONDAY_MORNING, interval=timedelta(0), task_data="ping")


def test_weekly_event_needs_days() -> None:
    with pytest.raises(ValidationError, match="Days cannot be empty"):
        WeeklyEvent(start_time=MONDAY_MORNING, interval=set(), task_data="report")


def test_weekly_event_moves_to_next_matching_day() -> None:
    start = datetime(2024, 1, 1, 9, 0, 0)
    event = WeeklyEvent(start_time=start, interval={Weekday.MONDAY, Weekday.WEDNESDAY}, task_data="report")

    event.adjust_to_next_execution_time(start + timedelta(seconds=5))
    assert event.start_time == datetime(2024, 1, 3, 9, 0, 0)

    event.adjust_to_next_execution_time(event.start_time + timedelta(seconds=1))
    assert event.start_time == datetime(2024, 1, 8, 9, 0, 0)


def test_weekly_event_adjustment_keeps_time_of_day() -> None:
    start = datetime(2024, 1, 1, 9, 30, 15)
    days = {Weekday.MONDAY, Weekday.WEDNESDAY}
    event = WeeklyEvent(start_time=start, interval=days, task_data="report")
    rng = random.Random(42)

    now = start
    for _ in range(30):
        now = max(now, event.start_time) + timedelta(minutes=rng.randint(0, 60 * 24 * 5))
        event.adjust_to_next_execution_time(now)

        assert Weekday.of(event.start_time) in days
        assert event.start_time > now
        assert event.start_time - now <= timedelta(days=7)
        assert (event.start_time.hour, event.start_time.minute, event.start_time.second) == (9, 30, 15)


def test_weekly_event_not_today_is_requeued() -> None:
    tuesday = datetime(2024, 1, 2, 9, 0, 0)
    event = WeeklyEvent(start_time=tuesday, interval={Weekday.MONDAY}, task_data="report")

    assert event.evaluate_schedule(tuesday + timedelta(seconds=1)) == DROP
    assert event.executed is None

    event.adjust_to_next_execution_time(tuesday + timedelta(seconds=1))
    assert event.start_time == datetime(2024, 1, 8, 9, 0, 0)


def test_weekly_event_fires_on_matching_day() -> None:
    event = WeeklyEvent(start_time=MONDAY_MORNING, interval={Weekday.MONDAY}, task_data="report")

    assert event.evaluate_schedule(MONDAY_MORNING + timedelta(seconds=1)) == FIRE
    assert event.evaluate_schedule(MONDAY_MORNING + timedelta(seconds=2)) == DROP


def test_weekly_days_serialize_as_names_in_week_order() -> None:
    event = WeeklyEvent(
        start_time=MONDAY_MORNING,
        interval={Weekday.SUNDAY, Weekday.WEDNESDAY, Weekday.MONDAY},
        task_data="report",
    )

    dumped = event.model_dump(mode="json", by_alias=True)
    assert dumped["Interval"] == ["Monday", "Wednesday", "Sunday"]
    assert dumped["Type"] == "Weekly"
    assert dumped["StartTime"] == "2024-01-01T08:00:00"
    assert "MaxStartDelay" in dumped

    parsed = WeeklyEvent.model_validate({**dumped, "Interval": ["monday", "FRIDAY"]})
    assert parsed.interval == {Weekday.MONDAY, Weekday.FRIDAY}


def test_weekday_of() -> None:
    assert Weekday.of(MONDAY_MORNING) is Weekday.MONDAY
    assert Weekday.of(datetime(2024, 1, 7)) is Weekday.SUNDAY


def test_event_display() -> None:
    event = OneTimeEvent(start_time=datetime(2024, 1, 1, 9, 0, 0), task_data="backup", title="Backup")
    assert str(event) == "24-Jan-01 2024 09:00:00 - Backup"

    unnamed = OneTimeEvent(start_time=datetime(2024, 1, 1, 9, 0, 0), task_data="backup")
    assert str(unnamed) == "24-Jan-01 2024 09:00:00 - Unnamed"

    repeating = RepeatingEvent(
        start_time=datetime(2024, 1, 1, 9, 0, 0),
        end_time=datetime(2024, 2, 1, 9, 0, 0),
        interval=timedelta(days=1),
        task_data="ping",
        title="Ping",
    )
    assert str(repeating) == "24-Jan-01 2024 09:00:00 - Ping - 24-Feb-01 2024 09:00:00"
