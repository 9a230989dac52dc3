import logging
from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from threading import Condition, RLock
from time import sleep, time
from typing import Any

import pytest

from simplescheduler.scheduler import Scheduler

# 2024-01-01 is a Monday
MONDAY_MORNING = datetime(2024, 1, 1, 8, 0, 0)


class FakeClock:
    """
    A clock that only moves when told to.
    """

    def __init__(self, start: datetime = MONDAY_MORNING) -> None:
        self._now = start
        self._lock = RLock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        with self._lock:
            self._now += delta if delta is not None else timedelta(**kwargs)
            return self._now

    def set(self, now: datetime) -> None:
        with self._lock:
            self._now = now


class MockProcessor:
    def __init__(self, sleep_time: float = 0, fail: bool = False) -> None:
        self.payloads: list[Any] = []
        self.called_times: list[float] = []
        self.sleep_time = sleep_time
        self.fail = fail
        self._cv = Condition(RLock())

    def __call__(self, payload: Any) -> None:
        with self._cv:
            self.payloads.append(payload)
            self.called_times.append(time())
            self._cv.notify_all()

        sleep(self.sleep_time)
        if self.fail:
            raise RuntimeError("Processor failed")

    def wait_for_calls(self, count: int, timeout: float = 5) -> bool:
        with self._cv:
            return self._cv.wait_for(lambda: len(self.payloads) >= count, timeout=timeout)


def wait_until(predicate: Callable[[], bool], timeout: float = 5) -> bool:
    end = time() + timeout
    while time() < end:
        if predicate():
            return True
        sleep(0.01)
    return predicate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def processor() -> MockProcessor:
    return MockProcessor()


@pytest.fixture
def scheduler(clock: FakeClock) -> Generator[Scheduler, None, None]:
    scheduler = Scheduler(clock=clock)
    yield scheduler
    scheduler.stop()


@pytest.fixture
def restore_root_logger() -> Generator[logging.Logger, None, None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
