"""
This module provides the event scheduler.

The scheduler holds three categories of events, each in its own store with its own lock: one time events, repeating
events ("cron jobs") and weekly events. A background loop wakes up every ``tick_interval`` seconds and evaluates the
earliest event of each category, concurrently. Due events have their payload handed to a processor function on a
worker pool, outside of any scheduler lock, so a slow processor never holds up the loop, other categories, or callers
adding events.

.. code-block:: python

    def processor(payload: Payload) -> None:
        if isinstance(payload, ActionChain):
            run_chain(payload)
        else:
            run_command(payload)

    scheduler = Scheduler(state_file="schedule", autosave=True)
    scheduler.load()
    scheduler.add_one_time_event(OneTimeEvent(start_time=datetime.now() + timedelta(minutes=5), task_data="backup"))
    scheduler.start(processor)
    ...
    scheduler.stop()

Fired payloads are fire-and-forget: a processor that raises is logged, and the firing is not retried.
"""

import concurrent.futures
import logging
import math
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from os import PathLike
from pathlib import Path
from threading import Lock, RLock, Thread, current_thread
from time import time
from typing import Any

import arrow

from simplescheduler.configuration import SchedulerConfig
from simplescheduler.events import (
    Event,
    EventBase,
    EventCategory,
    OneTimeEvent,
    Payload,
    RepeatingEvent,
    WeeklyEvent,
)
from simplescheduler.exceptions import InvalidEventError, NoStatePathError
from simplescheduler.metrics import SchedulerMetrics, safe_get
from simplescheduler.persistence import build_state, read_state, resolve_state_path, write_state
from simplescheduler.store import ScheduleStore
from simplescheduler.threading import CancellationToken

__all__ = ["Clock", "Processor", "Scheduler"]

Processor = Callable[[Payload], Any]
Clock = Callable[[], datetime]


class Scheduler:
    """
    Scheduler for one time, repeating and weekly events.

    This class is thread-safe. Events can be added and listed from any thread while the loop is running.

    Args:
        state_file: File to save state to and load state from when no path is given. ``.json`` is appended if missing.
        autosave: Save state after every change. Requires ``state_file``.
        tick_interval: Seconds to wait between each evaluation of the stores.
        error_backoff: Seconds to wait after an unexpected error in a tick, before the next tick.
        max_workers: Max number of processor calls running at the same time.
        clock: Function returning the current time. Defaults to naive local time.
        cancellation_token: Token to cancel the scheduler from elsewhere. Cancelled when stop is called.
        metrics: Metrics collection to report to. Defaults to the process wide ``SchedulerMetrics``.
    """

    def __init__(
        self,
        *,
        state_file: str | PathLike | None = None,
        autosave: bool = False,
        tick_interval: float = 1.0,
        error_backoff: float = 5.0,
        max_workers: int = 4,
        clock: Clock = datetime.now,
        cancellation_token: CancellationToken | None = None,
        metrics: SchedulerMetrics | None = None,
    ) -> None:
        if not (math.isfinite(tick_interval) and tick_interval > 0):
            raise ValueError("Tick interval must be a positive number of seconds")
        if not (math.isfinite(error_backoff) and error_backoff > 0):
            raise ValueError("Error backoff must be a positive number of seconds")
        if autosave and state_file is None:
            raise NoStatePathError()

        self._logger = logging.getLogger(__name__)

        self.state_file: Path | None = resolve_state_path(state_file) if state_file is not None else None
        self.autosave = autosave
        self.tick_interval = tick_interval
        self.error_backoff = error_backoff
        self.cancellation_token = cancellation_token.create_child_token() if cancellation_token else CancellationToken()
        self.metrics = metrics or safe_get(SchedulerMetrics)
        self._clock = clock

        self.one_time_events: ScheduleStore[OneTimeEvent] = ScheduleStore(EventCategory.ONE_TIME, OneTimeEvent)
        self.cron_jobs: ScheduleStore[RepeatingEvent] = ScheduleStore(EventCategory.REPEATING, RepeatingEvent)
        self.weekly_schedule: ScheduleStore[WeeklyEvent] = ScheduleStore(EventCategory.WEEKLY, WeeklyEvent)
        self._stores: list[ScheduleStore] = [self.one_time_events, self.cron_jobs, self.weekly_schedule]

        self._save_lock = Lock()
        # Held for a whole tick, the pools are only shut down while nobody holds it
        self._tick_lock = RLock()
        self._closed = False
        self._evaluation_pool = ThreadPoolExecutor(max_workers=len(self._stores), thread_name_prefix="Evaluate")
        self._processor_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ProcessEvent")
        self._thread: Thread | None = None

    @classmethod
    def from_config(cls, config: SchedulerConfig, **kwargs: Any) -> "Scheduler":
        """
        Create a scheduler from a loaded ``SchedulerConfig``. Extra keyword arguments (such as ``clock`` or
        ``cancellation_token``) are passed on to the constructor.
        """
        return cls(
            state_file=config.state_store.path if config.state_store else None,
            autosave=config.state_store.autosave if config.state_store else False,
            tick_interval=config.tick_interval.seconds,
            error_backoff=config.error_backoff.seconds,
            max_workers=config.max_workers,
            **kwargs,
        )

    def now(self) -> datetime:
        return self._clock()

    def _update_pending(self, store: ScheduleStore) -> None:
        self.metrics.pending_events.labels(store.category.value).set(len(store))

    @staticmethod
    def _validate(event: EventBase) -> None:
        if (event.task_data is None) == (event.task_chain is None):
            raise InvalidEventError("Exactly one of task_data and task_chain must be set")

        match event:
            case WeeklyEvent() if not event.interval:
                raise InvalidEventError("Days cannot be empty")
            case RepeatingEvent() if event.interval <= timedelta(0):
                raise InvalidEventError("Interval must be positive")

    def _add(self, store: ScheduleStore, event: EventBase) -> None:
        store.check_type(event)
        self._validate(event)
        store.add(event)

        self._logger.info(f"Added {store.category.value} event {event}")
        self.metrics.events_added.labels(store.category.value).inc()
        self._update_pending(store)

        if self.autosave:
            self.save()

    def add_one_time_event(self, event: OneTimeEvent) -> None:
        """
        Add a one time event.

        Raises:
            InvalidEventError: If the event is not a valid one time event.
        """
        self._add(self.one_time_events, event)

    def add_repeating_event(self, event: RepeatingEvent) -> None:
        """
        Add a repeating event.

        Raises:
            InvalidEventError: If the event is not a valid repeating event.
        """
        self._add(self.cron_jobs, event)

    def add_weekly_event(self, event: WeeklyEvent) -> None:
        """
        Add a weekly event.

        Raises:
            InvalidEventError: If the event is not a valid weekly event, for example if it has no days.
        """
        self._add(self.weekly_schedule, event)

    def add_event(self, event: Event) -> None:
        """
        Add an event to the store matching its type.

        Raises:
            InvalidEventError: If the event is invalid, or not an event at all.
        """
        match event:
            case OneTimeEvent():
                self.add_one_time_event(event)
            case RepeatingEvent():
                self.add_repeating_event(event)
            case WeeklyEvent():
                self.add_weekly_event(event)
            case _:
                raise InvalidEventError(f"Unknown event type {type(event).__name__}")

    def list_upcoming(
        self,
        window: timedelta,
        include_one_time: bool = True,
        include_weekly: bool = True,
        include_repeating: bool = False,
    ) -> list[EventBase]:
        """
        List events due between now and ``now + window``.

        The stores are read one at a time, and nothing is modified.

        Args:
            window: How far into the future to look.
            include_one_time: Include one time events.
            include_weekly: Include weekly events.
            include_repeating: Include repeating events.

        Returns:
            The events, ordered by start time.
        """
        start = self.now()
        end = start + window

        events: list[EventBase] = []
        for include, store in (
            (include_one_time, self.one_time_events),
            (include_weekly, self.weekly_schedule),
            (include_repeating, self.cron_jobs),
        ):
            if include:
                events.extend(store.upcoming(start, end))

        return sorted(events, key=lambda event: event.start_time)

    def _run_processor(self, processor: Processor, event: EventBase, category: EventCategory) -> None:
        try:
            processor(event.payload)
        except Exception:
            self._logger.exception(f"Failed to process {category.value} event {event.title or 'Unnamed'}")
            self.metrics.processing_failures.labels(category.value).inc()

    def _process_category(self, store: ScheduleStore, processor: Processor, now: datetime) -> bool:
        evaluation = store.evaluate_next(now)
        if evaluation is None:
            return False

        event, decision = evaluation.event, evaluation.decision
        category = store.category.value
        title = event.title or "Unnamed"

        if decision.execute:
            self._logger.info(f"Running {category} event {title}")
            self.metrics.events_fired.labels(category).inc()
            self._processor_pool.submit(self._run_processor, processor, event, store.category)
        elif evaluation.requeued:
            self._logger.debug(f"Skipped {category} event {title} without running it")
            self.metrics.events_skipped.labels(category).inc()
        elif decision.remove:
            self._logger.info(f"Removed {category} event {title} without running it")
            self.metrics.events_evicted.labels(category).inc()

        if evaluation.requeued:
            next_run = arrow.get(event.start_time).humanize(arrow.get(now))
            self._logger.debug(f"Next run of {category} event {title} {next_run}")

        if evaluation.changed:
            self._update_pending(store)

        return evaluation.changed

    def tick(self, processor: Processor) -> bool:
        """
        Evaluate the earliest event of every category once, concurrently, and wait for all of them.

        Due payloads are submitted to the processor pool, this method does not wait for them to finish. If anything
        changed and autosave is enabled, state is saved afterwards.

        Args:
            processor: Function to call with the payload of each due event.

        Returns:
            True if any store changed. Always False once the scheduler is stopped.
        """
        with self._tick_lock:
            if self._closed:
                return False

            now = self.now()
            evaluations = [
                self._evaluation_pool.submit(self._process_category, store, processor, now) for store in self._stores
            ]
            concurrent.futures.wait(evaluations)

            changed = False
            for future in evaluations:
                changed = future.result() or changed

        self.metrics.last_tick.set(time())

        if changed and self.autosave:
            self.save()

        return changed

    def run(self, processor: Processor) -> None:
        """
        Run the scheduler loop in the current thread until cancelled.

        This method never raises. Unexpected errors in a tick are logged, followed by ``error_backoff`` seconds of
        waiting before the next tick. When the loop ends, the worker pools are shut down, also when it was cancelled
        through a parent token.

        Args:
            processor: Function to call with the payload of each due event.
        """
        self._logger.info(f"Starting scheduler with a tick interval of {self.tick_interval} seconds")

        while not self.cancellation_token.is_cancelled:
            try:
                self.tick(processor)
            except Exception:
                self._logger.exception("Unexpected error in scheduler tick")
                self.cancellation_token.wait(self.error_backoff)
                continue

            self.cancellation_token.wait(self.tick_interval)

        self._close()
        self._logger.info("Scheduler stopped")

    def start(self, processor: Processor) -> Thread:
        """
        Run the scheduler loop in a background thread.

        Returns:
            The started thread.
        """
        if self._thread is not None:
            raise RuntimeError("Scheduler is already started")

        self._thread = Thread(target=self.run, args=(processor,), name="SchedulerLoop", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, wait: bool = True) -> None:
        """
        Stop the scheduler loop. The loop finishes the tick it is in, if any, and does not start another one.

        Running processor calls are not waited for or cancelled. If autosave is enabled, state is saved one last time.
        The scheduler can not be started again after it is stopped.

        Args:
            wait: Block until the loop thread has stopped. Even when False, a tick that is being evaluated is allowed
                to finish before the worker pools are shut down, so an event taken out of its store is always handed
                to the processor.
        """
        self.cancellation_token.cancel()

        if wait and self._thread is not None and self._thread is not current_thread():
            self._thread.join()

        self._close()

        if self.autosave:
            self.save()

    def _close(self) -> None:
        with self._tick_lock:
            self._closed = True
            self._processor_pool.shutdown(wait=False)
            self._evaluation_pool.shutdown(wait=True)

    def _resolve_path(self, path: str | PathLike | None) -> Path:
        if path is not None:
            return resolve_state_path(path)
        if self.state_file is None:
            raise NoStatePathError()
        return self.state_file

    def save(self, path: str | PathLike | None = None) -> bool:
        """
        Save the content of all stores to a JSON file.

        The file is replaced atomically, so the previous state stays intact if saving fails. Failures are logged, not
        raised.

        Args:
            path: File to save to. Defaults to the configured state file. ``.json`` is appended if missing.

        Returns:
            True if the state was saved.

        Raises:
            NoStatePathError: If no path is given and no state file is configured.
        """
        target = self._resolve_path(path)

        try:
            with self._save_lock:
                state = build_state(
                    one_time=self.one_time_events.to_records(),
                    repeating=self.cron_jobs.to_records(),
                    weekly=self.weekly_schedule.to_records(),
                )
                write_state(target, state)

        except Exception:
            self._logger.exception(f"Failed to save scheduler state to {target}")
            self.metrics.persist_failures.inc()
            return False

        self._logger.debug(f"Saved scheduler state to {target}")
        return True

    def load(self, path: str | PathLike | None = None, throw_on_missing: bool = False) -> None:
        """
        Load the content of all stores from a JSON file, replacing what is currently held.

        Args:
            path: File to load from. Defaults to the configured state file. ``.json`` is appended if missing.
            throw_on_missing: Raise if the file does not exist. If False, a missing file leaves the stores as they are.

        Raises:
            NoStatePathError: If no path is given and no state file is configured.
            FileNotFoundError: If the file does not exist and ``throw_on_missing`` is set.
            StateLoadError: If the file can not be parsed.
        """
        target = self._resolve_path(path)

        try:
            state = read_state(target)
        except FileNotFoundError:
            if throw_on_missing:
                raise
            self._logger.info(f"No scheduler state found at {target}, keeping the current schedule")
            return
        except Exception as e:
            self._logger.error(f"Could not load scheduler state: {e!s}")
            raise

        self.one_time_events.replace(state.one_time)
        self.cron_jobs.replace(state.repeating)
        self.weekly_schedule.replace(state.weekly)

        for store in self._stores:
            self._update_pending(store)

        self._logger.info(
            f"Loaded {len(self.one_time_events)} one time, {len(self.cron_jobs)} repeating and "
            f"{len(self.weekly_schedule)} weekly events from {target}"
        )
