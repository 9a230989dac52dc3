"""
Reading and writing scheduler state to a local JSON file.

The state file holds the three scheduler categories. Each category maps a due time to the list of events due at that
time:

.. code-block:: json

    {
      "OneTimeEvents": {
        "2024-01-01T09:00:00": [
          {"StartTime": "2024-01-01T09:00:00", "TaskData": "backup", "Type": "OneTime", "...": "..."}
        ]
      },
      "CronJobs": {},
      "WeeklySchedule": {}
    }

Writes go to a temporary file next to the target, which then replaces the target. A crash while writing leaves the
previous state file untouched.
"""

import contextlib
import json
import os
import tempfile
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError

from simplescheduler.events import EventBase, OneTimeEvent, RepeatingEvent, SchedulerModel, WeeklyEvent
from simplescheduler.exceptions import StateLoadError

__all__ = ["STATE_FILE_SUFFIX", "SchedulerState", "build_state", "read_state", "resolve_state_path", "write_state"]

STATE_FILE_SUFFIX = ".json"


def resolve_state_path(path: str | os.PathLike) -> Path:
    """
    Add the state file suffix to a path if it is missing.
    """
    path = Path(path)
    if path.suffix != STATE_FILE_SUFFIX:
        path = path.with_name(path.name + STATE_FILE_SUFFIX)
    return path


class SchedulerState(SchedulerModel):
    """
    Schema of the state file.
    """

    one_time_events: dict[datetime, list[OneTimeEvent]] = Field(default_factory=dict)
    cron_jobs: dict[datetime, list[RepeatingEvent]] = Field(default_factory=dict)
    weekly_schedule: dict[datetime, list[WeeklyEvent]] = Field(default_factory=dict)

    @staticmethod
    def _flatten(collection: dict[datetime, list[EventBase]]) -> list[Any]:
        return [event for events in collection.values() for event in events]

    @property
    def one_time(self) -> list[OneTimeEvent]:
        return self._flatten(self.one_time_events)  # type: ignore

    @property
    def repeating(self) -> list[RepeatingEvent]:
        return self._flatten(self.cron_jobs)  # type: ignore

    @property
    def weekly(self) -> list[WeeklyEvent]:
        return self._flatten(self.weekly_schedule)  # type: ignore


def _group_by_start_time(records: Iterable[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for record in records:
        grouped.setdefault(record["StartTime"], []).append(record)
    return grouped


def build_state(
    one_time: Iterable[dict[str, Any]],
    repeating: Iterable[dict[str, Any]],
    weekly: Iterable[dict[str, Any]],
) -> dict[str, Any]:
    """
    Build the content of a state file from serialized events of each category.
    """
    return {
        "OneTimeEvents": _group_by_start_time(one_time),
        "CronJobs": _group_by_start_time(repeating),
        "WeeklySchedule": _group_by_start_time(weekly),
    }


def write_state(path: Path, state: dict[str, Any]) -> None:
    """
    Atomically write serialized state to a JSON file.

    The temporary file is removed again if anything fails, and the exception is re-raised.

    Args:
        path: Target file.
        state: JSON-serializable state, as built by ``build_state``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.remove(temp_path)
        raise


def read_state(path: Path) -> SchedulerState:
    """
    Read a state file.

    Raises:
        FileNotFoundError: If the file does not exist.
        StateLoadError: If the file exists but does not contain valid scheduler state.
    """
    with open(path, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateLoadError(str(path), f"Invalid JSON: {e!s}") from e

    try:
        return SchedulerState.model_validate(data)
    except ValidationError as e:
        raise StateLoadError(str(path), f"{e.error_count()} invalid fields: {e!s}") from e
