"""
An in-process scheduler for one time, repeating and weekly events.

The ``Scheduler`` keeps each kind of event in its own lock guarded store, evaluates them on a fixed tick, hands due
payloads to a processor function, and can persist its state to a JSON file that survives crashes mid-write.
"""

from .events import ActionChain, ActionStep, EventBase, OneTimeEvent, Payload, RepeatingEvent, WeeklyEvent, Weekday
from .exceptions import InvalidConfigError, InvalidEventError, NoStatePathError, StateLoadError
from .scheduler import Scheduler

__version__ = "1.0.0"

__all__ = [
    "ActionChain",
    "ActionStep",
    "EventBase",
    "InvalidConfigError",
    "InvalidEventError",
    "NoStatePathError",
    "OneTimeEvent",
    "Payload",
    "RepeatingEvent",
    "Scheduler",
    "StateLoadError",
    "WeeklyEvent",
    "Weekday",
]
