#  Copyright 2020 Cognite AS
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.

"""
Module containing the Prometheus metrics reported by the scheduler.

Metrics are registered in the default Prometheus registry, so they can be exposed with
``prometheus_client.start_http_server`` or pushed to a gateway by the host application. Since Prometheus doesn't allow
multiple metrics with the same name, use ``safe_get`` to get the metrics collection:

.. code-block:: python

    metrics = safe_get(SchedulerMetrics)
"""

from threading import Lock
from typing import Any, TypeVar

from prometheus_client import Counter, Gauge

_metrics_singularities: dict[type, Any] = {}
_metrics_lock = Lock()

T = TypeVar("T")


def safe_get(cls: type[T], *args: Any, **kwargs: Any) -> T:
    """
    A factory for instances of metrics collections.

    Creates an instance of the given class on the first call and stores it, any subsequent calls with the same class
    as argument will return the same instance.

    Args:
        cls: Metrics class to either create or get a cached version of

    Returns:
        An instance of given class
    """
    with _metrics_lock:
        if cls not in _metrics_singularities:
            _metrics_singularities[cls] = cls(*args, **kwargs)

        return _metrics_singularities[cls]


class SchedulerMetrics:
    """
    Metrics for a scheduler. Everything except the tick gauge and persist failures is labelled by category
    (``one_time``, ``repeating`` or ``weekly``).

    **Note that only one instance of this class (or any subclass) can exist simultaneously**

    The collection includes the following metrics:
     * events_added:            Number of events added
     * events_fired:            Number of events handed to the processor
     * events_skipped:          Number of recurring events rescheduled without firing
     * events_evicted:          Number of events removed without firing
     * processing_failures:     Number of processor calls that raised
     * persist_failures:        Number of failed attempts at saving state
     * pending_events:          Number of events in each store
     * last_tick:               Timestamp (seconds) of the last completed tick
    """

    def __init__(self, prefix: str = "scheduler") -> None:
        self.events_added = Counter(f"{prefix}_events_added", "Number of events added to the scheduler", ["category"])
        self.events_fired = Counter(f"{prefix}_events_fired", "Number of events handed to the processor", ["category"])
        self.events_skipped = Counter(
            f"{prefix}_events_skipped", "Number of recurring events rescheduled without firing", ["category"]
        )
        self.events_evicted = Counter(
            f"{prefix}_events_evicted", "Number of events removed without firing", ["category"]
        )
        self.processing_failures = Counter(
            f"{prefix}_processing_failures", "Number of events where the processor raised an exception", ["category"]
        )
        self.persist_failures = Counter(f"{prefix}_persist_failures", "Number of failed attempts at saving state")
        self.pending_events = Gauge(f"{prefix}_pending_events", "Number of events waiting in each store", ["category"])
        self.last_tick = Gauge(f"{prefix}_last_tick_time", "Timestamp (seconds) of the last completed tick")
