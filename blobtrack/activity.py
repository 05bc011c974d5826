"""Exponentially decaying event activity."""

from __future__ import annotations

import math
from typing import Any, Callable, NamedTuple, Optional


class ActivityEvent(NamedTuple):
    x: int
    y: int
    timestamp: int
    activity: float


def _default_activity_event(event: Any, activity: float) -> ActivityEvent:
    return ActivityEvent(event.x, event.y, event.timestamp, activity)


class ComputeActivity:
    """Evaluate the activity within a temporal neighbourhood.

    The activity decays exponentially with time constant ``lifespan`` and
    grows by one on every event.  Each event is forwarded downstream
    together with the updated activity.

    Parameters
    ----------
    lifespan : float
        Decay time constant, in timestamp units.
    handle_activity : callable
        Receives the value returned by ``activity_from_event``.
    activity_from_event : callable, optional
        Builds the downstream value from ``(event, activity)``.  Defaults
        to an :class:`ActivityEvent`.
    """

    def __init__(
        self,
        lifespan: float,
        handle_activity: Callable[[Any], None],
        activity_from_event: Optional[Callable[[Any, float], Any]] = None,
    ) -> None:
        if lifespan <= 0:
            raise ValueError("lifespan must be positive")
        self.lifespan = float(lifespan)
        self._handle_activity = handle_activity
        self._activity_from_event = activity_from_event or _default_activity_event
        self.activity = 0.0
        self.last_timestamp = 0

    def __call__(self, event: Any) -> None:
        self.activity *= math.exp(-(event.timestamp - self.last_timestamp) / self.lifespan)
        self.activity += 1.0
        self.last_timestamp = event.timestamp
        self._handle_activity(self._activity_from_event(event, self.activity))
