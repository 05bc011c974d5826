"""Stream filters forwarding zero or one event per input event.

Each filter wraps a downstream ``handle_event`` callable and is itself
callable with an event, so filters can be chained in front of the
tracker::

    tracker = TrackBlobs(...)
    pipeline = MaskIsolated(304, 240, 10000, SelectRectangle(0, 0, 200, 240, tracker))
    for event in events:
        pipeline(event)

Events are never mutated; transformed events are copies.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Callable

import numpy as np

HandleEvent = Callable[[Any], None]


def _with(event: Any, **changes: Any) -> Any:
    """Copy ``event`` with some attributes replaced."""
    if hasattr(event, "_replace"):
        return event._replace(**changes)
    return dataclasses.replace(event, **changes)


def _check_size(**sizes: int) -> None:
    for name, value in sizes.items():
        if value <= 0:
            raise ValueError(f"{name} must be positive")


class MirrorY:
    """Invert the y coordinate."""

    def __init__(self, height: int, handle_event: HandleEvent) -> None:
        _check_size(height=height)
        self.height = height
        self._handle_event = handle_event

    def __call__(self, event: Any) -> None:
        self._handle_event(_with(event, y=self.height - 1 - event.y))


class ShiftX:
    """Offset the x coordinate, dropping events shifted out of the sensor."""

    def __init__(self, width: int, shift: int, handle_event: HandleEvent) -> None:
        _check_size(width=width)
        self.width = width
        self.shift = shift
        self._handle_event = handle_event

    def __call__(self, event: Any) -> None:
        x = event.x + self.shift
        if 0 <= x < self.width:
            self._handle_event(_with(event, x=x))


class ShiftY:
    """Offset the y coordinate, dropping events shifted out of the sensor."""

    def __init__(self, height: int, shift: int, handle_event: HandleEvent) -> None:
        _check_size(height=height)
        self.height = height
        self.shift = shift
        self._handle_event = handle_event

    def __call__(self, event: Any) -> None:
        y = event.y + self.shift
        if 0 <= y < self.height:
            self._handle_event(_with(event, y=y))


class SelectRectangle:
    """Propagate only the events within a rectangular window."""

    def __init__(self, left: int, bottom: int, width: int, height: int, handle_event: HandleEvent) -> None:
        _check_size(width=width, height=height)
        self.left = left
        self.bottom = bottom
        self.width = width
        self.height = height
        self._handle_event = handle_event

    def __call__(self, event: Any) -> None:
        if (
            self.left <= event.x < self.left + self.width
            and self.bottom <= event.y < self.bottom + self.height
        ):
            self._handle_event(event)


class MaskIsolated:
    """Propagate only events that are not isolated in space or time.

    Every event marks its pixel as active until ``timestamp + decay``.
    An event is forwarded when at least one of its four neighbours is
    still active at the event's timestamp.

    Parameters
    ----------
    width, height : int
        Sensor resolution.  Event coordinates must lie inside it.
    decay : int
        How long a pixel stays active after an event, in timestamp units.
    handle_event : callable
        Downstream handler.
    """

    def __init__(self, width: int, height: int, decay: int, handle_event: HandleEvent) -> None:
        _check_size(width=width, height=height, decay=decay)
        self.width = width
        self.height = height
        self.decay = decay
        self._handle_event = handle_event
        # Indexed [x, y]
        self._expirations = np.zeros((width, height), dtype=np.int64)

    def __call__(self, event: Any) -> None:
        x = int(event.x)
        y = int(event.y)
        t = event.timestamp
        expirations = self._expirations
        expirations[x, y] = t + self.decay
        if (
            (x > 0 and expirations[x - 1, y] > t)
            or (x < self.width - 1 and expirations[x + 1, y] > t)
            or (y > 0 and expirations[x, y - 1] > t)
            or (y < self.height - 1 and expirations[x, y + 1] > t)
        ):
            self._handle_event(event)

    def reset(self) -> None:
        self._expirations.fill(0)
