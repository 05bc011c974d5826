"""Event types and decoding helpers for event-camera data.

The tracker and the filters consume events one at a time; any object
exposing ``x``, ``y`` and ``timestamp`` attributes will do.  This module
provides the reference :class:`Event` type, a container for a time
window of decoded events and the decoding of packed EVT words into
coordinate arrays.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, NamedTuple, Optional, Tuple

import numpy as np


class Event(NamedTuple):
    x: int
    y: int
    timestamp: int
    polarity: bool = True


@dataclass
class EventWindow:
    """Decoded events falling inside one time window."""

    x_coords: np.ndarray
    y_coords: np.ndarray
    polarities: np.ndarray
    timestamps_us: np.ndarray
    width: int
    height: int
    start_ts_us: int
    end_ts_us: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return int(self.timestamps_us.size)

    def events(self) -> Iterator[Event]:
        return iter_events(self.x_coords, self.y_coords, self.timestamps_us, self.polarities)


def decode_window(
    event_words: np.ndarray,
    time_order: np.ndarray,
    win_start: int,
    win_stop: int,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Decode a time-ordered slice of events into coordinates and polarities.

    Parameters
    ----------
    event_words : np.ndarray
        Array of packed ``uint32`` words, each packing polarity, y and x
        coordinates.
    time_order : np.ndarray
        Indices that sort the events in ascending timestamp order.
    win_start, win_stop : int
        Inclusive/exclusive indices into ``time_order`` defining the
        current window.

    Returns
    -------
    x_coords : np.ndarray
        Integer array of x pixel coordinates (bits 0-13).
    y_coords : np.ndarray
        Integer array of y pixel coordinates (bits 14-27).
    polarities : np.ndarray
        Boolean array; ``True`` indicates an ON event and ``False`` an
        OFF event (bits 28-31).
    """
    event_indexes = time_order[win_start:win_stop]
    words = event_words[event_indexes].astype(np.uint32, copy=False)
    x_coords = (words & 0x3FFF).astype(np.int32, copy=False)
    y_coords = ((words >> 14) & 0x3FFF).astype(np.int32, copy=False)
    polarities = ((words >> 28) & 0xF) > 0
    return x_coords, y_coords, polarities


def encode_words(x_coords: np.ndarray, y_coords: np.ndarray, polarities: np.ndarray) -> np.ndarray:
    """Pack coordinates and polarities into ``uint32`` words.

    Inverse of :func:`decode_window` for coordinates below ``2**14``.
    """
    x = np.asarray(x_coords, dtype=np.uint32) & 0x3FFF
    y = np.asarray(y_coords, dtype=np.uint32) & 0x3FFF
    p = np.asarray(polarities, dtype=bool).astype(np.uint32)
    return x | (y << 14) | (p << 28)


def iter_events(
    x_coords: np.ndarray,
    y_coords: np.ndarray,
    timestamps_us: np.ndarray,
    polarities: Optional[np.ndarray] = None,
) -> Iterator[Event]:
    """Yield :class:`Event` tuples from parallel arrays."""
    x = np.asarray(x_coords).ravel()
    y = np.asarray(y_coords).ravel()
    ts = np.asarray(timestamps_us).ravel()
    if polarities is None:
        p = np.ones(ts.size, dtype=bool)
    else:
        p = np.asarray(polarities, dtype=bool).ravel()
    if not (x.size == y.size == ts.size == p.size):
        raise ValueError("coordinate, timestamp and polarity arrays must have the same length")
    for xi, yi, ti, pi in zip(x.tolist(), y.tolist(), ts.tolist(), p.tolist()):
        yield Event(xi, yi, ti, pi)
