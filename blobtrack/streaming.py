"""Streaming glue between event sources, filters and the tracker.

``simulate_event_windows`` stands in for a recording: it produces
``EventWindow`` objects with events scattered around moving points, in
the same shape a decoded ``.dat`` window has.  ``track_windows`` pushes
those windows through an optional filter chain into a tracker, and
``LifecycleRecorder`` collects the tracker's lifecycle callbacks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Sequence, Tuple

import numpy as np

from .events import EventWindow, decode_window, encode_words
from .tracking import Blob

logger = logging.getLogger(__name__)

FilterFactory = Callable[[Callable[[Any], None]], Callable[[Any], None]]


@dataclass(frozen=True)
class Trajectory:
    """A point moving at constant velocity, in pixels and pixels/second."""

    start: Tuple[float, float]
    velocity: Tuple[float, float] = (0.0, 0.0)

    def position(self, t_us: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        t_s = np.asarray(t_us, dtype=np.float64) * 1e-6
        return self.start[0] + self.velocity[0] * t_s, self.start[1] + self.velocity[1] * t_s


def simulate_event_windows(
    trajectories: Sequence[Trajectory],
    *,
    width: int = 304,
    height: int = 240,
    duration_us: int = 1_000_000,
    window_us: int = 10_000,
    rate_hz: float = 20_000.0,
    spread: float = 4.0,
    noise_rate_hz: float = 0.0,
    seed: int = 0,
) -> Iterator[EventWindow]:
    """Yield synthetic event windows around moving points.

    Parameters
    ----------
    trajectories : sequence of Trajectory
        Sources of events.  Each emits ``rate_hz`` events per second,
        normally distributed around its current position.
    width, height : int
        Sensor resolution; coordinates are clipped to it.
    duration_us, window_us : int
        Total duration and window length in microseconds.
    rate_hz : float
        Event rate of each trajectory.
    spread : float
        Standard deviation of the events around a trajectory, in pixels.
    noise_rate_hz : float
        Rate of uniformly distributed background events.
    seed : int
        Seed of the random generator.

    Yields
    ------
    EventWindow
        Windows with sorted timestamps, consecutive and non-overlapping.
    """
    if window_us <= 0:
        raise ValueError("window_us must be positive")
    if duration_us <= 0:
        raise ValueError("duration_us must be positive")
    rng = np.random.default_rng(seed)
    for start_ts_us in range(0, duration_us, window_us):
        end_ts_us = min(start_ts_us + window_us, duration_us)
        span_s = (end_ts_us - start_ts_us) * 1e-6
        xs: List[np.ndarray] = []
        ys: List[np.ndarray] = []
        ts: List[np.ndarray] = []
        for trajectory in trajectories:
            count = rng.poisson(rate_hz * span_s)
            t = rng.integers(start_ts_us, end_ts_us, size=count)
            cx, cy = trajectory.position(t)
            xs.append(cx + rng.normal(0.0, spread, size=count))
            ys.append(cy + rng.normal(0.0, spread, size=count))
            ts.append(t)
        if noise_rate_hz > 0:
            count = rng.poisson(noise_rate_hz * span_s)
            xs.append(rng.uniform(0, width, size=count))
            ys.append(rng.uniform(0, height, size=count))
            ts.append(rng.integers(start_ts_us, end_ts_us, size=count))
        x = np.concatenate(xs) if xs else np.empty(0)
        y = np.concatenate(ys) if ys else np.empty(0)
        t = np.concatenate(ts).astype(np.int64) if ts else np.empty(0, dtype=np.int64)
        # Pack as the sensor would, then decode in timestamp order
        event_words = encode_words(
            np.clip(np.rint(x), 0, width - 1),
            np.clip(np.rint(y), 0, height - 1),
            rng.random(t.size) < 0.5,
        )
        order = np.argsort(t, kind="stable")
        x_coords, y_coords, polarities = decode_window(event_words, order, 0, order.size)
        yield EventWindow(
            x_coords=x_coords,
            y_coords=y_coords,
            polarities=polarities,
            timestamps_us=t[order],
            width=width,
            height=height,
            start_ts_us=start_ts_us,
            end_ts_us=end_ts_us,
            metadata={"event_words": event_words, "time_order": order},
        )


def build_pipeline(sink: Callable[[Any], None], filters: Sequence[FilterFactory] = ()) -> Callable[[Any], None]:
    """Chain filter factories in front of ``sink``.

    The first factory receives events first.
    """
    handler = sink
    for factory in reversed(filters):
        handler = factory(handler)
    return handler


def track_windows(
    tracker: Callable[[Any], None],
    windows: Iterable[EventWindow],
    *,
    filters: Sequence[FilterFactory] = (),
) -> int:
    """Feed every event of every window through ``filters`` into ``tracker``.

    Returns
    -------
    int
        Number of events that reached the tracker.
    """
    delivered = 0

    def sink(event: Any) -> None:
        nonlocal delivered
        delivered += 1
        tracker(event)

    pipeline = build_pipeline(sink, filters)
    received = 0
    for window in windows:
        received += len(window)
        for event in window.events():
            pipeline(event)
    logger.debug("Tracked %d of %d events", delivered, received)
    return delivered


class LifecycleRecorder:
    """Collect tracker lifecycle notifications as ``(kind, id, blob)``."""

    def __init__(self) -> None:
        self.records: List[Tuple[str, int, Blob]] = []

    def on_promoted(self, identifier: int, blob: Blob) -> None:
        self.records.append(("promoted", identifier, blob))

    def on_updated(self, identifier: int, blob: Blob) -> None:
        self.records.append(("updated", identifier, blob))

    def on_demoted(self, identifier: int, blob: Blob) -> None:
        self.records.append(("demoted", identifier, blob))

    def on_deleted(self, identifier: int, blob: Blob) -> None:
        self.records.append(("deleted", identifier, blob))

    def callbacks(self) -> Dict[str, Callable[[int, Blob], None]]:
        return {
            "on_promoted": self.on_promoted,
            "on_updated": self.on_updated,
            "on_demoted": self.on_demoted,
            "on_deleted": self.on_deleted,
        }

    def kinds(self, identifier: int) -> List[str]:
        """Lifecycle transitions of one blob, ``updated`` excluded."""
        return [kind for kind, i, _ in self.records if i == identifier and kind != "updated"]

    def ids(self, kind: str) -> List[int]:
        return [i for k, i, _ in self.records if k == kind]
