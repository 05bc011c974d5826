from __future__ import annotations

from typing import Iterator, Sequence

from blobtrack.events import EventWindow
from blobtrack.streaming import Trajectory, simulate_event_windows


def stream_simulated(
    trajectories: Sequence[Trajectory],
    *,
    window_ms: float = 10.0,
    duration_ms: float = 1000.0,
    width: int = 304,
    height: int = 240,
    rate_hz: float = 20_000.0,
    noise_rate_hz: float = 0.0,
    seed: int = 0,
) -> Iterator[EventWindow]:
    """Yield ``EventWindow`` objects of a simulated recording."""
    if window_ms <= 0:
        raise ValueError("window_ms must be positive")

    window_us = int(window_ms * 1000)
    duration_us = int(duration_ms * 1000)
    for window in simulate_event_windows(
        trajectories,
        width=width,
        height=height,
        duration_us=duration_us,
        window_us=window_us,
        rate_hz=rate_hz,
        noise_rate_hz=noise_rate_hz,
        seed=seed,
    ):
        window.metadata["window_ms"] = window_ms
        yield window
