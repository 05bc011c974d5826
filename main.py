from __future__ import annotations

import argparse
import logging
from typing import Literal

from blobtrack.config import TrackerConfig, grid_blobs
from blobtrack.filters import MaskIsolated, SelectRectangle
from blobtrack.streaming import LifecycleRecorder, Trajectory, track_windows
from blobtrack.tracking import TrackBlobs

from simulate_streaming import stream_simulated

logger = logging.getLogger("blobtrack.main")


configs = {
    "static_pair": {
        "trajectories": [Trajectory((76.0, 60.0)), Trajectory((228.0, 180.0))],
        "window_ms": 10,
        "duration_ms": 500,
        "noise_rate_hz": 0.0,
    },
    "crossing": {
        "trajectories": [
            Trajectory((40.0, 120.0), (200.0, 0.0)),
            Trajectory((264.0, 120.0), (-200.0, 0.0)),
        ],
        "window_ms": 10,
        "duration_ms": 1000,
        "noise_rate_hz": 2000.0,
    },
    "noisy_single": {
        "trajectories": [Trajectory((152.0, 120.0), (30.0, -20.0))],
        "window_ms": 5,
        "duration_ms": 1000,
        "noise_rate_hz": 10000.0,
    },
}


def _log_callbacks(recorder: LifecycleRecorder) -> dict:
    callbacks = recorder.callbacks()

    def wrap(kind, callback):
        def handle(identifier, blob):
            if kind != "on_updated":
                logger.info("%s blob %d at (%.1f, %.1f)", kind[3:], identifier, blob.x, blob.y)
            callback(identifier, blob)

        return handle

    return {kind: wrap(kind, callback) for kind, callback in callbacks.items()}


def run(scenario: str, tracker_config: TrackerConfig, width: int = 304, height: int = 240) -> LifecycleRecorder:
    settings = configs[scenario]
    recorder = LifecycleRecorder()
    tracker = TrackBlobs.from_config(tracker_config, **_log_callbacks(recorder))
    delivered = track_windows(
        tracker,
        stream_simulated(
            settings["trajectories"],
            window_ms=settings["window_ms"],
            duration_ms=settings["duration_ms"],
            width=width,
            height=height,
            noise_rate_hz=settings["noise_rate_hz"],
        ),
        filters=[
            lambda handle: MaskIsolated(width, height, 1000, handle),
            lambda handle: SelectRectangle(0, 0, width, height, handle),
        ],
    )
    logger.info(
        "%s: %d events tracked, %d promotions, %d deletions, %d blobs alive",
        scenario,
        delivered,
        len(recorder.ids("promoted")),
        len(recorder.ids("deleted")),
        len(tracker.tracked),
    )
    return recorder


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Track blobs on a simulated event stream")
    parser.add_argument("--scenario", choices=sorted(configs), default="crossing")
    parser.add_argument("--config", help="YAML file with tracker parameters")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    scenario: Literal["static_pair", "crossing", "noisy_single"] = args.scenario
    tracker_config = (
        TrackerConfig.from_yaml(args.config)
        if args.config
        else TrackerConfig(initial_blobs=tuple(grid_blobs(304, 240, 4, 3, 400.0)))
    )
    run(scenario, tracker_config)
