"""Gaussian blob tracking for event-camera data.

This package tracks moving objects in streams of events produced by
event-based vision sensors.  Events are consumed one at a time by an
online estimator that maintains a population of 2-D Gaussian blobs and
reports their lifecycle (promotion, update, demotion, deletion) through
callbacks.  The estimator never looks at an event twice, so it can run
inline with a real-time playback loop.

Modules
-------
tracking
    The blob tracker: probabilistic association, moving-average mean and
    covariance estimation, activity-driven lifecycle and the periodic
    repulsion/attraction pass.
filters
    One-event-in, zero-or-one-event-out stream filters (mirroring,
    shifting, rectangular selection, isolated-event masking) that can be
    chained in front of the tracker.
activity
    A generic exponentially decaying activity accumulator.
events
    Event types, time windows and decoding of packed EVT words.
config
    YAML configuration of the tracker parameters.
streaming
    Synthetic event windows and glue feeding windows into the tracker.
"""

from .tracking import Blob, BlobStatus, TrackBlobs, TrackedBlob, gaussian_density
from .filters import MaskIsolated, MirrorY, SelectRectangle, ShiftX, ShiftY
from .activity import ActivityEvent, ComputeActivity
from .events import Event, EventWindow, decode_window, iter_events
from .config import TrackerConfig, grid_blobs, load_config
from .streaming import LifecycleRecorder, Trajectory, simulate_event_windows, track_windows

__version__ = "0.1.0"

__all__ = [
    "Blob",
    "BlobStatus",
    "TrackBlobs",
    "TrackedBlob",
    "gaussian_density",
    "MaskIsolated",
    "MirrorY",
    "SelectRectangle",
    "ShiftX",
    "ShiftY",
    "ActivityEvent",
    "ComputeActivity",
    "Event",
    "EventWindow",
    "decode_window",
    "iter_events",
    "TrackerConfig",
    "grid_blobs",
    "load_config",
    "LifecycleRecorder",
    "Trajectory",
    "simulate_event_windows",
    "track_windows",
]
