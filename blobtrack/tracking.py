"""Online tracking of Gaussian blobs on event streams.

This module implements a single-pass tracker that consumes events one at
a time and maintains a dynamic population of 2-D Gaussian blobs.  Every
event is associated with the most probable blob, the winner's mean and
covariance are updated with exponential moving averages, and activity
accumulators drive a small lifecycle machine:

* Seed slots (``hidden``) are configured at construction.  When a seed
  accumulates enough activity it spawns a new ``promoted`` blob at its
  current estimate and resets itself to its construction value.
* Spawned blobs move between ``promoted`` and ``demoted`` with
  hysteresis, and are deleted once their activity falls to the deletion
  threshold.
* Every ``pairwise_calculations_to_skip + 1`` events, blobs repel each
  other and are pulled back towards the seed they originate from.

The tracker reports lifecycle transitions through four optional
callbacks, each called with ``(id, blob)``.  Blobs are immutable, so a
callback can keep the object it receives without aliasing tracker state.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING, Union

import numpy as np

if TYPE_CHECKING:
    from .config import TrackerConfig

logger = logging.getLogger(__name__)

BlobCallback = Callable[[int, "Blob"], None]
Notification = Tuple[str, int, "Blob"]
ArrayLike = Union[float, np.ndarray]


@dataclass(frozen=True)
class Blob:
    """A 2-D Gaussian: mean position and symmetric covariance."""

    x: float
    y: float
    squared_sigma_x: float
    sigma_xy: float
    squared_sigma_y: float

    @property
    def determinant(self) -> float:
        return self.squared_sigma_x * self.squared_sigma_y - self.sigma_xy ** 2


class BlobStatus(Enum):
    HIDDEN = "hidden"
    PROMOTED = "promoted"
    DEMOTED = "demoted"


@dataclass(frozen=True)
class TrackedBlob:
    """Read-only snapshot of one member of the tracker population.

    Seed slots report ``id=None`` since they are never announced.
    """

    id: Optional[int]
    blob: Blob
    activity: float
    status: BlobStatus
    seed_index: int


@dataclass
class _Entry:
    id: Optional[int]
    blob: Blob
    activity: float
    status: BlobStatus
    seed_index: int

    def snapshot(self) -> TrackedBlob:
        return TrackedBlob(self.id, self.blob, self.activity, self.status, self.seed_index)


def gaussian_density(
    dx: ArrayLike,
    dy: ArrayLike,
    squared_sigma_x: ArrayLike,
    sigma_xy: ArrayLike,
    squared_sigma_y: ArrayLike,
) -> ArrayLike:
    """Evaluate the normalized bivariate Gaussian density.

    Parameters
    ----------
    dx, dy : float or np.ndarray
        Offsets of the evaluation point from the mean.
    squared_sigma_x, sigma_xy, squared_sigma_y : float or np.ndarray
        Covariance terms.  All arguments broadcast against each other.

    Returns
    -------
    float or np.ndarray
        ``exp(-q / (2 det)) / (2 pi sqrt(det))`` where ``q`` is the
        quadratic form of the offset with the adjugate covariance.

    Notes
    -----
    Degenerate covariances are not guarded against: a zero determinant
    yields ``inf`` or ``nan`` and a negative one yields ``nan``.  Floating
    point warnings are silenced so the hot path stays quiet.
    """
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        determinant = np.multiply(squared_sigma_x, squared_sigma_y) - np.square(sigma_xy)
        quadratic = (
            np.square(dx) * squared_sigma_y
            + np.square(dy) * squared_sigma_x
            - 2.0 * np.multiply(dx, dy) * sigma_xy
        )
        return np.exp(-quadratic / (2.0 * determinant)) / (2.0 * math.pi * np.sqrt(determinant))


class TrackBlobs:
    """Track incoming events with a population of Gaussian blobs.

    Parameters
    ----------
    initial_blobs : sequence of Blob
        Seed blobs.  Each occupies a permanent hidden slot that spawns
        promoted blobs and is then reset to this value.
    initial_timestamp : int
        Timestamp used to compute the elapsed time of the first event.
    activity_decay : float
        Time constant of the exponential activity decay, in timestamp
        units.
    minimum_probability : float
        Density the winning blob must exceed to be updated.
    promotion_activity, deletion_activity : float
        Lifecycle thresholds, ``deletion_activity < promotion_activity``.
    mean_inertia, covariance_inertia : float
        Weights of the previous estimate in the moving averages, in
        ``[0, 1)``.
    repulsion_strength, repulsion_length : float
        Amplitude and decay length of the pairwise repulsion kernel.
    attraction_strength : float
        Fraction of the offset to its seed a blob is pulled back by on
        each pairwise pass.
    attraction_reset_distance : float
        Blobs whose mean lies within this distance of the origin are
        reset to their seed instead of being attracted.
    pairwise_calculations_to_skip : int
        Number of events between two pairwise passes.
    on_promoted, on_updated, on_demoted, on_deleted : callable, optional
        Lifecycle callbacks with the signature ``(id, blob) -> None``.

    Notes
    -----
    Events are expected in non-decreasing timestamp order.  Elapsed time
    is not clamped, so an out-of-order event amplifies activities instead
    of decaying them.
    """

    def __init__(
        self,
        initial_blobs: Sequence[Blob],
        initial_timestamp: int,
        activity_decay: float,
        minimum_probability: float,
        promotion_activity: float,
        deletion_activity: float,
        mean_inertia: float,
        covariance_inertia: float,
        repulsion_strength: float,
        repulsion_length: float,
        attraction_strength: float,
        attraction_reset_distance: float,
        pairwise_calculations_to_skip: int,
        *,
        on_promoted: Optional[BlobCallback] = None,
        on_updated: Optional[BlobCallback] = None,
        on_demoted: Optional[BlobCallback] = None,
        on_deleted: Optional[BlobCallback] = None,
    ) -> None:
        _check_parameters(
            activity_decay=activity_decay,
            minimum_probability=minimum_probability,
            promotion_activity=promotion_activity,
            deletion_activity=deletion_activity,
            mean_inertia=mean_inertia,
            covariance_inertia=covariance_inertia,
            repulsion_strength=repulsion_strength,
            repulsion_length=repulsion_length,
            attraction_strength=attraction_strength,
            attraction_reset_distance=attraction_reset_distance,
            pairwise_calculations_to_skip=pairwise_calculations_to_skip,
        )
        self._initial_blobs: Tuple[Blob, ...] = tuple(initial_blobs)
        self._activity_decay = float(activity_decay)
        self._minimum_probability = float(minimum_probability)
        self._promotion_activity = float(promotion_activity)
        self._deletion_activity = float(deletion_activity)
        self._mean_inertia = float(mean_inertia)
        self._covariance_inertia = float(covariance_inertia)
        self._repulsion_strength = float(repulsion_strength)
        self._repulsion_length = float(repulsion_length)
        self._attraction_strength = float(attraction_strength)
        self._attraction_reset_distance_squared = float(attraction_reset_distance) ** 2
        self._pairwise_calculations_to_skip = int(pairwise_calculations_to_skip)
        self._callbacks = {
            "promoted": on_promoted,
            "updated": on_updated,
            "demoted": on_demoted,
            "deleted": on_deleted,
        }
        self._previous_timestamp = initial_timestamp
        self._skipped_events = 0
        self._events_processed = 0
        self._warned_out_of_order = False
        self._ids = itertools.count()
        self._seeds: List[_Entry] = [
            _Entry(None, blob, 0.0, BlobStatus.HIDDEN, index)
            for index, blob in enumerate(self._initial_blobs)
        ]
        self._tracked: List[_Entry] = []
        logger.info(
            "TrackBlobs initialized: seeds=%d, decay=%s, promotion=%s, deletion=%s, skip=%d",
            len(self._seeds),
            activity_decay,
            promotion_activity,
            deletion_activity,
            self._pairwise_calculations_to_skip,
        )

    @classmethod
    def from_config(cls, config: "TrackerConfig", **callbacks: Optional[BlobCallback]) -> "TrackBlobs":
        """Build a tracker from a :class:`TrackerConfig`.

        The parameters are checked by the constructor.
        """
        return cls(
            config.initial_blobs,
            config.initial_timestamp,
            config.activity_decay,
            config.minimum_probability,
            config.promotion_activity,
            config.deletion_activity,
            config.mean_inertia,
            config.covariance_inertia,
            config.repulsion_strength,
            config.repulsion_length,
            config.attraction_strength,
            config.attraction_reset_distance,
            config.pairwise_calculations_to_skip,
            **callbacks,
        )

    @property
    def seeds(self) -> List[TrackedBlob]:
        return [entry.snapshot() for entry in self._seeds]

    @property
    def tracked(self) -> List[TrackedBlob]:
        return [entry.snapshot() for entry in self._tracked]

    @property
    def timestamp(self) -> int:
        return self._previous_timestamp

    @property
    def events_processed(self) -> int:
        return self._events_processed

    def __call__(self, event: Any) -> None:
        self.process(event)

    def process_many(self, events: Iterable[Any]) -> None:
        for event in events:
            self.process(event)

    def process(self, event: Any) -> None:
        """Handle one event exposing ``x``, ``y`` and ``timestamp``."""
        x = float(event.x)
        y = float(event.y)
        elapsed = event.timestamp - self._previous_timestamp
        if elapsed < 0 and not self._warned_out_of_order:
            self._warned_out_of_order = True
            logger.warning(
                "Out-of-order timestamp %s after %s: activities will grow instead of decaying",
                event.timestamp,
                self._previous_timestamp,
            )
        notifications: List[Notification] = []

        population = self._seeds + self._tracked
        winner, probability = self._associate(population, x, y)
        with np.errstate(over="ignore"):
            decay = float(np.exp(-elapsed / self._activity_decay))
        for entry in population:
            entry.activity *= decay
        if winner is not None and probability > self._minimum_probability:
            self._update(winner, probability, x, y)
            if winner.status is BlobStatus.PROMOTED:
                notifications.append(("updated", winner.id, winner.blob))

        spawned = self._transition_seeds(notifications)
        self._transition_tracked(notifications)
        self._tracked.extend(spawned)

        if self._skipped_events >= self._pairwise_calculations_to_skip:
            self._skipped_events = 0
            self._correct_pairwise()
        else:
            self._skipped_events += 1

        self._previous_timestamp = event.timestamp
        self._events_processed += 1
        self._notify(notifications)

    def _associate(self, population: List[_Entry], x: float, y: float) -> Tuple[Optional[_Entry], float]:
        if not population:
            return None, 0.0
        parameters = np.array(
            [
                (
                    entry.blob.x,
                    entry.blob.y,
                    entry.blob.squared_sigma_x,
                    entry.blob.sigma_xy,
                    entry.blob.squared_sigma_y,
                )
                for entry in population
            ],
            dtype=np.float64,
        )
        densities = gaussian_density(
            x - parameters[:, 0],
            y - parameters[:, 1],
            parameters[:, 2],
            parameters[:, 3],
            parameters[:, 4],
        )
        # Degenerate covariances never win
        densities = np.where(np.isfinite(densities), densities, -np.inf)
        index = int(np.argmax(densities))
        if not densities[index] > 0.0:
            return None, 0.0
        return population[index], float(densities[index])

    def _update(self, entry: _Entry, probability: float, x: float, y: float) -> None:
        entry.activity += probability
        blob = entry.blob
        mean_x = self._mean_inertia * blob.x + (1.0 - self._mean_inertia) * x
        mean_y = self._mean_inertia * blob.y + (1.0 - self._mean_inertia) * y
        dx = x - mean_x
        dy = y - mean_y
        inertia = self._covariance_inertia
        entry.blob = Blob(
            mean_x,
            mean_y,
            inertia * blob.squared_sigma_x + (1.0 - inertia) * dx ** 2,
            inertia * blob.sigma_xy + (1.0 - inertia) * dx * dy,
            inertia * blob.squared_sigma_y + (1.0 - inertia) * dy ** 2,
        )

    def _transition_seeds(self, notifications: List[Notification]) -> List[_Entry]:
        spawned: List[_Entry] = []
        for seed in self._seeds:
            if seed.activity > self._promotion_activity:
                entry = _Entry(next(self._ids), seed.blob, seed.activity, BlobStatus.PROMOTED, seed.seed_index)
                spawned.append(entry)
                notifications.append(("promoted", entry.id, entry.blob))
                logger.debug("Seed %d spawned blob %d at (%.2f, %.2f)", seed.seed_index, entry.id, entry.blob.x, entry.blob.y)
                seed.blob = self._initial_blobs[seed.seed_index]
                seed.activity = 0.0
        return spawned

    def _transition_tracked(self, notifications: List[Notification]) -> None:
        survivors: List[_Entry] = []
        for entry in self._tracked:
            if entry.status is BlobStatus.PROMOTED:
                if entry.activity <= self._promotion_activity:
                    if entry.activity <= self._deletion_activity:
                        notifications.append(("deleted", entry.id, entry.blob))
                        logger.debug("Blob %d deleted", entry.id)
                        continue
                    entry.status = BlobStatus.DEMOTED
                    notifications.append(("demoted", entry.id, entry.blob))
                    logger.debug("Blob %d demoted", entry.id)
            elif entry.status is BlobStatus.DEMOTED:
                if entry.activity <= self._deletion_activity:
                    notifications.append(("deleted", entry.id, entry.blob))
                    logger.debug("Blob %d deleted", entry.id)
                    continue
                if entry.activity > self._promotion_activity:
                    entry.status = BlobStatus.PROMOTED
                    notifications.append(("promoted", entry.id, entry.blob))
                    logger.debug("Blob %d promoted again", entry.id)
            survivors.append(entry)
        self._tracked = survivors

    def _correct_pairwise(self) -> None:
        """Apply repulsion between all pairs, then attraction or reset.

        The pair terms are computed at once on ``(n, n)`` arrays, which
        costs ``O(n**2)`` memory for ``n`` seeds and blobs.  Populations
        are expected to stay in the tens, like a seed grid.
        """
        population = self._seeds + self._tracked
        if not population:
            return
        positions = np.array([(entry.blob.x, entry.blob.y) for entry in population], dtype=np.float64)
        squared_activities = np.square(np.array([entry.activity for entry in population], dtype=np.float64))

        # offsets[i, j] points from entry i to entry j
        offsets = positions[np.newaxis, :, :] - positions[:, np.newaxis, :]
        distances = np.hypot(offsets[..., 0], offsets[..., 1])
        kernel = self._repulsion_strength * np.exp(-distances / self._repulsion_length)
        activity_sums = squared_activities[:, np.newaxis] + squared_activities[np.newaxis, :]
        shares = np.divide(
            np.broadcast_to(squared_activities[np.newaxis, :], activity_sums.shape),
            activity_sums,
            out=np.zeros_like(activity_sums),
            where=activity_sums != 0,
        )
        np.fill_diagonal(shares, 0.0)
        deltas = -np.einsum("ij,ijk->ik", kernel * shares, offsets)

        for index, entry in enumerate(population):
            seed_blob = self._initial_blobs[entry.seed_index]
            if entry.blob.x ** 2 + entry.blob.y ** 2 > self._attraction_reset_distance_squared:
                deltas[index, 0] += self._attraction_strength * (seed_blob.x - entry.blob.x)
                deltas[index, 1] += self._attraction_strength * (seed_blob.y - entry.blob.y)
            else:
                entry.blob = seed_blob
                entry.activity = 0.0
        for index, entry in enumerate(population):
            entry.blob = replace(
                entry.blob,
                x=entry.blob.x + float(deltas[index, 0]),
                y=entry.blob.y + float(deltas[index, 1]),
            )
        logger.debug("Pairwise correction applied to %d blobs", len(population))

    def _notify(self, notifications: List[Notification]) -> None:
        """Deliver every queued notification, then re-raise the first failure."""
        error: Optional[BaseException] = None
        for kind, identifier, blob in notifications:
            callback = self._callbacks[kind]
            if callback is None:
                continue
            try:
                callback(identifier, blob)
            except Exception as exc:
                logger.exception("%s callback failed for blob %d", kind, identifier)
                if error is None:
                    error = exc
        if error is not None:
            raise error


def _check_parameters(
    *,
    activity_decay: float,
    minimum_probability: float,
    promotion_activity: float,
    deletion_activity: float,
    mean_inertia: float,
    covariance_inertia: float,
    repulsion_strength: float,
    repulsion_length: float,
    attraction_strength: float,
    attraction_reset_distance: float,
    pairwise_calculations_to_skip: int,
) -> None:
    if not activity_decay > 0:
        raise ValueError("activity_decay must be positive")
    if not 0 <= minimum_probability < 1:
        raise ValueError("minimum_probability must be in [0, 1)")
    if not promotion_activity > 0:
        raise ValueError("promotion_activity must be positive")
    if not 0 <= deletion_activity < promotion_activity:
        raise ValueError("deletion_activity must be in [0, promotion_activity)")
    if not 0 <= mean_inertia < 1:
        raise ValueError("mean_inertia must be in [0, 1)")
    if not 0 <= covariance_inertia < 1:
        raise ValueError("covariance_inertia must be in [0, 1)")
    if not repulsion_strength >= 0:
        raise ValueError("repulsion_strength must be non-negative")
    if not repulsion_length > 0:
        raise ValueError("repulsion_length must be positive")
    if not attraction_strength >= 0:
        raise ValueError("attraction_strength must be non-negative")
    if not attraction_reset_distance >= 0:
        raise ValueError("attraction_reset_distance must be non-negative")
    if int(pairwise_calculations_to_skip) != pairwise_calculations_to_skip or pairwise_calculations_to_skip < 0:
        raise ValueError("pairwise_calculations_to_skip must be a non-negative integer")
