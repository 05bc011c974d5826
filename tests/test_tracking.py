import math

import numpy as np
import pytest
from scipy import integrate
from scipy.stats import multivariate_normal

from blobtrack.events import Event
from blobtrack.streaming import LifecycleRecorder
from blobtrack.tracking import Blob, BlobStatus, TrackBlobs, gaussian_density

ORIGIN_SEED = Blob(0.0, 0.0, 5.0, 0.0, 5.0)


def make_tracker(initial_blobs=(ORIGIN_SEED,), recorder=None, **overrides):
    parameters = dict(
        initial_timestamp=0,
        activity_decay=50.0,
        minimum_probability=1e-4,
        promotion_activity=3.0,
        deletion_activity=1.0,
        mean_inertia=0.9,
        covariance_inertia=0.5,
        repulsion_strength=0.0,
        repulsion_length=1.0,
        attraction_strength=0.0,
        attraction_reset_distance=0.0,
        pairwise_calculations_to_skip=100000,
    )
    parameters.update(overrides)
    callbacks = recorder.callbacks() if recorder is not None else {}
    return TrackBlobs(list(initial_blobs), **parameters, **callbacks)


def feed_burst(tracker, start, count=10, step=10, x=0, y=0):
    for i in range(count):
        tracker(Event(x, y, start + i * step))


def test_isotropic_density_matches_closed_form():
    sigma2 = 5.0
    for dx, dy in [(0.0, 0.0), (1.0, 0.0), (2.0, -3.0), (-4.5, 1.5)]:
        expected = math.exp(-(dx ** 2 + dy ** 2) / (2 * sigma2)) / (2 * math.pi * sigma2)
        assert gaussian_density(dx, dy, sigma2, 0.0, sigma2) == pytest.approx(expected, rel=1e-12)


def test_correlated_density_matches_scipy():
    covariance = np.array([[4.0, 1.2], [1.2, 2.5]])
    points = np.array([[0.0, 0.0], [1.0, 2.0], [-3.0, 0.5]])
    densities = gaussian_density(points[:, 0], points[:, 1], 4.0, 1.2, 2.5)
    expected = multivariate_normal(mean=[0.0, 0.0], cov=covariance).pdf(points)
    np.testing.assert_allclose(densities, expected, rtol=1e-10)


def test_density_integrates_to_one():
    total, _ = integrate.dblquad(
        lambda dy, dx: gaussian_density(dx, dy, 4.0, 1.0, 3.0),
        -40.0,
        40.0,
        -40.0,
        40.0,
    )
    assert total == pytest.approx(1.0, abs=1e-6)


def test_degenerate_density_is_not_finite():
    with np.errstate(all="ignore"):
        assert np.isnan(gaussian_density(0.0, 0.0, 0.0, 0.0, 0.0))
        assert np.isnan(gaussian_density(1.0, 1.0, 1.0, 2.0, 1.0))


def test_degenerate_blob_never_wins():
    degenerate = Blob(0.0, 0.0, 0.0, 0.0, 0.0)
    healthy = Blob(3.0, 0.0, 5.0, 0.0, 5.0)
    tracker = make_tracker([degenerate, healthy])
    tracker(Event(0, 0, 0))
    seeds = tracker.seeds
    assert seeds[0].activity == 0.0
    assert seeds[0].blob == degenerate
    assert seeds[1].activity == pytest.approx(math.exp(-9.0 / 10.0) / (10.0 * math.pi))


def test_tie_goes_to_first_seed():
    tracker = make_tracker([ORIGIN_SEED, ORIGIN_SEED])
    tracker(Event(0, 0, 0))
    assert tracker.seeds[0].activity > 0.0
    assert tracker.seeds[1].activity == 0.0


def test_event_below_minimum_probability_is_ignored():
    tracker = make_tracker(minimum_probability=0.5)
    tracker(Event(0, 0, 0))
    assert tracker.seeds[0].activity == 0.0
    assert tracker.seeds[0].blob == ORIGIN_SEED


def test_winner_update_uses_moving_averages():
    tracker = make_tracker(mean_inertia=0.75, covariance_inertia=0.5)
    tracker(Event(4, 2, 0))
    blob = tracker.seeds[0].blob
    assert blob.x == pytest.approx(1.0)
    assert blob.y == pytest.approx(0.5)
    # residual against the updated mean
    assert blob.squared_sigma_x == pytest.approx(0.5 * 5.0 + 0.5 * 9.0)
    assert blob.sigma_xy == pytest.approx(0.5 * 3.0 * 1.5)
    assert blob.squared_sigma_y == pytest.approx(0.5 * 5.0 + 0.5 * 2.25)
    expected_density = math.exp(-(16.0 + 4.0) / 10.0) / (10.0 * math.pi)
    assert tracker.seeds[0].activity == pytest.approx(expected_density)


def test_activity_decays_for_losing_entries():
    far = Blob(100.0, 100.0, 5.0, 0.0, 5.0)
    tracker = make_tracker([ORIGIN_SEED, far], promotion_activity=100.0, deletion_activity=1.0)
    tracker(Event(0, 0, 0))
    before = tracker.seeds[0].activity
    tracker(Event(100, 100, 37))
    assert tracker.seeds[0].activity == pytest.approx(before * math.exp(-37.0 / 50.0), rel=1e-12)
    tracker(Event(100, 100, 37))
    assert tracker.seeds[0].activity == pytest.approx(before * math.exp(-37.0 / 50.0), rel=1e-12)


def test_end_to_end_lifecycle():
    recorder = LifecycleRecorder()
    tracker = make_tracker(recorder=recorder)
    feed_burst(tracker, 0)

    assert recorder.ids("promoted") == [0]
    assert tracker.seeds[0].blob == ORIGIN_SEED
    assert tracker.seeds[0].activity == 0.0
    assert [t.id for t in tracker.tracked] == [0]
    assert tracker.tracked[0].status is BlobStatus.PROMOTED
    assert recorder.ids("updated") == [0, 0, 0]

    # Far-away events only let time pass
    t = 90
    while tracker.tracked:
        t += 10
        tracker(Event(1000, 1000, t))
    assert recorder.kinds(0) == ["promoted", "demoted", "deleted"]
    assert t - 90 > 50 * math.log(3)


def test_promotion_happens_once_activity_exceeds_threshold():
    recorder = LifecycleRecorder()
    tracker = make_tracker(recorder=recorder)
    activity = 0.0
    promoted_at = None
    for i in range(10):
        sigma2 = 5.0 * 0.5 ** i
        activity = activity * math.exp(-10.0 / 50.0) + 1.0 / (2 * math.pi * sigma2)
        tracker(Event(0, 0, i * 10))
        if recorder.ids("promoted"):
            promoted_at = i
            break
    assert promoted_at is not None
    assert activity > 3.0
    assert tracker.tracked[0].activity == pytest.approx(activity)


def test_large_gap_deletes_promoted_blob_directly():
    recorder = LifecycleRecorder()
    tracker = make_tracker(recorder=recorder)
    feed_burst(tracker, 0)
    tracker(Event(1000, 1000, 100000))
    assert recorder.kinds(0) == ["promoted", "deleted"]
    assert tracker.tracked == []


def test_demoted_blob_can_be_promoted_again():
    recorder = LifecycleRecorder()
    tracker = make_tracker(recorder=recorder)
    feed_burst(tracker, 0)
    t = 90
    while tracker.tracked[0].status is BlobStatus.PROMOTED:
        t += 10
        tracker(Event(1000, 1000, t))
    assert tracker.tracked[0].status is BlobStatus.DEMOTED
    assert recorder.ids("updated") == [0, 0, 0]
    tracker(Event(0, 0, t + 1))
    assert tracker.tracked[0].status is BlobStatus.PROMOTED
    assert recorder.kinds(0) == ["promoted", "demoted", "promoted"]
    # the winner was demoted when it was updated
    assert recorder.ids("updated") == [0, 0, 0]


def test_hidden_seed_update_is_not_announced():
    recorder = LifecycleRecorder()
    tracker = make_tracker(recorder=recorder)
    tracker(Event(0, 0, 0))
    assert tracker.seeds[0].activity > 0.0
    assert recorder.records == []


def test_ids_are_never_reused():
    recorder = LifecycleRecorder()
    tracker = make_tracker(recorder=recorder)
    start = 0
    for _ in range(3):
        feed_burst(tracker, start)
        tracker(Event(1000, 1000, start + 100000))
        assert tracker.tracked == []
        start += 200000
    assert recorder.ids("promoted") == [0, 1, 2]
    assert recorder.ids("deleted") == [0, 1, 2]


@pytest.mark.parametrize("skip", [0, 1, 2, 4])
def test_pairwise_cadence(skip):
    tracker = make_tracker(
        promotion_activity=1e9,
        attraction_reset_distance=1e6,
        pairwise_calculations_to_skip=skip,
    )
    ran = []
    for i in range(3 * (skip + 1)):
        tracker(Event(0, 0, i))
        # the pass resets every blob lying within the reset distance
        ran.append(tracker.seeds[0].activity == 0.0)
    expected = [(i + 1) % (skip + 1) == 0 for i in range(3 * (skip + 1))]
    assert ran == expected


def test_repulsion_pushes_less_active_blob():
    left = Blob(-1.0, 0.0, 1.0, 0.0, 1.0)
    right = Blob(1.0, 0.0, 1.0, 0.0, 1.0)
    tracker = make_tracker(
        [left, right],
        promotion_activity=10.0,
        mean_inertia=0.0,
        covariance_inertia=0.99,
        repulsion_strength=0.5,
        repulsion_length=2.0,
        pairwise_calculations_to_skip=0,
    )
    tracker(Event(-1, 0, 0))
    seeds = tracker.seeds
    assert seeds[0].blob.x == pytest.approx(-1.0)
    assert seeds[1].blob.x == pytest.approx(1.0 + math.exp(-1.0))
    assert seeds[1].blob.y == pytest.approx(0.0)


def test_collinear_seeds_are_pushed_out_symmetrically():
    seeds = [Blob(float(x), 0.0, 1.0, 0.0, 1.0) for x in (-1, 0, 1)]
    tracker = make_tracker(
        seeds,
        promotion_activity=10.0,
        mean_inertia=0.0,
        covariance_inertia=0.99,
        repulsion_strength=0.5,
        repulsion_length=2.0,
        pairwise_calculations_to_skip=0,
    )
    tracker(Event(0, 0, 0))
    push = 0.5 * math.exp(-0.5)
    assert [s.blob.x for s in tracker.seeds] == pytest.approx([-1.0 - push, 0.0, 1.0 + push])
    assert [s.blob.x for s in tracker.seeds] == pytest.approx([-1.303265, 0.0, 1.303265], abs=1e-6)
    assert [s.blob.y for s in tracker.seeds] == pytest.approx([0.0, 0.0, 0.0])


def test_repulsion_without_activity_is_zero():
    left = Blob(-1.0, 0.0, 1.0, 0.0, 1.0)
    right = Blob(1.0, 0.0, 1.0, 0.0, 1.0)
    tracker = make_tracker(
        [left, right],
        repulsion_strength=5.0,
        pairwise_calculations_to_skip=0,
    )
    tracker(Event(500, 500, 0))
    assert [s.blob for s in tracker.seeds] == [left, right]


def test_attraction_pulls_towards_seed():
    seed = Blob(10.0, 0.0, 1.0, 0.0, 1.0)
    tracker = make_tracker(
        [seed],
        mean_inertia=0.5,
        attraction_strength=0.25,
        attraction_reset_distance=1.0,
        pairwise_calculations_to_skip=0,
    )
    tracker(Event(12, 0, 0))
    assert tracker.seeds[0].blob.x == pytest.approx(10.75)
    assert tracker.seeds[0].activity > 0.0


def test_blob_near_origin_is_reset_to_seed():
    seed = Blob(10.0, 0.0, 1.0, 0.0, 1.0)
    tracker = make_tracker(
        [seed],
        mean_inertia=0.5,
        attraction_strength=0.25,
        attraction_reset_distance=100.0,
        pairwise_calculations_to_skip=0,
    )
    tracker(Event(12, 0, 0))
    assert tracker.seeds[0].blob == seed
    assert tracker.seeds[0].activity == 0.0


def test_callbacks_run_after_event_is_applied():
    seen = []
    tracker = None

    def on_promoted(identifier, blob):
        seen.append((identifier, [t.id for t in tracker.tracked], tracker.events_processed))

    tracker = make_tracker(on_promoted=on_promoted)
    feed_burst(tracker, 0)
    assert seen == [(0, [0], 7)]


def test_failing_callback_leaves_state_committed():
    def on_promoted(identifier, blob):
        raise RuntimeError("sink failed")

    tracker = make_tracker(on_promoted=on_promoted)
    with pytest.raises(RuntimeError):
        feed_burst(tracker, 0)
    assert tracker.timestamp == 60
    assert tracker.events_processed == 7
    assert [t.id for t in tracker.tracked] == [0]
    assert tracker.seeds[0].blob == ORIGIN_SEED


def test_failing_callback_does_not_drop_other_notifications():
    deleted = []

    def on_promoted(identifier, blob):
        if identifier == 1:
            raise RuntimeError("sink failed")

    tracker = make_tracker(
        [ORIGIN_SEED, Blob(100.0, 0.0, 0.01, 0.0, 0.01)],
        on_promoted=on_promoted,
        on_deleted=lambda identifier, blob: deleted.append(identifier),
    )
    feed_burst(tracker, 0)
    assert [t.id for t in tracker.tracked] == [0]
    # spawns blob 1 and deletes blob 0 in the same event
    with pytest.raises(RuntimeError, match="sink failed"):
        tracker(Event(100, 0, 100000))
    assert deleted == [0]
    assert [t.id for t in tracker.tracked] == [1]


def test_out_of_order_timestamp_grows_activity(caplog):
    far = Blob(100.0, 100.0, 5.0, 0.0, 5.0)
    tracker = make_tracker([ORIGIN_SEED, far], initial_timestamp=100, promotion_activity=100.0)
    tracker(Event(0, 0, 100))
    before = tracker.seeds[0].activity
    with caplog.at_level("WARNING", logger="blobtrack.tracking"):
        tracker(Event(100, 100, 50))
    assert tracker.seeds[0].activity == pytest.approx(before * math.exp(1.0))
    assert "Out-of-order" in caplog.text


def test_empty_population_is_harmless():
    tracker = make_tracker([], pairwise_calculations_to_skip=0)
    tracker.process_many([Event(0, 0, 0), Event(1, 1, 5)])
    assert tracker.seeds == []
    assert tracker.tracked == []
    assert tracker.timestamp == 5


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"activity_decay": 0.0}, "activity_decay"),
        ({"minimum_probability": 1.0}, "minimum_probability"),
        ({"deletion_activity": 3.0}, "deletion_activity"),
        ({"mean_inertia": 1.0}, "mean_inertia"),
        ({"covariance_inertia": -0.1}, "covariance_inertia"),
        ({"repulsion_length": 0.0}, "repulsion_length"),
        ({"repulsion_strength": -1.0}, "repulsion_strength"),
        ({"pairwise_calculations_to_skip": -1}, "pairwise_calculations_to_skip"),
    ],
)
def test_invalid_parameters_are_rejected(overrides, message):
    with pytest.raises(ValueError, match=message):
        make_tracker(**overrides)
