"""YAML configuration for the blob tracker."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from .tracking import Blob, _check_parameters

logger = logging.getLogger(__name__)

_CAMEL_CASE = {
    "initialBlobs": "initial_blobs",
    "initialTimestamp": "initial_timestamp",
    "activityDecay": "activity_decay",
    "minimumProbability": "minimum_probability",
    "promotionActivity": "promotion_activity",
    "deletionActivity": "deletion_activity",
    "meanInertia": "mean_inertia",
    "covarianceInertia": "covariance_inertia",
    "repulsionStrength": "repulsion_strength",
    "repulsionLength": "repulsion_length",
    "attractionStrength": "attraction_strength",
    "attractionResetDistance": "attraction_reset_distance",
    "pairwiseCalculationsToSkip": "pairwise_calculations_to_skip",
}

_BLOB_FIELDS = ("x", "y", "squared_sigma_x", "sigma_xy", "squared_sigma_y")


def load_config(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_file, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    return config or {}


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    merged = {}
    for config in configs:
        merged.update(config)
    return merged


def grid_blobs(
    width: int,
    height: int,
    columns: int,
    rows: int,
    squared_sigma: float,
) -> List[Blob]:
    """Lay out isotropic seed blobs at the centres of a regular grid.

    Parameters
    ----------
    width, height : int
        Sensor resolution in pixels.
    columns, rows : int
        Number of grid cells along each axis.
    squared_sigma : float
        Variance used for both axes of every seed.

    Returns
    -------
    list of Blob
        Seeds in row-major order, starting from the ``(0, 0)`` corner.
    """
    if columns <= 0 or rows <= 0:
        raise ValueError("columns and rows must be positive")
    if squared_sigma <= 0:
        raise ValueError("squared_sigma must be positive")
    cell_width = width / columns
    cell_height = height / rows
    return [
        Blob((column + 0.5) * cell_width, (row + 0.5) * cell_height, squared_sigma, 0.0, squared_sigma)
        for row in range(rows)
        for column in range(columns)
    ]


def _to_blob(value: Any) -> Blob:
    if isinstance(value, Blob):
        return value
    if isinstance(value, Mapping):
        unknown = set(value) - set(_BLOB_FIELDS)
        if unknown:
            raise ValueError(f"Unknown blob keys: {sorted(unknown)}")
        try:
            return Blob(**{key: float(value[key]) for key in _BLOB_FIELDS})
        except KeyError as error:
            raise ValueError(f"Blob is missing key {error}") from error
    values = list(value)
    if len(values) != len(_BLOB_FIELDS):
        raise ValueError(f"A blob needs {len(_BLOB_FIELDS)} values, got {len(values)}")
    return Blob(*(float(v) for v in values))


@dataclass(frozen=True)
class TrackerConfig:
    """Construction parameters of :class:`~blobtrack.tracking.TrackBlobs`.

    The defaults suit a 304x240 sensor with microsecond timestamps: a
    4x3 grid of seeds, a 10 ms activity time constant and a pairwise pass
    every hundred events.
    """

    initial_blobs: Tuple[Blob, ...] = field(default_factory=lambda: tuple(grid_blobs(304, 240, 4, 3, 400.0)))
    initial_timestamp: int = 0
    activity_decay: float = 10000.0
    minimum_probability: float = 1e-6
    promotion_activity: float = 0.08
    deletion_activity: float = 0.04
    mean_inertia: float = 0.99
    covariance_inertia: float = 0.999
    repulsion_strength: float = 0.1
    repulsion_length: float = 10.0
    attraction_strength: float = 0.01
    attraction_reset_distance: float = 5.0
    pairwise_calculations_to_skip: int = 100

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "TrackerConfig":
        """Build a config from snake_case or camelCase keys.

        A top-level ``tracker`` section is used when present.
        """
        if "tracker" in mapping and isinstance(mapping["tracker"], Mapping):
            mapping = mapping["tracker"]
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in mapping.items():
            name = _CAMEL_CASE.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown tracker option: {key}")
            values[name] = value
        if "initial_blobs" in values:
            values["initial_blobs"] = tuple(_to_blob(blob) for blob in values["initial_blobs"])
        return cls(**values)

    @classmethod
    def from_yaml(cls, config_path: str) -> "TrackerConfig":
        config = cls.from_mapping(load_config(config_path))
        logger.info("Loaded tracker config from %s (%d seeds)", config_path, len(config.initial_blobs))
        return config

    def with_overrides(self, overrides: Mapping[str, Any]) -> "TrackerConfig":
        """Return a copy with the given options replaced."""
        return self.from_mapping(merge_configs(self.as_dict(), dict(overrides)))

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def validate(self) -> None:
        _check_parameters(**{k: v for k, v in self.as_dict().items() if k not in ("initial_blobs", "initial_timestamp")})

