# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Grading configuration, loading, validation, and built-in presets.

A grading config bundles every parameter of one grading run. It is
validated once before the engine touches the mesh and is never mutated
afterwards (the dataclass is frozen; use ``replace()`` to derive variants).
"""

import dataclasses
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

try:
    import yaml
    YAML_AVAILABLE = True
except ImportError:
    YAML_AVAILABLE = False

logger = logging.getLogger(__name__)

MODES = ("hybrid", "distance")
SIDES = ("left", "right", "none")

DEFAULT_ITERATIONS = 10

# hybrid landmark pull radius in units of max_length when not configured
LANDMARK_RADIUS_FACTOR = 5.0

Point = tuple[float, float, float]

# numeric fields coerced when loading from a dict; None keeps the default meaning
_NUMERIC_FIELDS = {
    "min_length": float,
    "max_length": float,
    "error_tolerance": float,
    "distance_normalization": float,
    "landmark_radius": float,
    "left_gamma": float,
    "right_gamma": float,
    "relaxation_factor": float,
    "convergence_tolerance": float,
    "iterations": int,
    "lateral_axis": int,
    "smoothing_steps": int,
}


class ConfigurationError(ValueError):
    """Raised when a grading configuration is invalid."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid grading configuration: " + "; ".join(self.errors))


def _as_point(value: Any) -> Optional[Point]:
    if value is None:
        return None
    values = tuple(float(x) for x in value)
    if len(values) != 3:
        raise ConfigurationError([f"Landmark coordinate must have 3 components, got {len(values)}"])
    return values


@dataclass(frozen=True)
class GradingConfig:
    """
    Parameters of a grading run.

    Attributes:
        min_length: Minimum target edge length (mm)
        max_length: Maximum target edge length (mm)
        error_tolerance: Allowed chordal error (mm); non-positive or None
            falls back to ``min_length``
        mode: "hybrid" (curvature + landmark pull) or "distance"
            (linear in distance to the ear channels)
        side: "left", "right", or "none" (both ears for distance mode,
            no landmark pull for hybrid mode)
        distance_normalization: Distance (mm) over which the target length
            goes from min to max; 0 derives it from the mesh extent
        landmark_radius: Falloff radius (mm) of the hybrid landmark pull;
            0 uses LANDMARK_RADIUS_FACTOR times max_length
        iterations: Number of remeshing passes
        project_to_original: Keep vertices on the input surface
        left_ear_channel: Explicit left ear-channel entrance, None or
            (0, 0, 0) to estimate it
        right_ear_channel: Explicit right ear-channel entrance
        left_gamma: Scaling factor for the left estimate; values outside
            (0, 1.9) mean "use the default"
        right_gamma: Scaling factor for the right estimate
        lateral_axis: Index of the interaural axis (0=x, 1=y, 2=z)
        smoothing_steps: Tangential relaxation sweeps per iteration
        relaxation_factor: Fraction of the way each vertex moves toward
            its weighted centroid per sweep
        convergence_tolerance: Optional early exit once the relative change
            in vertex count between iterations drops below this value
        verbose: Ask callers to report resolved parameters
    """

    min_length: float
    max_length: float
    error_tolerance: Optional[float] = None
    mode: str = "hybrid"
    side: str = "none"
    distance_normalization: float = 0.0
    landmark_radius: float = 0.0
    iterations: int = DEFAULT_ITERATIONS
    project_to_original: bool = True
    left_ear_channel: Optional[Point] = None
    right_ear_channel: Optional[Point] = None
    left_gamma: Optional[float] = None
    right_gamma: Optional[float] = None
    lateral_axis: int = 1
    smoothing_steps: int = 5
    relaxation_factor: float = 1.0
    convergence_tolerance: Optional[float] = None
    verbose: bool = False

    @property
    def effective_error_tolerance(self) -> float:
        """Error tolerance with the ``min_length`` fallback applied."""
        if self.error_tolerance is None or self.error_tolerance <= 0:
            return self.min_length
        return self.error_tolerance

    @property
    def effective_landmark_radius(self) -> float:
        """Hybrid landmark pull radius with the max_length fallback applied."""
        if self.landmark_radius > 0:
            return self.landmark_radius
        return LANDMARK_RADIUS_FACTOR * self.max_length

    def validate(self) -> list[str]:
        """
        Validate the configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.min_length <= 0:
            errors.append(f"min_length must be positive (got {self.min_length})")
        if self.max_length <= 0:
            errors.append(f"max_length must be positive (got {self.max_length})")
        if self.max_length < self.min_length:
            errors.append(
                f"max_length ({self.max_length}) must not be smaller than "
                f"min_length ({self.min_length})"
            )
        if self.mode not in MODES:
            errors.append(f"Unknown mode '{self.mode}' (expected one of {', '.join(MODES)})")
        if self.side not in SIDES:
            errors.append(f"Unknown side '{self.side}' (expected one of {', '.join(SIDES)})")
        if self.distance_normalization < 0:
            errors.append("distance_normalization must not be negative")
        if self.landmark_radius < 0:
            errors.append("landmark_radius must not be negative")
        if self.iterations < 0:
            errors.append(f"iterations must not be negative (got {self.iterations})")
        if self.lateral_axis not in (0, 1, 2):
            errors.append(f"lateral_axis must be 0, 1 or 2 (got {self.lateral_axis})")
        if self.smoothing_steps < 0:
            errors.append("smoothing_steps must not be negative")
        if not 0.0 < self.relaxation_factor <= 1.0:
            errors.append(f"relaxation_factor must be in (0, 1] (got {self.relaxation_factor})")
        if self.convergence_tolerance is not None and self.convergence_tolerance < 0:
            errors.append("convergence_tolerance must not be negative")

        return errors

    def check(self) -> "GradingConfig":
        """Raise ConfigurationError listing every problem; return self if valid."""
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)
        return self

    def replace(self, **changes) -> "GradingConfig":
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict) -> "GradingConfig":
        """
        Create from dictionary.

        Unknown keys are reported as errors rather than silently dropped.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError([f"Unknown configuration key '{k}'" for k in unknown])

        missing = [k for k in ("min_length", "max_length") if data.get(k) is None]
        if missing:
            raise ConfigurationError([f"Missing required key '{k}'" for k in missing])

        values = dict(data)
        for key in ("mode", "side"):
            if isinstance(values.get(key), str):
                values[key] = values[key].strip().lower()
        for key in ("left_ear_channel", "right_ear_channel"):
            if key in values:
                values[key] = _as_point(values[key])
        errors = []
        for key, cast in _NUMERIC_FIELDS.items():
            if values.get(key) is None:
                continue
            try:
                values[key] = cast(values[key])
            except (TypeError, ValueError):
                errors.append(f"{key} must be a number (got {values[key]!r})")
        if errors:
            raise ConfigurationError(errors)

        return cls(**values)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = dataclasses.asdict(self)
        for key in ("left_ear_channel", "right_ear_channel"):
            if data[key] is not None:
                data[key] = list(data[key])
        return data

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "GradingConfig":
        """Load from JSON file."""
        path = Path(path)
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "GradingConfig":
        """Load from YAML file."""
        if not YAML_AVAILABLE:
            raise ImportError("PyYAML is required to load YAML grading configs")

        path = Path(path)
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def load(cls, path: Union[str, Path]) -> "GradingConfig":
        """
        Load from file, auto-detecting format from extension.

        Supports .json and .yaml/.yml files.
        """
        path = Path(path)

        if not path.exists():
            raise FileNotFoundError(f"Grading config not found: {path}")

        suffix = path.suffix.lower()

        if suffix == ".json":
            return cls.from_json(path)
        elif suffix in (".yaml", ".yml"):
            return cls.from_yaml(path)
        else:
            try:
                return cls.from_json(path)
            except json.JSONDecodeError:
                if YAML_AVAILABLE:
                    return cls.from_yaml(path)
                raise ValueError(f"Unknown grading config format: {path}")

    def to_json(self, path: Union[str, Path], indent: int = 2) -> None:
        """Save to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=indent)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save to YAML file."""
        if not YAML_AVAILABLE:
            raise ImportError("PyYAML is required to save YAML grading configs")

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


# =============================================================================
# Built-in Presets
# =============================================================================

# Typical settings for head meshes in mm: elements of 1 mm at the ear
# channel growing to 10 mm on the far side of the head.
PRESET_HRTF_LEFT = GradingConfig(min_length=1.0, max_length=10.0, mode="distance", side="left")
PRESET_HRTF_RIGHT = GradingConfig(min_length=1.0, max_length=10.0, mode="distance", side="right")
PRESET_HRTF_BOTH = GradingConfig(min_length=1.0, max_length=10.0, mode="distance", side="none")
PRESET_CURVATURE_ONLY = GradingConfig(
    min_length=1.0, max_length=10.0, error_tolerance=0.1, mode="hybrid", side="none"
)

PRESETS: dict[str, GradingConfig] = {
    "hrtf-left": PRESET_HRTF_LEFT,
    "hrtf-right": PRESET_HRTF_RIGHT,
    "hrtf-both": PRESET_HRTF_BOTH,
    "curvature-only": PRESET_CURVATURE_ONLY,
}

PRESET_DESCRIPTIONS: dict[str, str] = {
    "hrtf-left": "Distance grading, fine at the left ear channel",
    "hrtf-right": "Distance grading, fine at the right ear channel",
    "hrtf-both": "Distance grading, fine at both ear channels",
    "curvature-only": "Curvature-adaptive grading without landmark refinement",
}


def get_preset(name: str) -> Optional[GradingConfig]:
    """Get a built-in preset config by name."""
    return PRESETS.get(name)


def list_presets() -> list[str]:
    """List all built-in preset names."""
    return list(PRESETS.keys())
