# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Ear-channel landmark resolution.

Landmarks are either given explicitly or estimated from the mesh bounding
box. Estimation assumes the head is centered at the origin with the
interaural axis along ``lateral_axis``; left ears lie on the negative side,
right ears on the positive side. The precondition is not checked.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np

from .config import GradingConfig

logger = logging.getLogger(__name__)

DEFAULT_GAMMA = 0.15

# gamma values at or beyond this are treated as "not set"
GAMMA_UPPER_SENTINEL = 1.9


@dataclass(frozen=True)
class Landmark:
    """Resolved left/right ear-channel entrances."""

    left_ear_channel: tuple[float, float, float]
    right_ear_channel: tuple[float, float, float]
    left_gamma: float = DEFAULT_GAMMA
    right_gamma: float = DEFAULT_GAMMA
    left_estimated: bool = False
    right_estimated: bool = False

    def points_for_side(self, side: str) -> np.ndarray:
        """
        Landmarks relevant for ``side``.

        Returns:
            (k, 3) array; both ears for side "none"
        """
        if side == "left":
            return np.array([self.left_ear_channel], dtype=np.float64)
        if side == "right":
            return np.array([self.right_ear_channel], dtype=np.float64)
        return np.array([self.left_ear_channel, self.right_ear_channel], dtype=np.float64)

    def to_dict(self) -> dict:
        return {
            "left_ear_channel": list(self.left_ear_channel),
            "right_ear_channel": list(self.right_ear_channel),
            "left_gamma": self.left_gamma,
            "right_gamma": self.right_gamma,
            "left_estimated": self.left_estimated,
            "right_estimated": self.right_estimated,
        }


def resolve_gamma(value: Optional[float]) -> float:
    """Replace an unset or out-of-range gamma with DEFAULT_GAMMA."""
    if value is None or not 0.0 < value < GAMMA_UPPER_SENTINEL:
        return DEFAULT_GAMMA
    return float(value)


def _is_set(point) -> bool:
    return point is not None and any(float(c) != 0.0 for c in point)


def estimate_ear_channel(bounds: np.ndarray, side: str, gamma: float, lateral_axis: int = 1) -> tuple:
    """
    Estimate one ear-channel entrance from the bounding box.

    Args:
        bounds: (2, 3) array of [min, max] corners
        side: "left" or "right"
        gamma: Scaling factor (already resolved)
        lateral_axis: Index of the interaural axis

    Returns:
        (x, y, z) tuple
    """
    bounds = np.asarray(bounds, dtype=np.float64)
    half_width = 0.5 * float(bounds[1, lateral_axis] - bounds[0, lateral_axis])
    sign = -1.0 if side == "left" else 1.0

    point = [0.0, 0.0, 0.0]
    point[lateral_axis] = sign * gamma * half_width
    return tuple(point)


def resolve_landmarks(bounds: np.ndarray, config: GradingConfig) -> Landmark:
    """
    Resolve both ear channels for a grading run.

    Explicit, non-zero coordinates are used verbatim; missing ones are
    estimated from the bounding box. Both sides are always resolved, the
    config's ``side`` only decides which of them the sizing field uses.
    """
    left_gamma = resolve_gamma(config.left_gamma)
    right_gamma = resolve_gamma(config.right_gamma)

    if config.left_gamma is not None and left_gamma != config.left_gamma:
        logger.debug(f"Left gamma {config.left_gamma} out of range, using {DEFAULT_GAMMA}")
    if config.right_gamma is not None and right_gamma != config.right_gamma:
        logger.debug(f"Right gamma {config.right_gamma} out of range, using {DEFAULT_GAMMA}")

    left_estimated = not _is_set(config.left_ear_channel)
    right_estimated = not _is_set(config.right_ear_channel)

    if left_estimated:
        left = estimate_ear_channel(bounds, "left", left_gamma, config.lateral_axis)
    else:
        left = tuple(float(c) for c in config.left_ear_channel)

    if right_estimated:
        right = estimate_ear_channel(bounds, "right", right_gamma, config.lateral_axis)
    else:
        right = tuple(float(c) for c in config.right_ear_channel)

    landmark = Landmark(
        left_ear_channel=left,
        right_ear_channel=right,
        left_gamma=left_gamma,
        right_gamma=right_gamma,
        left_estimated=left_estimated,
        right_estimated=right_estimated,
    )

    logger.info(
        f"Ear channels: left={left} ({'estimated' if left_estimated else 'given'}), "
        f"right={right} ({'estimated' if right_estimated else 'given'})"
    )

    return landmark
