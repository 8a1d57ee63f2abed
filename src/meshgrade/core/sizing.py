# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Sizing field estimation: one target edge length per vertex.

Two strategies are supported:

- ``hybrid``: the edge length at which a flat triangle deviates from a
  surface of the local curvature by at most the error tolerance
  (sagitta estimate ``sqrt(8 * error / k)``), sharpened toward
  ``min_length`` within the landmark radius of the relevant ear
  channel(s).
- ``distance``: linear in the distance to the nearest relevant ear
  channel, from ``min_length`` at the landmark to ``max_length`` at
  ``distance_normalization`` and beyond.

All values are clamped to ``[min_length, max_length]``.
"""

from dataclasses import dataclass, field
from typing import Optional
import logging
import math

import numpy as np

from .config import GradingConfig
from .halfedge import HalfedgeMesh
from .landmarks import Landmark

logger = logging.getLogger(__name__)

TARGET_LENGTH = "target_length"
MEAN_CURVATURE = "mean_curvature"
LOW_CONFIDENCE = "is_low_confidence"

# mixed areas below this are treated as a degenerate one-ring
AREA_EPS = 1e-12


@dataclass
class CurvatureEstimate:
    """Per-vertex curvature for every vertex slot of a HalfedgeMesh."""

    mean: np.ndarray
    gaussian: np.ndarray
    max_abs: np.ndarray
    valid: np.ndarray


@dataclass
class SizingField:
    """
    Result of a sizing field computation.

    Attributes:
        target_length: Target edge length per vertex slot
        mean_curvature: Signed mean curvature per vertex slot (0 where not
            computed)
        low_confidence: Vertices whose curvature could not be estimated
        normalization: Distance normalization / landmark falloff used
        strategy: "hybrid" or "distance"
    """

    target_length: np.ndarray
    mean_curvature: np.ndarray
    low_confidence: list[int] = field(default_factory=list)
    normalization: float = 0.0
    strategy: str = "hybrid"

    def apply_to(self, mesh: HalfedgeMesh) -> None:
        """Store the field as vertex properties of ``mesh``."""
        mesh.add_vertex_property(TARGET_LENGTH)
        mesh.add_vertex_property(MEAN_CURVATURE)
        mesh.add_vertex_property(LOW_CONFIDENCE, dtype=bool, default=False)

        n = mesh.vertices_size
        mesh.vertex_property(TARGET_LENGTH)[:] = self.target_length[:n]
        mesh.vertex_property(MEAN_CURVATURE)[:] = self.mean_curvature[:n]
        flags = mesh.vertex_property(LOW_CONFIDENCE)
        flags[:] = False
        if self.low_confidence:
            flags[self.low_confidence] = True


def resolve_normalization(config: GradingConfig, bounds: np.ndarray) -> float:
    """Distance normalization from the config, or the bounding-box diagonal if 0."""
    if config.distance_normalization > 0:
        return float(config.distance_normalization)
    bounds = np.asarray(bounds, dtype=np.float64)
    diagonal = float(np.linalg.norm(bounds[1] - bounds[0]))
    return diagonal if diagonal > 0 else 1.0


def compute_curvature(mesh: HalfedgeMesh, smoothing_passes: int = 1) -> CurvatureEstimate:
    """
    Discrete curvature from the cotangent Laplacian and the angle deficit.

    Mean curvature is signed by the vertex normal (positive on convex
    regions with outward normals). Boundary vertices take the average of
    their interior neighbors. Vertices without a usable one-ring
    (isolated, or zero mixed area) are marked invalid.
    """
    n = mesh.vertices_size
    points = mesh.points
    faces = mesh.face_array()

    laplace = np.zeros((n, 3))
    area = np.zeros(n)
    angle_sum = np.zeros(n)

    if len(faces):
        tri = points[faces]
        cross = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        face_area = 0.5 * np.linalg.norm(cross, axis=1)

        cots = np.zeros((len(faces), 3))
        angles = np.zeros((len(faces), 3))
        for c in range(3):
            d1 = tri[:, (c + 1) % 3] - tri[:, c]
            d2 = tri[:, (c + 2) % 3] - tri[:, c]
            dot = np.einsum("ij,ij->i", d1, d2)
            crs = np.linalg.norm(np.cross(d1, d2), axis=1)
            cots[:, c] = np.divide(dot, crs, out=np.zeros_like(dot), where=crs > 1e-300)
            angles[:, c] = np.arctan2(crs, dot)

        obtuse = angles > 0.5 * math.pi

        for c in range(3):
            a = (c + 1) % 3
            b = (c + 2) % 3
            # the edge a-b is opposite corner c
            edge = tri[:, b] - tri[:, a]
            weight = cots[:, c][:, None] * edge
            np.add.at(laplace, faces[:, a], -weight)
            np.add.at(laplace, faces[:, b], weight)

            np.add.at(angle_sum, faces[:, c], angles[:, c])

            # mixed Voronoi area for corner c
            e_ab = tri[:, a] - tri[:, c]
            e_ac = tri[:, b] - tri[:, c]
            voronoi = 0.125 * (
                np.einsum("ij,ij->i", e_ac, e_ac) * cots[:, a]
                + np.einsum("ij,ij->i", e_ab, e_ab) * cots[:, b]
            )
            corner_area = np.where(
                obtuse[:, c],
                0.5 * face_area,
                np.where(obtuse.any(axis=1), 0.25 * face_area, voronoi),
            )
            np.add.at(area, faces[:, c], corner_area)

    boundary = np.array([mesh.is_boundary_vertex(v) for v in range(n)], dtype=bool)
    deleted = np.array([mesh.is_deleted_vertex(v) for v in range(n)], dtype=bool)

    valid = (area > AREA_EPS) & ~deleted
    safe_area = np.where(valid, area, 1.0)

    normals = mesh.vertex_normals()
    # laplace holds sum of cot * (x_i - x_j); laplace / (2A) = 2 H n
    mean_normal = laplace / (2.0 * safe_area[:, None])
    mean = 0.5 * np.linalg.norm(mean_normal, axis=1)
    sign = np.sign(np.einsum("ij,ij->i", mean_normal, normals))
    mean = np.where(sign < 0, -mean, mean)
    gaussian = (2.0 * math.pi - angle_sum) / safe_area

    disc = np.sqrt(np.maximum(mean * mean - gaussian, 0.0))
    max_abs = np.abs(mean) + disc

    mean[~valid] = 0.0
    gaussian[~valid] = 0.0
    max_abs[~valid] = 0.0

    edges = mesh.edge_array()

    # boundary values are not meaningful; replace them by their interior neighbors
    interior = valid & ~boundary
    if boundary.any() and len(edges):
        max_abs, mean, reached = _average_from(edges, interior, boundary & ~deleted, max_abs, mean)
        valid = (valid & ~boundary) | reached

    for _ in range(smoothing_passes):
        if len(edges) == 0:
            break
        max_abs = _smooth_once(edges, valid, max_abs)

    return CurvatureEstimate(mean=mean, gaussian=gaussian, max_abs=max_abs, valid=valid)


def _average_from(edges, sources, targets, max_abs, mean):
    """Give each target vertex the mean value of its source neighbors."""
    n = len(max_abs)
    total = np.zeros(n)
    total_mean = np.zeros(n)
    count = np.zeros(n)
    for i, j in ((0, 1), (1, 0)):
        src = edges[:, i]
        dst = edges[:, j]
        use = sources[src] & targets[dst]
        np.add.at(total, dst[use], max_abs[src[use]])
        np.add.at(total_mean, dst[use], mean[src[use]])
        np.add.at(count, dst[use], 1.0)

    reached = targets & (count > 0)
    max_abs = max_abs.copy()
    mean = mean.copy()
    max_abs[reached] = total[reached] / count[reached]
    mean[reached] = total_mean[reached] / count[reached]
    return max_abs, mean, reached


def _smooth_once(edges, valid, values):
    total = np.where(valid, values, 0.0)
    count = valid.astype(np.float64)
    for i, j in ((0, 1), (1, 0)):
        src = edges[:, i]
        dst = edges[:, j]
        use = valid[src] & valid[dst]
        np.add.at(total, dst[use], values[src[use]])
        np.add.at(count, dst[use], 1.0)
    smoothed = values.copy()
    smoothed[valid] = total[valid] / count[valid]
    return smoothed


def curvature_lengths(curvature: np.ndarray, config: GradingConfig) -> np.ndarray:
    """Sagitta-based target length for each curvature value, clamped."""
    error = config.effective_error_tolerance
    k = np.asarray(curvature, dtype=np.float64)
    lengths = np.full(k.shape, config.max_length)
    curved = k > 0
    lengths[curved] = np.sqrt(8.0 * error / k[curved])
    return np.clip(lengths, config.min_length, config.max_length)


def landmark_distances(points: np.ndarray, landmarks: np.ndarray) -> np.ndarray:
    """Distance from each point to the nearest landmark."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    landmarks = np.asarray(landmarks, dtype=np.float64).reshape(-1, 3)
    diff = points[:, None, :] - landmarks[None, :, :]
    return np.linalg.norm(diff, axis=2).min(axis=1)


def distance_lengths(distances: np.ndarray, config: GradingConfig, normalization: float) -> np.ndarray:
    """Linear ramp from min_length at the landmark to max_length at ``normalization``."""
    t = np.clip(np.asarray(distances, dtype=np.float64) / normalization, 0.0, 1.0)
    return config.min_length + (config.max_length - config.min_length) * t


def landmark_pull(lengths: np.ndarray, distances: np.ndarray, config: GradingConfig, radius: float) -> np.ndarray:
    """
    Blend target lengths toward ``min_length`` near a landmark.

    Uses a cosine falloff: unchanged at ``radius`` and beyond, exactly
    ``min_length`` at the landmark.
    """
    t = np.clip(np.asarray(distances, dtype=np.float64) / radius, 0.0, 1.0)
    w = 0.5 * (1.0 - np.cos(math.pi * t))
    return config.min_length + (lengths - config.min_length) * w


class SizingFieldEstimator:
    """
    Computes the sizing field of a mesh for one grading run.

    The strategy is chosen once from ``config.mode``; the landmark set and
    normalization are fixed for the lifetime of the estimator.
    """

    def __init__(self, config: GradingConfig, landmarks: Landmark, normalization: float):
        self.config = config
        self.strategy = config.mode
        self.landmarks = landmarks
        self.normalization = normalization
        self.landmark_radius = config.effective_landmark_radius
        self.landmark_points = landmarks.points_for_side(config.side)

    def estimate(self, mesh: HalfedgeMesh, apply: bool = True) -> SizingField:
        """
        Compute the sizing field for every vertex of ``mesh``.

        Args:
            mesh: Mesh to size
            apply: Also store the result as vertex properties

        Returns:
            SizingField
        """
        if self.strategy == "distance":
            sizing = self._estimate_distance(mesh)
        else:
            sizing = self._estimate_hybrid(mesh)

        if apply:
            sizing.apply_to(mesh)
        return sizing

    def lengths_at(self, points: np.ndarray) -> np.ndarray:
        """Distance-mode target lengths at arbitrary positions."""
        distances = landmark_distances(points, self.landmark_points)
        return distance_lengths(distances, self.config, self.normalization)

    def _estimate_distance(self, mesh: HalfedgeMesh) -> SizingField:
        n = mesh.vertices_size
        target = self.lengths_at(mesh.points) if n else np.zeros(0)
        return SizingField(
            target_length=target,
            mean_curvature=np.zeros(n),
            normalization=self.normalization,
            strategy="distance",
        )

    def _estimate_hybrid(self, mesh: HalfedgeMesh) -> SizingField:
        n = mesh.vertices_size
        curvature = compute_curvature(mesh)

        target = curvature_lengths(curvature.max_abs, self.config)
        live = np.array(
            [not mesh.is_deleted_vertex(v) and not mesh.is_isolated(v) for v in range(n)],
            dtype=bool,
        )
        low_confidence = np.flatnonzero(live & ~curvature.valid).tolist()
        target[low_confidence] = self.config.max_length

        if low_confidence:
            logger.warning(
                f"Curvature undefined at {len(low_confidence)} vertices, using max length there"
            )

        if self.config.side != "none" and n:
            distances = landmark_distances(mesh.points, self.landmark_points)
            target = landmark_pull(target, distances, self.config, self.landmark_radius)

        target = np.clip(target, self.config.min_length, self.config.max_length)

        logger.debug(
            f"Hybrid sizing: min={target[live].min() if live.any() else 0:.3f}, "
            f"max={target[live].max() if live.any() else 0:.3f}"
        )

        return SizingField(
            target_length=target,
            mean_curvature=curvature.mean,
            low_confidence=low_confidence,
            normalization=self.normalization,
            strategy="hybrid",
        )


def compute_sizing_field(
    mesh: HalfedgeMesh,
    config: GradingConfig,
    landmarks: Landmark,
    normalization: Optional[float] = None,
) -> SizingField:
    """Convenience wrapper: estimate and store the sizing field of ``mesh``."""
    if normalization is None:
        points = mesh.points
        bounds = np.array([points.min(axis=0), points.max(axis=0)]) if len(points) else np.zeros((2, 3))
        normalization = resolve_normalization(config, bounds)
    return SizingFieldEstimator(config, landmarks, normalization).estimate(mesh)
