# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Post-grading validation.

Checks a graded mesh against the guarantees of a grading run:

1. Edge lengths: every edge within ``[min_length / 2, 2 * max_length]``
2. Topology: every edge bounds at most two faces, no non-manifold vertex
3. Fidelity: with projection enabled, every vertex lies within
   ``fidelity_factor * error_tolerance`` of the original surface
"""

from dataclasses import dataclass, field
import logging

import numpy as np
import trimesh

from .config import GradingConfig
from .halfedge import HalfedgeMesh
from .mesh_ops import edge_length_stats
from .projection import ReferenceSurface

logger = logging.getLogger(__name__)

DEFAULT_FIDELITY_FACTOR = 2.0


@dataclass
class GradingValidation:
    """Result of validating a graded mesh."""

    # Edge lengths
    edge_length_min: float = 0.0
    edge_length_max: float = 0.0
    allowed_min: float = 0.0
    allowed_max: float = 0.0
    short_edge_count: int = 0
    long_edge_count: int = 0

    # Topology
    is_manifold: bool = False
    manifold_problems: list[str] = field(default_factory=list)
    overshared_edge_count: int = 0

    # Fidelity
    fidelity_checked: bool = False
    max_surface_distance: float = 0.0
    mean_surface_distance: float = 0.0
    fidelity_limit: float = 0.0

    # Counts
    original_vertex_count: int = 0
    vertex_count: int = 0
    face_count: int = 0

    @property
    def lengths_within_bounds(self) -> bool:
        return self.short_edge_count == 0 and self.long_edge_count == 0

    @property
    def fidelity_acceptable(self) -> bool:
        if not self.fidelity_checked:
            return True
        return self.max_surface_distance <= self.fidelity_limit

    @property
    def is_acceptable(self) -> bool:
        """True if the graded mesh meets every checked guarantee."""
        return self.lengths_within_bounds and self.is_manifold and self.fidelity_acceptable

    @property
    def issues(self) -> list[str]:
        """List of detected problems."""
        issues = []
        if self.short_edge_count:
            issues.append(
                f"{self.short_edge_count} edges shorter than {self.allowed_min:.4f} "
                f"(shortest {self.edge_length_min:.4f})"
            )
        if self.long_edge_count:
            issues.append(
                f"{self.long_edge_count} edges longer than {self.allowed_max:.4f} "
                f"(longest {self.edge_length_max:.4f})"
            )
        if not self.is_manifold:
            issues.append("Non-manifold geometry")
            issues.extend(self.manifold_problems[:5])
        if not self.fidelity_acceptable:
            issues.append(
                f"Surface deviation {self.max_surface_distance:.4f} exceeds {self.fidelity_limit:.4f}"
            )
        return issues

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "is_acceptable": self.is_acceptable,
            "lengths_within_bounds": self.lengths_within_bounds,
            "edge_length_min": self.edge_length_min,
            "edge_length_max": self.edge_length_max,
            "allowed_min": self.allowed_min,
            "allowed_max": self.allowed_max,
            "short_edge_count": self.short_edge_count,
            "long_edge_count": self.long_edge_count,
            "is_manifold": self.is_manifold,
            "overshared_edge_count": self.overshared_edge_count,
            "fidelity_checked": self.fidelity_checked,
            "fidelity_acceptable": self.fidelity_acceptable,
            "max_surface_distance": self.max_surface_distance,
            "mean_surface_distance": self.mean_surface_distance,
            "fidelity_limit": self.fidelity_limit,
            "original_vertex_count": self.original_vertex_count,
            "vertex_count": self.vertex_count,
            "face_count": self.face_count,
            "issues": self.issues,
        }


def check_topology(mesh: trimesh.Trimesh) -> tuple[bool, list[str], int]:
    """
    Manifold check of a triangle mesh.

    Returns:
        Tuple of (is_manifold, problems, number of edges with more than
        two faces)
    """
    if len(mesh.faces) == 0:
        return True, [], 0

    counts = np.bincount(mesh.edges_unique_inverse, minlength=len(mesh.edges_unique))
    overshared = int(np.sum(counts > 2))

    try:
        problems = HalfedgeMesh.from_trimesh(mesh).check_manifold()
    except ValueError as e:
        problems = [str(e)]

    return not problems and overshared == 0, problems, overshared


def validate_grading(
    original: trimesh.Trimesh,
    graded: trimesh.Trimesh,
    config: GradingConfig,
    fidelity_factor: float = DEFAULT_FIDELITY_FACTOR,
) -> GradingValidation:
    """
    Validate a graded mesh against its input and configuration.

    Args:
        original: Mesh before grading (a copy; grading works in place)
        graded: Mesh after grading
        config: Configuration the mesh was graded with
        fidelity_factor: Allowed surface deviation as a multiple of the
            error tolerance

    Returns:
        GradingValidation result
    """
    result = GradingValidation()
    result.original_vertex_count = len(original.vertices)
    result.vertex_count = len(graded.vertices)
    result.face_count = len(graded.faces)

    result.allowed_min = 0.5 * config.min_length
    result.allowed_max = 2.0 * config.max_length

    if len(graded.faces):
        edges = graded.edges_unique
        lengths = np.linalg.norm(graded.vertices[edges[:, 0]] - graded.vertices[edges[:, 1]], axis=1)
        result.edge_length_min, _, result.edge_length_max = edge_length_stats(graded)
        result.short_edge_count = int(np.sum(lengths < result.allowed_min))
        result.long_edge_count = int(np.sum(lengths > result.allowed_max))

    result.is_manifold, result.manifold_problems, result.overshared_edge_count = check_topology(graded)

    if config.project_to_original and len(original.faces) and len(graded.vertices):
        reference = ReferenceSurface(original.vertices, original.faces)
        distances = reference.distance_to_surface(graded.vertices)
        finite = distances[np.isfinite(distances)]
        result.fidelity_checked = True
        result.fidelity_limit = fidelity_factor * config.effective_error_tolerance
        result.max_surface_distance = float(distances.max())
        result.mean_surface_distance = float(finite.mean()) if len(finite) else float("inf")

    if not result.is_acceptable:
        logger.warning(f"Graded mesh failed validation: {'; '.join(result.issues)}")

    return result


def format_validation_result(result: GradingValidation) -> str:
    """Format a validation result as a human-readable string."""
    lines = [
        "",
        "Grading Validation",
        "=" * 50,
        f"Acceptable: {result.is_acceptable}",
        f"Vertices: {result.original_vertex_count:,} -> {result.vertex_count:,}",
        f"Edge Length: {result.edge_length_min:.4f} .. {result.edge_length_max:.4f} "
        f"(allowed {result.allowed_min:.4f} .. {result.allowed_max:.4f})",
        f"Manifold: {result.is_manifold}",
    ]
    if result.fidelity_checked:
        lines.append(
            f"Surface Deviation: max {result.max_surface_distance:.4f}, "
            f"mean {result.mean_surface_distance:.4f} (limit {result.fidelity_limit:.4f})"
        )
    if result.issues:
        lines.append("")
        lines.append("Issues:")
        lines.extend(f"  - {issue}" for issue in result.issues)
    lines.append("=" * 50)
    return "\n".join(lines)
