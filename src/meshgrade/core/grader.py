# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Grading entry point.

``MeshGrader`` ties the pipeline together: landmarks are resolved from the
input bounds, the sizing field is estimated on the input mesh, which is
also frozen as the reference surface, and the remesher mutates a halfedge
copy that is finally written back into the caller's Trimesh.
"""

from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional
import logging
import time

import numpy as np
import trimesh

from .config import GradingConfig
from .halfedge import HalfedgeMesh
from .landmarks import Landmark, resolve_landmarks
from .projection import ReferenceSurface
from .remesher import IS_FEATURE, IncrementalRemesher, RemeshStats
from .sizing import SizingFieldEstimator, resolve_normalization

logger = logging.getLogger(__name__)


@dataclass
class GradingResult:
    """Outcome of a grading run, queryable by callers for reporting."""

    mesh: trimesh.Trimesh
    config: GradingConfig
    landmarks: Landmark
    stats: RemeshStats = field(default_factory=RemeshStats)
    original_vertex_count: int = 0
    original_face_count: int = 0
    vertex_count: int = 0
    face_count: int = 0
    low_confidence_count: int = 0
    normalization: float = 0.0
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary (excluding mesh)."""
        return {
            "config": self.config.to_dict(),
            "landmarks": self.landmarks.to_dict(),
            "original_vertex_count": self.original_vertex_count,
            "original_face_count": self.original_face_count,
            "vertex_count": self.vertex_count,
            "face_count": self.face_count,
            "low_confidence_count": self.low_confidence_count,
            "normalization": self.normalization,
            "duration_ms": self.duration_ms,
            "stats": self.stats.to_dict(),
        }


def _referenced_bounds(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    used = vertices[np.unique(faces)]
    return np.array([used.min(axis=0), used.max(axis=0)])


class MeshGrader:
    """
    Grades triangle meshes with one fixed configuration.

    The configuration is checked on construction, so an invalid one fails
    before any mesh is touched.
    """

    def __init__(self, config: GradingConfig):
        self.config = config.check()

    def run(
        self,
        mesh: trimesh.Trimesh,
        feature_vertices: Optional[Iterable[int]] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> GradingResult:
        """
        Grade ``mesh`` in place.

        Args:
            mesh: Triangulated input mesh; its vertices and faces are
                replaced by the graded result
            feature_vertices: Input vertex indices that must not be
                removed or relaxed
            progress_callback: Optional callback(iteration, total_iterations)

        Returns:
            GradingResult wrapping the same mesh object

        Raises:
            ValueError: If the mesh has no faces or cannot be represented
                as an oriented 2-manifold
        """
        config = self.config
        start = time.perf_counter()

        vertices = np.asarray(mesh.vertices, dtype=np.float64)
        faces = np.asarray(mesh.faces, dtype=np.int64)
        if len(faces) == 0:
            raise ValueError("Cannot grade a mesh without faces")

        hmesh = HalfedgeMesh.from_arrays(vertices, faces)
        original_vertex_count = hmesh.n_vertices
        original_face_count = hmesh.n_faces

        bounds = _referenced_bounds(vertices, faces)
        landmarks = resolve_landmarks(bounds, config)
        normalization = resolve_normalization(config, bounds)

        logger.info(
            f"Grading {original_vertex_count} vertices: mode={config.mode}, side={config.side}, "
            f"lengths=[{config.min_length}, {config.max_length}], "
            f"error={config.effective_error_tolerance}, normalization={normalization:.3f}"
        )

        estimator = SizingFieldEstimator(config, landmarks, normalization)
        reference_field = estimator.estimate(hmesh)

        reference = None
        if config.project_to_original:
            reference = ReferenceSurface(vertices, faces)

        remesher = IncrementalRemesher(hmesh, config, estimator, reference, reference_field)
        if feature_vertices is not None:
            ids = np.asarray(list(feature_vertices), dtype=np.int64)
            hmesh.vertex_property(IS_FEATURE)[ids] = True

        stats = remesher.run(progress_callback)

        new_vertices, new_faces = hmesh.to_arrays()
        mesh.vertices = new_vertices
        mesh.faces = new_faces

        result = GradingResult(
            mesh=mesh,
            config=config,
            landmarks=landmarks,
            stats=stats,
            original_vertex_count=original_vertex_count,
            original_face_count=original_face_count,
            vertex_count=len(new_vertices),
            face_count=len(new_faces),
            low_confidence_count=len(reference_field.low_confidence),
            normalization=normalization,
            duration_ms=(time.perf_counter() - start) * 1000,
        )

        logger.info(
            f"Graded mesh: {result.original_vertex_count} -> {result.vertex_count} vertices "
            f"in {result.duration_ms:.1f}ms"
        )
        return result


def grade(mesh: trimesh.Trimesh, config: GradingConfig) -> trimesh.Trimesh:
    """Grade ``mesh`` in place with ``config`` and return it."""
    return MeshGrader(config).run(mesh).mesh
