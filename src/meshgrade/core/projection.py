# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Projection onto the original (reference) surface.

The reference surface is an immutable snapshot of the mesh as it was
handed to the grader. Closest-point queries go through a KD-tree over the
triangle centroids: the ``candidates`` nearest triangles are tested exactly
with trimesh's closest-point-on-triangle routine. A triangle can only beat
the best candidate if its centroid lies within the best distance plus the
largest centroid-to-corner radius, so every such triangle is tested as
well and the result is the exact closest point.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np
from scipy.spatial import cKDTree
import trimesh

logger = logging.getLogger(__name__)


@dataclass
class ProjectionResult:
    """
    Closest points on the reference surface.

    Attributes:
        points: Projected positions; unchanged input where ``found`` is False
        triangles: Reference triangle index per point (-1 if not found)
        barycentric: (n, 3) barycentric coordinates in that triangle
        distances: Distance from the query to its projection (inf if not found)
        found: Whether a reference triangle was found for each query
    """

    points: np.ndarray
    triangles: np.ndarray
    barycentric: np.ndarray
    distances: np.ndarray
    found: np.ndarray

    @property
    def failed_count(self) -> int:
        return int(np.count_nonzero(~self.found))


class ReferenceSurface:
    """
    Read-only snapshot of a triangle surface with a spatial index.

    Args:
        vertices: (n, 3) vertex positions
        faces: (m, 3) triangle indices
        candidates: Number of nearest triangles tested per query
        search_radius: Queries farther than this from every triangle are
            not projected; defaults to twice the bounding-box diagonal
    """

    def __init__(
        self,
        vertices,
        faces,
        candidates: int = 16,
        search_radius: Optional[float] = None,
    ):
        self.vertices = np.array(vertices, dtype=np.float64)
        self.faces = np.array(faces, dtype=np.int64).reshape(-1, 3)

        if len(self.faces) == 0:
            raise ValueError("Reference surface needs at least one triangle")

        self.vertices.setflags(write=False)
        self.faces.setflags(write=False)

        self.triangles = self.vertices[self.faces]
        self.triangles.setflags(write=False)

        centroids = self.triangles.mean(axis=1)
        self._tree = cKDTree(centroids)
        self._triangle_radius = float(
            np.linalg.norm(self.triangles - centroids[:, None, :], axis=2).max()
        )

        referenced = self.vertices[np.unique(self.faces)]
        self.bounds = np.array([referenced.min(axis=0), referenced.max(axis=0)])
        diagonal = float(np.linalg.norm(self.bounds[1] - self.bounds[0]))

        self.candidates = max(1, min(candidates, len(self.faces)))
        self.search_radius = search_radius if search_radius is not None else 2.0 * diagonal

        self.vertex_normals = np.array(
            trimesh.Trimesh(vertices=self.vertices, faces=self.faces, process=False).vertex_normals
        )
        self.vertex_normals.setflags(write=False)

        logger.debug(
            f"Reference surface: {len(self.vertices)} vertices, {len(self.faces)} faces, "
            f"search radius {self.search_radius:.3f}"
        )

    def project(self, points) -> ProjectionResult:
        """
        Find the closest reference point for each query point.

        Args:
            points: (n, 3) query positions

        Returns:
            ProjectionResult
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        n = len(points)
        k = self.candidates

        if n == 0:
            return ProjectionResult(
                points=np.zeros((0, 3)),
                triangles=np.zeros(0, dtype=np.int64),
                barycentric=np.zeros((0, 3)),
                distances=np.zeros(0),
                found=np.zeros(0, dtype=bool),
            )

        centroid_dist, idx = self._tree.query(
            points, k=k, distance_upper_bound=self.search_radius + self._triangle_radius
        )
        centroid_dist = np.asarray(centroid_dist).reshape(n, k)
        idx = np.asarray(idx).reshape(n, k)

        valid = np.isfinite(centroid_dist)
        safe_idx = np.where(valid, idx, 0)

        queries = np.repeat(points, k, axis=0)
        closest = trimesh.triangles.closest_point(
            self.triangles[safe_idx.reshape(-1)], queries
        ).reshape(n, k, 3)

        dist = np.linalg.norm(closest - points[:, None, :], axis=2)
        dist[~valid | np.isnan(dist)] = np.inf

        best = np.argmin(dist, axis=1)
        rows = np.arange(n)
        distances = dist[rows, best]
        best_points = closest[rows, best]
        best_triangles = safe_idx[rows, best]

        self._refine(points, k, best_points, best_triangles, distances)

        found = np.isfinite(distances) & (distances <= self.search_radius)

        projected = points.copy()
        projected[found] = best_points[found]

        triangles = np.full(n, -1, dtype=np.int64)
        triangles[found] = best_triangles[found]
        distances = np.where(found, distances, np.inf)

        barycentric = np.zeros((n, 3))
        if found.any():
            barycentric[found] = self._barycentric(triangles[found], projected[found])

        if not found.all():
            logger.warning(f"No reference triangle found for {int((~found).sum())} points")

        return ProjectionResult(
            points=projected,
            triangles=triangles,
            barycentric=barycentric,
            distances=distances,
            found=found,
        )

    def _refine(
        self,
        points: np.ndarray,
        k: int,
        best_points: np.ndarray,
        best_triangles: np.ndarray,
        distances: np.ndarray,
    ) -> None:
        """Test every triangle that may be closer than the k-nearest result (in place)."""
        rows = np.flatnonzero(np.isfinite(distances))
        if len(rows) == 0 or k >= len(self.faces):
            return

        balls = self._tree.query_ball_point(points[rows], distances[rows] + self._triangle_radius)

        pair_rows = []
        pair_triangles = []
        for row, candidates in zip(rows, balls):
            # at most k centroids in the ball: all of them were tested already
            if len(candidates) <= k:
                continue
            pair_rows.append(np.full(len(candidates), row, dtype=np.int64))
            pair_triangles.append(np.asarray(candidates, dtype=np.int64))

        if not pair_rows:
            return

        pair_rows = np.concatenate(pair_rows)
        pair_triangles = np.concatenate(pair_triangles)

        closest = trimesh.triangles.closest_point(self.triangles[pair_triangles], points[pair_rows])
        dist = np.linalg.norm(closest - points[pair_rows], axis=1)
        dist[np.isnan(dist)] = np.inf

        # nearest pair per query row
        order = np.lexsort((dist, pair_rows))
        unique_rows, first = np.unique(pair_rows[order], return_index=True)
        pick = order[first]

        better = dist[pick] < distances[unique_rows]
        update = unique_rows[better]
        pick = pick[better]

        best_points[update] = closest[pick]
        best_triangles[update] = pair_triangles[pick]
        distances[update] = dist[pick]

    def _barycentric(self, triangles: np.ndarray, points: np.ndarray) -> np.ndarray:
        bary = trimesh.triangles.points_to_barycentric(self.triangles[triangles], points)
        bary = np.nan_to_num(np.clip(bary, 0.0, 1.0))
        total = bary.sum(axis=1)
        degenerate = total <= 1e-12
        bary[degenerate] = (1.0, 0.0, 0.0)
        total[degenerate] = 1.0
        return bary / total[:, None]

    def interpolate(self, result: ProjectionResult, values, fill=np.nan) -> np.ndarray:
        """
        Interpolate per-reference-vertex values at projected points.

        Args:
            result: Output of ``project``
            values: (n_vertices,) or (n_vertices, d) per-vertex values
            fill: Value used where no triangle was found

        Returns:
            Interpolated values, one row per query
        """
        values = np.asarray(values, dtype=np.float64)
        shape = (len(result.found),) + values.shape[1:]
        out = np.full(shape, fill, dtype=np.float64)

        found = result.found
        if found.any():
            corners = self.faces[result.triangles[found]]
            weights = result.barycentric[found]
            if values.ndim == 1:
                out[found] = np.einsum("ij,ij->i", weights, values[corners])
            else:
                out[found] = np.einsum("ij,ijk->ik", weights, values[corners])
        return out

    def interpolate_normals(self, result: ProjectionResult) -> np.ndarray:
        normals = self.interpolate(result, self.vertex_normals, fill=0.0)
        lengths = np.linalg.norm(normals, axis=1)
        valid = lengths > 1e-300
        normals[valid] /= lengths[valid, None]
        return normals

    def distance_to_surface(self, points) -> np.ndarray:
        """Unsigned distance from each point to the reference surface."""
        return self.project(points).distances
