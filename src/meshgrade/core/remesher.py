# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Incremental remeshing toward a sizing field.

Each iteration runs, in this order and each over the whole mesh:

1. refresh the sizing field (from the second iteration on)
2. split edges longer than 4/3 of their target length
3. collapse edges shorter than 4/5 of their target length
4. flip edges to bring vertex valences toward 6 (4 on the boundary)
5. tangential relaxation of interior vertices
6. projection of moved vertices back onto the reference surface

The target length of an edge is the mean of its endpoint values. Rejected
operations are counted, never raised.
"""

from dataclasses import asdict, dataclass, field
from typing import Callable, Optional
import logging
import math

import numpy as np

from .config import GradingConfig
from .halfedge import HalfedgeMesh
from .projection import ReferenceSurface
from .sizing import (
    LOW_CONFIDENCE,
    MEAN_CURVATURE,
    TARGET_LENGTH,
    SizingField,
    SizingFieldEstimator,
)

logger = logging.getLogger(__name__)

IS_FEATURE = "is_feature"

SPLIT_RATIO = 4.0 / 3.0
COLLAPSE_RATIO = 4.0 / 5.0

# split/collapse/flip sweeps per phase
MAX_SWEEPS = 10

# flip away triangles with an angle above this
CAP_ANGLE_DEG = 170.0


@dataclass
class IterationStats:
    """Counters of one remeshing iteration."""

    iteration: int
    splits: int = 0
    collapses: int = 0
    flips: int = 0
    rejected_collapses: int = 0
    rejected_flips: int = 0
    failed_projections: int = 0
    vertex_count: int = 0
    face_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RemeshStats:
    """Counters of a complete remeshing run."""

    iterations: list[IterationStats] = field(default_factory=list)
    caps_removed: int = 0
    converged_early: bool = False

    @property
    def total_splits(self) -> int:
        return sum(it.splits for it in self.iterations)

    @property
    def total_collapses(self) -> int:
        return sum(it.collapses for it in self.iterations)

    @property
    def total_flips(self) -> int:
        return sum(it.flips for it in self.iterations)

    @property
    def skipped_operations(self) -> int:
        """Collapses and flips rejected to keep the mesh valid."""
        return sum(it.rejected_collapses + it.rejected_flips for it in self.iterations)

    @property
    def failed_projections(self) -> int:
        return sum(it.failed_projections for it in self.iterations)

    def to_dict(self) -> dict:
        return {
            "iterations": [it.to_dict() for it in self.iterations],
            "caps_removed": self.caps_removed,
            "converged_early": self.converged_early,
            "total_splits": self.total_splits,
            "total_collapses": self.total_collapses,
            "total_flips": self.total_flips,
            "skipped_operations": self.skipped_operations,
            "failed_projections": self.failed_projections,
        }


def _unit(v: np.ndarray) -> np.ndarray:
    length = math.sqrt(float(v @ v))
    if length > 1e-300:
        return v / length
    return v


class IncrementalRemesher:
    """
    Drives a HalfedgeMesh toward the sizing field of an estimator.

    Args:
        mesh: Mesh to remesh in place; its ``target_length`` property must
            already hold the initial sizing field
        config: Validated grading configuration
        estimator: Sizing field estimator for this run
        reference: Reference surface to project onto (None disables
            projection)
        reference_field: Sizing field computed on the reference surface,
            sampled when refreshing hybrid sizing
    """

    def __init__(
        self,
        mesh: HalfedgeMesh,
        config: GradingConfig,
        estimator: SizingFieldEstimator,
        reference: Optional[ReferenceSurface] = None,
        reference_field: Optional[SizingField] = None,
    ):
        self.mesh = mesh
        self.config = config
        self.estimator = estimator
        self.reference = reference
        self.reference_field = reference_field
        self.stats = RemeshStats()

        mesh.add_vertex_property(TARGET_LENGTH, default=config.max_length)
        mesh.add_vertex_property(MEAN_CURVATURE)
        mesh.add_vertex_property(LOW_CONFIDENCE, dtype=bool, default=False)
        mesh.add_vertex_property(IS_FEATURE, dtype=bool, default=False)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self, progress_callback: Optional[Callable[[int, int], None]] = None) -> RemeshStats:
        """
        Run the configured number of iterations and post-process.

        Args:
            progress_callback: Optional callback(iteration, total_iterations)
        """
        previous_count = self.mesh.n_vertices

        total = self.config.iterations

        for i in range(total):
            if progress_callback:
                progress_callback(i + 1, total)

            it = IterationStats(iteration=i + 1)

            if i > 0:
                self.update_sizing(it)

            self.split_long_edges(it)
            self.collapse_short_edges(it)
            self.flip_edges(it)
            self.tangential_relaxation(it)

            it.vertex_count = self.mesh.n_vertices
            it.face_count = self.mesh.n_faces
            self.stats.iterations.append(it)

            logger.debug(
                f"Iteration {it.iteration}: v={it.vertex_count}, f={it.face_count}, "
                f"splits={it.splits}, collapses={it.collapses}, flips={it.flips}, "
                f"skipped={it.rejected_collapses + it.rejected_flips}"
            )

            tolerance = self.config.convergence_tolerance
            if tolerance is not None and i > 0:
                change = abs(it.vertex_count - previous_count) / max(previous_count, 1)
                if change <= tolerance:
                    self.stats.converged_early = True
                    logger.info(f"Converged after {it.iteration} iterations")
                    break
            previous_count = it.vertex_count

        self.remove_caps()
        self.mesh.garbage_collection()

        logger.info(
            f"Remeshing done: {self.stats.total_splits} splits, "
            f"{self.stats.total_collapses} collapses, {self.stats.total_flips} flips, "
            f"{self.stats.skipped_operations} skipped"
        )
        return self.stats

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def _target(self, v: int) -> float:
        return self.mesh.vertex_value(TARGET_LENGTH, v)

    def _is_too_long(self, v0: int, v1: int) -> bool:
        limit = SPLIT_RATIO * 0.5 * (self._target(v0) + self._target(v1))
        return self.mesh.distance(v0, v1) > limit

    def _is_too_short(self, v0: int, v1: int) -> bool:
        limit = COLLAPSE_RATIO * 0.5 * (self._target(v0) + self._target(v1))
        return self.mesh.distance(v0, v1) < limit

    def update_sizing(self, stats: IterationStats) -> None:
        """
        Recompute target lengths after connectivity changed.

        Distance sizing depends on positions only and is recomputed
        directly. Hybrid sizing is sampled from the reference field at the
        closest reference point, or re-estimated on the current mesh when
        there is no reference.
        """
        mesh = self.mesh

        if self.estimator.strategy == "hybrid" and self.reference is not None and self.reference_field is not None:
            ids = np.array(
                [v for v in mesh.vertices() if not mesh.is_isolated(v)], dtype=np.int64
            )
            if len(ids) == 0:
                return
            result = self.reference.project(mesh.points[ids])
            stats.failed_projections += result.failed_count

            found = ids[result.found]
            target = self.reference.interpolate(result, self.reference_field.target_length)
            curvature = self.reference.interpolate(result, self.reference_field.mean_curvature)
            mesh.vertex_property(TARGET_LENGTH)[found] = target[result.found]
            mesh.vertex_property(MEAN_CURVATURE)[found] = curvature[result.found]
        else:
            self.estimator.estimate(mesh)

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def split_long_edges(self, stats: IterationStats) -> None:
        mesh = self.mesh

        for _ in range(MAX_SWEEPS):
            created = []

            for e in range(mesh.edges_size):
                if mesh.is_deleted_edge(e):
                    continue
                v0, v1 = mesh.edge_vertices(e)
                if not self._is_too_long(v0, v1):
                    continue

                position = 0.5 * (mesh.position(v0) + mesh.position(v1))
                target = 0.5 * (self._target(v0) + self._target(v1))
                curvature = 0.5 * (
                    mesh.vertex_value(MEAN_CURVATURE, v0) + mesh.vertex_value(MEAN_CURVATURE, v1)
                )

                v = mesh.split_edge(e, position)
                mesh.set_vertex_value(TARGET_LENGTH, v, target)
                mesh.set_vertex_value(MEAN_CURVATURE, v, curvature)
                created.append(v)

            if not created:
                break

            stats.splits += len(created)
            self.project(created, stats)

    def collapse_short_edges(self, stats: IterationStats) -> None:
        mesh = self.mesh

        for _ in range(MAX_SWEEPS):
            changed = False

            for e in range(mesh.edges_size):
                if mesh.is_deleted_edge(e):
                    continue

                # h10 runs v1 -> v0, h01 runs v0 -> v1
                h10 = mesh.halfedge(e, 0)
                h01 = mesh.halfedge(e, 1)
                v0 = mesh.to_vertex(h10)
                v1 = mesh.to_vertex(h01)

                if not self._is_too_short(v0, v1):
                    continue

                b0 = mesh.is_boundary_vertex(v0)
                b1 = mesh.is_boundary_vertex(v1)

                # remove v0 / remove v1
                remove0 = True
                remove1 = True

                if b0 and b1:
                    # would pinch the boundary loop
                    if not mesh.is_boundary_edge(e):
                        stats.rejected_collapses += 1
                        continue
                elif b0:
                    remove0 = False
                elif b1:
                    remove1 = False

                if mesh.vertex_value(IS_FEATURE, v0):
                    remove0 = False
                if mesh.vertex_value(IS_FEATURE, v1):
                    remove1 = False

                remove0 = remove0 and mesh.is_collapse_ok(h01)
                remove1 = remove1 and mesh.is_collapse_ok(h10)

                # keep the vertex with the higher valence
                if remove0 and remove1:
                    if mesh.valence(v0) < mesh.valence(v1):
                        remove1 = False
                    else:
                        remove0 = False

                if remove1 and self._collapse_creates_long_edge(keep=v0, remove=v1):
                    remove1 = False
                elif remove0 and self._collapse_creates_long_edge(keep=v1, remove=v0):
                    remove0 = False

                if remove1:
                    mesh.collapse(h10)
                elif remove0:
                    mesh.collapse(h01)
                else:
                    stats.rejected_collapses += 1
                    continue

                stats.collapses += 1
                changed = True

            if not changed:
                break

        mesh.garbage_collection()

    def _collapse_creates_long_edge(self, keep: int, remove: int) -> bool:
        for vv in self.mesh.one_ring(remove):
            if vv != keep and self._is_too_long(keep, vv):
                return True
        return False

    def flip_edges(self, stats: IterationStats) -> None:
        mesh = self.mesh
        n = mesh.vertices_size

        valence = [0 if mesh.is_deleted_vertex(v) else mesh.valence(v) for v in range(n)]
        optimum = [4 if mesh.is_boundary_vertex(v) else 6 for v in range(n)]

        for _ in range(MAX_SWEEPS):
            changed = False

            for e in range(mesh.edges_size):
                if mesh.is_deleted_edge(e) or mesh.is_boundary_edge(e):
                    continue

                h = mesh.halfedge(e, 0)
                v0 = mesh.to_vertex(h)
                v2 = mesh.to_vertex(mesh.next_halfedge(h))
                h = mesh.halfedge(e, 1)
                v1 = mesh.to_vertex(h)
                v3 = mesh.to_vertex(mesh.next_halfedge(h))

                if mesh.vertex_value(IS_FEATURE, v0) and mesh.vertex_value(IS_FEATURE, v1):
                    continue

                before = (
                    (valence[v0] - optimum[v0]) ** 2
                    + (valence[v1] - optimum[v1]) ** 2
                    + (valence[v2] - optimum[v2]) ** 2
                    + (valence[v3] - optimum[v3]) ** 2
                )
                after = (
                    (valence[v0] - 1 - optimum[v0]) ** 2
                    + (valence[v1] - 1 - optimum[v1]) ** 2
                    + (valence[v2] + 1 - optimum[v2]) ** 2
                    + (valence[v3] + 1 - optimum[v3]) ** 2
                )
                if after >= before:
                    continue

                if not mesh.is_flip_ok(e) or not self._flip_is_valid(v0, v1, v2, v3):
                    stats.rejected_flips += 1
                    continue

                mesh.flip(e)
                valence[v0] -= 1
                valence[v1] -= 1
                valence[v2] += 1
                valence[v3] += 1
                stats.flips += 1
                changed = True

            if not changed:
                break

    def _flip_is_valid(self, v0: int, v1: int, v2: int, v3: int, check_length: bool = True) -> bool:
        """
        Check the geometry of flipping edge v0-v1 into v2-v3.

        Faces (v1, v0, v2) and (v0, v1, v3) become (v0, v2, v3) and
        (v2, v1, v3); both must be non-degenerate, keep the orientation
        of the old pair, and (with ``check_length``) the new edge must not
        be too long.
        """
        points = self.mesh.points
        p0, p1, p2, p3 = points[v0], points[v1], points[v2], points[v3]

        old_normal = _unit(np.cross(p0 - p1, p2 - p1)) + _unit(np.cross(p1 - p0, p3 - p0))

        scale = max(float((p0 - p1) @ (p0 - p1)), float((p2 - p3) @ (p2 - p3)))
        for normal in (np.cross(p2 - p0, p3 - p0), np.cross(p1 - p2, p3 - p2)):
            if math.sqrt(float(normal @ normal)) <= 1e-8 * scale:
                return False
            if float(normal @ old_normal) <= 0.0:
                return False

        return not (check_length and self._is_too_long(v2, v3))

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def tangential_relaxation(self, stats: IterationStats) -> None:
        """
        Move interior vertices toward their area/size weighted centroid.

        Triangles are weighted by area over the squared mean target length
        of their corners; the displacement is restricted to the tangent
        plane of the vertex.
        """
        mesh = self.mesh
        n = mesh.vertices_size
        steps = self.config.smoothing_steps
        if n == 0 or steps == 0:
            return

        feature = mesh.vertex_property(IS_FEATURE)
        movable = np.array(
            [
                not mesh.is_deleted_vertex(v)
                and not mesh.is_boundary_vertex(v)
                and not feature[v]
                for v in range(n)
            ],
            dtype=bool,
        )
        if not movable.any():
            return

        faces = mesh.face_array()
        factor = self.config.relaxation_factor

        for _ in range(steps):
            points = mesh.points
            target = mesh.vertex_property(TARGET_LENGTH)

            tri = points[faces]
            centers = tri.mean(axis=1)
            area = np.linalg.norm(np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0]), axis=1)
            # degenerate triangles would zero out every weight
            area[area == 0.0] = 1.0
            size = target[faces].mean(axis=1)
            weight = area / (size * size)

            num = np.zeros((n, 3))
            den = np.zeros(n)
            for c in range(3):
                np.add.at(num, faces[:, c], weight[:, None] * centers)
                np.add.at(den, faces[:, c], weight)

            ids = np.flatnonzero(movable & (den > 0))
            normals = mesh.vertex_normals()[ids]

            update = num[ids] / den[ids, None] - points[ids]
            update -= normals * np.einsum("ij,ij->i", update, normals)[:, None]
            points[ids] += factor * update

        self.project(np.flatnonzero(movable).tolist(), stats)

    def project(self, vertices: list[int], stats: IterationStats) -> None:
        """Snap ``vertices`` onto the reference surface (no-op without one)."""
        if self.reference is None or not vertices:
            return

        ids = np.asarray(vertices, dtype=np.int64)
        points = self.mesh.points
        result = self.reference.project(points[ids])
        points[ids[result.found]] = result.points[result.found]
        stats.failed_projections += result.failed_count

    def remove_caps(self) -> int:
        """Flip edges opposite to angles above CAP_ANGLE_DEG unless the flip would fold a face."""
        mesh = self.mesh
        points = mesh.points
        threshold = math.cos(math.radians(CAP_ANGLE_DEG))
        removed = 0

        for e in range(mesh.edges_size):
            if mesh.is_deleted_edge(e) or not mesh.is_flip_ok(e):
                continue

            h = mesh.halfedge(e, 0)
            va = mesh.to_vertex(h)
            vb = mesh.to_vertex(mesh.next_halfedge(h))
            h = mesh.halfedge(e, 1)
            vc = mesh.to_vertex(h)
            vd = mesh.to_vertex(mesh.next_halfedge(h))

            a, b, c, d = points[va], points[vb], points[vc], points[vd]
            a0 = float(_unit(a - b) @ _unit(c - b))
            a1 = float(_unit(a - d) @ _unit(c - d))

            if a0 < a1:
                amin, v = a0, vb
            else:
                amin, v = a1, vd

            if amin >= threshold or mesh.vertex_value(IS_FEATURE, v):
                continue
            if not self._flip_is_valid(va, vc, vb, vd, check_length=False):
                continue

            mesh.flip(e)
            removed += 1

        self.stats.caps_removed += removed
        if removed:
            logger.debug(f"Removed {removed} caps")
        return removed
