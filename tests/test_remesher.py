# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""Tests for the remeshing phases and complete grading runs."""

import json

import numpy as np
import pytest
import trimesh

from meshgrade.core.config import DEFAULT_ITERATIONS, ConfigurationError, GradingConfig
from meshgrade.core.grader import MeshGrader, grade
from meshgrade.core.halfedge import HalfedgeMesh
from meshgrade.core.landmarks import resolve_landmarks
from meshgrade.core.projection import ReferenceSurface
from meshgrade.core.remesher import (
    COLLAPSE_RATIO,
    SPLIT_RATIO,
    IncrementalRemesher,
    IterationStats,
)
from meshgrade.core.sizing import TARGET_LENGTH, SizingFieldEstimator, resolve_normalization
from meshgrade.core.validation import validate_grading


def edge_lengths(mesh: trimesh.Trimesh) -> np.ndarray:
    edges = mesh.edges_unique
    return np.linalg.norm(mesh.vertices[edges[:, 0]] - mesh.vertices[edges[:, 1]], axis=1)


def make_remesher(source: trimesh.Trimesh, config: GradingConfig, project: bool = True):
    mesh = HalfedgeMesh.from_trimesh(source)
    bounds = source.bounds
    landmarks = resolve_landmarks(bounds, config)
    estimator = SizingFieldEstimator(config, landmarks, resolve_normalization(config, bounds))
    field = estimator.estimate(mesh)
    reference = ReferenceSurface(source.vertices, source.faces) if project else None
    return IncrementalRemesher(mesh, config, estimator, reference, field)


def uniform_config(length: float, **kwargs) -> GradingConfig:
    """Distance-mode config with a constant target length."""
    return GradingConfig(min_length=length, max_length=length, mode="distance", **kwargs)


def valence_deviation(mesh: HalfedgeMesh) -> int:
    return sum(
        (mesh.valence(v) - (4 if mesh.is_boundary_vertex(v) else 6)) ** 2
        for v in mesh.vertices()
    )


class TestPhases:
    """Single phases of one iteration."""

    def test_split_reaches_target(self, sphere):
        remesher = make_remesher(sphere, uniform_config(2.0))
        stats = IterationStats(iteration=1)

        remesher.split_long_edges(stats)

        mesh = remesher.mesh
        assert stats.splits > 0
        assert mesh.edge_lengths().max() <= SPLIT_RATIO * 2.0 + 1e-9
        assert mesh.is_manifold()

    def test_split_vertices_are_projected(self, sphere):
        remesher = make_remesher(sphere, uniform_config(2.0))
        remesher.split_long_edges(IterationStats(iteration=1))

        distances = remesher.reference.distance_to_surface(remesher.mesh.points)
        assert distances.max() < 1e-6

    def test_split_inherits_target(self, sphere):
        remesher = make_remesher(sphere, uniform_config(2.0))
        n = remesher.mesh.vertices_size

        remesher.split_long_edges(IterationStats(iteration=1))

        targets = remesher.mesh.vertex_property(TARGET_LENGTH)
        assert np.allclose(targets[n:], 2.0)

    def test_collapse_coarsens(self, sphere):
        remesher = make_remesher(sphere, uniform_config(10.0))
        stats = IterationStats(iteration=1)
        before = remesher.mesh.n_vertices

        remesher.collapse_short_edges(stats)

        mesh = remesher.mesh
        assert stats.collapses > 0
        assert mesh.n_vertices == before - stats.collapses
        assert not mesh.has_garbage
        assert mesh.is_manifold()
        assert mesh.edge_lengths().max() <= SPLIT_RATIO * 10.0 + 1e-9

    def test_collapse_keeps_boundary(self, disc):
        remesher = make_remesher(disc, uniform_config(8.0))
        boundary_before = sum(
            1 for v in remesher.mesh.vertices() if remesher.mesh.is_boundary_vertex(v)
        )

        remesher.collapse_short_edges(IterationStats(iteration=1))

        mesh = remesher.mesh
        radius = np.linalg.norm(mesh.points[:, :2], axis=1)
        for v in mesh.vertices():
            if mesh.is_boundary_vertex(v):
                assert radius[v] > 39.9
        assert mesh.is_manifold()
        boundary_after = sum(1 for v in mesh.vertices() if mesh.is_boundary_vertex(v))
        assert 3 <= boundary_after <= boundary_before

    def test_flips_improve_valence(self, sphere):
        remesher = make_remesher(sphere, uniform_config(2.0))
        remesher.split_long_edges(IterationStats(iteration=1))
        before = valence_deviation(remesher.mesh)
        stats = IterationStats(iteration=1)

        remesher.flip_edges(stats)

        assert stats.flips > 0
        assert valence_deviation(remesher.mesh) < before
        assert remesher.mesh.is_manifold()

    def test_relaxation_stays_on_surface(self, sphere):
        remesher = make_remesher(sphere, uniform_config(3.0))
        remesher.split_long_edges(IterationStats(iteration=1))

        remesher.tangential_relaxation(IterationStats(iteration=1))

        radius = np.linalg.norm(remesher.mesh.points, axis=1)
        assert np.all(radius <= 20.0 + 1e-6)
        assert np.all(radius > 19.4)

    def test_relaxation_keeps_boundary_fixed(self, disc):
        remesher = make_remesher(disc, uniform_config(4.0))
        mesh = remesher.mesh
        boundary = [v for v in mesh.vertices() if mesh.is_boundary_vertex(v)]
        before = mesh.points[boundary].copy()

        remesher.tangential_relaxation(IterationStats(iteration=1))

        assert np.array_equal(mesh.points[boundary], before)
        assert np.allclose(mesh.points[:, 2], 0.0)

    def test_remove_caps(self):
        vertices = np.array(
            [[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [1.0, 0.01, 0.0], [1.0, -1.0, 0.0]]
        )
        source = trimesh.Trimesh(vertices=vertices, faces=[[0, 1, 2], [1, 0, 3]], process=False)
        remesher = make_remesher(source, uniform_config(1.0))

        assert remesher.remove_caps() == 1
        assert remesher.mesh.find_halfedge(2, 3) != -1
        assert remesher.stats.caps_removed == 1

    def test_cap_flip_that_would_fold_is_skipped(self):
        """A cap in a non-convex quad stays: flipping it would invert a face."""
        vertices = np.array(
            [[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [1.0, 0.01, 0.0], [-1.0, -0.001, 0.0]]
        )
        source = trimesh.Trimesh(vertices=vertices, faces=[[0, 1, 2], [1, 0, 3]], process=False)
        remesher = make_remesher(source, uniform_config(1.0))

        assert remesher.remove_caps() == 0
        assert remesher.mesh.find_halfedge(0, 1) != -1
        assert remesher.mesh.find_halfedge(2, 3) == -1
        assert remesher.stats.caps_removed == 0


class TestScenarios:
    """End-to-end grading runs."""

    def test_sphere_hybrid_uniform(self, sphere):
        """Uniform curvature gives near-uniform edges at the curvature target."""
        original = sphere.copy()
        config = GradingConfig(min_length=1.0, max_length=5.0, error_tolerance=0.1, iterations=5)

        result = MeshGrader(config).run(sphere)

        lengths = edge_lengths(sphere)
        assert 2.5 < lengths.mean() < 5.0
        assert lengths.std() / lengths.mean() < 0.4
        assert lengths.min() >= 0.5
        assert lengths.max() <= 10.0

        assert sphere.is_watertight
        assert HalfedgeMesh.from_trimesh(sphere).is_manifold()

        distances = ReferenceSurface(original.vertices, original.faces).distance_to_surface(
            sphere.vertices
        )
        assert distances.max() <= 2 * 0.1

        assert result.vertex_count == len(sphere.vertices)
        assert result.original_vertex_count == len(original.vertices)
        assert result.stats.total_splits > 0
        assert len(result.stats.iterations) == 5

    def test_disc_distance_grading(self, disc):
        """Fine at the landmark, coarse from the normalization distance on."""
        landmark = np.array([-10.0, 0.0, 0.0])
        config = GradingConfig(
            min_length=1.0,
            max_length=10.0,
            mode="distance",
            side="left",
            left_ear_channel=tuple(landmark),
            distance_normalization=20.0,
            iterations=5,
        )

        MeshGrader(config).run(disc)

        edges = disc.edges_unique
        midpoints = disc.vertices[edges].mean(axis=1)
        lengths = edge_lengths(disc)
        distance = np.linalg.norm(midpoints - landmark, axis=1)

        near = lengths[distance < 3.0]
        far = lengths[distance >= 25.0]
        assert len(near) > 0 and len(far) > 0
        assert near.mean() < 2.5
        assert far.mean() > 5.0
        assert lengths.min() >= 0.5
        assert lengths.max() <= 20.0

    def test_invalid_config_touches_nothing(self, sphere):
        vertices = sphere.vertices.copy()
        faces = sphere.faces.copy()
        config = GradingConfig(min_length=5.0, max_length=1.0)

        with pytest.raises(ConfigurationError):
            grade(sphere, config)

        assert np.array_equal(sphere.vertices, vertices)
        assert np.array_equal(sphere.faces, faces)

    def test_boundary_loop_preserved(self, disc):
        config = GradingConfig(min_length=1.0, max_length=5.0, side="none", iterations=5)

        grade(disc, config)

        assert HalfedgeMesh.from_trimesh(disc).is_manifold()
        assert len(disc.vertices) - len(disc.edges_unique) + len(disc.faces) == 1

        counts = np.bincount(disc.edges_unique_inverse, minlength=len(disc.edges_unique))
        boundary_edges = disc.edges_unique[counts == 1]
        loops = trimesh.graph.connected_components(boundary_edges)
        assert len(loops) == 1
        assert np.all(np.bincount(boundary_edges.ravel())[np.unique(boundary_edges)] == 2)

        radius = np.linalg.norm(disc.vertices[np.unique(boundary_edges)][:, :2], axis=1)
        assert np.all(radius > 39.0)

    def test_head_default_iterations_acceptable(self, head):
        """A full default run on a head passes the post-grading validation."""
        original = head.copy()
        config = GradingConfig(
            min_length=2.0,
            max_length=10.0,
            error_tolerance=0.5,
            side="left",
            left_ear_channel=(0.0, -75.0, 0.0),
        )
        assert config.iterations == DEFAULT_ITERATIONS

        MeshGrader(config).run(head)

        validation = validate_grading(original, head, config)
        assert validation.is_acceptable
        assert head.is_watertight


class TestGrader:
    def test_grade_returns_same_object(self, sphere):
        config = GradingConfig(min_length=2.0, max_length=6.0, iterations=2)
        assert grade(sphere, config) is sphere

    def test_without_projection(self, sphere):
        config = GradingConfig(
            min_length=2.0, max_length=6.0, iterations=3, project_to_original=False
        )
        result = MeshGrader(config).run(sphere)

        assert result.stats.failed_projections == 0
        assert HalfedgeMesh.from_trimesh(sphere).is_manifold()

    def test_progress_callback(self, sphere):
        calls = []
        config = GradingConfig(min_length=2.0, max_length=6.0, iterations=3)

        MeshGrader(config).run(sphere, progress_callback=lambda i, n: calls.append((i, n)))

        assert calls == [(1, 3), (2, 3), (3, 3)]

    def test_convergence_early_exit(self, sphere):
        config = GradingConfig(
            min_length=2.0, max_length=6.0, iterations=10, convergence_tolerance=1.0
        )
        result = MeshGrader(config).run(sphere)

        assert result.stats.converged_early
        assert len(result.stats.iterations) == 2

    def test_zero_iterations_keeps_mesh(self, sphere):
        vertices = sphere.vertices.copy()
        config = GradingConfig(min_length=2.0, max_length=6.0, iterations=0)

        result = MeshGrader(config).run(sphere)

        assert result.vertex_count == len(vertices)
        assert np.allclose(sphere.vertices, vertices)

    def test_feature_vertex_survives(self, sphere):
        position = sphere.vertices[0].copy()
        config = GradingConfig(min_length=4.0, max_length=8.0, iterations=3)

        MeshGrader(config).run(sphere, feature_vertices=[0])

        assert np.any(np.all(np.isclose(sphere.vertices, position), axis=1))

    def test_result_serializable(self, sphere):
        config = GradingConfig(min_length=2.0, max_length=6.0, iterations=1, side="left")
        result = MeshGrader(config).run(sphere)

        data = json.loads(json.dumps(result.to_dict()))

        assert data["landmarks"]["left_estimated"] is True
        assert data["stats"]["iterations"][0]["iteration"] == 1

    def test_rejects_empty_mesh(self):
        mesh = trimesh.Trimesh(vertices=np.zeros((3, 3)), faces=np.zeros((0, 3), dtype=int))
        with pytest.raises(ValueError):
            MeshGrader(GradingConfig(min_length=1.0, max_length=2.0)).run(mesh)


def test_thresholds():
    assert SPLIT_RATIO == pytest.approx(4.0 / 3.0)
    assert COLLAPSE_RATIO == pytest.approx(4.0 / 5.0)
