# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""Tests for projection onto the reference surface."""

import numpy as np
import pytest
import trimesh

from meshgrade.core.projection import ReferenceSurface


class TestProjection:
    def test_points_land_on_sphere(self, sphere):
        reference = ReferenceSurface(sphere.vertices, sphere.faces)
        queries = sphere.vertices * 1.1 + np.array([0.3, -0.2, 0.1])

        result = reference.project(queries)

        assert result.found.all()
        assert result.failed_count == 0
        radius = np.linalg.norm(result.points, axis=1)
        # facets sag below the circumscribed sphere by well under a millimetre
        assert np.all(radius <= 20.0 + 1e-9)
        assert np.all(radius > 19.4)
        assert np.all(result.triangles >= 0)

    def test_vertices_project_to_themselves(self, sphere):
        reference = ReferenceSurface(sphere.vertices, sphere.faces)
        result = reference.project(sphere.vertices)

        assert np.allclose(result.points, sphere.vertices, atol=1e-9)
        assert np.allclose(result.distances, 0.0, atol=1e-9)

    def test_projection_is_closest(self, disc):
        """On a flat disc the closest point is the orthogonal foot."""
        reference = ReferenceSurface(disc.vertices, disc.faces)
        queries = np.array([[3.0, -4.0, 5.0], [-10.0, 0.0, -2.0]])

        result = reference.project(queries)

        assert np.allclose(result.points, [[3.0, -4.0, 0.0], [-10.0, 0.0, 0.0]])
        assert np.allclose(result.distances, [5.0, 2.0])

    def test_large_triangle_beats_many_small_ones(self):
        """A big triangle with a distant centroid still wins when it is closest."""
        vertices = [[0.0, 0.0, 0.0], [100.0, 0.0, 0.0], [0.0, 100.0, 0.0]]
        faces = [[0, 1, 2]]
        for i in range(40):
            base = np.array([11.0 + 0.05 * i, 10.0, 3.0])
            start = len(vertices)
            vertices.extend([base, base + [0.1, 0.0, 0.0], base + [0.0, 0.1, 0.0]])
            faces.append([start, start + 1, start + 2])
        reference = ReferenceSurface(np.array(vertices), np.array(faces))

        result = reference.project(np.array([[12.0, 10.0, 1.0]]))

        assert result.triangles[0] == 0
        assert result.distances[0] == pytest.approx(1.0)
        assert np.allclose(result.points[0], [12.0, 10.0, 0.0])

    def test_matches_brute_force(self):
        """Mixed triangle sizes give the same distances as testing every triangle."""
        rng = np.random.default_rng(7)
        vertices = [[0.0, 0.0, 0.0], [100.0, 0.0, 0.0], [0.0, 100.0, 0.0]]
        faces = [[0, 1, 2]]
        for base in rng.uniform([5.0, 5.0, 1.0], [40.0, 40.0, 4.0], size=(60, 3)):
            start = len(vertices)
            vertices.extend([base, base + [0.2, 0.0, 0.0], base + [0.0, 0.2, 0.05]])
            faces.append([start, start + 1, start + 2])
        vertices = np.array(vertices)
        faces = np.array(faces)
        reference = ReferenceSurface(vertices, faces, candidates=4)
        queries = rng.uniform([0.0, 0.0, -3.0], [50.0, 50.0, 6.0], size=(50, 3))

        result = reference.project(queries)

        triangles = vertices[faces]
        expected = np.empty(len(queries))
        for i, query in enumerate(queries):
            closest = trimesh.triangles.closest_point(triangles, np.tile(query, (len(faces), 1)))
            expected[i] = np.linalg.norm(closest - query, axis=1).min()
        assert np.allclose(result.distances, expected)

    def test_far_point_not_projected(self, sphere):
        """Nothing within the search radius: the point is kept as is."""
        reference = ReferenceSurface(sphere.vertices, sphere.faces, search_radius=1.0)
        query = np.array([[0.0, 0.0, 100.0]])

        result = reference.project(query)

        assert not result.found[0]
        assert result.failed_count == 1
        assert result.triangles[0] == -1
        assert np.array_equal(result.points, query)
        assert np.isinf(result.distances[0])

    def test_empty_query(self, sphere):
        result = ReferenceSurface(sphere.vertices, sphere.faces).project(np.zeros((0, 3)))
        assert len(result.points) == 0


class TestInterpolation:
    def test_linear_field_reproduced(self, disc):
        """Barycentric interpolation is exact for linear functions."""
        reference = ReferenceSurface(disc.vertices, disc.faces)
        values = 2.0 * disc.vertices[:, 0] - disc.vertices[:, 1] + 1.0
        queries = np.array([[1.3, 2.7, 0.5], [-20.2, 11.1, -1.0]])

        result = reference.project(queries)
        interpolated = reference.interpolate(result, values)

        expected = 2.0 * queries[:, 0] - queries[:, 1] + 1.0
        assert np.allclose(interpolated, expected)

    def test_not_found_gets_fill(self, sphere):
        reference = ReferenceSurface(sphere.vertices, sphere.faces, search_radius=1.0)
        result = reference.project([[0.0, 0.0, 100.0], [0.0, 0.0, 20.0]])
        values = np.ones(len(sphere.vertices))

        interpolated = reference.interpolate(result, values)

        assert np.isnan(interpolated[0])
        assert interpolated[1] == pytest.approx(1.0)

    def test_interpolated_normals_are_unit(self, sphere):
        reference = ReferenceSurface(sphere.vertices, sphere.faces)
        queries = sphere.vertices[:20] * 1.05
        result = reference.project(queries)

        normals = reference.interpolate_normals(result)

        assert np.allclose(np.linalg.norm(normals, axis=1), 1.0)
        radial = queries / np.linalg.norm(queries, axis=1)[:, None]
        assert np.all(np.einsum("ij,ij->i", normals, radial) > 0.95)


class TestSnapshot:
    def test_reference_is_read_only(self, sphere):
        vertices = np.array(sphere.vertices)
        reference = ReferenceSurface(vertices, sphere.faces)

        vertices[:] = 0.0

        assert not reference.vertices.flags.writeable
        assert np.allclose(reference.vertices, sphere.vertices)

    def test_needs_triangles(self, sphere):
        with pytest.raises(ValueError):
            ReferenceSurface(sphere.vertices, np.zeros((0, 3), dtype=int))

    def test_distance_to_surface(self, disc):
        reference = ReferenceSurface(disc.vertices, disc.faces)
        assert reference.distance_to_surface([[0.0, 0.0, 3.0]])[0] == pytest.approx(3.0)
