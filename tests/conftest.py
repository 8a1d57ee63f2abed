# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""Pytest configuration and fixtures for meshgrade tests."""

import math

import numpy as np
import pytest
import trimesh
from scipy.spatial import Delaunay


def make_disc(radius: float = 40.0, rings: int = 10) -> trimesh.Trimesh:
    """Flat disc in the xy plane with normals along +z and one boundary loop."""
    points = [(0.0, 0.0)]
    for i in range(1, rings + 1):
        r = radius * i / rings
        count = 6 * i
        for k in range(count):
            a = 2.0 * math.pi * k / count
            points.append((r * math.cos(a), r * math.sin(a)))
    points = np.array(points)

    faces = Delaunay(points).simplices.copy()
    tri = points[faces]
    cross = (tri[:, 1, 0] - tri[:, 0, 0]) * (tri[:, 2, 1] - tri[:, 0, 1]) - (
        tri[:, 1, 1] - tri[:, 0, 1]
    ) * (tri[:, 2, 0] - tri[:, 0, 0])
    flipped = cross < 0
    faces[flipped] = faces[flipped][:, ::-1]

    vertices = np.column_stack([points, np.zeros(len(points))])
    return trimesh.Trimesh(vertices=vertices, faces=faces, process=False)


@pytest.fixture
def sphere():
    """Icosphere of radius 20 with edges of about 5.5."""
    return trimesh.creation.icosphere(subdivisions=2, radius=20.0)


@pytest.fixture
def small_sphere():
    """Coarse icosphere (12 vertices) for topology tests."""
    return trimesh.creation.icosphere(subdivisions=0, radius=10.0)


@pytest.fixture
def disc():
    """Flat disc of radius 40 with edges of about 4."""
    return make_disc()


@pytest.fixture
def head():
    """Ellipsoid roughly the size of a head (mm), centered at the origin."""
    mesh = trimesh.creation.icosphere(subdivisions=3, radius=1.0)
    mesh.apply_scale([95.0, 75.0, 115.0])
    return mesh


@pytest.fixture
def box():
    return trimesh.creation.box(extents=[10.0, 10.0, 10.0])


@pytest.fixture
def sphere_file(tmp_path, sphere):
    path = tmp_path / "sphere.stl"
    sphere.export(path)
    return path
