# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Mesh loading, saving, and diagnostics using trimesh.

Everything file related lives here so the grading core only ever sees
triangulated ``trimesh.Trimesh`` objects.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
import hashlib
import logging

import numpy as np
import trimesh

logger = logging.getLogger(__name__)


@dataclass
class MeshDiagnostics:
    """
    Diagnostic information about a mesh, before or after grading.

    Attributes:
        vertex_count: Number of vertices in the mesh
        face_count: Number of faces (triangles)
        edge_count: Number of unique edges
        surface_area: Total surface area
        bbox_min: Minimum corner of bounding box (x, y, z)
        bbox_max: Maximum corner of bounding box (x, y, z)
        bbox_diagonal: Length of bounding box diagonal
        is_watertight: True if mesh is closed (no holes)
        is_winding_consistent: True if all face normals point consistently
        boundary_edge_count: Number of edges with a single adjacent face
        component_count: Number of disconnected components
        degenerate_face_count: Number of zero-area faces
        edge_length_min: Shortest edge
        edge_length_mean: Mean edge length
        edge_length_max: Longest edge
        euler_characteristic: V - E + F (2 for closed sphere)
    """

    vertex_count: int = 0
    face_count: int = 0
    edge_count: int = 0

    surface_area: float = 0.0

    bbox_min: tuple[float, float, float] = (0.0, 0.0, 0.0)
    bbox_max: tuple[float, float, float] = (0.0, 0.0, 0.0)
    bbox_diagonal: float = 0.0

    is_watertight: bool = False
    is_winding_consistent: bool = False

    boundary_edge_count: int = 0
    component_count: int = 1
    degenerate_face_count: int = 0

    edge_length_min: float = 0.0
    edge_length_mean: float = 0.0
    edge_length_max: float = 0.0

    euler_characteristic: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "vertex_count": self.vertex_count,
            "face_count": self.face_count,
            "edge_count": self.edge_count,
            "surface_area": self.surface_area,
            "bbox_min": list(self.bbox_min),
            "bbox_max": list(self.bbox_max),
            "bbox_diagonal": self.bbox_diagonal,
            "is_watertight": self.is_watertight,
            "is_winding_consistent": self.is_winding_consistent,
            "boundary_edge_count": self.boundary_edge_count,
            "component_count": self.component_count,
            "degenerate_face_count": self.degenerate_face_count,
            "edge_length_min": self.edge_length_min,
            "edge_length_mean": self.edge_length_mean,
            "edge_length_max": self.edge_length_max,
            "euler_characteristic": self.euler_characteristic,
        }


def load_mesh(path: Union[str, Path]) -> trimesh.Trimesh:
    """
    Load a mesh from file.

    Any format trimesh reads is accepted (STL, OBJ, PLY, OFF, ...).
    Polygon faces are triangulated by trimesh on load, and scenes with
    several geometries are concatenated.

    Args:
        path: Path to mesh file

    Returns:
        trimesh.Trimesh object

    Raises:
        FileNotFoundError: If file does not exist
        ValueError: If file cannot be loaded as a mesh
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Mesh file not found: {path}")

    logger.info(f"Loading mesh from: {path}")

    try:
        mesh = trimesh.load(str(path), force="mesh")
    except Exception as e:
        raise ValueError(f"Failed to load mesh: {e}") from e

    if isinstance(mesh, trimesh.Scene):
        geometries = list(mesh.geometry.values())
        if not geometries:
            raise ValueError("No geometry found in file")
        logger.info(f"Concatenating {len(geometries)} geometries from scene")
        mesh = trimesh.util.concatenate(geometries)

    if not isinstance(mesh, trimesh.Trimesh) or len(mesh.faces) == 0:
        raise ValueError(f"No triangle surface found in {path}")

    logger.info(f"Loaded mesh: {len(mesh.vertices)} vertices, {len(mesh.faces)} faces")

    return mesh


def save_mesh(
    mesh: trimesh.Trimesh,
    path: Union[str, Path],
    file_type: Optional[str] = None,
    ascii_format: bool = False,
) -> None:
    """
    Save a mesh to file.

    Args:
        mesh: The mesh to save
        path: Output file path
        file_type: File format; derived from the extension when omitted
        ascii_format: For STL, use ASCII format instead of binary
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if file_type is None:
        file_type = path.suffix.lstrip(".").lower() or "stl"

    logger.info(f"Saving mesh to: {path}")

    if file_type.lower() == "stl" and ascii_format:
        mesh.export(str(path), file_type="stl_ascii")
    else:
        mesh.export(str(path), file_type=file_type)


def compute_fingerprint(mesh: trimesh.Trimesh) -> str:
    """SHA256 hex digest of the vertex and face arrays."""
    vertices = np.ascontiguousarray(mesh.vertices, dtype=np.float64)
    faces = np.ascontiguousarray(mesh.faces, dtype=np.int64)
    return hashlib.sha256(vertices.tobytes() + faces.tobytes()).hexdigest()


def edge_length_stats(mesh: trimesh.Trimesh) -> tuple[float, float, float]:
    """(min, mean, max) length of the unique edges, zeros for an empty mesh."""
    if len(mesh.faces) == 0:
        return 0.0, 0.0, 0.0
    edges = mesh.edges_unique
    lengths = np.linalg.norm(mesh.vertices[edges[:, 0]] - mesh.vertices[edges[:, 1]], axis=1)
    return float(lengths.min()), float(lengths.mean()), float(lengths.max())


def compute_diagnostics(mesh: trimesh.Trimesh) -> MeshDiagnostics:
    """
    Compute diagnostics for a mesh.

    Args:
        mesh: The mesh to analyze

    Returns:
        MeshDiagnostics with all computed values
    """
    diag = MeshDiagnostics()

    diag.vertex_count = len(mesh.vertices)
    diag.face_count = len(mesh.faces)

    if diag.face_count == 0:
        return diag

    diag.edge_count = len(mesh.edges_unique)
    diag.surface_area = float(mesh.area)

    bounds = mesh.bounds
    diag.bbox_min = tuple(float(x) for x in bounds[0])
    diag.bbox_max = tuple(float(x) for x in bounds[1])
    diag.bbox_diagonal = float(np.linalg.norm(bounds[1] - bounds[0]))

    diag.is_watertight = bool(mesh.is_watertight)
    diag.is_winding_consistent = bool(mesh.is_winding_consistent)

    # edges_unique_inverse maps every face edge to its unique edge
    counts = np.bincount(mesh.edges_unique_inverse, minlength=diag.edge_count)
    diag.boundary_edge_count = int(np.sum(counts == 1))

    components = trimesh.graph.connected_components(
        mesh.face_adjacency, nodes=np.arange(diag.face_count)
    )
    diag.component_count = len(components)
    diag.degenerate_face_count = int(np.sum(mesh.area_faces < 1e-10))

    diag.edge_length_min, diag.edge_length_mean, diag.edge_length_max = edge_length_stats(mesh)

    diag.euler_characteristic = diag.vertex_count - diag.edge_count + diag.face_count

    return diag


def format_diagnostics(diag: MeshDiagnostics, title: str = "Mesh Diagnostics") -> str:
    """
    Format diagnostics as a human-readable string.

    Args:
        diag: The diagnostics to format
        title: Title for the output

    Returns:
        Formatted string
    """
    lines = [
        f"\n{title}",
        "=" * 50,
        f"Vertices: {diag.vertex_count:,}",
        f"Faces: {diag.face_count:,}",
        f"Edges: {diag.edge_count:,}",
        f"Surface Area: {diag.surface_area:.4f}",
        f"Bbox Diagonal: {diag.bbox_diagonal:.4f}",
        "",
        f"Edge Length: min {diag.edge_length_min:.4f}, "
        f"mean {diag.edge_length_mean:.4f}, max {diag.edge_length_max:.4f}",
        "",
        f"Watertight: {diag.is_watertight}",
        f"Winding Consistent: {diag.is_winding_consistent}",
        f"Boundary Edges: {diag.boundary_edge_count}",
        f"Components: {diag.component_count}",
        f"Degenerate Faces: {diag.degenerate_face_count}",
        f"Euler Characteristic: {diag.euler_characteristic}",
        "=" * 50,
    ]
    return "\n".join(lines)
