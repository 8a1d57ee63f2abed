# Copyright 2025 Allard Peper (Dragon Ace / DragonAceNL)
# Licensed under the Apache License, Version 2.0 (see LICENSE).

"""
Halfedge mesh store used by the remeshing engine.

Vertices, edges, faces and halfedges live in flat arrays and are addressed
by integer indices. Edge ``e`` owns halfedges ``2e`` and ``2e + 1``, so the
opposite of halfedge ``h`` is ``h ^ 1``. Removing an element only marks it
as deleted; indices stay valid (and stable) until ``garbage_collection()``
compacts the arena.

Boundary halfedges have no face (``INVALID``) and are linked into loops just
like face halfedges. The outgoing halfedge stored for a boundary vertex is
always a boundary halfedge, which makes ``is_boundary_vertex`` O(1).
"""

from typing import Iterator, Optional, Union
import logging
import math

import numpy as np
import trimesh

logger = logging.getLogger(__name__)

INVALID = -1


class HalfedgeMesh:
    """
    Arena-backed halfedge mesh for triangle surfaces.

    Per-vertex scalar attributes are stored as named numpy arrays that grow
    together with the vertex arena (see ``add_vertex_property``).
    """

    def __init__(self):
        self._points = np.zeros((0, 3), dtype=np.float64)
        self._vertices_size = 0

        # vertex -> outgoing halfedge
        self._vhalfedge: list[int] = []
        self._vdeleted: list[bool] = []

        # halfedge connectivity
        self._hto: list[int] = []
        self._hnext: list[int] = []
        self._hprev: list[int] = []
        self._hface: list[int] = []
        self._edeleted: list[bool] = []

        # face -> halfedge
        self._fhalfedge: list[int] = []
        self._fdeleted: list[bool] = []

        self._deleted_vertices = 0
        self._deleted_edges = 0
        self._deleted_faces = 0

        self._vprops: dict[str, np.ndarray] = {}
        self._vprop_defaults: dict[str, Union[float, bool]] = {}

    # ------------------------------------------------------------------
    # Construction / export
    # ------------------------------------------------------------------

    @classmethod
    def from_arrays(cls, vertices, faces) -> "HalfedgeMesh":
        """
        Build a halfedge mesh from a vertex array and a triangle array.

        Args:
            vertices: (n, 3) vertex positions
            faces: (m, 3) vertex indices per triangle

        Returns:
            HalfedgeMesh

        Raises:
            ValueError: If faces are not triangles, reference missing
                vertices, or describe a non-manifold surface
        """
        mesh = cls()
        mesh._load(vertices, faces)
        return mesh

    @classmethod
    def from_trimesh(cls, mesh: trimesh.Trimesh) -> "HalfedgeMesh":
        """Build from a trimesh.Trimesh (faces must already be triangles)."""
        return cls.from_arrays(mesh.vertices, mesh.faces)

    def _load(self, vertices, faces) -> None:
        vertices = np.asarray(vertices, dtype=np.float64)
        faces = np.asarray(faces, dtype=np.int64)

        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise ValueError(f"Vertices must have shape (n, 3), got {vertices.shape}")
        if len(faces) == 0:
            faces = faces.reshape((0, 3))
        if faces.ndim != 2 or faces.shape[1] != 3:
            raise ValueError(
                f"Only triangle faces are supported, got faces with shape {faces.shape}"
            )
        if len(faces) and (faces.min() < 0 or faces.max() >= len(vertices)):
            raise ValueError("Face indices reference vertices that do not exist")

        self.__init__()
        self._reserve(max(16, len(vertices)))
        self._points[: len(vertices)] = vertices
        self._vertices_size = len(vertices)
        self._vhalfedge = [INVALID] * len(vertices)
        self._vdeleted = [False] * len(vertices)

        directed: dict[tuple[int, int], int] = {}

        for a, b, c in faces.tolist():
            if a == b or b == c or c == a:
                raise ValueError(f"Face ({a}, {b}, {c}) repeats a vertex")

            loop = []
            for u, w in ((a, b), (b, c), (c, a)):
                h = directed.get((u, w))
                if h is None:
                    h = self._new_edge(u, w)
                    directed[(u, w)] = h
                    directed[(w, u)] = h ^ 1
                elif self._hface[h] != INVALID:
                    raise ValueError(
                        f"Edge ({u}, {w}) is used twice with the same orientation "
                        "(non-manifold edge or inconsistent winding)"
                    )
                loop.append(h)

            f = self._new_face()
            self._fhalfedge[f] = loop[0]
            for i in range(3):
                self._hface[loop[i]] = f
                self._set_next(loop[i], loop[(i + 1) % 3])
                self._vhalfedge[self._hto[loop[i] ^ 1]] = loop[i]

        # link boundary halfedges into loops
        boundary_out: dict[int, int] = {}
        for h in range(len(self._hto)):
            if self._hface[h] == INVALID:
                start = self._hto[h ^ 1]
                if start in boundary_out:
                    raise ValueError(f"Vertex {start} is non-manifold (multiple boundary fans)")
                boundary_out[start] = h

        for h in boundary_out.values():
            self._set_next(h, boundary_out[self._hto[h]])

        for v, h in boundary_out.items():
            self._vhalfedge[v] = h

        # every outgoing halfedge of a vertex must lie in one fan
        outgoing = [0] * self._vertices_size
        for h in range(len(self._hto)):
            outgoing[self._hto[h ^ 1]] += 1
        for v in range(self._vertices_size):
            if outgoing[v] and self.valence(v) != outgoing[v]:
                raise ValueError(f"Vertex {v} is non-manifold (disconnected fans)")

        isolated = sum(1 for h in self._vhalfedge if h == INVALID)
        if isolated:
            logger.debug(f"Mesh has {isolated} isolated vertices (ignored)")

    def to_arrays(self) -> tuple[np.ndarray, np.ndarray]:
        """
        Export live, referenced vertices and faces as compact arrays.

        Returns:
            Tuple of (vertices, faces)
        """
        vertices, faces, _ = self._compacted()
        return vertices, faces

    def to_trimesh(self) -> trimesh.Trimesh:
        vertices, faces = self.to_arrays()
        return trimesh.Trimesh(vertices=vertices, faces=faces, process=False)

    def _live_vertex_mask(self) -> np.ndarray:
        return np.array(
            [
                not self._vdeleted[v] and self._vhalfedge[v] != INVALID
                for v in range(self._vertices_size)
            ],
            dtype=bool,
        )

    def _compacted(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        live = self._live_vertex_mask()
        vmap = np.full(self._vertices_size, INVALID, dtype=np.int64)
        vmap[live] = np.arange(int(live.sum()))

        faces = self.face_array()
        if len(faces):
            faces = vmap[faces]
        vertices = self._points[: self._vertices_size][live].copy()
        return vertices, faces, live

    def garbage_collection(self) -> None:
        """Drop deleted elements and renumber everything, keeping vertex properties."""
        if not self.has_garbage:
            return

        vertices, faces, live = self._compacted()
        props = {name: arr[: self._vertices_size][live].copy() for name, arr in self._vprops.items()}
        defaults = dict(self._vprop_defaults)

        self._load(vertices, faces)

        for name, values in props.items():
            self.add_vertex_property(name, dtype=values.dtype, default=defaults[name])
            self._vprops[name][: len(values)] = values

    @property
    def has_garbage(self) -> bool:
        return bool(self._deleted_vertices or self._deleted_edges or self._deleted_faces)

    # ------------------------------------------------------------------
    # Sizes and iteration
    # ------------------------------------------------------------------

    @property
    def vertices_size(self) -> int:
        """Number of vertex slots, deleted ones included."""
        return self._vertices_size

    @property
    def edges_size(self) -> int:
        return len(self._edeleted)

    @property
    def faces_size(self) -> int:
        return len(self._fdeleted)

    @property
    def n_vertices(self) -> int:
        return self._vertices_size - self._deleted_vertices

    @property
    def n_edges(self) -> int:
        return len(self._edeleted) - self._deleted_edges

    @property
    def n_faces(self) -> int:
        return len(self._fdeleted) - self._deleted_faces

    def vertices(self) -> Iterator[int]:
        for v in range(self._vertices_size):
            if not self._vdeleted[v]:
                yield v

    def edges(self) -> Iterator[int]:
        for e in range(len(self._edeleted)):
            if not self._edeleted[e]:
                yield e

    def faces(self) -> Iterator[int]:
        for f in range(len(self._fdeleted)):
            if not self._fdeleted[f]:
                yield f

    def is_deleted_vertex(self, v: int) -> bool:
        return self._vdeleted[v]

    def is_deleted_edge(self, e: int) -> bool:
        return self._edeleted[e]

    def is_deleted_face(self, f: int) -> bool:
        return self._fdeleted[f]

    def is_isolated(self, v: int) -> bool:
        return self._vhalfedge[v] == INVALID

    # ------------------------------------------------------------------
    # Positions and vertex properties
    # ------------------------------------------------------------------

    @property
    def points(self) -> np.ndarray:
        """Writable (vertices_size, 3) view of vertex positions."""
        return self._points[: self._vertices_size]

    def position(self, v: int) -> np.ndarray:
        return self._points[v]

    def move_vertex(self, v: int, position) -> None:
        self._points[v] = position

    def add_vertex_property(self, name: str, dtype=np.float64, default=0.0) -> np.ndarray:
        """
        Register a per-vertex attribute array (no-op if it already exists).

        New vertices created by ``split_edge`` start with ``default``.
        """
        if name not in self._vprops:
            arr = np.full(len(self._points), default, dtype=dtype)
            self._vprops[name] = arr
            self._vprop_defaults[name] = default
        return self.vertex_property(name)

    def vertex_property(self, name: str) -> np.ndarray:
        """Writable view of a per-vertex attribute."""
        return self._vprops[name][: self._vertices_size]

    def has_vertex_property(self, name: str) -> bool:
        return name in self._vprops

    def vertex_value(self, name: str, v: int):
        return self._vprops[name][v]

    def set_vertex_value(self, name: str, v: int, value) -> None:
        self._vprops[name][v] = value

    def _reserve(self, capacity: int) -> None:
        if capacity <= len(self._points):
            return
        points = np.zeros((capacity, 3), dtype=np.float64)
        points[: len(self._points)] = self._points
        self._points = points
        for name, arr in self._vprops.items():
            grown = np.full(capacity, self._vprop_defaults[name], dtype=arr.dtype)
            grown[: len(arr)] = arr
            self._vprops[name] = grown

    def add_vertex(self, position) -> int:
        v = self._vertices_size
        if v == len(self._points):
            self._reserve(max(16, 2 * v))
        self._points[v] = position
        for name, arr in self._vprops.items():
            arr[v] = self._vprop_defaults[name]
        self._vhalfedge.append(INVALID)
        self._vdeleted.append(False)
        self._vertices_size += 1
        return v

    # ------------------------------------------------------------------
    # Low-level connectivity
    # ------------------------------------------------------------------

    def _new_edge(self, v0: int, v1: int) -> int:
        """Create edge v0-v1 and return the halfedge pointing to v1."""
        h = len(self._hto)
        self._hto.extend((v1, v0))
        self._hnext.extend((INVALID, INVALID))
        self._hprev.extend((INVALID, INVALID))
        self._hface.extend((INVALID, INVALID))
        self._edeleted.append(False)
        return h

    def _new_face(self) -> int:
        self._fhalfedge.append(INVALID)
        self._fdeleted.append(False)
        return len(self._fdeleted) - 1

    def _set_next(self, h: int, n: int) -> None:
        self._hnext[h] = n
        self._hprev[n] = h

    def halfedge(self, e: int, i: int = 0) -> int:
        return 2 * e + i

    def vertex_halfedge(self, v: int) -> int:
        return self._vhalfedge[v]

    def face_halfedge(self, f: int) -> int:
        return self._fhalfedge[f]

    def to_vertex(self, h: int) -> int:
        return self._hto[h]

    def from_vertex(self, h: int) -> int:
        return self._hto[h ^ 1]

    def next_halfedge(self, h: int) -> int:
        return self._hnext[h]

    def prev_halfedge(self, h: int) -> int:
        return self._hprev[h]

    @staticmethod
    def opposite_halfedge(h: int) -> int:
        return h ^ 1

    @staticmethod
    def edge_of(h: int) -> int:
        return h >> 1

    def face_of(self, h: int) -> int:
        return self._hface[h]

    def edge_vertices(self, e: int) -> tuple[int, int]:
        return self._hto[2 * e + 1], self._hto[2 * e]

    def _adjust_outgoing_halfedge(self, v: int) -> None:
        h = self._vhalfedge[v]
        if h == INVALID:
            return
        start = h
        while True:
            if self._hface[h] == INVALID:
                self._vhalfedge[v] = h
                return
            h = self._hnext[h ^ 1]
            if h == start:
                return

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_boundary_halfedge(self, h: int) -> bool:
        return self._hface[h] == INVALID

    def is_boundary_edge(self, e: int) -> bool:
        return self._hface[2 * e] == INVALID or self._hface[2 * e + 1] == INVALID

    def is_boundary_vertex(self, v: int) -> bool:
        h = self._vhalfedge[v]
        return h == INVALID or self._hface[h] == INVALID

    def halfedges_around(self, v: int) -> Iterator[int]:
        """Outgoing halfedges of ``v`` in rotational order."""
        h = self._vhalfedge[v]
        if h == INVALID:
            return
        start = h
        while True:
            yield h
            h = self._hnext[h ^ 1]
            if h == start:
                break

    def one_ring(self, v: int) -> list[int]:
        """Neighbor vertices of ``v`` in rotational order."""
        return [self._hto[h] for h in self.halfedges_around(v)]

    def faces_around(self, v: int) -> list[int]:
        return [self._hface[h] for h in self.halfedges_around(v) if self._hface[h] != INVALID]

    def valence(self, v: int) -> int:
        return sum(1 for _ in self.halfedges_around(v))

    def find_halfedge(self, v0: int, v1: int) -> int:
        """Halfedge from v0 to v1, or INVALID."""
        for h in self.halfedges_around(v0):
            if self._hto[h] == v1:
                return h
        return INVALID

    def face_vertices(self, f: int) -> tuple[int, int, int]:
        h0 = self._fhalfedge[f]
        h1 = self._hnext[h0]
        h2 = self._hnext[h1]
        return self._hto[h0], self._hto[h1], self._hto[h2]

    def face_array(self) -> np.ndarray:
        """(n_faces, 3) vertex indices of live faces, arena numbering."""
        faces = [self.face_vertices(f) for f in self.faces()]
        if not faces:
            return np.zeros((0, 3), dtype=np.int64)
        return np.asarray(faces, dtype=np.int64)

    def edge_array(self) -> np.ndarray:
        edges = [self.edge_vertices(e) for e in self.edges()]
        if not edges:
            return np.zeros((0, 2), dtype=np.int64)
        return np.asarray(edges, dtype=np.int64)

    def edge_length(self, e: int) -> float:
        d = self._points[self._hto[2 * e]] - self._points[self._hto[2 * e + 1]]
        return math.sqrt(float(d @ d))

    def distance(self, v0: int, v1: int) -> float:
        d = self._points[v0] - self._points[v1]
        return math.sqrt(float(d @ d))

    def edge_lengths(self) -> np.ndarray:
        edges = self.edge_array()
        if len(edges) == 0:
            return np.zeros(0)
        return np.linalg.norm(self._points[edges[:, 0]] - self._points[edges[:, 1]], axis=1)

    def face_normal(self, f: int) -> np.ndarray:
        a, b, c = self.face_vertices(f)
        n = np.cross(self._points[b] - self._points[a], self._points[c] - self._points[a])
        length = np.linalg.norm(n)
        if length > 1e-300:
            return n / length
        return np.zeros(3)

    def vertex_normal(self, v: int) -> np.ndarray:
        """Angle-weighted average of the incident face normals."""
        normal = np.zeros(3)
        p0 = self._points[v]
        for h in self.halfedges_around(v):
            if self._hface[h] == INVALID:
                continue
            d1 = self._points[self._hto[h]] - p0
            d2 = self._points[self._hto[self._hprev[h] ^ 1]] - p0
            denom = math.sqrt(float(d1 @ d1) * float(d2 @ d2))
            if denom <= 1e-300:
                continue
            cosine = min(1.0, max(-1.0, float(d1 @ d2) / denom))
            normal += math.acos(cosine) * self.face_normal(self._hface[h])
        length = np.linalg.norm(normal)
        if length > 1e-300:
            return normal / length
        return normal

    def vertex_normals(self) -> np.ndarray:
        """
        Angle-weighted vertex normals for every vertex slot.

        Vectorized over the live faces; deleted and isolated vertices get a
        zero normal.
        """
        normals = np.zeros((self._vertices_size, 3))
        faces = self.face_array()
        if len(faces) == 0:
            return normals

        tri = self._points[faces]
        face_normals = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        lengths = np.linalg.norm(face_normals, axis=1)
        valid = lengths > 1e-300
        face_normals[valid] /= lengths[valid, None]
        face_normals[~valid] = 0.0

        for corner in range(3):
            d1 = tri[:, (corner + 1) % 3] - tri[:, corner]
            d2 = tri[:, (corner + 2) % 3] - tri[:, corner]
            denom = np.linalg.norm(d1, axis=1) * np.linalg.norm(d2, axis=1)
            cosine = np.einsum("ij,ij->i", d1, d2) / np.where(denom > 1e-300, denom, 1.0)
            angle = np.arccos(np.clip(cosine, -1.0, 1.0))
            angle[denom <= 1e-300] = 0.0
            np.add.at(normals, faces[:, corner], face_normals * angle[:, None])

        lengths = np.linalg.norm(normals, axis=1)
        valid = lengths > 1e-300
        normals[valid] /= lengths[valid, None]
        return normals

    # ------------------------------------------------------------------
    # Topological operators
    # ------------------------------------------------------------------

    def split_edge(self, e: int, position) -> int:
        """
        Split edge ``e`` at ``position``, splitting each adjacent triangle in two.

        Returns:
            Index of the new vertex
        """
        v = self.add_vertex(position)

        h0 = 2 * e
        o0 = h0 ^ 1
        v2 = self._hto[o0]

        e1 = self._new_edge(v, v2)
        t1 = e1 ^ 1

        f0 = self._hface[h0]
        f3 = self._hface[o0]

        self._vhalfedge[v] = h0
        self._hto[o0] = v

        if f0 != INVALID:
            h1 = self._hnext[h0]
            h2 = self._hnext[h1]
            v1 = self._hto[h1]

            e0 = self._new_edge(v, v1)
            t0 = e0 ^ 1

            f1 = self._new_face()
            self._fhalfedge[f0] = h0
            self._fhalfedge[f1] = h2

            self._hface[h1] = f0
            self._hface[t0] = f0
            self._hface[h0] = f0

            self._hface[h2] = f1
            self._hface[t1] = f1
            self._hface[e0] = f1

            self._set_next(h0, h1)
            self._set_next(h1, t0)
            self._set_next(t0, h0)

            self._set_next(e0, h2)
            self._set_next(h2, t1)
            self._set_next(t1, e0)
        else:
            self._set_next(self._hprev[h0], t1)
            self._set_next(t1, h0)

        if f3 != INVALID:
            o1 = self._hnext[o0]
            o2 = self._hnext[o1]
            v3 = self._hto[o1]

            e2 = self._new_edge(v, v3)
            t2 = e2 ^ 1

            f2 = self._new_face()
            self._fhalfedge[f2] = o1
            self._fhalfedge[f3] = o0

            self._hface[o1] = f2
            self._hface[t2] = f2
            self._hface[e1] = f2

            self._hface[o2] = f3
            self._hface[o0] = f3
            self._hface[e2] = f3

            self._set_next(e1, o1)
            self._set_next(o1, t2)
            self._set_next(t2, e1)

            self._set_next(o0, e2)
            self._set_next(e2, o2)
            self._set_next(o2, o0)
        else:
            self._set_next(e1, self._hnext[o0])
            self._set_next(o0, e1)
            self._vhalfedge[v] = e1

        if self._vhalfedge[v2] == h0:
            self._vhalfedge[v2] = t1

        return v

    def is_collapse_ok(self, h: int) -> bool:
        """
        Check whether collapsing ``from_vertex(h)`` into ``to_vertex(h)`` keeps
        the mesh a manifold with unchanged topology.
        """
        o = h ^ 1
        v0 = self._hto[o]
        v1 = self._hto[h]
        vl = INVALID
        vr = INVALID

        # the edges v1-vl and vl-v0 must not both be boundary edges
        if self._hface[h] != INVALID:
            h1 = self._hnext[h]
            h2 = self._hnext[h1]
            vl = self._hto[h1]
            if self._hface[h1 ^ 1] == INVALID and self._hface[h2 ^ 1] == INVALID:
                return False

        # the edges v0-vr and vr-v1 must not both be boundary edges
        if self._hface[o] != INVALID:
            o1 = self._hnext[o]
            o2 = self._hnext[o1]
            vr = self._hto[o1]
            if self._hface[o1 ^ 1] == INVALID and self._hface[o2 ^ 1] == INVALID:
                return False

        # dangling edge, or a 2-gon
        if vl == vr:
            return False

        # an edge between two boundary vertices must be a boundary edge
        if (
            self.is_boundary_vertex(v0)
            and self.is_boundary_vertex(v1)
            and self._hface[h] != INVALID
            and self._hface[o] != INVALID
        ):
            return False

        # the one-rings may only share vl and vr
        ring1 = set(self.one_ring(v1))
        for vv in self.one_ring(v0):
            if vv != v1 and vv != vl and vv != vr and vv in ring1:
                return False

        return True

    def collapse(self, h: int) -> None:
        """Collapse ``from_vertex(h)`` into ``to_vertex(h)``; check ``is_collapse_ok`` first."""
        h0 = h
        h1 = self._hprev[h0]
        o0 = h0 ^ 1
        o1 = self._hnext[o0]

        self._remove_edge_helper(h0)

        if self._hnext[self._hnext[h1]] == h1:
            self._remove_loop_helper(h1)
        if self._hnext[self._hnext[o1]] == o1:
            self._remove_loop_helper(o1)

    def collapse_edge(self, e: int, surviving_vertex: int) -> bool:
        """
        Collapse edge ``e`` so that ``surviving_vertex`` remains.

        Returns:
            True if the collapse was performed, False if it was rejected
        """
        h = 2 * e
        if self._hto[h] != surviving_vertex:
            h ^= 1
        if self._hto[h] != surviving_vertex:
            raise ValueError(f"Vertex {surviving_vertex} is not an endpoint of edge {e}")
        if not self.is_collapse_ok(h):
            return False
        self.collapse(h)
        return True

    def _remove_edge_helper(self, h: int) -> None:
        hn = self._hnext[h]
        hp = self._hprev[h]

        o = h ^ 1
        on = self._hnext[o]
        op = self._hprev[o]

        fh = self._hface[h]
        fo = self._hface[o]

        vh = self._hto[h]
        vo = self._hto[o]

        for hc in list(self.halfedges_around(vo)):
            self._hto[hc ^ 1] = vh

        self._set_next(hp, hn)
        self._set_next(op, on)

        if fh != INVALID:
            self._fhalfedge[fh] = hn
        if fo != INVALID:
            self._fhalfedge[fo] = on

        if self._vhalfedge[vh] == o:
            self._vhalfedge[vh] = hn
        self._adjust_outgoing_halfedge(vh)
        self._vhalfedge[vo] = INVALID

        self._vdeleted[vo] = True
        self._deleted_vertices += 1
        self._edeleted[h >> 1] = True
        self._deleted_edges += 1

    def _remove_loop_helper(self, h: int) -> None:
        h0 = h
        h1 = self._hnext[h0]

        o0 = h0 ^ 1
        o1 = h1 ^ 1

        v0 = self._hto[h0]
        v1 = self._hto[h1]

        fh = self._hface[h0]
        fo = self._hface[o0]

        self._set_next(h1, self._hnext[o0])
        self._set_next(self._hprev[o0], h1)

        self._hface[h1] = fo

        self._vhalfedge[v0] = h1
        self._adjust_outgoing_halfedge(v0)
        self._vhalfedge[v1] = o1
        self._adjust_outgoing_halfedge(v1)

        if fo != INVALID and self._fhalfedge[fo] == o0:
            self._fhalfedge[fo] = h1

        if fh != INVALID:
            self._fdeleted[fh] = True
            self._deleted_faces += 1
        self._edeleted[h0 >> 1] = True
        self._deleted_edges += 1

    def is_flip_ok(self, e: int) -> bool:
        if self.is_boundary_edge(e):
            return False

        v0 = self._hto[self._hnext[2 * e]]
        v1 = self._hto[self._hnext[2 * e + 1]]

        if v0 == v1:
            return False

        return self.find_halfedge(v0, v1) == INVALID

    def flip(self, e: int) -> None:
        """Flip edge ``e``; check ``is_flip_ok`` first."""
        a0 = 2 * e
        b0 = a0 + 1

        a1 = self._hnext[a0]
        a2 = self._hnext[a1]

        b1 = self._hnext[b0]
        b2 = self._hnext[b1]

        va0 = self._hto[a0]
        va1 = self._hto[a1]

        vb0 = self._hto[b0]
        vb1 = self._hto[b1]

        fa = self._hface[a0]
        fb = self._hface[b0]

        self._hto[a0] = va1
        self._hto[b0] = vb1

        self._set_next(a0, a2)
        self._set_next(a2, b1)
        self._set_next(b1, a0)

        self._set_next(b0, b2)
        self._set_next(b2, a1)
        self._set_next(a1, b0)

        self._hface[a1] = fb
        self._hface[b1] = fa

        self._fhalfedge[fa] = a0
        self._fhalfedge[fb] = b0

        if self._vhalfedge[va0] == b0:
            self._vhalfedge[va0] = a1
        if self._vhalfedge[vb0] == a0:
            self._vhalfedge[vb0] = b1

    def flip_edge(self, e: int) -> bool:
        """
        Flip edge ``e`` if allowed.

        Returns:
            True if flipped, False if rejected (boundary edge, or the
            flipped edge already exists)
        """
        if not self.is_flip_ok(e):
            return False
        self.flip(e)
        return True

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def check_manifold(self) -> list[str]:
        """
        Audit the connectivity.

        Returns:
            List of problems found (empty if the mesh is a consistent
            2-manifold with boundary)
        """
        problems = []

        for f in self.faces():
            h = self._fhalfedge[f]
            loop = [h, self._hnext[h], self._hnext[self._hnext[h]]]
            if self._hnext[loop[2]] != h:
                problems.append(f"Face {f} is not a triangle")
            for hh in loop:
                if self._hface[hh] != f:
                    problems.append(f"Face {f}: halfedge {hh} points to face {self._hface[hh]}")
                if self._edeleted[hh >> 1]:
                    problems.append(f"Face {f} uses deleted edge {hh >> 1}")

        outgoing: dict[int, int] = {}
        for e in self.edges():
            h0, h1 = 2 * e, 2 * e + 1
            if self._hface[h0] == INVALID and self._hface[h1] == INVALID:
                problems.append(f"Edge {e} has no faces")
            for h in (h0, h1):
                if self._hprev[self._hnext[h]] != h:
                    problems.append(f"Halfedge {h}: next/prev mismatch")
                f = self._hface[h]
                if f != INVALID and self._fdeleted[f]:
                    problems.append(f"Halfedge {h} references deleted face {f}")
                v = self._hto[h ^ 1]
                if self._vdeleted[v]:
                    problems.append(f"Edge {e} references deleted vertex {v}")
                outgoing[v] = outgoing.get(v, 0) + 1

        for v in self.vertices():
            expected = outgoing.get(v, 0)
            if expected == 0:
                continue
            count = 0
            for _ in self.halfedges_around(v):
                count += 1
                if count > expected:
                    break
            if count != expected:
                problems.append(f"Vertex {v} is non-manifold ({count} of {expected} halfedges in its fan)")
            boundary = sum(
                1 for h in self.halfedges_around(v) if self._hface[h] == INVALID
            )
            if boundary > 1:
                problems.append(f"Vertex {v} has {boundary} boundary fans")

        return problems

    def is_manifold(self) -> bool:
        return not self.check_manifold()

    def __repr__(self) -> str:
        return f"HalfedgeMesh(vertices={self.n_vertices}, edges={self.n_edges}, faces={self.n_faces})"
