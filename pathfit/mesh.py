"""
Tube meshes of paths.

A path with radii is drawn as one closed frustum per pair of consecutive
nodes: a ring of `sections` vertices around each node, in the plane normal to
the segment, joined by side quads and closed by a fan at each end. Paths
without radius data get a constant radius. The frustums are not merged, so the
mesh volume is the sum of the piece volumes, which approaches
`Path.approximate_fitted_volume()` as `sections` grows.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

import numpy as np
import trimesh

from .sampling import normal_plane_basis

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .path import Path

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def _frustum(
    p0: np.ndarray, p1: np.ndarray, r0: float, r1: float, sections: int
) -> Optional[trimesh.Trimesh]:
    axis = p1 - p0
    height = float(np.linalg.norm(axis))
    if height == 0.0:
        return None
    n_hat = axis / height
    u, _ = normal_plane_basis(n_hat)
    v = np.cross(n_hat, u)

    theta = np.linspace(0.0, 2 * np.pi, sections, endpoint=False)
    ring = np.cos(theta)[:, np.newaxis] * u + np.sin(theta)[:, np.newaxis] * v
    vertices = np.vstack([p0 + r0 * ring, p1 + r1 * ring, p0, p1])

    s = sections
    k = np.arange(s)
    k1 = (k + 1) % s
    c0 = np.full(s, 2 * s)
    c1 = np.full(s, 2 * s + 1)
    faces = np.vstack(
        [
            np.column_stack([k, k1, s + k1]),
            np.column_stack([k, s + k1, s + k]),
            np.column_stack([c0, k1, k]),
            np.column_stack([c1, s + k, s + k1]),
        ]
    )
    return trimesh.Trimesh(vertices=vertices, faces=faces, process=False)


def tube_mesh(
    path: "Path", sections: int = 16, default_radius: Optional[float] = None
) -> trimesh.Trimesh:
    """
    Build the tube mesh of `path`.

    Args:
        path: Path to mesh.
        sections: Vertices per ring (at least 3).
        default_radius: Radius used when the path has no radius data; the
            path's minimum separation when None.

    Returns:
        A `trimesh.Trimesh`; an icosphere for single-node paths, empty for
        empty paths.
    """
    if sections < 3:
        raise ValueError("sections must be at least 3")
    n = path.size()
    if n == 0:
        return trimesh.Trimesh()

    positions = path.positions
    radii = path.radii
    if radii is None:
        r = default_radius if default_radius is not None else path.calibration.min_separation
        radii = np.full(n, float(r))

    pieces: List[trimesh.Trimesh] = []
    for i in range(n - 1):
        piece = _frustum(positions[i], positions[i + 1], radii[i], radii[i + 1], sections)
        if piece is None:
            logger.debug("Skipping zero-length segment %d of %s", i, path.name)
            continue
        pieces.append(piece)

    if not pieces:
        sphere = trimesh.creation.icosphere(subdivisions=2, radius=float(radii[0]))
        sphere.apply_translation(positions[0])
        return sphere

    vertices = []
    faces = []
    offset = 0
    for piece in pieces:
        vertices.append(piece.vertices)
        faces.append(piece.faces + offset)
        offset += len(piece.vertices)
    mesh = trimesh.Trimesh(vertices=np.vstack(vertices), faces=np.vstack(faces), process=False)
    mesh.metadata["path_id"] = path.id
    mesh.metadata["sections"] = sections
    return mesh
