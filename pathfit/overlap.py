"""
Validation and pruning of fitted cross-section disks.

Each fitted node is a disk in 3D: a center, a radius and a plane normal (the
node tangent). After fitting, nodes are checked in three passes:

1. Displacement: the fitted center must have moved less than the local modal
   radius (the median of a window of fitted radii).
2. Angle: an interior node is dropped when the centers of its nearest valid
   neighbours lie at less than a right angle from it, i.e. the fitted
   centerline folds back on itself.
3. Overlap: disks of neighbouring nodes must not intersect. Nodes are removed
   greedily, worst offender first, until no pair of valid disks intersects.

Degenerate configurations met by the intersection test (near-parallel planes,
near-zero determinants) are logged and treated as overlapping, so the pruning
errs towards removing too much rather than too little.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

EPSILON = 1e-6


def mode_radii(radii: np.ndarray, either_side: int = 4) -> np.ndarray:
    """
    Middle value of a sorted window of ``2 * either_side + 1`` radii around
    each node. Radii below 1 count as 1; the window is padded with -inf
    before the first node and +inf after the last.
    """
    r = np.maximum(np.asarray(radii, dtype=float).reshape(-1), 1.0)
    if r.size == 0:
        return r
    k = int(either_side)
    padded = np.concatenate([np.full(k, -np.inf), r, np.full(k, np.inf)])
    windows = np.sort(sliding_window_view(padded, 2 * k + 1), axis=1)
    return windows[:, k]


def angle_validity(
    centers: np.ndarray, valid: np.ndarray, min_angle: float = math.pi / 2
) -> np.ndarray:
    """
    Invalidate interior nodes whose neighbours fold back.

    For node i the neighbours are the last valid node before it (default 0)
    and the first valid node after it (default N - 1). Nodes are visited in
    order and `valid` is updated in place, so a node dropped here is no longer
    a neighbour for the nodes after it. End points always keep an angle of pi.

    Returns:
        The angle (radians) at each node; NaN where a neighbour coincides with
        the node, which leaves it valid.
    """
    centers = np.asarray(centers, dtype=float)
    n = centers.shape[0]
    angles = np.full(n, math.pi)
    for i in range(1, n - 1):
        before = np.flatnonzero(valid[:i])
        previous_valid = int(before[-1]) if before.size else 0
        after = np.flatnonzero(valid[i + 1 :])
        next_valid = i + 1 + int(after[0]) if after.size else n - 1

        a = centers[previous_valid] - centers[i]
        b = centers[next_valid] - centers[i]
        denom = float(np.linalg.norm(a) * np.linalg.norm(b))
        if denom == 0.0:
            angles[i] = math.nan
            continue
        angles[i] = math.acos(max(-1.0, min(1.0, float(np.dot(a, b)) / denom)))
        if angles[i] < min_angle:
            valid[i] = False
    return angles


def circles_overlap(
    n1: np.ndarray,
    c1: np.ndarray,
    radius1: float,
    n2: np.ndarray,
    c2: np.ndarray,
    radius2: float,
) -> bool:
    """
    Whether two disks in 3D intersect.

    The two planes meet in a line ``k1 n1 + k2 n2 + u (n1 x n2)``. Each circle
    crosses that line on an interval of u (solving a quadratic); the disks
    overlap when the two intervals do. Disks in parallel planes overlap only
    when the planes coincide.
    """
    n1 = np.asarray(n1, dtype=float)
    n2 = np.asarray(n2, dtype=float)
    c1 = np.asarray(c1, dtype=float)
    c2 = np.asarray(c2, dtype=float)

    cross = np.cross(n1, n2)
    if np.all(np.abs(cross) < EPSILON):
        return bool(abs(float(np.dot(c2 - c1, n1))) < EPSILON)

    n1n1 = float(np.dot(n1, n1))
    n2n2 = float(np.dot(n2, n2))
    n1n2 = float(np.dot(n1, n2))
    det = n1n1 * n2n2 - n1n2 * n1n2
    if abs(det) < EPSILON:
        logger.warning("Degenerate disk planes: determinant was nearly zero (%g)", det)
        return True

    d1 = float(np.dot(n1, c1))
    d2 = float(np.dot(n2, c2))
    k1 = (d1 * n2n2 - d2 * n1n2) / det
    k2 = (d2 * n1n1 - d1 * n1n2) / det
    on_line = k1 * n1 + k2 * n2

    a = float(np.dot(cross, cross))
    if abs(a) < EPSILON:
        logger.warning("Degenerate disk planes: intersection direction nearly zero (%g)", a)
        return True

    intervals = []
    for center, radius in ((c1, radius1), (c2, radius2)):
        offset = on_line - center
        b = 2.0 * float(np.dot(cross, offset))
        c = float(np.dot(offset, offset)) - radius * radius
        discriminant = b * b - 4.0 * a * c
        if discriminant < 0:
            # This circle does not reach the line
            return False
        root = math.sqrt(discriminant)
        u_1 = root / (2 * a) - b / (2 * a)
        u_2 = -root / (2 * a) - b / (2 * a)
        intervals.append((min(u_1, u_2), max(u_1, u_2)))

    (u1_smaller, u1_larger), (u2_smaller, u2_larger) = intervals
    if not all(math.isfinite(u) for u in (u1_smaller, u1_larger, u2_smaller, u2_larger)):
        logger.warning(
            "Disk overlap test produced non-finite intervals for centers %s and %s",
            c1,
            c2,
        )
        return True
    if u1_larger < u2_smaller or u2_larger < u1_smaller:
        return False
    return True


def overlap_matrix(
    normals: np.ndarray,
    centers: np.ndarray,
    radii: np.ndarray,
    candidates: Optional[np.ndarray] = None,
) -> np.ndarray:
    """(N, N) boolean matrix; entry [i, j] tests disk i against disk j."""
    n = len(radii)
    if candidates is None:
        candidates = np.ones(n, dtype=bool)
    result = np.zeros((n, n), dtype=bool)
    idx = np.flatnonzero(candidates)
    for i in idx:
        for j in idx:
            if i == j:
                continue
            result[i, j] = circles_overlap(
                normals[i], centers[i], radii[i], normals[j], centers[j], radii[j]
            )
    return result


def prune_overlaps(
    normals: np.ndarray,
    centers: np.ndarray,
    radii: np.ndarray,
    valid: np.ndarray,
) -> Tuple[np.ndarray, List[int]]:
    """
    Remove valid nodes until no two valid disks overlap.

    On every round the overlap count of each valid node is rebuilt and the
    first node with the highest count is removed; if the next valid node has
    the same count and a larger radius, that one is removed instead.

    `valid` (boolean array) is updated in place.

    Returns:
        The validity array and the indices removed, in removal order.
    """
    radii = np.asarray(radii, dtype=float)
    matrix = overlap_matrix(normals, centers, radii, candidates=valid)
    removed: List[int] = []
    while True:
        live = matrix & valid[np.newaxis, :] & valid[:, np.newaxis]
        counts = live.sum(axis=1)
        if not valid.any():
            break
        maximum = int(counts[valid].max())
        if maximum <= 0:
            break
        for i in np.flatnonzero(valid):
            if counts[i] != maximum:
                continue
            later = np.flatnonzero(valid[i + 1 :])
            victim = int(i)
            if later.size:
                nxt = int(i + 1 + later[0])
                if counts[nxt] == maximum and radii[nxt] > radii[i]:
                    victim = nxt
            valid[victim] = False
            removed.append(victim)
            logger.debug("Removed node %d (%d overlaps)", victim, maximum)
            break
    return valid, removed
