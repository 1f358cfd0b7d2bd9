"""
Douglas-Peucker simplification of paths.

A path is simplified piecewise between its fixed points (both endpoints plus
any join indices), which are always kept. Within each piece, points are
dropped while every dropped point stays within `max_deviation` of the segment
joining the points kept around it.

When the path has radius data, each kept node's radius becomes the mean of
the original radii over the index range it now stands for, and tangents are
re-derived from the simplified geometry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Sequence

import numpy as np

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .path import Path

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class SimplePoint:
    x: float
    y: float
    z: float
    original_index: int

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)


def _distance_to_segment(p: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    ab = b - a
    denom = float(np.dot(ab, ab))
    if denom == 0.0:
        return float(np.linalg.norm(p - a))
    t = min(1.0, max(0.0, float(np.dot(p - a, ab)) / denom))
    return float(np.linalg.norm(p - (a + t * ab)))


def downsample_points(
    points: Sequence[SimplePoint], max_deviation: float
) -> List[SimplePoint]:
    """
    Douglas-Peucker over `points`, keeping the first and the last.

    Uses an explicit stack of (start, end) ranges instead of recursion.
    """
    if max_deviation < 0:
        raise ValueError("max_deviation must not be negative")
    n = len(points)
    if n < 3:
        return list(points)

    xyz = np.array([p.as_array() for p in points])
    keep = np.zeros(n, dtype=bool)
    keep[0] = keep[-1] = True
    stack = [(0, n - 1)]
    while stack:
        start, end = stack.pop()
        if end - start < 2:
            continue
        worst, worst_index = -1.0, -1
        for k in range(start + 1, end):
            d = _distance_to_segment(xyz[k], xyz[start], xyz[end])
            if d > worst:
                worst, worst_index = d, k
        if worst > max_deviation:
            keep[worst_index] = True
            stack.append((worst_index, end))
            stack.append((start, worst_index))
    return [p for p, k in zip(points, keep) if k]


def _mean_radius(radii: np.ndarray, lo: int, hi: int) -> float:
    return float(np.mean(radii[lo : hi + 1]))


def downsample_path(
    path: "Path", max_deviation: float, fixed_indices: Iterable[int] = ()
) -> int:
    """
    Simplify `path` in place.

    Args:
        path: Path to simplify.
        max_deviation: Largest allowed distance of a dropped node from the
            simplified polyline, in calibrated units.
        fixed_indices: Node indices that must survive (e.g. join points). The
            first and last node are always fixed; out-of-range indices are
            ignored.

    Returns:
        Number of nodes dropped.
    """
    if max_deviation < 0:
        raise ValueError("max_deviation must not be negative")
    n = path.size()
    if n < 3:
        path.invalidate_3d_view()
        return 0

    fixed = sorted({0, n - 1} | {int(i) for i in fixed_indices if 0 <= int(i) < n})
    positions = path.positions
    radii = path.radii
    new_positions = [tuple(p) for p in positions]
    new_radii = None if radii is None else list(radii)

    dropped = 0
    last = fixed[0]
    for fpi in fixed[1:]:
        # Indices into the partially rewritten arrays
        start = last - dropped
        end = fpi - dropped
        segment = [
            SimplePoint(*positions[i], original_index=i) for i in range(last, fpi + 1)
        ]
        kept = downsample_points(segment, max_deviation)

        if new_radii is not None:
            kept_radii = []
            for k, p in enumerate(kept):
                idx = p.original_index
                if k == 0:
                    lo, hi = idx, (idx + kept[k + 1].original_index) // 2
                elif k == len(kept) - 1:
                    lo, hi = (kept[k - 1].original_index + idx) // 2, idx
                else:
                    lo = (kept[k - 1].original_index + idx) // 2
                    hi = (idx + kept[k + 1].original_index) // 2
                kept_radii.append(_mean_radius(radii, lo, hi))
            new_radii = new_radii[:start] + kept_radii[:-1] + new_radii[end:]

        new_positions = (
            new_positions[:start]
            + [(p.x, p.y, p.z) for p in kept]
            + new_positions[end + 1 :]
        )
        dropped += len(segment) - len(kept)
        last = fpi

    if dropped:
        logger.debug(
            "Downsampled %s from %d to %d nodes (max deviation %g)",
            path.name,
            n,
            n - dropped,
            max_deviation,
        )
    path._replace_nodes(np.array(new_positions), new_radii)
    if new_radii is not None:
        path.set_guessed_tangents(2)
    path.invalidate_3d_view()
    return dropped
