"""
Traced paths through a calibrated 3D image volume.

A `Path` is an ordered sequence of nodes in calibrated (world) coordinates.
Nodes may carry a radius and a tangent; radius data is all-or-nothing for a
path, and whenever it exists the position, radius and tangent arrays have the
same length.

Important terminology:
- "Node": one point of a traced path.
- "Calibration": the voxel spacing (x, y, z) and its unit. World coordinates
  divided by the spacing give voxel coordinates.
- "Join": an attachment of a path's start or end to a point on another path.
  Joins are owned by `pathfit.joins.JoinGraph`; a path only exposes the
  records the graph writes onto it.
- "Fitted path": a derived path produced by `fit_circles`, holding per-node
  radii and tangents. It is linked one-way to its source through
  `set_fitted` and never shares arrays with it.

Node storage is a set of numpy arrays with spare capacity. Appending a node
beyond capacity grows storage to ``floor(capacity * 1.2) + 1`` rows.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import weakref
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

import numpy as np

from .exceptions import InvalidIndexError, InvalidStateError
from .swc import SWC_UNDEFINED, is_valid_swc_type, swc_color, swc_type_name

if TYPE_CHECKING:  # pragma: no cover - typing only
    import trimesh

    from .fitting import FitOptions
    from .joins import Join
    from .sampling import VolumeImage

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_RESERVE = 128
GROWTH_FACTOR = 1.2

PointLike = Sequence[float]


@dataclass(frozen=True)
class Calibration:
    """Voxel spacing of the image a path was traced on."""

    x_spacing: float = 1.0
    y_spacing: float = 1.0
    z_spacing: float = 1.0
    units: str = "pixels"

    @property
    def spacing(self) -> np.ndarray:
        return np.array([self.x_spacing, self.y_spacing, self.z_spacing], dtype=float)

    @property
    def min_separation(self) -> float:
        return float(
            min(abs(self.x_spacing), abs(self.y_spacing), abs(self.z_spacing))
        )


def _as_point(point: PointLike) -> np.ndarray:
    p = np.asarray(point, dtype=float).reshape(-1)
    if p.shape != (3,):
        raise ValueError("A node position must have exactly three coordinates")
    return p


class Path:
    """
    An ordered, resizable sequence of calibrated 3D nodes.

    Attributes:
        calibration: Spatial calibration shared by every node.
        id: Handle assigned by the owning `JoinGraph` (-1 until registered).
        primary: Whether this path is a root of the path forest.
        selected: Selection flag.
        editable_node: Index of the node tagged for editing, or -1.
        children: Handles of child paths, written by `JoinGraph.derive_forest`.
    """

    def __init__(
        self,
        calibration: Optional[Calibration] = None,
        reserve: int = DEFAULT_RESERVE,
    ):
        self.calibration = calibration if calibration is not None else Calibration()
        capacity = max(int(reserve), 1)
        self._n = 0
        self._xyz = np.zeros((capacity, 3), dtype=float)
        self._radii: Optional[np.ndarray] = None
        self._tangents: Optional[np.ndarray] = None

        self.id = -1
        self._name: Optional[str] = None
        self._swc_type = SWC_UNDEFINED
        self._color: Optional[Tuple[float, float, float]] = None
        self.primary = False
        self.selected = False
        self.editable_node = -1

        # Written only by JoinGraph
        self._start_join: Optional[Join] = None
        self._end_join: Optional[Join] = None
        self.children: List[int] = []

        self._fitted: Optional[Path] = None
        self._fitted_version_of: Optional[weakref.ReferenceType] = None
        self._use_fitted = False

        self._mesh: Optional[trimesh.Trimesh] = None
        self._mesh_invalid = True

    # ---------------------------------------------------------------------
    # Identity and metadata
    # ---------------------------------------------------------------------
    @property
    def name(self) -> str:
        if self._name is None:
            self.set_default_name()
        return self._name

    @name.setter
    def name(self, new_name: Optional[str]) -> None:
        self._name = new_name

    def set_default_name(self) -> None:
        self._name = f"Path {self.id}"

    @property
    def swc_type(self) -> int:
        return self._swc_type

    @swc_type.setter
    def swc_type(self, new_type: int) -> None:
        self.set_swc_type(new_type)

    def set_swc_type(self, new_type: int, also_set_in_fitted: bool = True) -> None:
        if not is_valid_swc_type(new_type):
            raise InvalidStateError(f"Unknown SWC type {new_type}")
        self._swc_type = int(new_type)
        if also_set_in_fitted:
            source = self.fitted_version_of
            if source is not None and source.swc_type != self._swc_type:
                raise InvalidStateError(
                    "The SWC type of a fitted path follows its source; set it there"
                )
            if self._fitted is not None:
                self._fitted.set_swc_type(self._swc_type)

    @property
    def color(self) -> Optional[Tuple[float, float, float]]:
        return self._color

    @color.setter
    def color(self, rgb: Optional[Iterable[float]]) -> None:
        self._color = None if rgb is None else tuple(float(c) for c in rgb)
        if self._fitted is not None:
            self._fitted.color = self._color

    def has_custom_color(self) -> bool:
        return self._color is not None

    def set_color_by_swc_type(self) -> None:
        self.color = swc_color(self._swc_type)

    # ---------------------------------------------------------------------
    # Joins (read-only here; see JoinGraph)
    # ---------------------------------------------------------------------
    @property
    def start_join(self) -> Optional[Join]:
        return self._start_join

    @property
    def end_join(self) -> Optional[Join]:
        return self._end_join

    # ---------------------------------------------------------------------
    # Node access
    # ---------------------------------------------------------------------
    def size(self) -> int:
        return self._n

    def __len__(self) -> int:
        return self._n

    @property
    def capacity(self) -> int:
        return int(self._xyz.shape[0])

    @property
    def positions(self) -> np.ndarray:
        """(N, 3) copy of the node positions."""
        return self._xyz[: self._n].copy()

    @property
    def radii(self) -> Optional[np.ndarray]:
        if self._radii is None:
            return None
        return self._radii[: self._n].copy()

    @property
    def tangents(self) -> Optional[np.ndarray]:
        if self._tangents is None:
            return None
        return self._tangents[: self._n].copy()

    def has_radii(self) -> bool:
        return self._radii is not None

    def mean_radius(self) -> float:
        if self._radii is None or self._n == 0:
            return 0.0
        return float(np.mean(self._radii[: self._n]))

    def _check_index(self, index: int, operation: str) -> None:
        if index < 0 or index >= self._n:
            raise InvalidIndexError(
                f"{operation}() asked for an out-of-range point: {index}"
            )

    def point(self, index: int) -> np.ndarray:
        self._check_index(index, "point")
        return self._xyz[index].copy()

    def last_point(self) -> Optional[np.ndarray]:
        if self._n < 1:
            return None
        return self._xyz[self._n - 1].copy()

    def unscaled(self, index: int) -> np.ndarray:
        """Voxel coordinates of a node."""
        self._check_index(index, "unscaled")
        return self._xyz[index] / self.calibration.spacing

    def unscaled_positions(self) -> np.ndarray:
        return self._xyz[: self._n] / self.calibration.spacing

    def contains(self, point: PointLike) -> bool:
        """True if some node has exactly (bit-for-bit) these coordinates."""
        p = _as_point(point)
        return bool(np.any(np.all(self._xyz[: self._n] == p, axis=1)))

    def node_index(self, point: PointLike) -> int:
        """First node closer than one voxel spacing on every axis, or -1."""
        p = _as_point(point)
        close = np.all(
            np.abs(self._xyz[: self._n] - p) < self.calibration.spacing, axis=1
        )
        hits = np.flatnonzero(close)
        return int(hits[0]) if hits.size else -1

    def index_nearest_to(
        self, x: float, y: float, z: float, within: float = math.inf
    ) -> int:
        """
        Index of the node closest to (x, y, z), or -1 if none lies within
        `within`. On exact ties the earliest index wins.
        """
        if self._n == 0:
            return -1
        diff = self._xyz[: self._n] - np.array([x, y, z], dtype=float)
        d2 = np.einsum("ij,ij->i", diff, diff)
        i = int(np.argmin(d2))
        if not d2[i] < within * within:
            return -1
        return i

    def index_nearest_to_2d(self, x: float, y: float, within: float = math.inf) -> int:
        """As `index_nearest_to`, ignoring z."""
        if self._n == 0:
            return -1
        diff = self._xyz[: self._n, :2] - np.array([x, y], dtype=float)
        d2 = np.einsum("ij,ij->i", diff, diff)
        i = int(np.argmin(d2))
        if not d2[i] < within * within:
            return -1
        return i

    # ---------------------------------------------------------------------
    # Storage
    # ---------------------------------------------------------------------
    def _grow_to(self, new_capacity: int) -> None:
        n = self._n
        xyz = np.zeros((new_capacity, 3), dtype=float)
        xyz[:n] = self._xyz[:n]
        self._xyz = xyz
        if self._radii is not None:
            radii = np.zeros(new_capacity, dtype=float)
            radii[:n] = self._radii[:n]
            tangents = np.zeros((new_capacity, 3), dtype=float)
            tangents[:n] = self._tangents[:n]
            self._radii = radii
            self._tangents = tangents

    def _ensure_capacity(self, required: int, exact: bool = False) -> None:
        if required <= self.capacity:
            return
        if exact:
            self._grow_to(required)
        else:
            self._grow_to(max(required, int(self.capacity * GROWTH_FACTOR) + 1))

    def _replace_nodes(
        self,
        positions: np.ndarray,
        radii: Optional[np.ndarray] = None,
        tangents: Optional[np.ndarray] = None,
    ) -> None:
        """Swap in new node arrays, keeping at least the current capacity."""
        positions = np.asarray(positions, dtype=float).reshape(-1, 3)
        n = positions.shape[0]
        capacity = max(self.capacity, n, 1)
        self._xyz = np.zeros((capacity, 3), dtype=float)
        self._xyz[:n] = positions
        if radii is None:
            self._radii = None
            self._tangents = None
        else:
            radii = np.asarray(radii, dtype=float).reshape(-1)
            if radii.shape[0] != n:
                raise ValueError("radii must have one entry per node")
            self._radii = np.zeros(capacity, dtype=float)
            self._radii[:n] = radii
            self._tangents = np.zeros((capacity, 3), dtype=float)
            if tangents is not None:
                tangents = np.asarray(tangents, dtype=float).reshape(-1, 3)
                if tangents.shape[0] != n:
                    raise ValueError("tangents must have one entry per node")
                self._tangents[:n] = tangents
        self._n = n

    def _default_radius(self) -> float:
        return self.calibration.min_separation * 2

    # ---------------------------------------------------------------------
    # Mutation
    # ---------------------------------------------------------------------
    def add_point(self, x: float, y: float, z: float) -> None:
        """Append a node at the end of the path."""
        self._ensure_capacity(self._n + 1)
        self._xyz[self._n] = (x, y, z)
        if self._radii is not None:
            self._radii[self._n] = self._default_radius()
            self._tangents[self._n] = 0.0
        self._n += 1
        self.invalidate_3d_view()

    def add_node(self, index: int, point: PointLike) -> None:
        """
        Insert a node so that it ends up at position `index`.

        Raises:
            InvalidIndexError: unless ``0 <= index <= size()``.
        """
        if index < 0 or index > self._n:
            raise InvalidIndexError(f"add_node() asked for an out-of-range point: {index}")
        p = _as_point(point)
        n = self._n
        self._ensure_capacity(n + 1)
        self._xyz[index + 1 : n + 1] = self._xyz[index:n]
        self._xyz[index] = p
        if self._radii is not None:
            self._radii[index + 1 : n + 1] = self._radii[index:n]
            self._radii[index] = self._default_radius()
            self._tangents[index + 1 : n + 1] = self._tangents[index:n]
        self._n += 1
        if self._radii is not None:
            self.set_guessed_tangents(2)
        self.invalidate_3d_view()

    def remove_node(self, index: int) -> None:
        """
        Remove a node. Does nothing on a single-node path.

        If the removed node was a cached join point, the join point moves to
        the new boundary node.

        Raises:
            InvalidIndexError: unless ``0 <= index < size()``.
        """
        if self._n == 1:
            return
        self._check_index(index, "remove_node")
        removed = self._xyz[index].copy()
        n = self._n
        self._xyz[index : n - 1] = self._xyz[index + 1 : n]
        if self._radii is not None:
            self._radii[index : n - 1] = self._radii[index + 1 : n]
            self._tangents[index : n - 1] = self._tangents[index + 1 : n]
        self._n -= 1
        if self._start_join is not None and np.array_equal(
            self._start_join.point, removed
        ):
            self._start_join = dataclasses.replace(
                self._start_join, point=tuple(self._xyz[0])
            )
        if (
            self._end_join is not None
            and self._n > 0
            and np.array_equal(self._end_join.point, removed)
        ):
            self._end_join = dataclasses.replace(
                self._end_join, point=tuple(self._xyz[self._n - 1])
            )
        self.invalidate_3d_view()

    def move_node(self, index: int, point: PointLike) -> None:
        self._check_index(index, "move_node")
        self._xyz[index] = _as_point(point)
        self.invalidate_3d_view()

    def append(self, other: "Path") -> None:
        """
        Concatenate `other`'s nodes after this path's last node.

        Leading nodes of `other` that coincide exactly with this path's last
        node are skipped. If only `other` carries radii, this path gains radius
        data first (existing nodes get twice the minimum separation). Join
        bookkeeping for registered paths is done by `JoinGraph.append`.

        Raises:
            InvalidStateError: if this path already has an end join.
        """
        if other is None:
            raise TypeError("append() needs a Path")
        if self._end_join is not None:
            raise InvalidStateError("Cannot append to a path that already has an end join")

        if other.has_radii() and not self.has_radii():
            self.create_circles()
            self._radii[: self._n] = self._default_radius()

        to_skip = 0
        if self._n > 0:
            last = self._xyz[self._n - 1]
            while to_skip < other._n and np.array_equal(other._xyz[to_skip], last):
                to_skip += 1

        count = other._n - to_skip
        self._ensure_capacity(self._n + count, exact=True)
        n = self._n
        self._xyz[n : n + count] = other._xyz[to_skip : other._n]
        if self._radii is not None:
            if other._radii is not None:
                self._radii[n : n + count] = other._radii[to_skip : other._n]
            else:
                self._radii[n : n + count] = self._default_radius()
        self._n = n + count

        if self._radii is not None:
            self.set_guessed_tangents(2)
        self.invalidate_3d_view()

    # ---------------------------------------------------------------------
    # Radii and tangents
    # ---------------------------------------------------------------------
    def create_circles(self) -> None:
        if self._radii is not None or self._tangents is not None:
            raise InvalidStateError("This path already has radius data")
        self._radii = np.zeros(self.capacity, dtype=float)
        self._tangents = np.zeros((self.capacity, 3), dtype=float)

    def tangent(self, index: int, either_side: int) -> np.ndarray:
        """Unnormalized tangent: the difference of the nodes `either_side` away."""
        self._check_index(index, "tangent")
        lo = max(index - either_side, 0)
        hi = min(index + either_side, self._n - 1)
        return self._xyz[hi] - self._xyz[lo]

    def set_guessed_tangents(self, either_side: int) -> None:
        if self._tangents is None:
            raise InvalidStateError("set_guessed_tangents() needs radius data")
        n = self._n
        idx = np.arange(n)
        hi = np.minimum(idx + either_side, n - 1)
        lo = np.maximum(idx - either_side, 0)
        self._tangents[:n] = self._xyz[hi] - self._xyz[lo]

    def set_fitted_circles(
        self,
        tangents: np.ndarray,
        radii: np.ndarray,
        positions: np.ndarray,
    ) -> None:
        """Replace every node array with copies of the fitted data."""
        positions = np.asarray(positions, dtype=float).reshape(-1, 3)
        self._replace_nodes(positions, radii, tangents)
        self.invalidate_3d_view()

    # ---------------------------------------------------------------------
    # Measurements
    # ---------------------------------------------------------------------
    def length(self) -> float:
        """Sum of distances between consecutive nodes, in calibrated units."""
        if self._n < 2:
            return 0.0
        return float(np.sum(np.linalg.norm(np.diff(self._xyz[: self._n], axis=0), axis=1)))

    def length_string(self) -> str:
        return f"{self.length():.4f}"

    def approximate_fitted_volume(self) -> float:
        """
        Sum of truncated-cone volumes between consecutive nodes, or -1 without
        radius data.

        Each piece is treated as a frustum with the two node radii, as if both
        circles had been reoriented to share a normal.
        """
        if not self.has_radii():
            return -1.0
        if self._n < 2:
            return 0.0
        h = np.linalg.norm(np.diff(self._xyz[: self._n], axis=0), axis=1)
        r1 = self._radii[: self._n - 1]
        r2 = self._radii[1 : self._n]
        return float(np.sum(math.pi * h * (r1 * r1 + r2 * r2 + r1 * r2) / 3.0))

    # ---------------------------------------------------------------------
    # Fitted version
    # ---------------------------------------------------------------------
    @property
    def fitted(self) -> Optional["Path"]:
        return self._fitted

    @property
    def fitted_version_of(self) -> Optional["Path"]:
        if self._fitted_version_of is None:
            return None
        return self._fitted_version_of()

    def is_fitted_version_of_another_path(self) -> bool:
        return self.fitted_version_of is not None

    def set_fitted(self, p: "Path") -> None:
        if self._fitted is not None:
            raise InvalidStateError("This path already has a fitted version")
        self._fitted = p
        p._fitted_version_of = weakref.ref(self)

    @property
    def use_fitted(self) -> bool:
        return self._use_fitted

    @use_fitted.setter
    def use_fitted(self, value: bool) -> None:
        if value and self._fitted is None:
            raise InvalidStateError("use_fitted set, but there is no fitted version")
        self._use_fitted = bool(value)

    def version_in_use(self) -> bool:
        """True if this object (rather than its counterpart) is the one shown."""
        source = self.fitted_version_of
        if source is not None:
            return source.use_fitted
        return not self._use_fitted

    def fit_circles(
        self,
        side: int,
        image: "VolumeImage",
        options: Optional["FitOptions"] = None,
        progress: Optional[Callable[[float], Any]] = None,
    ) -> "Path":
        """Fit a tube model around this path; see `pathfit.fitting.fit_circles`."""
        from .fitting import fit_circles

        return fit_circles(self, side, image, options=options, progress=progress)

    # ---------------------------------------------------------------------
    # Simplification
    # ---------------------------------------------------------------------
    def downsample(
        self, max_deviation: float, fixed_indices: Iterable[int] = ()
    ) -> int:
        """
        Simplify in place between fixed points; returns the number of nodes
        dropped. Registered paths should use `JoinGraph.downsample`, which adds
        the join indices.
        """
        from .downsample import downsample_path

        return downsample_path(self, max_deviation, fixed_indices)

    # ---------------------------------------------------------------------
    # Derived paths
    # ---------------------------------------------------------------------
    def reversed(self) -> "Path":
        c = Path(self.calibration, reserve=max(self._n, 1))
        radii = None if self._radii is None else self._radii[: self._n][::-1]
        tangents = None if self._tangents is None else -self._tangents[: self._n][::-1]
        c._replace_nodes(self._xyz[: self._n][::-1], radii, tangents)
        return c

    def transform(
        self,
        transformation: Callable[[float, float, float], Sequence[float]],
        calibration: Optional[Calibration] = None,
    ) -> "Path":
        """
        Map every node through `transformation`, dropping nodes mapped to NaN.

        Joins and the fitted version are not carried over: they involve other
        paths, which the caller is expected to transform as well.
        """
        result = Path(calibration or self.calibration, reserve=max(self._n, 1))
        for x, y, z in self._xyz[: self._n]:
            new = np.asarray(transformation(float(x), float(y), float(z)), dtype=float)
            if np.any(np.isnan(new)):
                continue
            result.add_point(*new)
        result.primary = self.primary
        result.id = self.id
        result.selected = self.selected
        result._name = self._name
        result._swc_type = self._swc_type
        return result

    # ---------------------------------------------------------------------
    # Cached 3D representation
    # ---------------------------------------------------------------------
    def mesh(self, sections: int = 16) -> "trimesh.Trimesh":
        """Tube mesh of this path, cached until the geometry changes."""
        if self._mesh is None or self._mesh_invalid:
            from .mesh import tube_mesh

            self._mesh = tube_mesh(self, sections=sections)
            self._mesh_invalid = False
        return self._mesh

    def invalidate_3d_view(self) -> None:
        self._mesh = None
        self._mesh_invalid = True

    def is_3d_view_invalid(self) -> bool:
        return self._mesh_invalid

    # ---------------------------------------------------------------------
    # Display
    # ---------------------------------------------------------------------
    def real_to_string(self) -> str:
        s = self.name
        if self._n == 1:
            s += " [Single Point]"
        else:
            s += f" [{self.length_string()} {self.calibration.units}]"
        if self._start_join is not None:
            s += f", starts on path {self._start_join.other}"
        if self._end_join is not None:
            s += f", ends on path {self._end_join.other}"
        if self._swc_type != SWC_UNDEFINED:
            s += f" [{swc_type_name(self._swc_type)}]"
        return s

    def __str__(self) -> str:
        if self._use_fitted and self._fitted is not None:
            return self._fitted.real_to_string()
        return self.real_to_string()

    def __repr__(self) -> str:
        return f"Path(id={self.id}, size={self._n}, radii={self.has_radii()})"

    def __lt__(self, other: "Path") -> bool:
        return self.id < other.id
