"""
Joins between paths.

Paths live in a `JoinGraph` arena and are referred to by integer handles
(their `Path.id`). A path may start on another path and end on another path;
each of these is a `Join` record (other handle plus the exact join point).

"somehow joins" is the symmetric closure of all start and end joins: if A
starts or ends on B, then A and B are adjacent, whichever of the two the join
belongs to. It is stored as an undirected `networkx.Graph` over handles, so
adjacency is symmetric by construction.

A spanning forest (parent -> children) can be derived from the adjacency. Each
path is placed exactly once; the shape depends on the roots and on the
traversal order, both of which are explicit parameters here.
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

import networkx as nx
import numpy as np

from .exceptions import InvalidStateError
from .path import Path

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

PathRef = Union[Path, int]


class PathEnd(enum.Enum):
    START = 0
    END = 1


@dataclass(frozen=True)
class Join:
    """One end of a path attached to `point` on the path with handle `other`."""

    other: int
    point: Tuple[float, float, float]


class JoinGraph:
    """
    Arena of paths plus their join topology.

    Attributes:
        G: Undirected adjacency between path handles ("somehow joins").
        paths: Handle -> Path.
    """

    def __init__(self, paths: Optional[Iterable[Path]] = None):
        self.G = nx.Graph()
        self.paths: Dict[int, Path] = {}
        self._next_id = 0
        if paths is not None:
            for p in paths:
                self.add(p)

    # ----------------------------- Arena -----------------------------------
    def add(self, path: Path) -> int:
        """Register a path and return its handle (kept if free, else assigned)."""
        if not isinstance(path, Path):
            raise TypeError("JoinGraph.add expects a Path")
        if self.paths.get(path.id) is path:
            return path.id
        if path.id < 0 or path.id in self.paths:
            path.id = self._next_id
        self._next_id = max(self._next_id, path.id + 1)
        self.paths[path.id] = path
        self.G.add_node(path.id)
        logger.debug("Registered path %d (%d nodes)", path.id, path.size())
        return path.id

    def remove(self, path: PathRef) -> Path:
        """Sever every join of a path and drop it from the arena."""
        p = self._resolve(path)
        self.disconnect_from_all(p)
        self.G.remove_node(p.id)
        del self.paths[p.id]
        for other in self.paths.values():
            if p.id in other.children:
                other.children.remove(p.id)
        p.children = []
        return p

    def get(self, handle: int) -> Optional[Path]:
        return self.paths.get(handle)

    def __getitem__(self, handle: int) -> Path:
        return self._resolve(handle)

    def __contains__(self, path: object) -> bool:
        if isinstance(path, Path):
            return self.paths.get(path.id) is path
        return path in self.paths

    def __len__(self) -> int:
        return len(self.paths)

    def __iter__(self) -> Iterator[Path]:
        return iter(list(self.paths.values()))

    def _resolve(self, path: PathRef) -> Path:
        if isinstance(path, Path):
            if self.paths.get(path.id) is not path:
                raise KeyError(f"Path {path.id} is not registered in this JoinGraph")
            return path
        try:
            return self.paths[int(path)]
        except KeyError:
            raise KeyError(f"No path with handle {path}") from None

    # ----------------------------- Joins -----------------------------------
    def set_join(
        self, path: PathRef, end: PathEnd, other: PathRef, point: Sequence[float]
    ) -> None:
        """
        Attach `end` of `path` to `point` on `other`.

        Raises:
            InvalidStateError: if that end already has a join. Joins are never
                replaced; unset the old one first.
        """
        p = self._resolve(path)
        o = self._resolve(other)
        if p is o:
            raise ValueError("A path cannot be joined to itself")
        join = Join(other=o.id, point=tuple(float(c) for c in point))
        if end is PathEnd.START:
            if p._start_join is not None:
                raise InvalidStateError(f"Path {p.id} already has a start join")
            p._start_join = join
        elif end is PathEnd.END:
            if p._end_join is not None:
                raise InvalidStateError(f"Path {p.id} already has an end join")
            p._end_join = join
        else:
            raise ValueError(f"Unknown path end: {end!r}")
        self.G.add_edge(p.id, o.id)
        logger.debug("Path %d %s joins path %d", p.id, end.name.lower(), o.id)

    def set_start_join(self, path: PathRef, other: PathRef, point: Sequence[float]) -> None:
        self.set_join(path, PathEnd.START, other, point)

    def set_end_join(self, path: PathRef, other: PathRef, point: Sequence[float]) -> None:
        self.set_join(path, PathEnd.END, other, point)

    def unset_join(self, path: PathRef, end: PathEnd) -> None:
        """
        Remove the join at `end` of `path`. Adjacency is kept while another
        join between the two paths still needs it.

        Raises:
            InvalidStateError: if that end has no join.
        """
        p = self._resolve(path)
        if end is PathEnd.START:
            join, leave_alone = p._start_join, p._end_join
        else:
            join, leave_alone = p._end_join, p._start_join
        if join is None:
            raise InvalidStateError(f"Path {p.id} has no {end.name.lower()} join to unset")
        o = self.paths.get(join.other)
        still_joined = leave_alone is not None and leave_alone.other == join.other
        if o is not None:
            still_joined = still_joined or any(
                j is not None and j.other == p.id for j in (o._start_join, o._end_join)
            )
        if not still_joined and self.G.has_edge(p.id, join.other):
            self.G.remove_edge(p.id, join.other)
        if end is PathEnd.START:
            p._start_join = None
        else:
            p._end_join = None

    def unset_start_join(self, path: PathRef) -> None:
        self.unset_join(path, PathEnd.START)

    def unset_end_join(self, path: PathRef) -> None:
        self.unset_join(path, PathEnd.END)

    def disconnect_from_all(self, path: PathRef) -> None:
        """Clear every join to or from `path` and empty its adjacency."""
        p = self._resolve(path)
        for oid in list(self.G.neighbors(p.id)):
            o = self.paths[oid]
            if o._start_join is not None and o._start_join.other == p.id:
                o._start_join = None
            if o._end_join is not None and o._end_join.other == p.id:
                o._end_join = None
            self.G.remove_edge(p.id, oid)
        p._start_join = None
        p._end_join = None

    def somehow_joins(self, path: PathRef) -> List[Path]:
        p = self._resolve(path)
        return [self.paths[i] for i in self.G.neighbors(p.id)]

    def somehow_joins_as_string(self, path: PathRef) -> str:
        return ",".join(str(o.id) for o in self.somehow_joins(path))

    def children_as_string(self, path: PathRef) -> str:
        return ",".join(str(c) for c in self._resolve(path).children)

    # ----------------------------- Joined points ---------------------------
    def find_joined_points(self, path: PathRef) -> List[np.ndarray]:
        """Join points on `path`: its own, plus where other paths start/end on it."""
        p = self._resolve(path)
        result: List[np.ndarray] = []
        for j in (p._start_join, p._end_join):
            if j is not None:
                result.append(np.asarray(j.point, dtype=float))
        for o in self.somehow_joins(p):
            for j in (o._start_join, o._end_join):
                if j is not None and j.other == p.id:
                    result.append(np.asarray(j.point, dtype=float))
        return result

    def find_joined_point_indices(self, path: PathRef) -> Set[int]:
        p = self._resolve(path)
        indices = {p.index_nearest_to(*pt) for pt in self.find_joined_points(p)}
        indices.discard(-1)
        return indices

    # ----------------------------- Tree view -------------------------------
    def derive_children(self, path: PathRef, remaining: Set[int]) -> Dict[int, List[int]]:
        """
        Assign children below `path`, breadth first.

        Every path visited takes as children those of its adjacent paths still
        in `remaining` (in adjacency order), removing them from the set, so no
        path is placed twice even when `remaining` is shared between calls.
        """
        root = self._resolve(path)
        remaining.discard(root.id)
        tree: Dict[int, List[int]] = {}
        queue = deque([root.id])
        while queue:
            pid = queue.popleft()
            current = self.paths[pid]
            current.children = []
            for nid in self.G.neighbors(pid):
                if nid in remaining:
                    current.children.append(nid)
                    remaining.discard(nid)
            tree[pid] = list(current.children)
            queue.extend(current.children)
        return tree

    def derive_forest(self, roots: Optional[Sequence[PathRef]] = None) -> Dict[int, List[int]]:
        """
        Build a spanning forest over all paths.

        Args:
            roots: Roots to expand first, in order. Defaults to the primary
                paths in handle order. Paths still unplaced afterwards become
                roots in handle order.

        Returns:
            Handle -> list of child handles, for every path.
        """
        remaining: Set[int] = set(self.paths)
        if roots is None:
            order = sorted(pid for pid, p in self.paths.items() if p.primary)
        else:
            order = [self._resolve(r).id for r in roots]
        forest: Dict[int, List[int]] = {}
        for rid in order:
            if rid in remaining:
                forest.update(self.derive_children(rid, remaining))
        while remaining:
            forest.update(self.derive_children(min(remaining), remaining))
        return forest

    def unset_primary_for_connected(self, path: PathRef) -> None:
        """Clear `primary` on every path reachable from `path` through joins."""
        p = self._resolve(path)
        explored = {p.id}
        stack = [p.id]
        while stack:
            pid = stack.pop()
            for nid in self.G.neighbors(pid):
                if nid in explored:
                    continue
                self.paths[nid].primary = False
                explored.add(nid)
                stack.append(nid)

    # ----------------------------- Geometry with topology -------------------
    def append(self, receiver: PathRef, donor: PathRef) -> None:
        """
        Append `donor`'s nodes to `receiver`, hand over the donor's end join
        and disconnect the donor from the graph.
        """
        r = self._resolve(receiver)
        d = self._resolve(donor)
        end = d._end_join
        r.append(d)
        self.disconnect_from_all(d)
        if end is not None and end.other in self.paths and end.other != r.id:
            self.set_join(r, PathEnd.END, end.other, end.point)

    def downsample(self, path: PathRef, max_deviation: float) -> int:
        """Downsample `path` in place, keeping its endpoints and join points."""
        p = self._resolve(path)
        return p.downsample(max_deviation, self.find_joined_point_indices(p))
