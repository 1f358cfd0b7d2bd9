"""
Fit a tube model (a circle per node) around a traced path.

For every node the image is sampled on a square grid in the plane normal to
the node's tangent (see `pathfit.sampling`), and a circle ``(cx, cy, r)`` is
fitted to that grid by minimizing a badness score with Powell's direction-set
search (scipy). The fitted centers are mapped back to world coordinates, then
filtered and pruned (see `pathfit.overlap`) before the surviving nodes are
emitted as a new, linked "fitted" path.

Important terminology:
- "Grid space": cross-section pixel coordinates; cell (row j, column i) has
  coordinates (i, j). The grid center used for back-projection is
  ``(side / 2, side / 2)``.
- "Badness": per-pixel squared distance to the grid maximum (inside the
  circle) or minimum (outside), normalized by the number of pixels, plus the
  full squared intensity range for every lattice point of the circle's
  bounding square that falls off the grid.
- "Modal radius": the median of a window of fitted radii, used as the trusted
  local radius when deciding whether a fitted center moved too far.

A fit is all or nothing: if the optimizer fails for any node, the run stops
in the FAILED stage, `CircleFitError` is raised, and the source path is left
without a fitted version.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

import numpy as np
from scipy.optimize import minimize

from .exceptions import CircleFitError, InvalidStateError, PathFitError
from .overlap import angle_validity, mode_radii, prune_overlaps
from .path import Path
from .sampling import CrossSection, VolumeImage, sample_normal_plane, volume_stack

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

ProgressSink = Callable[[float], Any]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
@dataclass
class FitOptions:
    points_either_side: int = 4  # tangent window: node i uses nodes i -/+ this
    mode_either_side: int = 4  # half window of the modal radius
    initial_radius: float = 3.0  # starting radius of the search (grid units)
    # Powell stopping tolerances (parameters / score)
    xtol: float = 1e-2
    ftol: float = 1e-2
    max_iterations: Optional[int] = None
    # Longest run of dropped nodes before the original node is put back
    no_more_than_one_every: int = 2
    min_angle: float = math.pi / 2
    # Grid spacing in world units; defaults to the path's minimum separation
    step: Optional[float] = None


class FitStage(enum.Enum):
    SAMPLING = "sampling"
    OPTIMIZING = "optimizing"
    VALIDATING = "validating"
    PRUNING = "pruning"
    EMITTING = "emitting"
    DONE = "done"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Circle badness
# ---------------------------------------------------------------------------
class CircleAttempt:
    """
    Badness of candidate circles on one cross-section, remembering the lowest
    score seen. Instances are callable on a parameter vector ``(cx, cy, r)``.
    """

    def __init__(self, pixels: np.ndarray):
        self.pixels = np.asarray(pixels, dtype=float)
        if self.pixels.ndim != 2 or self.pixels.shape[0] != self.pixels.shape[1]:
            raise ValueError("CircleAttempt needs a square (side, side) grid")
        self.side = int(self.pixels.shape[0])
        self.min_value = float(self.pixels.min())
        self.max_value = float(self.pixels.max())
        self.min = math.inf
        self.best: Optional[np.ndarray] = None
        self.evaluations = 0

        jj, ii = np.mgrid[0 : self.side, 0 : self.side]
        self._i = ii.astype(float)
        self._j = jj.astype(float)
        self._inside_cost = (self.max_value - self.pixels) ** 2
        self._outside_cost = (self.pixels - self.min_value) ** 2

    def _lattice_inside(self, center: float, r: float) -> Tuple[int, int]:
        count = int(math.floor(2 * r)) + 1 if r >= 0 else 0
        coords = center - r + np.arange(count)
        return count, int(np.count_nonzero((coords >= 0) & (coords <= self.side)))

    def evaluate_circle(self, x: float, y: float, r: float) -> float:
        inside = r * r > (self._i - x) ** 2 + (self._j - y) ** 2
        badness = float(np.where(inside, self._inside_cost, self._outside_cost).sum())
        badness /= self.side * self.side

        count_i, in_i = self._lattice_inside(x, r)
        count_j, in_j = self._lattice_inside(y, r)
        violations = count_i * count_j - in_i * in_j
        penalty = (self.max_value - self.min_value) ** 2
        return badness + violations * penalty

    def evaluate(self, params: np.ndarray) -> float:
        x, y, r = (float(v) for v in params)
        badness = self.evaluate_circle(x, y, r)
        self.evaluations += 1
        if badness < self.min:
            self.min = badness
            self.best = np.array([x, y, r])
        return badness

    __call__ = evaluate


def fit_cross_section(
    section: CrossSection,
    options: Optional[FitOptions] = None,
    node_index: Optional[int] = None,
) -> Tuple[np.ndarray, float]:
    """
    Fit one circle to a sampled cross-section.

    Returns:
        ``(params, score)`` where params is ``[cx, cy, r]`` in grid units and
        score the lowest badness evaluated.

    Raises:
        CircleFitError: if the optimizer reports failure.
    """
    if options is None:
        options = FitOptions()
    side = section.side
    attempt = CircleAttempt(section.pixels)
    x0 = np.clip([side / 2.0, side / 2.0, options.initial_radius], 0.0, side)
    solver_options = {
        "xtol": options.xtol,
        "ftol": options.ftol,
        "direc": np.eye(3) * (side / 4.0),
    }
    if options.max_iterations is not None:
        solver_options["maxiter"] = int(options.max_iterations)

    result = minimize(
        attempt,
        x0,
        method="Powell",
        bounds=[(0.0, float(side))] * 3,
        options=solver_options,
    )
    if not result.success:
        raise CircleFitError(
            f"Circle fit did not converge: {result.message}", node_index=node_index
        )
    params = np.asarray(result.x, dtype=float)
    score = attempt.min if math.isfinite(attempt.min) else float(result.fun)
    return params, float(score)


def back_project(
    origin: np.ndarray,
    x_basis: np.ndarray,
    y_basis: np.ndarray,
    dx: float,
    dy: float,
) -> np.ndarray:
    """
    World position of a grid offset ``(dx, dy)`` from the grid center.

    Grid columns and rows run against the basis vectors (cell i sits at
    ``(mid - i) * a``), so the offset is subtracted.
    """
    origin = np.asarray(origin, dtype=float)
    return origin - (np.asarray(x_basis, dtype=float) * dx + np.asarray(y_basis, dtype=float) * dy)


@dataclass
class NodeFit:
    """Fit result for one node (grid quantities in pixels, the rest in world units)."""

    grid_center: Tuple[float, float]
    grid_radius: float
    radius: float
    center: np.ndarray
    tangent: np.ndarray
    score: float
    displacement: float


# ---------------------------------------------------------------------------
# Whole-path fit
# ---------------------------------------------------------------------------
@dataclass
class CircleFitter:
    """
    One circle-fitting run over a path.

    The run walks through `FitStage` in order; `stage` is None before `run()`
    and ends at DONE or FAILED. Intermediate results stay on the instance for
    inspection.
    """

    path: Path
    side: int
    image: VolumeImage
    options: FitOptions = field(default_factory=FitOptions)
    progress: Optional[ProgressSink] = None

    stage: Optional[FitStage] = field(default=None, init=False)
    sections: List[CrossSection] = field(default_factory=list, init=False)
    node_fits: List[NodeFit] = field(default_factory=list, init=False)
    valid: Optional[np.ndarray] = field(default=None, init=False)
    angles: Optional[np.ndarray] = field(default=None, init=False)
    mode_radii: Optional[np.ndarray] = field(default=None, init=False)
    removed: List[int] = field(default_factory=list, init=False)
    result: Optional[Path] = field(default=None, init=False)

    def __post_init__(self):
        if self.options is None:
            self.options = FitOptions()
        if int(self.side) != self.side or self.side < 1:
            raise ValueError("side must be a positive integer")
        self.side = int(self.side)

    @property
    def step(self) -> float:
        if self.options.step is not None:
            return float(self.options.step)
        return self.path.calibration.min_separation

    def _enter(self, stage: FitStage) -> None:
        self.stage = stage
        logger.debug("Circle fit of %s: %s", self.path.name, stage.value)

    def _report(self, fraction: float) -> None:
        if self.progress is not None:
            self.progress(fraction)

    def run(self) -> Path:
        """
        Execute every stage and link the fitted path to the source.

        Raises:
            InvalidStateError: if the source already has a fitted version.
            CircleFitError: if the optimizer fails on any node.
        """
        if self.path.fitted is not None:
            raise InvalidStateError("This path already has a fitted version")
        if self.path.size() == 0:
            raise ValueError("Cannot fit circles to an empty path")
        if self.stage is not None:
            raise InvalidStateError("A CircleFitter can only be run once")

        logger.info(
            "Fitting circles to %s (%d nodes, side %d, step %g %s)",
            self.path.name,
            self.path.size(),
            self.side,
            self.step,
            self.path.calibration.units,
        )
        try:
            self._sample()
            self._optimize()
        except CircleFitError as e:
            self.stage = FitStage.FAILED
            logger.error("Circle fit of %s aborted at node %s: %s", self.path.name, e.node_index, e)
            raise
        self._validate()
        self._prune()
        fitted = self._emit()
        self._enter(FitStage.DONE)
        return fitted

    # ------------------------------ stages ---------------------------------
    def _sample(self) -> None:
        self._enter(FitStage.SAMPLING)
        stack = volume_stack(self.image)
        positions = self.path.positions
        self.sections = []
        self._tangents = np.zeros_like(positions)
        for i, origin in enumerate(positions):
            t = self.path.tangent(i, self.options.points_either_side)
            if not np.all(np.isfinite(t)) or float(np.linalg.norm(t)) == 0.0:
                logger.debug("Node %d has a degenerate tangent; using the z axis", i)
                t = np.array([0.0, 0.0, 1.0])
            self._tangents[i] = t
            self.sections.append(
                sample_normal_plane(
                    self.image,
                    self.path.calibration,
                    origin,
                    t,
                    self.side,
                    self.step,
                    stack=stack,
                )
            )

    def _optimize(self) -> None:
        self._enter(FitStage.OPTIMIZING)
        n = len(self.sections)
        step = self.step
        half = self.side / 2.0
        self.node_fits = []
        self._report(0.0)
        for i, section in enumerate(self.sections):
            (cx, cy, r), score = fit_cross_section(section, self.options, node_index=i)
            dx = cx - half
            dy = cy - half
            center = back_project(section.origin, section.x_basis, section.y_basis, dx, dy)
            fit = NodeFit(
                grid_center=(float(cx), float(cy)),
                grid_radius=float(r),
                radius=float(r) * step,
                center=center,
                tangent=self._tangents[i].copy(),
                score=score,
                displacement=step * math.hypot(dx, dy),
            )
            self.node_fits.append(fit)
            logger.debug(
                "Node %d: center (%.3f, %.3f) r=%.3f score=%.4g moved %.3f",
                i,
                cx,
                cy,
                r,
                score,
                fit.displacement,
            )
            self._report((i + 1) / n)

    def _validate(self) -> None:
        self._enter(FitStage.VALIDATING)
        grid_radii = np.array([f.grid_radius for f in self.node_fits])
        displacement = np.array([f.displacement for f in self.node_fits])
        centers = np.array([f.center for f in self.node_fits])
        self.mode_radii = mode_radii(grid_radii, self.options.mode_either_side)
        self.valid = displacement < self.step * self.mode_radii
        self.angles = angle_validity(centers, self.valid, self.options.min_angle)

    def _prune(self) -> None:
        self._enter(FitStage.PRUNING)
        normals = np.array([f.tangent for f in self.node_fits])
        centers = np.array([f.center for f in self.node_fits])
        radii = np.array([f.radius for f in self.node_fits])
        self.valid, self.removed = prune_overlaps(normals, centers, radii, self.valid)
        if self.removed:
            logger.info("Removed %d overlapping circles from %s", len(self.removed), self.path.name)

    def _emit(self) -> Path:
        self._enter(FitStage.EMITTING)
        n = len(self.node_fits)
        step = self.step
        source = self.path.positions
        valid = self.valid
        centers = np.array([f.center for f in self.node_fits])
        radii = np.array([f.radius for f in self.node_fits])
        tangents = np.array([f.tangent for f in self.node_fits])

        last_valid = 0
        for i in range(n):
            if not valid[i]:
                gone_too_far = i - last_valid >= self.options.no_more_than_one_every
                next_valid = i < n - 1 and bool(valid[i + 1])
                if (gone_too_far and not next_valid) or i == 0 or i == n - 1:
                    # Put the unfitted node back
                    valid[i] = True
                    centers[i] = source[i]
                    radii[i] = step
                    self.mode_radii[i] = 1.0
            if valid[i]:
                radii[i] = max(radii[i], step)
                last_valid = i

        count = int(np.count_nonzero(valid))
        fitted = Path(self.path.calibration, reserve=max(count, 1))
        fitted.set_fitted_circles(tangents[valid], radii[valid], centers[valid])
        if fitted.size() != count:
            raise PathFitError(
                f"Fitted path has {fitted.size()} nodes but {count} were kept"
            )
        fitted.name = f"Fitted Path [{self.path.id}]"
        fitted.color = self.path.color
        fitted.swc_type = self.path.swc_type
        self.path.set_fitted(fitted)
        self.result = fitted
        logger.info(
            "Fitted %s: kept %d of %d nodes", self.path.name, count, n
        )
        return fitted


def fit_circles(
    path: Path,
    side: int,
    image: VolumeImage,
    options: Optional[FitOptions] = None,
    progress: Optional[ProgressSink] = None,
) -> Path:
    """
    Fit circles along `path` and link the result as its fitted version.

    Args:
        path: Source path; its node arrays are not modified.
        side: Cross-section grid size (cells per edge).
        image: Volume the path was traced on.
        options: FitOptions; defaults are used when None.
        progress: Optional callable receiving the completed fraction (0..1)
            after each node is optimized.

    Returns:
        The fitted path, also reachable as ``path.fitted``.
    """
    fitter = CircleFitter(path, side, image, options=options or FitOptions(), progress=progress)
    return fitter.run()
