"""
Cross-section sampling of a volumetric image.

For a node with tangent t, the cutting plane through the node with normal t is
sampled on a square grid of ``side x side`` cells, `step` world units apart,
with trilinear interpolation of the surrounding voxels.

Grid convention: cell (row j, column i) lies at

    origin + (mid - i) * a + (mid - j) * b,    mid = (side - 1) / 2

where a and b are the in-plane basis vectors scaled by `step`. Cells whose
interpolation corners are not all inside the volume sample as 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np

from .path import Calibration

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

PARALLEL_EPSILON = 1e-6


class VolumeImage(Protocol):
    """What the sampler needs from an image: its extent and its voxels."""

    @property
    def width(self) -> int: ...

    @property
    def height(self) -> int: ...

    @property
    def depth(self) -> int: ...

    @property
    def bit_depth(self) -> int: ...

    def slice_pixels(self, z: int) -> np.ndarray:
        """(height, width) scalar pixels of slice `z` (0-based)."""
        ...


class ArrayVolume:
    """
    A `VolumeImage` backed by a numpy array of shape (depth, height, width).

    8-bit and 16-bit images are read as unsigned; floating point data is
    treated as a 32-bit image.
    """

    def __init__(self, data: np.ndarray):
        arr = np.asarray(data)
        if arr.ndim == 2:
            arr = arr[np.newaxis, :, :]
        if arr.ndim != 3:
            raise ValueError("Volume data must be a (depth, height, width) array")
        if arr.dtype in (np.uint8, np.int8):
            self._bit_depth = 8
            arr = arr.astype(np.uint8, copy=False)
        elif arr.dtype in (np.uint16, np.int16):
            self._bit_depth = 16
            arr = arr.astype(np.uint16, copy=False)
        elif np.issubdtype(arr.dtype, np.floating):
            self._bit_depth = 32
        else:
            raise ValueError(f"Unsupported pixel type: {arr.dtype}")
        self.data = arr

    @property
    def width(self) -> int:
        return int(self.data.shape[2])

    @property
    def height(self) -> int:
        return int(self.data.shape[1])

    @property
    def depth(self) -> int:
        return int(self.data.shape[0])

    @property
    def bit_depth(self) -> int:
        return self._bit_depth

    def slice_pixels(self, z: int) -> np.ndarray:
        return self.data[z]

    def stack(self) -> np.ndarray:
        return self.data.astype(np.float32)


def volume_stack(image: VolumeImage) -> np.ndarray:
    """All voxels of `image` as a float32 (depth, height, width) array."""
    stack = getattr(image, "stack", None)
    if callable(stack):
        return np.asarray(stack(), dtype=np.float32)
    return np.stack(
        [np.asarray(image.slice_pixels(z), dtype=np.float32) for z in range(image.depth)]
    )


@dataclass
class CrossSection:
    """
    One sampled cutting plane.

    Attributes:
        pixels: (side, side) interpolated intensities, indexed [row j, column i].
        x_basis: In-plane basis vector a, scaled by `step` (world units).
        y_basis: In-plane basis vector b, scaled by `step` (world units).
        origin: World position of the node the plane passes through.
        step: Grid spacing in world units.
    """

    pixels: np.ndarray
    x_basis: np.ndarray
    y_basis: np.ndarray
    origin: np.ndarray
    step: float

    @property
    def side(self) -> int:
        return int(self.pixels.shape[0])


def normal_plane_basis(tangent: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Unit vectors (a, b) spanning the plane orthogonal to `tangent`.

    a is the tangent crossed with the z axis, or with the y axis when the
    tangent has (almost) no x/y component; b is a x tangent.
    """
    n = np.asarray(tangent, dtype=float).reshape(3)
    nx, ny, nz = n
    if abs(nx) < PARALLEL_EPSILON and abs(ny) < PARALLEL_EPSILON:
        a = np.array([nz, 0.0, -nx])
    else:
        a = np.array([-ny, nx, 0.0])
    b = np.cross(a, n)
    a_size = float(np.linalg.norm(a))
    b_size = float(np.linalg.norm(b))
    if a_size == 0.0 or b_size == 0.0:
        raise ValueError("Cannot build a cutting plane for a zero-length tangent")
    return a / a_size, b / b_size


def trilinear_interpolate(stack: np.ndarray, coords: np.ndarray) -> np.ndarray:
    """
    Interpolate `stack` (depth, height, width) at voxel coordinates
    `coords[..., (x, y, z)]`. Points with any corner outside give 0.
    """
    coords = np.asarray(coords, dtype=float)
    depth, height, width = stack.shape
    f = np.floor(coords)
    c = np.ceil(coords)
    d = coords - f

    upper = np.array([width, height, depth])
    inside = np.all(f >= 0, axis=-1) & np.all(c < upper, axis=-1)

    fi = np.clip(np.nan_to_num(f), 0, upper - 1).astype(int)
    ci = np.clip(np.nan_to_num(c), 0, upper - 1).astype(int)
    x_f, y_f, z_f = fi[..., 0], fi[..., 1], fi[..., 2]
    x_c, y_c, z_c = ci[..., 0], ci[..., 1], ci[..., 2]
    x_d, y_d, z_d = d[..., 0], d[..., 1], d[..., 2]

    # Interpolate along z at the four (x, y) corners, then along y, then x
    i1 = (1 - z_d) * stack[z_f, y_f, x_f] + stack[z_c, y_f, x_f] * z_d
    i2 = (1 - z_d) * stack[z_f, y_c, x_f] + stack[z_c, y_c, x_f] * z_d
    j1 = (1 - z_d) * stack[z_f, y_f, x_c] + stack[z_c, y_f, x_c] * z_d
    j2 = (1 - z_d) * stack[z_f, y_c, x_c] + stack[z_c, y_c, x_c] * z_d

    w1 = i1 * (1 - y_d) + i2 * y_d
    w2 = j1 * (1 - y_d) + j2 * y_d

    value = w1 * (1 - x_d) + w2 * x_d
    return np.where(inside, value, 0.0)


def sample_normal_plane(
    image: VolumeImage,
    calibration: Calibration,
    origin: np.ndarray,
    tangent: np.ndarray,
    side: int,
    step: float,
    stack: Optional[np.ndarray] = None,
) -> CrossSection:
    """
    Sample the plane through `origin` orthogonal to `tangent`.

    Args:
        image: Volume to sample.
        calibration: Spacing used to convert world to voxel coordinates.
        origin: World position of the node.
        tangent: Plane normal (need not be normalized).
        side: Number of grid cells along each edge.
        step: Grid spacing in world units, conventionally the minimum spacing.
        stack: Optional pre-converted float stack of `image`, to avoid
            re-reading the volume for every node.
    """
    if side < 1:
        raise ValueError("side must be at least 1")
    if stack is None:
        stack = volume_stack(image)
    origin = np.asarray(origin, dtype=float).reshape(3)
    a, b = normal_plane_basis(tangent)
    a_s = a * step
    b_s = b * step

    mid = (side - 1) / 2.0
    offsets = mid - np.arange(side, dtype=float)
    # world[j, i] = origin + offsets[i] * a_s + offsets[j] * b_s
    world = (
        origin[np.newaxis, np.newaxis, :]
        + offsets[np.newaxis, :, np.newaxis] * a_s
        + offsets[:, np.newaxis, np.newaxis] * b_s
    )
    voxels = world / calibration.spacing
    pixels = trilinear_interpolate(stack, voxels).astype(np.float32)
    return CrossSection(pixels=pixels, x_basis=a_s, y_basis=b_s, origin=origin, step=float(step))
