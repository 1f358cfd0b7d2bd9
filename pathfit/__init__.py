"""
pathfit: traced path geometry and cross-section circle fitting

A Python package for manipulating traced paths through 3D image volumes (neurites, vessels)
and fitting a tube model to them. Provides path editing, join topology between paths,
normal-plane sampling of image volumes, circle fitting with overlap pruning, and
Douglas-Peucker downsampling.
"""

__version__ = "0.1.0"
__author__ = "Jordan M. R. Fox"
__email__ = "jordanmrfox@gmail.com"

# Errors
from .exceptions import CircleFitError, InvalidIndexError, InvalidStateError, PathFitError

# Fitting
from .fitting import CircleAttempt, CircleFitter, FitOptions, FitStage, NodeFit, back_project, fit_circles

# Join topology
from .joins import Join, JoinGraph, PathEnd

# 3D representation
from .mesh import tube_mesh

# Overlap resolution
from .overlap import angle_validity, circles_overlap, mode_radii, prune_overlaps

# Path geometry
from .path import Calibration, Path

# Sampling
from .sampling import ArrayVolume, CrossSection, VolumeImage, normal_plane_basis, sample_normal_plane

# Downsampling
from .downsample import SimplePoint, downsample_path, downsample_points

# SWC taxonomy
from .swc import swc_color, swc_type_name, swc_type_names, swc_types

__all__ = [
    # Path geometry
    "Calibration",
    "Path",
    # Join topology
    "Join",
    "JoinGraph",
    "PathEnd",
    # Sampling
    "ArrayVolume",
    "CrossSection",
    "VolumeImage",
    "normal_plane_basis",
    "sample_normal_plane",
    # Fitting
    "CircleAttempt",
    "CircleFitter",
    "FitOptions",
    "FitStage",
    "NodeFit",
    "back_project",
    "fit_circles",
    # Overlap resolution
    "angle_validity",
    "circles_overlap",
    "mode_radii",
    "prune_overlaps",
    # Downsampling
    "SimplePoint",
    "downsample_path",
    "downsample_points",
    # 3D representation
    "tube_mesh",
    # SWC taxonomy
    "swc_color",
    "swc_type_name",
    "swc_type_names",
    "swc_types",
    # Errors
    "PathFitError",
    "InvalidIndexError",
    "InvalidStateError",
    "CircleFitError",
]
