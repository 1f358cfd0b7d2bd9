"""
Error kinds raised by pathfit.

Each error refines the builtin exception a caller would naturally catch
(``IndexError`` for bad node indices, ``RuntimeError`` for state problems) and
also derives from :class:`PathFitError`, so callers can catch everything the
package raises in one place.
"""

from typing import Optional


class PathFitError(Exception):
    """Base class for all pathfit errors."""


class InvalidIndexError(PathFitError, IndexError):
    """A node index was outside the valid range for the requested operation."""


class InvalidStateError(PathFitError, RuntimeError):
    """An operation was attempted on a path or join in the wrong state."""


class CircleFitError(PathFitError, RuntimeError):
    """The cross-section optimizer did not converge; no fitted path is produced."""

    def __init__(self, message: str, node_index: Optional[int] = None):
        super().__init__(message)
        self.node_index = node_index
