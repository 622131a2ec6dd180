"""Exception types raised by the correlation pipeline.

Run-level failures (``InsufficientMatches``, ``EmptySearchWindow`` during
setup, ``MissingArtifact``) abort a run. Tile-level failures
(``BackendFailure``, ``AlignmentFailure``, ``DimensionMismatch``) are caught
at the tile boundary and turned into an all-invalid tile.
"""


class SeedStereoError(Exception):
    """Base class for all seedstereo errors."""


class InsufficientMatches(SeedStereoError, ValueError):
    """Too few interest point matches survived filtering."""


class EmptySearchWindow(SeedStereoError, ValueError):
    """A computed search window is degenerate in at least one axis."""


class DimensionMismatch(SeedStereoError, ValueError):
    """Two rasters that must share dimensions do not."""


class BackendFailure(SeedStereoError, RuntimeError):
    """A correlation backend produced no usable result."""


class AlignmentFailure(SeedStereoError, RuntimeError):
    """Local alignment for a tile could not be computed."""


class MissingArtifact(SeedStereoError, FileNotFoundError):
    """A mandatory intermediate file is missing or stale."""


# Errors confined to a single tile; the run continues with an invalid tile.
TILE_ERRORS = (BackendFailure, AlignmentFailure, DimensionMismatch, EmptySearchWindow)

__all__ = [
    "SeedStereoError",
    "InsufficientMatches",
    "EmptySearchWindow",
    "DimensionMismatch",
    "BackendFailure",
    "AlignmentFailure",
    "MissingArtifact",
    "TILE_ERRORS",
]
