"""Seed-and-refine dense stereo correlation of rectified image pairs."""

from .config import (
    CorrelationConfig,
    ExternalConfig,
    PipelineConfig,
    PluginConfig,
    RuntimeConfig,
    SearchRangeConfig,
    SeedConfig,
    TilingConfig,
)
from .disparity import (
    SeedMap,
    load_disparity_map,
    load_spread_map,
    save_disparity_map,
    save_spread_map,
)
from .errors import (
    AlignmentFailure,
    BackendFailure,
    DimensionMismatch,
    EmptySearchWindow,
    InsufficientMatches,
    MissingArtifact,
    SeedStereoError,
)
from .geometry import PixelBox, SearchWindow, Tile
from .io import save_matches
from .lowres import lowres_correlation
from .pipeline import Pipeline, run_correlation
from .search_range import estimate_search_range
from .seeded import SeededTileCorrelator, local_search_window

__version__ = "0.1.0"

__all__ = [
    "PipelineConfig",
    "SearchRangeConfig",
    "SeedConfig",
    "CorrelationConfig",
    "ExternalConfig",
    "PluginConfig",
    "TilingConfig",
    "RuntimeConfig",
    "SearchWindow",
    "PixelBox",
    "Tile",
    "SeedMap",
    "save_disparity_map",
    "load_disparity_map",
    "save_spread_map",
    "load_spread_map",
    "save_matches",
    "SeedStereoError",
    "InsufficientMatches",
    "EmptySearchWindow",
    "DimensionMismatch",
    "BackendFailure",
    "AlignmentFailure",
    "MissingArtifact",
    "estimate_search_range",
    "lowres_correlation",
    "local_search_window",
    "SeededTileCorrelator",
    "Pipeline",
    "run_correlation",
]
