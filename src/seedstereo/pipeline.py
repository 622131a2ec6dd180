"""Correlation run orchestration: search range, seed, and full-resolution stages."""

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch

from .alignment import correlate_aligned_tile
from .backends.dispatch import BackendConfig, resolve_backend
from .config import PipelineConfig
from .disparity import SeedMap, save_disparity_map, valid_mask
from .geometry import PixelBox, SearchWindow
from .io import load_alignment_matrices, load_image, load_mask, load_matches
from .lowres import load_seed, lowres_correlation, search_range_from_seed
from .profiling import timed_stage
from .search_range import (
    MatchPredicate,
    adjust_matches_for_alignment,
    apply_search_range_limit,
    crop_adjusted_search_range,
    estimate_search_range,
)
from .seeded import SeededTileCorrelator
from .tiling import (
    assemble_tiles,
    compose_tile_files,
    correlate_tiles,
    make_tiles,
    round_tile_size,
    save_tile_result,
)

logger = logging.getLogger(__name__)

SEMI_GLOBAL_ALGORITHMS = ("asp_sgm", "asp_mgm")


@dataclass
class StereoPair:
    """Images and masks of one run, after the optional input crops.

    Attributes:
        left: Left image (H, W) float32.
        right: Right image (H', W') float32.
        left_mask: Left validity (H, W) bool.
        right_mask: Right validity (H', W') bool.
        left_crop: Crop applied to the left image, if any.
        right_crop: Crop applied to the right image, if any.
    """

    left: np.ndarray
    right: np.ndarray
    left_mask: np.ndarray
    right_mask: np.ndarray
    left_crop: PixelBox | None = None
    right_crop: PixelBox | None = None

    @property
    def shape(self) -> tuple[int, int]:
        return self.left.shape[0], self.left.shape[1]

    def tensors(self, device: str) -> tuple[torch.Tensor, ...]:
        """(left, right, left_mask, right_mask) as tensors on ``device``."""
        return tuple(
            torch.from_numpy(np.ascontiguousarray(a)).to(device)
            for a in (self.left, self.right, self.left_mask, self.right_mask)
        )


def _clip_crop(box: PixelBox | None, shape: tuple[int, ...], name: str) -> PixelBox | None:
    if box is None:
        return None
    clipped = box.crop(PixelBox(0, 0, shape[1], shape[0]))
    if clipped.is_empty:
        raise ValueError(f"Crop window {box} lies outside the {name} image")
    return clipped


def run_inputs(config: PipelineConfig) -> list[str]:
    """Files whose modification invalidates cached artifacts."""
    inputs = [config.left_image, config.right_image, *config.camera_files]
    inputs += [m for m in (config.left_mask, config.right_mask) if m]
    return inputs


def load_pair(config: PipelineConfig) -> StereoPair:
    """Load images and masks and apply the configured input crops."""
    sr = config.search_range
    left_crop = PixelBox(*sr.left_image_crop_win) if sr.left_image_crop_win else None
    right_crop = PixelBox(*sr.right_image_crop_win) if sr.right_image_crop_win else None

    left = load_image(config.left_image)
    right = load_image(config.right_image)
    left_mask = load_mask(config.left_mask, left.shape)
    right_mask = load_mask(config.right_mask, right.shape)
    logger.info("Loaded left %s and right %s images", left.shape, right.shape)

    left_crop = _clip_crop(left_crop, left.shape, "left")
    right_crop = _clip_crop(right_crop, right.shape, "right")
    if left_crop is not None:
        rows, cols = left_crop.slices()
        left, left_mask = left[rows, cols], left_mask[rows, cols]
    if right_crop is not None:
        rows, cols = right_crop.slices()
        right, right_mask = right[rows, cols], right_mask[rows, cols]
    if left_crop or right_crop:
        logger.info("Cropped inputs: left %s, right %s", left_crop, right_crop)

    return StereoPair(left, right, left_mask, right_mask, left_crop, right_crop)


def load_run_matches(
    config: PipelineConfig, pair: StereoPair
) -> tuple[np.ndarray, np.ndarray]:
    """Interest point matches in the coordinates of the (cropped) pair.

    Applies the persisted alignment matrices, then the crop origins.

    Raises:
        MissingArtifact: If the match file is missing or stale.
    """
    left, right = load_matches(config.match_path, inputs=run_inputs(config))
    left_matrix, right_matrix = load_alignment_matrices(config.prefix)
    left, right = adjust_matches_for_alignment(left, right, left_matrix, right_matrix)
    if pair.left_crop is not None:
        left = left - np.array([pair.left_crop.col, pair.left_crop.row], dtype=np.float64)
    if pair.right_crop is not None:
        right = right - np.array([pair.right_crop.col, pair.right_crop.row], dtype=np.float64)
    logger.info("Loaded %d interest point matches from %s", len(left), config.match_path)
    return left, right


def compute_search_range(
    config: PipelineConfig,
    pair: StereoPair,
    predicates: tuple[MatchPredicate, ...] = (),
    ip_scale: float = 1.0,
) -> SearchWindow:
    """Run-wide search window: the user's, or one estimated from matches.

    Raises:
        MissingArtifact: If the window must be estimated and no matches exist.
        InsufficientMatches: If too few matches survive filtering.
        EmptySearchWindow: If the window is degenerate or misses the limit.
    """
    user_window = config.search_range.user_window
    if user_window is not None:
        window = crop_adjusted_search_range(user_window, pair.left_crop, pair.right_crop)
        logger.info("Using search range from the configuration: %s", window)
    else:
        left, right = load_run_matches(config, pair)
        window = estimate_search_range(
            left, right, config.search_range, predicates=predicates, ip_scale=ip_scale
        )
        logger.info("Estimated search range: %s", window)
    return apply_search_range_limit(window, config.search_range.limit_window)


def check_tile_size(config: PipelineConfig, backend: BackendConfig, shape: tuple[int, int]) -> None:
    """Semi-global matchers need a single tile covering the whole image.

    Raises:
        ValueError: If a semi-global matcher would run on partial tiles.
    """
    tile_size = round_tile_size(config.tiling.tile_size)
    if backend.name in SEMI_GLOBAL_ALGORITHMS and tile_size < max(shape):
        raise ValueError(
            f"{backend.name} requires tiling.tile_size >= {max(shape)} "
            f"(the largest image dimension), got {tile_size}"
        )


def run_seed_stage(
    config: PipelineConfig,
    pair: StereoPair,
    backend: BackendConfig,
    search_range: SearchWindow,
) -> tuple[SeedMap | None, SearchWindow]:
    """Produce or load the seed and refine the run-wide window from it.

    Returns:
        Tuple of (seed or None, search window for the full-resolution stage).
    """
    match config.seed.seed_mode:
        case "none":
            return None, search_range
        case "lowres":
            seed = lowres_correlation(
                config,
                pair.left,
                pair.right,
                pair.left_mask,
                pair.right_mask,
                search_range,
                backend,
            )
        case "external":
            seed = load_seed(config, require_spread=True)
            logger.info("Loaded seed and spread from %s", config.artifact_path("D_sub.npz"))
        case _:
            raise ValueError(f"Unknown seed mode: {config.seed.seed_mode!r}")

    height, width = pair.shape
    upscale = (width / seed.width, height / seed.height)
    refined = apply_search_range_limit(
        search_range_from_seed(seed, upscale), config.search_range.limit_window
    )
    logger.info("Search range from the low-resolution disparity: %s", refined)
    return seed, refined


def write_disparity(config: PipelineConfig, disparity: torch.Tensor) -> Path:
    """Write the full-resolution raster to ``{prefix}-D.npz``."""
    path = config.artifact_path("D.npz")
    path.parent.mkdir(parents=True, exist_ok=True)
    save_disparity_map(disparity, path)
    total = disparity.shape[0] * disparity.shape[1]
    valid = int(valid_mask(disparity).sum())
    logger.info("Wrote %s (%d of %d pixels valid)", path, valid, total)
    return path


def run_2d_stage(
    config: PipelineConfig,
    pair: StereoPair,
    backend: BackendConfig,
    search_range: SearchWindow,
    seed: SeedMap | None = None,
) -> torch.Tensor:
    """Full-resolution correlation of every tile, bounded by the seed.

    Returns:
        Disparity (H, W, 2).
    """
    device = config.runtime.device
    height, width = pair.shape
    left, right, left_mask, right_mask = pair.tensors(device)
    upscale = (width / seed.width, height / seed.height) if seed is not None else (1.0, 1.0)

    correlator = SeededTileCorrelator(
        left, right, left_mask, right_mask, backend, config, search_range, seed, upscale
    )
    tiles = make_tiles(
        width, height, round_tile_size(config.tiling.tile_size), config.tiling.crop_box
    )
    logger.info("Correlating %d tiles with %s", len(tiles), backend.name)

    with timed_stage("full_resolution_correlation", logger):
        results = correlate_tiles(
            correlator.compute, tiles, config.tiling.num_workers, config.runtime.quiet
        )
    return assemble_tiles(width, height, tiles, results, device=device)


def run_1d_stage(
    config: PipelineConfig, pair: StereoPair, backend: BackendConfig
) -> torch.Tensor:
    """Per-tile local epipolar alignment, matching, and unalignment.

    Every tile is written to its own file before the raster is stitched.

    Returns:
        Disparity (H, W, 2).
    """
    device = config.runtime.device
    height, width = pair.shape
    left_points, right_points = load_run_matches(config, pair)
    tiles = make_tiles(
        width, height, round_tile_size(config.tiling.tile_size), config.tiling.crop_box
    )
    logger.info("Correlating %d locally aligned tiles with %s", len(tiles), backend.name)

    def compute(tile):
        disparity = correlate_aligned_tile(
            tile,
            pair.left,
            pair.right,
            pair.left_mask,
            pair.right_mask,
            left_points,
            right_points,
            backend,
            config,
        )
        save_tile_result(config.prefix, tile, disparity)
        return disparity

    with timed_stage("aligned_correlation", logger):
        results = correlate_tiles(compute, tiles, config.tiling.num_workers, config.runtime.quiet)

    for tile, result in zip(tiles, results):
        if result is None:
            save_tile_result(config.prefix, tile, None)
    return compose_tile_files(config.prefix, width, height, tiles, device=device)


def run_correlation(
    config: PipelineConfig,
    predicates: tuple[MatchPredicate, ...] = (),
    ip_scale: float = 1.0,
) -> Path:
    """Run a complete correlation.

    Args:
        config: Pipeline configuration.
        predicates: Match rejection predicates for search range estimation.
        ip_scale: Scale at which the interest point matches were computed.

    Returns:
        Path of the written disparity (the seed when only the low-resolution
        disparity is requested).

    Raises:
        ValueError: On incompatible settings.
        MissingArtifact: If a required match or seed file is missing.
        InsufficientMatches: If search range estimation has too few matches.
        EmptySearchWindow: If the run-wide search window is empty.
        BackendFailure: If the seed computation fails.
    """
    backend = resolve_backend(config.correlation.stereo_algorithm, config.external)
    epipolar = config.correlation.alignment_method == "local_epipolar"
    lowres_only = config.seed.compute_low_res_disparity_only
    if lowres_only and config.seed.seed_mode != "lowres":
        raise ValueError("compute_low_res_disparity_only requires seed_mode 'lowres'")
    if backend.is_1d and not epipolar:
        raise ValueError(
            f"{backend.name} searches along rows only and requires "
            "alignment_method 'local_epipolar'"
        )
    if backend.is_1d and lowres_only:
        raise ValueError(
            f"{backend.name} searches along rows only and cannot compute the "
            "low-resolution disparity"
        )

    with timed_stage("load_inputs", logger):
        pair = load_pair(config)

    if epipolar and not lowres_only:
        return write_disparity(config, run_1d_stage(config, pair, backend))

    if not lowres_only:
        check_tile_size(config, backend, pair.shape)

    with timed_stage("search_range", logger):
        search_range = compute_search_range(config, pair, predicates, ip_scale)

    seed, search_range = run_seed_stage(config, pair, backend, search_range)
    if lowres_only:
        logger.info("Computed the low-resolution disparity only")
        return config.artifact_path("D_sub.npz")

    disparity = run_2d_stage(config, pair, backend, search_range, seed)
    return write_disparity(config, disparity)


class Pipeline:
    """Seed-and-refine stereo correlation.

    Example:
        pipeline = Pipeline(config)
        pipeline.run()
    """

    def __init__(self, config: PipelineConfig):
        self.config = config

    def run(self) -> Path:
        """Equivalent to calling run_correlation(config)."""
        return run_correlation(self.config)


__all__ = [
    "StereoPair",
    "Pipeline",
    "load_pair",
    "load_run_matches",
    "compute_search_range",
    "check_tile_size",
    "run_seed_stage",
    "run_2d_stage",
    "run_1d_stage",
    "write_disparity",
    "run_correlation",
]
