"""Low-resolution seed disparity: computed once on downsampled images, cached on disk."""

import logging
import zipfile
from pathlib import Path

import numpy as np
import torch
import torch.nn.functional as F

from .backends.dispatch import BackendConfig, run_backend
from .config import PipelineConfig
from .disparity import (
    SeedMap,
    disparity_range,
    invalidate,
    load_disparity_map,
    load_spread_map,
    save_disparity_map,
    valid_mask,
)
from .errors import EmptySearchWindow, MissingArtifact
from .geometry import SearchWindow
from .io import downsample_image, downsample_mask, is_latest_timestamp
from .profiling import timed_stage
from .search_range import outlier_brackets

logger = logging.getLogger(__name__)

LOWRES_TIMEOUT_FACTOR = 5.0
LOWRES_XCORR_THRESHOLD = 2.0


def seed_search_window(
    search_range: SearchWindow,
    downsample_scale: tuple[float, float],
    seed_percent_pad: float,
) -> SearchWindow:
    """Search window for the downsampled pair.

    Args:
        search_range: Full-resolution run-wide window.
        downsample_scale: (sx, sy), downsampled size over full size.
        seed_percent_pad: Fraction of the width/height added, half on each side.

    Returns:
        Integer-bounded window in downsampled pixels.
    """
    window = search_range.scaled(*downsample_scale)
    pad_x = window.width * seed_percent_pad / 2.0
    pad_y = window.height * seed_percent_pad / 2.0
    return window.expand(pad_x, pad_y).grow_to_int()


def rm_outliers_using_thresh(
    disparity: torch.Tensor,
    half_h: int,
    half_w: int,
    rejection_threshold: float,
    min_matches_fraction: float,
) -> torch.Tensor:
    """Reject vectors that disagree with their neighbourhood.

    A neighbour agrees when it is valid and differs by at most
    ``rejection_threshold`` in both axes. A vector is kept when the agreeing
    fraction of its valid neighbours is at least ``min_matches_fraction``.

    Args:
        disparity: Disparity (H, W, 2), NaN where invalid.
        half_h: Neighbourhood half height.
        half_w: Neighbourhood half width.
        rejection_threshold: Agreement threshold in pixels.
        min_matches_fraction: Required agreeing fraction in [0, 1].

    Returns:
        Filtered copy.
    """
    H, W = disparity.shape[:2]
    valid = valid_mask(disparity)
    padded = F.pad(
        disparity.permute(2, 0, 1), (half_w, half_w, half_h, half_h), value=float("nan")
    ).permute(1, 2, 0)

    agree = torch.zeros(H, W, device=disparity.device)
    total = torch.zeros(H, W, device=disparity.device)
    for oy in range(-half_h, half_h + 1):
        for ox in range(-half_w, half_w + 1):
            if ox == 0 and oy == 0:
                continue
            neighbour = padded[half_h + oy : half_h + oy + H, half_w + ox : half_w + ox + W]
            n_valid = valid_mask(neighbour)
            close = (neighbour - disparity).abs().amax(dim=-1) <= rejection_threshold
            total += n_valid.float()
            agree += (n_valid & close).float()

    keep = valid & (total > 0) & (agree >= min_matches_fraction * total)
    logger.debug("Threshold filter kept %d of %d vectors", int(keep.sum()), int(valid.sum()))
    return invalidate(disparity, keep)


def rm_outliers_using_quantiles(
    disparity: torch.Tensor, percentile: float, multiple: float
) -> torch.Tensor:
    """Reject vectors outside the per-axis quantile band.

    Per axis, with q_lo = Q(1 - percentile), q_hi = Q(percentile) and
    w = q_hi - q_lo, values outside [q_lo - multiple * w, q_hi + multiple * w]
    are invalidated.
    """
    valid = valid_mask(disparity)
    if not valid.any():
        return disparity.clone()
    vectors = disparity[valid].cpu().numpy()
    keep = valid.clone()
    for axis in range(2):
        lo, hi = outlier_brackets(vectors[:, axis], percentile, multiple)
        values = disparity[..., axis]
        keep &= (values >= lo) & (values <= hi)
    logger.debug("Quantile filter kept %d of %d vectors", int(keep.sum()), int(valid.sum()))
    return invalidate(disparity, keep)


def filter_seed(disparity: torch.Tensor, config: PipelineConfig) -> torch.Tensor:
    """Apply the configured outlier removal to a raw seed disparity."""
    seed = config.seed
    match seed.outlier_removal_mode:
        case "threshold":
            return rm_outliers_using_thresh(
                disparity,
                half_h=1,
                half_w=1,
                rejection_threshold=seed.rm_threshold * 2.0 / 3.0,
                min_matches_fraction=(seed.rm_min_matches / 100.0) * 0.5 / 0.6,
            )
        case "quantile":
            return rm_outliers_using_quantiles(
                disparity, seed.rm_quantile_percentile, seed.rm_quantile_multiple
            )
        case "none":
            return disparity
        case _:
            raise ValueError(f"Unknown outlier removal mode: {seed.outlier_removal_mode!r}")


def produce_lowres_disparity(
    left_sub: torch.Tensor,
    right_sub: torch.Tensor,
    left_mask_sub: torch.Tensor | None,
    right_mask_sub: torch.Tensor | None,
    search_range: SearchWindow,
    downsample_scale: tuple[float, float],
    backend: BackendConfig,
    config: PipelineConfig,
) -> torch.Tensor:
    """Correlate the downsampled pair once and filter the result.

    Runs with five times the configured timeout and always cross-checks
    (threshold 2 if the configured one is negative).

    Returns:
        Seed disparity (h, w, 2) in downsampled pixels.
    """
    window = seed_search_window(search_range, downsample_scale, config.seed.seed_percent_pad)
    logger.info("Low-resolution search window: %s", window)

    xcorr = config.correlation.xcorr_threshold
    if xcorr < 0:
        xcorr = LOWRES_XCORR_THRESHOLD

    disparity = run_backend(
        left_sub,
        right_sub,
        left_mask_sub,
        right_mask_sub,
        window,
        backend,
        config,
        timeout=config.correlation.corr_timeout * LOWRES_TIMEOUT_FACTOR,
        xcorr_threshold=xcorr,
    )
    return filter_seed(disparity, config)


def _loads_cleanly(path: Path) -> bool:
    try:
        load_disparity_map(path)
    except (OSError, ValueError, KeyError, EOFError, zipfile.BadZipFile) as e:
        logger.info("Existing seed %s is unreadable (%s); recomputing", path, e)
        return False
    return True


def should_rebuild_seed(
    seed_path: str | Path, inputs: list[str | Path], crop_requested: bool
) -> bool:
    """Decide whether the cached seed must be recomputed.

    The seed is reused only when it exists, loads cleanly, is strictly newer
    than every input, and no crop window is requested.
    """
    seed_path = Path(seed_path)
    if crop_requested:
        return True
    if not is_latest_timestamp(seed_path, inputs):
        return True
    return not _loads_cleanly(seed_path)


def search_range_from_seed(seed: SeedMap, upsample_scale: tuple[float, float]) -> SearchWindow:
    """Run-wide full-resolution window read back from the seed.

    Raises:
        EmptySearchWindow: If the seed has no valid vector.
    """
    window = disparity_range(seed.disparity)
    if window is None:
        raise EmptySearchWindow("Low-resolution disparity has no valid pixels")
    if seed.spread is not None:
        spread = torch.nan_to_num(seed.spread, nan=0.0)
        window = window.expand(float(spread[..., 0].max()), float(spread[..., 1].max()))
    return window.scaled(*upsample_scale)


def load_seed(config: PipelineConfig, require_spread: bool = False) -> SeedMap:
    """Load the seed (and spread, if present) from the output prefix.

    Raises:
        MissingArtifact: If the seed, or a required spread, is missing.
    """
    seed_path = config.artifact_path("D_sub.npz")
    spread_path = config.artifact_path("D_sub_spread.npz")
    device = config.runtime.device
    if not seed_path.exists():
        raise MissingArtifact(f"Low-resolution disparity not found: {seed_path}")
    if require_spread and not spread_path.exists():
        raise MissingArtifact(f"Low-resolution disparity spread not found: {spread_path}")

    disparity = load_disparity_map(seed_path, device=device)
    spread = load_spread_map(spread_path, device=device) if spread_path.exists() else None
    return SeedMap(disparity, spread)


def lowres_correlation(
    config: PipelineConfig,
    left: np.ndarray,
    right: np.ndarray,
    left_mask: np.ndarray,
    right_mask: np.ndarray,
    search_range: SearchWindow,
    backend: BackendConfig,
) -> SeedMap:
    """Produce or reuse the seed written to ``{prefix}-D_sub.npz``.

    Args:
        config: Pipeline configuration.
        left: Full-resolution left image (H, W) float32.
        right: Full-resolution right image float32.
        left_mask: Left validity (H, W) bool.
        right_mask: Right validity bool.
        search_range: Full-resolution run-wide window.
        backend: Backend used for the seed.

    Returns:
        Seed map (without spread when computed here).
    """
    seed_path = config.artifact_path("D_sub.npz")
    spread_path = config.artifact_path("D_sub_spread.npz")
    inputs = [config.left_image, config.right_image, *config.camera_files]
    inputs += [m for m in (config.left_mask, config.right_mask) if m]

    if config.seed.skip_low_res_disparity_comp and seed_path.exists():
        logger.info("Skipping low-resolution disparity computation; using %s", seed_path)
        return load_seed(config)

    if not should_rebuild_seed(seed_path, inputs, config.search_range.crop_requested):
        logger.info("Using cached low-resolution disparity %s", seed_path)
        return load_seed(config)

    # A spread from an older run would no longer match the new seed
    if spread_path.exists():
        logger.info("Removing stale %s", spread_path)
        spread_path.unlink()

    factor = config.seed.downsample_factor
    device = config.runtime.device
    left_sub = downsample_image(left, factor)
    right_sub = downsample_image(right, factor)
    scale = (left_sub.shape[1] / left.shape[1], left_sub.shape[0] / left.shape[0])

    with timed_stage("lowres_correlation", logger):
        disparity = produce_lowres_disparity(
            torch.from_numpy(left_sub).to(device),
            torch.from_numpy(right_sub).to(device),
            torch.from_numpy(downsample_mask(left_mask, factor)).to(device),
            torch.from_numpy(downsample_mask(right_mask, factor)).to(device),
            search_range,
            scale,
            backend,
            config,
        )

    seed_path.parent.mkdir(parents=True, exist_ok=True)
    save_disparity_map(disparity, seed_path)
    logger.info(
        "Wrote %s (%d of %d pixels valid)",
        seed_path,
        int(valid_mask(disparity).sum()),
        disparity.shape[0] * disparity.shape[1],
    )
    return SeedMap(disparity)


__all__ = [
    "seed_search_window",
    "rm_outliers_using_thresh",
    "rm_outliers_using_quantiles",
    "filter_seed",
    "produce_lowres_disparity",
    "should_rebuild_seed",
    "search_range_from_seed",
    "load_seed",
    "lowres_correlation",
]
