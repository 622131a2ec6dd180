"""Run-wide disparity search range from sparse interest point matches."""

import logging
from typing import Protocol

import numpy as np

from .config import SearchRangeConfig
from .errors import EmptySearchWindow, InsufficientMatches
from .geometry import PixelBox, SearchWindow

logger = logging.getLogger(__name__)

MAX_SEARCH_WIDTH = 4000  # Widths at or above this trigger more aggressive trimming
MIN_SEARCH_WIDTH = 200  # Up to this x extent the raw range is used unfiltered
MINIMAL_EXPAND = (10, 1)
FORCED_EXPANSION = (30, 2)
SEARCH_SCALE = 2.0
NUM_BINS = 1_000_000
PERCENTILE_CUTOFF = 0.05
PERCENTILE_CUTOFF_INC = 0.05
MAX_PERCENTILE_CUTOFF = 0.201


class MatchPredicate(Protocol):
    """Rejects matches that are implausible for the caller's camera geometry.

    Called with left and right points (N, 2) and returns a boolean keep-mask (N,).
    """

    def __call__(self, left: np.ndarray, right: np.ndarray) -> np.ndarray: ...


def outlier_brackets(
    values: np.ndarray, percentile: float, factor: float
) -> tuple[float, float]:
    """Box-and-whisker bounds of a 1D sample.

    Args:
        values: Sample values (N,).
        percentile: Upper quantile in (0.5, 1); the lower one is 1 - percentile.
        factor: Multiple of the inter-quantile range added on each side.

    Returns:
        Tuple (low, high) of accepted values.
    """
    q_lo = float(np.quantile(values, 1.0 - percentile))
    q_hi = float(np.quantile(values, percentile))
    spread = q_hi - q_lo
    return q_lo - factor * spread, q_hi + factor * spread


def filter_matches_by_disparity(
    left: np.ndarray, right: np.ndarray, percentile: float, factor: float
) -> tuple[np.ndarray, np.ndarray]:
    """Remove matches whose disparity is an outlier in either axis.

    Args:
        left: Left points (N, 2).
        right: Right points (N, 2).
        percentile: Upper percentile in percent, e.g. 95.
        factor: Whisker factor.

    Returns:
        Filtered (left, right).
    """
    if len(left) == 0:
        return left, right
    disp = right - left
    keep = np.ones(len(left), dtype=bool)
    for axis in range(2):
        lo, hi = outlier_brackets(disp[:, axis], percentile / 100.0, factor)
        keep &= (disp[:, axis] >= lo) & (disp[:, axis] <= hi)
    logger.info(
        "Disparity filter (%.1f%%, factor %.2f) kept %d of %d matches",
        percentile,
        factor,
        int(keep.sum()),
        len(keep),
    )
    return left[keep], right[keep]


def adjust_matches_for_alignment(
    left: np.ndarray,
    right: np.ndarray,
    left_matrix: np.ndarray | None = None,
    right_matrix: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Map matches through the global alignment matrices.

    Points whose homogeneous weight becomes zero in either image are left
    untouched.

    Args:
        left: Left points (N, 2).
        right: Right points (N, 2).
        left_matrix: Left 3x3 alignment (identity if None).
        right_matrix: Right 3x3 alignment (identity if None).

    Returns:
        Aligned (left, right) as new arrays.
    """
    left_matrix = np.eye(3) if left_matrix is None else np.asarray(left_matrix, dtype=np.float64)
    right_matrix = np.eye(3) if right_matrix is None else np.asarray(right_matrix, dtype=np.float64)

    ones = np.ones((len(left), 1))
    lh = np.hstack([left, ones]) @ left_matrix.T
    rh = np.hstack([right, ones]) @ right_matrix.T
    ok = (lh[:, 2] != 0) & (rh[:, 2] != 0)

    out_left = np.array(left, dtype=np.float64, copy=True)
    out_right = np.array(right, dtype=np.float64, copy=True)
    out_left[ok] = lh[ok, :2] / lh[ok, 2:3]
    out_right[ok] = rh[ok, :2] / rh[ok, 2:3]
    return out_left, out_right


def _bin_center(low: float, high: float, index: int) -> float:
    if high <= low:
        return low
    return low + (index + 0.5) * (high - low) / NUM_BINS


def _percentile_bin(cdf: np.ndarray, percentile: float) -> int:
    return int(min(np.searchsorted(cdf, percentile, side="left"), NUM_BINS - 1))


def search_range_from_histograms(
    dx: np.ndarray, dy: np.ndarray, edge_discard_percentile: float = PERCENTILE_CUTOFF
) -> SearchWindow:
    """Whisker window from per-axis disparity histograms.

    The window spans the bin centres at percentiles ``p`` and ``1 - p``,
    is centred, scaled by ``SEARCH_SCALE`` (never less than
    ``FORCED_EXPANSION`` in each direction) and rounded outward.

    Args:
        dx: Horizontal disparities (N,).
        dy: Vertical disparities (N,).
        edge_discard_percentile: Fraction trimmed from each tail.

    Returns:
        Integer-bounded search window.
    """
    bounds = []
    for values, forced in zip((dx, dy), FORCED_EXPANSION):
        low, high = float(values.min()), float(values.max())
        if high > low:
            counts, _ = np.histogram(values, bins=NUM_BINS, range=(low, high))
        else:
            counts = np.zeros(NUM_BINS)
            counts[0] = len(values)
        cdf = np.cumsum(counts) / counts.sum()

        search_min = _bin_center(low, high, _percentile_bin(cdf, edge_discard_percentile))
        search_max = _bin_center(low, high, _percentile_bin(cdf, 1.0 - edge_discard_percentile))
        center = (search_min + search_max) / 2.0

        min_expand = min((search_min - center) * SEARCH_SCALE, -forced)
        max_expand = max((search_max - center) * SEARCH_SCALE, forced)
        bounds.append((center + min_expand, center + max_expand))

    (min_x, max_x), (min_y, max_y) = bounds
    return SearchWindow(min_x, min_y, max_x, max_y).grow_to_int()


def estimate_search_range(
    left_points: np.ndarray,
    right_points: np.ndarray,
    config: SearchRangeConfig,
    predicates: tuple[MatchPredicate, ...] = (),
    ip_scale: float = 1.0,
) -> SearchWindow:
    """Estimate the run-wide search window from interest point matches.

    Args:
        left_points: Left keypoints (N, 2) as (x, y).
        right_points: Right keypoints (N, 2) as (x, y).
        config: Search range configuration.
        predicates: Match rejection predicates applied in order.
        ip_scale: Scale at which the matches were computed; disparities are
            divided by it.

    Returns:
        Non-empty integer-bounded search window.

    Raises:
        InsufficientMatches: If fewer than ``config.min_num_matches`` survive.
        EmptySearchWindow: If the resulting window is degenerate.
    """
    left = np.asarray(left_points, dtype=np.float64).reshape(-1, 2)
    right = np.asarray(right_points, dtype=np.float64).reshape(-1, 2)

    for predicate in predicates:
        keep = np.asarray(predicate(left, right), dtype=bool)
        left, right = left[keep], right[keep]

    percentile, factor = config.remove_outliers_by_disp_params
    if percentile < 100.0:
        left, right = filter_matches_by_disparity(left, right, percentile, factor)

    if len(left) < config.min_num_matches:
        raise InsufficientMatches(
            f"Number of matches left after filtering is {len(left)}, which is less "
            f"than the required {config.min_num_matches}. Compute more matches or "
            "decrease min_num_matches."
        )

    logger.info("Estimating search range with %d matches", len(left))
    disp = (right - left) / ip_scale
    dx, dy = disp[:, 0], disp[:, 1]
    raw = SearchWindow(float(dx.min()), float(dy.min()), float(dx.max()), float(dy.max()))
    logger.info("Initial search range: %s", raw)

    if raw.width <= MIN_SEARCH_WIDTH:
        window = raw.grow_to_int().expand(*MINIMAL_EXPAND)
        logger.info("Using expanded search range: %s", window)
        return window

    cutoff = PERCENTILE_CUTOFF
    while True:
        window = search_range_from_histograms(dx, dy, cutoff)
        logger.info("Computed search range (trim %.2f): %s", cutoff, window)
        cutoff += PERCENTILE_CUTOFF_INC
        if cutoff > MAX_PERCENTILE_CUTOFF:
            if window.width < MAX_SEARCH_WIDTH:
                logger.info(
                    "Exceeded maximum filter cutoff of %.3f, keeping current search range",
                    MAX_PERCENTILE_CUTOFF,
                )
            break
        if window.width < MAX_SEARCH_WIDTH:
            break
        logger.info(
            "Search width %g exceeds %d, retrying with a more aggressive filter",
            window.width,
            MAX_SEARCH_WIDTH,
        )

    if window.is_empty:
        raise EmptySearchWindow(f"Computed an empty search range: {window}")
    return window


def apply_search_range_limit(
    window: SearchWindow, limit: SearchWindow | None
) -> SearchWindow:
    """Crop a window to the user hard limit.

    Raises:
        EmptySearchWindow: If the window and the limit do not overlap.
    """
    if limit is None:
        return window
    cropped = window.intersect(limit)
    if cropped.is_empty:
        raise EmptySearchWindow(
            f"Search range {window} does not overlap the limit {limit}"
        )
    logger.info("Search range limited to %s", cropped)
    return cropped


def crop_adjusted_search_range(
    window: SearchWindow,
    left_crop: PixelBox | None,
    right_crop: PixelBox | None,
) -> SearchWindow:
    """Express a full-image search window in cropped image coordinates.

    A disparity measured between crops differs from the full-image one by
    the difference of the crop origins.
    """
    lx, ly = (left_crop.col, left_crop.row) if left_crop else (0, 0)
    rx, ry = (right_crop.col, right_crop.row) if right_crop else (0, 0)
    if (lx, ly) == (rx, ry):
        return window
    return window.translate(lx - rx, ly - ry)


__all__ = [
    "MatchPredicate",
    "MAX_SEARCH_WIDTH",
    "MIN_SEARCH_WIDTH",
    "MINIMAL_EXPAND",
    "FORCED_EXPANSION",
    "NUM_BINS",
    "outlier_brackets",
    "filter_matches_by_disparity",
    "adjust_matches_for_alignment",
    "search_range_from_histograms",
    "estimate_search_range",
    "apply_search_range_limit",
    "crop_adjusted_search_range",
]
