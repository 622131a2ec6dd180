"""Per-tile full-resolution correlation bounded by the low-resolution seed."""

import logging
import math
from dataclasses import dataclass

import torch

from .backends.dispatch import BackendConfig, run_backend
from .config import PipelineConfig
from .disparity import SeedMap, disparity_range
from .errors import DimensionMismatch, EmptySearchWindow
from .geometry import PixelBox, SearchWindow, Tile

logger = logging.getLogger(__name__)


def scale_window_to_fullres(window: SearchWindow, upscale: tuple[float, float]) -> SearchWindow:
    """Scale a seed-grid window to full resolution (floor min, ceil max)."""
    return window.scaled(*upscale)


def seed_box_for_tile(tile: Tile, upscale: tuple[float, float], seed_bounds: PixelBox) -> PixelBox:
    """Seed pixels covering a full-resolution tile, grown by one and clipped."""
    sx, sy = upscale
    box = PixelBox.from_bounds(
        math.floor(tile.col / sx),
        math.floor(tile.row / sy),
        math.ceil(tile.max_col / sx),
        math.ceil(tile.max_row / sy),
    )
    return box.expand(1).crop(seed_bounds)


def local_search_window(
    tile: Tile,
    seed_disparity: torch.Tensor,
    seed_spread: torch.Tensor | None,
    upscale: tuple[float, float],
    limit: SearchWindow | None = None,
) -> SearchWindow:
    """Full-resolution search window for one tile.

    1. Map the tile into the seed grid, grow by one seed pixel, clip.
    2. Bound the valid seed vectors there, widened by the largest spread.
    3. Round outward and grow by one.
    4. Scale to full resolution and intersect with ``limit``.

    Args:
        tile: Output tile in full-resolution pixels.
        seed_disparity: Seed (h, w, 2) in seed pixels.
        seed_spread: Optional spread (h, w, 2), same size as the seed.
        upscale: (sx, sy), full-resolution size over seed size.
        limit: Optional hard clamp.

    Returns:
        Non-empty search window.

    Raises:
        DimensionMismatch: If the spread size differs from the seed.
        EmptySearchWindow: If no valid seed covers the tile or the limit
            removes the whole window.
    """
    if seed_spread is not None and seed_spread.shape[:2] != seed_disparity.shape[:2]:
        raise DimensionMismatch(
            f"Seed {tuple(seed_disparity.shape[:2])} and spread "
            f"{tuple(seed_spread.shape[:2])} differ in size"
        )
    h, w = seed_disparity.shape[:2]
    box = seed_box_for_tile(tile, upscale, PixelBox(0, 0, w, h))
    if box.is_empty:
        raise EmptySearchWindow(f"Tile {tile} lies outside the seed")

    rows, cols = box.slices()
    window = disparity_range(seed_disparity[rows, cols])
    if window is None:
        raise EmptySearchWindow(f"No valid seed disparity for tile {tile}")

    if seed_spread is not None:
        spread = torch.nan_to_num(seed_spread[rows, cols], nan=0.0)
        window = window.expand(float(spread[..., 0].max()), float(spread[..., 1].max()))

    window = scale_window_to_fullres(window.grow_to_int().expand(1), upscale)
    if limit is not None:
        window = window.intersect(limit)
    if window.is_empty:
        raise EmptySearchWindow(f"Search window for tile {tile} is empty: {window}")
    return window


@dataclass(frozen=True)
class TileCropPlan:
    """Image regions and crop-relative window for correlating one tile.

    Attributes:
        tile: Output tile.
        left_box: Left crop (tile plus kernel collar, clipped).
        right_box: Right crop (left crop displaced by the window, clipped).
        window: Search window relative to the crops.
    """

    tile: Tile
    left_box: PixelBox
    right_box: PixelBox
    window: SearchWindow

    def tile_slices(self) -> tuple[slice, slice]:
        """Slices extracting the tile from a result on the left crop grid."""
        r0 = self.tile.row - self.left_box.row
        c0 = self.tile.col - self.left_box.col
        return slice(r0, r0 + self.tile.height), slice(c0, c0 + self.tile.width)


def plan_tile_crops(
    tile: Tile,
    window: SearchWindow,
    kernel_size: tuple[int, int],
    left_size: tuple[int, int],
    right_size: tuple[int, int],
) -> TileCropPlan:
    """Work out the crops and relative window for a tile.

    Args:
        tile: Output tile.
        window: Full-image search window.
        kernel_size: Correlation kernel (width, height).
        left_size: Left image (H, W).
        right_size: Right image (H, W).

    Raises:
        EmptySearchWindow: If the displaced right crop misses the right image.
    """
    collar_x, collar_y = kernel_size[0] // 2, kernel_size[1] // 2
    left_bounds = PixelBox(0, 0, left_size[1], left_size[0])
    right_bounds = PixelBox(0, 0, right_size[1], right_size[0])

    left_box = PixelBox(
        tile.col - collar_x, tile.row - collar_y,
        tile.width + 2 * collar_x, tile.height + 2 * collar_y,
    ).crop(left_bounds)

    right_box = PixelBox.from_bounds(
        left_box.col + math.floor(window.min_x),
        left_box.row + math.floor(window.min_y),
        left_box.max_col + math.ceil(window.max_x),
        left_box.max_row + math.ceil(window.max_y),
    ).crop(right_bounds)
    if right_box.is_empty:
        raise EmptySearchWindow(
            f"Tile {tile} displaced by {window} falls outside the right image"
        )

    relative = window.translate(left_box.col - right_box.col, left_box.row - right_box.row)
    return TileCropPlan(tile, left_box, right_box, relative)


class SeededTileCorrelator:
    """Correlates output tiles at full resolution.

    Holds read-only references to the images, masks, and seed; ``compute``
    keeps no state between calls and may run on several threads.

    Args:
        left: Left image (H, W) float32 tensor.
        right: Right image float32 tensor.
        left_mask: Left validity (H, W) bool tensor.
        right_mask: Right validity bool tensor.
        backend: Resolved backend.
        config: Pipeline configuration.
        search_range: Run-wide window used when no seed is available.
        seed: Optional seed map; enables per-tile windows.
        upscale: (sx, sy), full-resolution size over seed size.
    """

    def __init__(
        self,
        left: torch.Tensor,
        right: torch.Tensor,
        left_mask: torch.Tensor,
        right_mask: torch.Tensor,
        backend: BackendConfig,
        config: PipelineConfig,
        search_range: SearchWindow,
        seed: SeedMap | None = None,
        upscale: tuple[float, float] = (1.0, 1.0),
    ):
        self.left = left
        self.right = right
        self.left_mask = left_mask
        self.right_mask = right_mask
        self.backend = backend
        self.config = config
        self.search_range = search_range
        self.seed = seed
        self.upscale = upscale
        self.limit = config.search_range.limit_window

    def window_for(self, tile: Tile) -> SearchWindow:
        if self.seed is None:
            return self.search_range
        return local_search_window(
            tile, self.seed.disparity, self.seed.spread, self.upscale, self.limit
        )

    def compute(self, tile: Tile) -> torch.Tensor:
        """Disparity for one tile, shape (tile.height, tile.width, 2)."""
        window = self.window_for(tile)
        plan = plan_tile_crops(
            tile,
            window,
            tuple(self.config.correlation.kernel_size),
            tuple(self.left.shape),
            tuple(self.right.shape),
        )
        logger.debug("Tile %s: window %s, right crop %s", tile, window, plan.right_box)

        lr, lc = plan.left_box.slices()
        rr, rc = plan.right_box.slices()
        disparity = run_backend(
            self.left[lr, lc],
            self.right[rr, rc],
            self.left_mask[lr, lc],
            self.right_mask[rr, rc],
            plan.window,
            self.backend,
            self.config,
        )

        # Back to full-image disparities
        offset = torch.tensor(
            [plan.right_box.col - plan.left_box.col, plan.right_box.row - plan.left_box.row],
            dtype=disparity.dtype,
            device=disparity.device,
        )
        rows, cols = plan.tile_slices()
        return disparity[rows, cols] + offset


__all__ = [
    "scale_window_to_fullres",
    "seed_box_for_tile",
    "local_search_window",
    "TileCropPlan",
    "plan_tile_crops",
    "SeededTileCorrelator",
]
