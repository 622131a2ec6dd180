"""Output tiling, concurrent tile correlation, and assembly of the global raster."""

import logging
import math
import sys
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import torch
from tqdm import tqdm

from .disparity import invalid_disparity, load_disparity_map, save_disparity_map
from .errors import TILE_ERRORS, DimensionMismatch
from .geometry import PixelBox, Tile

logger = logging.getLogger(__name__)

TILE_ALIGNMENT = 16


def round_tile_size(tile_size: int) -> int:
    """Round a tile size up to a multiple of 16."""
    return TILE_ALIGNMENT * math.ceil(tile_size / TILE_ALIGNMENT)


def make_tiles(
    width: int, height: int, tile_size: int, region: PixelBox | None = None
) -> list[Tile]:
    """Partition a raster (or a region of it) into tiles, row-major.

    Every pixel of the region belongs to exactly one tile; tiles on the
    right and bottom edges are clipped.

    Args:
        width: Raster width.
        height: Raster height.
        tile_size: Tile edge length.
        region: Optional sub-region to tile (clipped to the raster).

    Returns:
        List of tiles.
    """
    bounds = PixelBox(0, 0, width, height)
    region = bounds if region is None else region.crop(bounds)
    tiles = []
    for row in range(region.row, region.max_row, tile_size):
        for col in range(region.col, region.max_col, tile_size):
            tiles.append(
                PixelBox.from_bounds(
                    col, row, min(col + tile_size, region.max_col), min(row + tile_size, region.max_row)
                )
            )
    return tiles


def correlate_tiles(
    compute: Callable[[Tile], torch.Tensor],
    tiles: list[Tile],
    num_workers: int = 1,
    quiet: bool = False,
) -> list[torch.Tensor | None]:
    """Run ``compute`` on every tile.

    Tile-scoped failures (backend, alignment, size mismatch, empty window)
    are logged and recorded as None; any other exception propagates.

    Args:
        compute: Per-tile correlation, returning (tile.height, tile.width, 2).
        tiles: Tiles to process.
        num_workers: Number of worker threads (1 = sequential).
        quiet: Disable the progress bar.

    Returns:
        Results in the order of ``tiles``.
    """
    results: list[torch.Tensor | None] = [None] * len(tiles)
    disable = quiet or not sys.stderr.isatty()

    def run_one(index: int) -> None:
        tile = tiles[index]
        try:
            results[index] = compute(tile)
        except TILE_ERRORS as e:
            logger.warning("Tile %s failed: %s", tile, e)

    if num_workers <= 1:
        for index in tqdm(range(len(tiles)), desc="Correlating tiles", disable=disable, unit="tile"):
            run_one(index)
        return results

    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        futures = [executor.submit(run_one, index) for index in range(len(tiles))]
        for future in tqdm(
            as_completed(futures),
            total=len(futures),
            desc="Correlating tiles",
            disable=disable,
            unit="tile",
        ):
            future.result()
    return results


def assemble_tiles(
    width: int,
    height: int,
    tiles: list[Tile],
    results: list[torch.Tensor | None],
    device: str = "cpu",
) -> torch.Tensor:
    """Compose per-tile rasters into the global disparity raster.

    Failed tiles (None) and results whose size differs from their tile are
    left all-invalid.

    Returns:
        Disparity (height, width, 2).
    """
    raster = invalid_disparity(height, width, device=device)
    failed = 0
    for tile, result in zip(tiles, results):
        if result is None:
            failed += 1
            continue
        if tuple(result.shape) != (tile.height, tile.width, 2):
            logger.warning(
                "Tile %s: %s",
                tile,
                DimensionMismatch(f"result shape {tuple(result.shape)} does not match the tile"),
            )
            failed += 1
            continue
        rows, cols = tile.slices()
        raster[rows, cols] = result.to(device)
    if failed:
        logger.warning("%d of %d tiles are invalid", failed, len(tiles))
    return raster


def tile_path(prefix: str | Path, tile: Tile) -> Path:
    """Per-tile disparity file ``{prefix}-tile-{col}-{row}-D.npz``."""
    return Path(f"{prefix}-tile-{tile.col}-{tile.row}-D.npz")


def save_tile_result(prefix: str | Path, tile: Tile, disparity: torch.Tensor | None) -> Path:
    """Write one tile's disparity; a failed tile is written all-invalid."""
    if disparity is None:
        disparity = invalid_disparity(tile.height, tile.width)
    path = tile_path(prefix, tile)
    path.parent.mkdir(parents=True, exist_ok=True)
    save_disparity_map(disparity, path)
    return path


def compose_tile_files(
    prefix: str | Path,
    width: int,
    height: int,
    tiles: list[Tile],
    device: str = "cpu",
) -> torch.Tensor:
    """Stitch per-tile files into the global raster.

    Missing or unreadable tile files become invalid placeholders.
    """
    results: list[torch.Tensor | None] = []
    for tile in tiles:
        path = tile_path(prefix, tile)
        if not path.exists():
            logger.warning("Missing tile file %s; using an invalid placeholder", path)
            results.append(None)
            continue
        try:
            results.append(load_disparity_map(path, device=device))
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Unreadable tile file %s (%s); using an invalid placeholder", path, e)
            results.append(None)
    return assemble_tiles(width, height, tiles, results, device=device)


__all__ = [
    "round_tile_size",
    "make_tiles",
    "correlate_tiles",
    "assemble_tiles",
    "tile_path",
    "save_tile_result",
    "compose_tile_files",
]
