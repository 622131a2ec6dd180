"""Per-tile local epipolar alignment for 1D matchers, and its inverse.

A tile moves through ``untransformed -> aligned -> matched -> untransformed``:
``compute_local_alignment`` finds a homography per image that makes the
tile's epipolar lines horizontal, ``warp_tile_pair`` resamples both images
onto a common aligned canvas, a backend matches along rows, and
``unalign_disparity`` maps the aligned result back to full-image disparities.
"""

import logging
import math
from dataclasses import dataclass, replace

import cv2
import numpy as np
import torch

from .backends.dispatch import BackendConfig, run_backend
from .config import PipelineConfig
from .disparity import invalid_disparity
from .errors import AlignmentFailure, EmptySearchWindow
from .geometry import PixelBox, SearchWindow, Tile
from .profiling import timed_stage

logger = logging.getLogger(__name__)


@dataclass
class AlignmentTransform:
    """Local alignment of one tile.

    Attributes:
        left_matrix: 3x3 homography from left image pixels to aligned space.
        right_matrix: 3x3 homography from right image pixels to aligned space.
        tile: Output tile (untransformed left pixels).
        canvas: Region of aligned space that is rasterized; the aligned left
            tile starts at the aligned origin.
        left_box: Untransformed left crop feeding the canvas.
        right_box: Untransformed right crop feeding the canvas.
        min_disp: Smallest horizontal aligned disparity expected.
        max_disp: Largest horizontal aligned disparity expected.
    """

    left_matrix: np.ndarray
    right_matrix: np.ndarray
    tile: Tile
    canvas: PixelBox
    left_box: PixelBox
    right_box: PixelBox
    min_disp: float
    max_disp: float

    @property
    def aligned_shape(self) -> tuple[int, int]:
        return self.canvas.shape

    @property
    def search_window(self) -> SearchWindow:
        """Canvas search window: the disparity bound along rows, one row of slack."""
        return SearchWindow(self.min_disp, -1.0, self.max_disp, 1.0)

    def canvas_matrix(self, matrix: np.ndarray, crop: PixelBox) -> np.ndarray:
        """Homography from ``crop`` pixels to canvas pixels."""
        to_canvas = _translation(-self.canvas.col, -self.canvas.row)
        from_crop = _translation(crop.col, crop.row)
        return to_canvas @ matrix @ from_crop


def _translation(tx: float, ty: float) -> np.ndarray:
    return np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]])


def apply_homography(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 3x3 homography to (N, 2) points."""
    homog = np.hstack([points, np.ones((len(points), 1))]) @ matrix.T
    return homog[:, :2] / homog[:, 2:3]


def _rotation_to_vertical(normal: np.ndarray) -> tuple[np.ndarray, float]:
    """Rotation taking the line normal to +/- y with the smallest turn.

    Returns:
        Tuple (3x3 rotation, sign) with ``normal . p = |normal| * sign * y'``.
    """
    u = normal / np.linalg.norm(normal)
    sign = 1.0 if u[1] >= 0 else -1.0
    ux, uy = sign * u
    rotation = np.array([[uy, -ux, 0.0], [ux, uy, 0.0], [0.0, 0.0, 1.0]])
    return rotation, sign


def _box_corners(box: PixelBox) -> np.ndarray:
    x0, y0 = box.col, box.row
    x1, y1 = box.max_col - 1, box.max_row - 1
    return np.array([[x0, y0], [x1, y0], [x0, y1], [x1, y1]], dtype=np.float64)


def _bounding_box(points: np.ndarray) -> PixelBox:
    lo = np.floor(points.min(axis=0))
    hi = np.ceil(points.max(axis=0))
    return PixelBox.from_bounds(int(lo[0]), int(lo[1]), int(hi[0]) + 1, int(hi[1]) + 1)


def compute_local_alignment(
    left_points: np.ndarray,
    right_points: np.ndarray,
    tile: Tile,
    left_size: tuple[int, int],
    right_size: tuple[int, int],
    min_matches: int = 10,
    disparity_margin: float = 5.0,
    collar: int = 64,
    kernel_size: tuple[int, int] = (21, 21),
) -> AlignmentTransform:
    """Fit a local alignment for one tile from interest point matches.

    An affine fundamental matrix ``a xl + b yl + c xr + d yr + e = 0`` is
    fitted by total least squares. Each image is rotated so its epipolar
    lines are horizontal, the right image is scaled and shifted so matching
    rows agree, and both are translated so the aligned left tile starts at
    the origin.

    Args:
        left_points: Left keypoints (N, 2).
        right_points: Right keypoints (N, 2).
        tile: Output tile.
        left_size: Left image (H, W).
        right_size: Right image (H, W).
        min_matches: Matches required near the tile.
        disparity_margin: Padding of the disparity bound.
        collar: Matches up to this many pixels outside the tile are used.
        kernel_size: Correlation kernel (width, height); sizes the canvas collar.

    Returns:
        The tile's alignment.

    Raises:
        AlignmentFailure: With too few matches or degenerate geometry.
    """
    region = tile.expand(collar)
    inside = (
        (left_points[:, 0] >= region.col)
        & (left_points[:, 0] < region.max_col)
        & (left_points[:, 1] >= region.row)
        & (left_points[:, 1] < region.max_row)
    )
    left = left_points[inside]
    right = right_points[inside]
    if len(left) < max(min_matches, 4):
        raise AlignmentFailure(
            f"Only {len(left)} matches near tile {tile}; need {max(min_matches, 4)}"
        )

    data = np.hstack([left, right])
    centered = data - data.mean(axis=0)
    _, singular, vt = np.linalg.svd(centered, full_matrices=False)
    tolerance = 1e-9 * max(singular[0], 1.0)
    if singular[1] < tolerance:
        raise AlignmentFailure(f"Matches near tile {tile} are degenerate")
    if singular[2] < tolerance:
        # Images related by an affine map: any null vector is a valid
        # constraint, take the one closest to "rows match"
        basis = vt[2:]
        a, b, c, d = basis.T @ (basis @ np.array([0.0, 1.0, 0.0, -1.0]))
    else:
        a, b, c, d = vt[-1]
    if math.hypot(a, b) < 1e-9 or math.hypot(c, d) < 1e-9:
        raise AlignmentFailure(f"Epipolar geometry near tile {tile} is degenerate")

    rot_left, _ = _rotation_to_vertical(np.array([a, b]))
    rot_right, _ = _rotation_to_vertical(np.array([c, d]))

    yl = apply_homography(rot_left, left)[:, 1]
    yr = apply_homography(rot_right, right)[:, 1]
    k, t = np.polyfit(yl, yr, 1)
    if not np.isfinite(k) or k < 1e-3:
        raise AlignmentFailure(f"Cannot equalize rows near tile {tile} (scale {k:g})")
    scale = np.array([[1.0 / k, 0.0, 0.0], [0.0, 1.0 / k, -t / k], [0.0, 0.0, 1.0]])

    left_matrix = rot_left
    right_matrix = scale @ rot_right

    origin = apply_homography(left_matrix, _box_corners(tile)).min(axis=0)
    shift = _translation(-origin[0], -origin[1])
    left_matrix = shift @ left_matrix
    right_matrix = shift @ right_matrix

    aligned_left = apply_homography(left_matrix, left)
    aligned_right = apply_homography(right_matrix, right)
    disp = aligned_right[:, 0] - aligned_left[:, 0]
    residual = float(np.median(np.abs(aligned_right[:, 1] - aligned_left[:, 1])))
    min_disp = math.floor(disp.min() - disparity_margin)
    max_disp = math.ceil(disp.max() + disparity_margin)
    logger.debug(
        "Tile %s: aligned disparity [%d, %d], median row residual %.3f",
        tile,
        min_disp,
        max_disp,
        residual,
    )

    tile_extent = _bounding_box(apply_homography(left_matrix, _box_corners(tile)))
    pad_x, pad_y = kernel_size[0] // 2 + 1, kernel_size[1] // 2 + 1
    canvas = PixelBox.from_bounds(
        min(0, min_disp) - pad_x,
        tile_extent.row - pad_y,
        tile_extent.max_col + max(0, max_disp) + pad_x,
        tile_extent.max_row + pad_y,
    )

    canvas_corners = _box_corners(canvas)
    left_box = _bounding_box(
        apply_homography(np.linalg.inv(left_matrix), canvas_corners)
    ).expand(1).crop(PixelBox(0, 0, left_size[1], left_size[0]))
    right_box = _bounding_box(
        apply_homography(np.linalg.inv(right_matrix), canvas_corners)
    ).expand(1).crop(PixelBox(0, 0, right_size[1], right_size[0]))
    if left_box.is_empty or right_box.is_empty:
        raise AlignmentFailure(f"Aligned canvas for tile {tile} misses an image")

    return AlignmentTransform(
        left_matrix=left_matrix,
        right_matrix=right_matrix,
        tile=tile,
        canvas=canvas,
        left_box=left_box,
        right_box=right_box,
        min_disp=float(min_disp),
        max_disp=float(max_disp),
    )


def apply_alignment_limit(
    transform: AlignmentTransform, limit: SearchWindow | None
) -> AlignmentTransform:
    """Narrow the aligned disparity bound to what ``limit`` allows over the tile.

    The alignment maps are affine, so the extremes of the aligned horizontal
    disparity lie at a tile corner displaced by a corner of ``limit``.

    Raises:
        EmptySearchWindow: If the limit leaves no aligned disparity.
    """
    if limit is None:
        return transform
    corners = _box_corners(transform.tile)
    left_x = apply_homography(transform.left_matrix, corners)[:, 0]
    disp = np.concatenate(
        [
            apply_homography(transform.right_matrix, corners + [dx, dy])[:, 0] - left_x
            for dx in (limit.min_x, limit.max_x)
            for dy in (limit.min_y, limit.max_y)
        ]
    )
    # Tolerance keeps exact integer bounds from rounding outward
    min_disp = max(transform.min_disp, float(math.floor(disp.min() + 1e-6)))
    max_disp = min(transform.max_disp, float(math.ceil(disp.max() - 1e-6)))
    if not min_disp < max_disp:
        raise EmptySearchWindow(
            f"Search range limit {limit} leaves no disparity for tile {transform.tile}"
        )
    logger.debug(
        "Tile %s: aligned disparity limited to [%d, %d]", transform.tile, min_disp, max_disp
    )
    return replace(transform, min_disp=min_disp, max_disp=max_disp)


def _warp(image: np.ndarray, matrix: np.ndarray, canvas: PixelBox, nearest: bool, fill: float):
    return cv2.warpPerspective(
        image,
        matrix,
        (canvas.width, canvas.height),
        flags=cv2.INTER_NEAREST if nearest else cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=fill,
    )


def warp_tile_pair(
    left: np.ndarray,
    right: np.ndarray,
    left_mask: np.ndarray,
    right_mask: np.ndarray,
    transform: AlignmentTransform,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Resample both images and masks onto the aligned canvas.

    Args:
        left: Left image (H, W) float32.
        right: Right image float32.
        left_mask: Left validity bool.
        right_mask: Right validity bool.
        transform: Alignment of the tile.

    Returns:
        Tuple (left, right, left_mask, right_mask) on the canvas grid.
        Images are NaN and masks False outside the sources.
    """
    outputs = []
    for image, mask, matrix, box in (
        (left, left_mask, transform.left_matrix, transform.left_box),
        (right, right_mask, transform.right_matrix, transform.right_box),
    ):
        rows, cols = box.slices()
        crop = np.where(mask[rows, cols], image[rows, cols], np.nan).astype(np.float32)
        warp_matrix = transform.canvas_matrix(matrix, box)
        warped = _warp(crop, warp_matrix, transform.canvas, nearest=False, fill=float("nan"))
        warped_mask = _warp(
            mask[rows, cols].astype(np.uint8), warp_matrix, transform.canvas, nearest=True, fill=0
        )
        warped_mask = (warped_mask > 0) & np.isfinite(warped)
        outputs.append((warped, warped_mask))
    (left_w, left_m), (right_w, right_m) = outputs
    return left_w, right_w, left_m, right_m


def unalign_disparity(aligned: torch.Tensor, transform: AlignmentTransform) -> torch.Tensor:
    """Map an aligned disparity back to untransformed tile disparities.

    For each tile pixel p: q = H_L p, sample the aligned disparity d at the
    nearest canvas pixel (invalid outside the canvas), and report
    ``H_R^-1 (q + d) - p``.

    Args:
        aligned: Canvas disparity, 1D (h, w) or 2D (h, w, 2).
        transform: Alignment of the tile.

    Returns:
        Disparity (tile.height, tile.width, 2), NaN where invalid.
    """
    device = aligned.device
    aligned_np = aligned.detach().cpu().numpy().astype(np.float64)
    if aligned_np.ndim == 2:
        aligned_np = np.stack([aligned_np, np.where(np.isnan(aligned_np), np.nan, 0.0)], axis=-1)

    tile = transform.tile
    ys, xs = np.mgrid[tile.row : tile.max_row, tile.col : tile.max_col]
    p = np.stack([xs.ravel(), ys.ravel()], axis=1).astype(np.float64)
    q = apply_homography(transform.left_matrix, p)

    cx = np.rint(q[:, 0]).astype(np.int64) - transform.canvas.col
    cy = np.rint(q[:, 1]).astype(np.int64) - transform.canvas.row
    ch, cw = aligned_np.shape[:2]
    inside = (cx >= 0) & (cx < cw) & (cy >= 0) & (cy < ch)

    d = np.full((len(p), 2), np.nan)
    d[inside] = aligned_np[cy[inside], cx[inside]]
    r = apply_homography(np.linalg.inv(transform.right_matrix), q + np.nan_to_num(d))
    result = r - p
    result[~np.isfinite(d).all(axis=1)] = np.nan

    out = torch.from_numpy(result.reshape(tile.height, tile.width, 2).astype(np.float32))
    return out.to(device)


def correlate_aligned_tile(
    tile: Tile,
    left: np.ndarray,
    right: np.ndarray,
    left_mask: np.ndarray,
    right_mask: np.ndarray,
    left_points: np.ndarray,
    right_points: np.ndarray,
    backend: BackendConfig,
    config: PipelineConfig,
) -> torch.Tensor:
    """Align, match, and unalign one tile.

    The aligned disparity bound is narrowed by the search range limit. An
    alignment failure, or a limit that leaves nothing to search, yields an
    all-invalid tile without calling the backend.

    Returns:
        Disparity (tile.height, tile.width, 2).
    """
    device = config.runtime.device
    tiling = config.tiling
    try:
        transform = compute_local_alignment(
            left_points,
            right_points,
            tile,
            left.shape,
            right.shape,
            min_matches=tiling.alignment_min_matches,
            disparity_margin=tiling.alignment_disparity_margin,
            collar=tiling.alignment_collar,
            kernel_size=tuple(config.correlation.kernel_size),
        )
        transform = apply_alignment_limit(transform, config.search_range.limit_window)
    except (AlignmentFailure, EmptySearchWindow) as e:
        logger.warning("Tile %s: %s; writing an invalid tile", tile, e)
        return invalid_disparity(tile.height, tile.width, device=device)

    with timed_stage(f"tile_{tile.col}_{tile.row}", logger):
        left_a, right_a, lmask_a, rmask_a = warp_tile_pair(
            left, right, left_mask, right_mask, transform
        )
        aligned = run_backend(
            torch.from_numpy(left_a).to(device),
            torch.from_numpy(right_a).to(device),
            torch.from_numpy(lmask_a).to(device),
            torch.from_numpy(rmask_a).to(device),
            transform.search_window,
            backend,
            config,
        )
    return unalign_disparity(aligned, transform)


__all__ = [
    "AlignmentTransform",
    "apply_homography",
    "compute_local_alignment",
    "apply_alignment_limit",
    "warp_tile_pair",
    "unalign_disparity",
    "correlate_aligned_tile",
]
