"""Coarse-to-fine pyramid matcher with optional semi-global aggregation.

The coarsest level searches every integer offset of the (scaled) search
window. Each finer level searches, block by block, within a small buffer
of the upsampled estimate. ``asp_sgm`` aggregates the coarse cost volume
along 8 scanline directions, ``asp_mgm`` along 4 diagonal wavefronts that
combine two predecessors per pixel, and ``asp_bm`` does plain
winner-take-all.
"""

import logging
import time

import torch
import torch.nn.functional as F
from torch.profiler import record_function

from ..config import CorrelationConfig
from ..disparity import invalid_disparity, invalidate, valid_mask
from ..errors import BackendFailure
from ..geometry import SearchWindow
from .cost import INVALID_COST, compute_cost, crop_at, normalize_pair, shift_image

logger = logging.getLogger(__name__)

SCANLINE_DIRECTIONS = [(0, 1), (0, -1), (1, 0), (-1, 0), (1, 1), (1, -1), (-1, 1), (-1, -1)]
MGM_QUADRANTS = [(1, 1), (1, -1), (-1, 1), (-1, -1)]

# Edge length of the blocks sharing one offset range during refinement
REFINE_BLOCK = 32


def calc_seconds_per_op(
    cost_function: str,
    left: torch.Tensor,
    right: torch.Tensor,
    kernel_size: tuple[int, int],
    sample_size: int = 64,
    num_offsets: int = 4,
) -> float:
    """Time the cost kernel on a small crop.

    Args:
        cost_function: Cost function name.
        left: Left image (H, W).
        right: Right image (H, W).
        kernel_size: Window (width, height).
        sample_size: Edge length of the timing crop.
        num_offsets: Number of offsets evaluated.

    Returns:
        Seconds per (pixel x offset) evaluation.
    """
    ref = left[:sample_size, :sample_size]
    src = right[:sample_size, :sample_size]
    start = time.perf_counter()
    for dx in range(num_offsets):
        compute_cost(ref, shift_image(src, dx, 0), cost_function, kernel_size)
    elapsed = max(time.perf_counter() - start, 1e-9)
    return elapsed / (num_offsets * ref.numel())


def _downsample(image: torch.Tensor) -> torch.Tensor:
    """Halve an image with a NaN-aware 2x2 average."""
    valid = (~torch.isnan(image)).to(image.dtype)
    clean = torch.nan_to_num(image, nan=0.0)
    total = F.avg_pool2d(clean[None, None], 2, ceil_mode=True)[0, 0]
    frac = F.avg_pool2d(valid[None, None], 2, ceil_mode=True)[0, 0]
    coarse = total / frac.clamp(min=1e-8)
    return torch.where(frac >= 0.5, coarse, torch.full_like(coarse, float("nan")))


def build_pyramid(image: torch.Tensor, levels: int) -> list[torch.Tensor]:
    """Image pyramid, index 0 = full resolution."""
    pyramid = [image]
    for _ in range(levels):
        pyramid.append(_downsample(pyramid[-1]))
    return pyramid


def num_pyramid_levels(
    shape: tuple[int, int],
    window: SearchWindow,
    kernel_size: tuple[int, int],
    max_levels: int,
    search_buffer: tuple[int, int],
) -> int:
    """Number of levels below full resolution worth building.

    Stops when the image gets too small for the kernel or the scaled search
    window is already covered by the refinement buffer.
    """
    levels = 0
    while levels < max_levels:
        scale = 2 ** (levels + 1)
        if min(shape) / scale < 2 * max(kernel_size):
            break
        if max(window.width, window.height) / scale < 2 * max(search_buffer):
            break
        levels += 1
    return levels


def build_cost_volume(
    ref: torch.Tensor,
    src: torch.Tensor,
    window: SearchWindow,
    cost_function: str,
    kernel_size: tuple[int, int],
    origin: tuple[int, int] = (0, 0),
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Cost of every integer offset in ``window``.

    Args:
        ref: Reference image (H, W), float32 in [0, 1], NaN for masked pixels.
        src: Matched image (H', W'), same conventions. H' and W' may differ from H, W.
        window: Search window.
        cost_function: Cost function name.
        kernel_size: Window (width, height).
        origin: Position (row, col) of ``ref``'s first pixel in ``src``
            coordinates, for a reference cropped out of a larger image.

    Returns:
        Tuple (volume, xs, ys): volume of shape (H, W, Ny, Nx) and the
        offsets along each axis.
    """
    with record_function("build_cost_volume"):
        xs_np, ys_np = window.integer_offsets()
        H, W = ref.shape
        row, col = origin
        volume = torch.empty(H, W, len(ys_np), len(xs_np), device=ref.device)
        for j, dy in enumerate(ys_np):
            for i, dx in enumerate(xs_np):
                shifted = crop_at(src, row + int(dy), col + int(dx), H, W)
                volume[:, :, j, i] = compute_cost(ref, shifted, cost_function, kernel_size)
        xs = torch.as_tensor(xs_np, device=ref.device, dtype=torch.float32)
        ys = torch.as_tensor(ys_np, device=ref.device, dtype=torch.float32)
        return volume, xs, ys


def refine_disparity(
    ref: torch.Tensor,
    src: torch.Tensor,
    center: torch.Tensor,
    window: SearchWindow,
    buffer: tuple[int, int],
    cost_function: str,
    kernel_size: tuple[int, int],
    subpixel_mode: str | None = None,
    block_size: int = REFINE_BLOCK,
) -> torch.Tensor:
    """Search around an integer estimate with exact window costs.

    The image is split into blocks. A block scores all its pixels against
    every offset within ``buffer`` of any estimate it holds, so a window
    cost always compares the reference against a single displacement of
    ``src``. A winner on an edge of the block range that ``window`` did not
    impose is invalid: the true minimum may lie beyond it.

    Args:
        ref: Reference image (H, W).
        src: Matched image (H', W').
        center: Estimate (H, W, 2), int64.
        window: Integer search window bounding every block range.
        buffer: Search radius (x, y) around each estimate.
        cost_function: Cost function name.
        kernel_size: Window (width, height).
        subpixel_mode: Subpixel refinement, or None for integer offsets.
        block_size: Edge length of the blocks.

    Returns:
        Disparity (H, W, 2), NaN where invalid.
    """
    with record_function("refine_disparity"):
        H, W = ref.shape
        half_x, half_y = kernel_size[0] // 2, kernel_size[1] // 2
        out = invalid_disparity(H, W, device=ref.device)
        for row in range(0, H, block_size):
            for col in range(0, W, block_size):
                rows = slice(row, min(row + block_size, H))
                cols = slice(col, min(col + block_size, W))
                block_center = center[rows, cols]
                reach = SearchWindow(
                    float(block_center[..., 0].min()) - buffer[0],
                    float(block_center[..., 1].min()) - buffer[1],
                    float(block_center[..., 0].max()) + buffer[0],
                    float(block_center[..., 1].max()) + buffer[1],
                )
                block_window = reach.intersect(window)
                if (
                    block_window.min_x > block_window.max_x
                    or block_window.min_y > block_window.max_y
                ):
                    continue

                # Block plus the kernel halo
                y0, y1 = max(0, row - half_y), min(H, rows.stop + half_y)
                x0, x1 = max(0, col - half_x), min(W, cols.stop + half_x)
                volume, xs, ys = build_cost_volume(
                    ref[y0:y1, x0:x1], src, block_window, cost_function, kernel_size, (y0, x0)
                )
                volume = volume[row - y0 : rows.stop - y0, col - x0 : cols.stop - x0]

                iy, ix = _winner_take_all(volume)
                disparity = torch.stack([xs[ix], ys[iy]], dim=-1)
                if subpixel_mode is not None:
                    ox, oy = subpixel_offsets(volume, iy, ix, subpixel_mode)
                    disparity = disparity + torch.stack([ox, oy], dim=-1)

                keep = _gather(volume, iy, ix) < INVALID_COST
                if block_window.min_x > window.min_x:
                    keep &= ix > 0
                if block_window.max_x < window.max_x:
                    keep &= ix < len(xs) - 1
                if block_window.min_y > window.min_y:
                    keep &= iy > 0
                if block_window.max_y < window.max_y:
                    keep &= iy < len(ys) - 1
                out[rows, cols] = invalidate(disparity, keep)
        return out


def _penalized_min(prev: torch.Tensor, p1: float, p2: float) -> torch.Tensor:
    """SGM message from predecessor costs (N, Ny, Nx)."""
    n = prev.shape[0]
    prev_min = prev.reshape(n, -1).min(dim=1).values.view(n, 1, 1)
    # Minimum over the 3x3 neighbourhood of each candidate offset
    near = -F.max_pool2d(-prev.unsqueeze(1), 3, stride=1, padding=1).squeeze(1)
    msg = torch.minimum(prev, near + p1)
    msg = torch.minimum(msg, prev_min + p2)
    return msg - prev_min


def _scanline_pass(cost: torch.Tensor, ry: int, rx: int, p1: float, p2: float) -> torch.Tensor:
    H, W = cost.shape[:2]
    out = torch.empty_like(cost)
    if ry == 0:
        cols = range(W) if rx > 0 else range(W - 1, -1, -1)
        prev = None
        for x in cols:
            out[:, x] = cost[:, x] if prev is None else cost[:, x] + _penalized_min(prev, p1, p2)
            prev = out[:, x]
        return out

    rows = range(H) if ry > 0 else range(H - 1, -1, -1)
    prev = None
    for y in rows:
        if prev is None:
            out[y] = cost[y]
        else:
            msg = _penalized_min(prev, p1, p2)
            row = cost[y].clone()
            if rx == 0:
                row += msg
            elif rx > 0:
                row[1:] += msg[:-1]
            else:
                row[:-1] += msg[1:]
            out[y] = row
        prev = out[y]
    return out


def aggregate_sgm(volume: torch.Tensor, p1: float, p2: float, directions: int = 8) -> torch.Tensor:
    """Semi-global aggregation of a (H, W, Ny, Nx) cost volume.

    Args:
        volume: Cost volume.
        p1: Penalty for a one-step change of the offset.
        p2: Penalty for larger changes.
        directions: 4 (horizontal and vertical) or 8 (plus diagonals).

    Returns:
        Aggregated volume, same shape.
    """
    with record_function("aggregate_sgm"):
        total = torch.zeros_like(volume)
        for ry, rx in SCANLINE_DIRECTIONS[:directions]:
            total += _scanline_pass(volume, ry, rx, p1, p2)
        return total


def _mgm_pass(cost: torch.Tensor, p1: float, p2: float) -> torch.Tensor:
    """Wavefront pass from the top-left corner averaging the top and left messages."""
    H, W = cost.shape[:2]
    out = cost.clone()
    device = cost.device
    for k in range(1, H + W - 1):
        ys = torch.arange(max(0, k - W + 1), min(H, k + 1), device=device)
        xs = k - ys
        msg = torch.zeros_like(cost[ys, xs])
        count = torch.zeros(len(ys), device=device)

        has_left = xs > 0
        if has_left.any():
            msg[has_left] += _penalized_min(out[ys[has_left], xs[has_left] - 1], p1, p2)
            count += has_left.float()
        has_top = ys > 0
        if has_top.any():
            msg[has_top] += _penalized_min(out[ys[has_top] - 1, xs[has_top]], p1, p2)
            count += has_top.float()

        out[ys, xs] = cost[ys, xs] + msg / count.clamp(min=1.0).view(-1, 1, 1)
    return out


def aggregate_mgm(volume: torch.Tensor, p1: float, p2: float) -> torch.Tensor:
    """More-global aggregation: four wavefronts, one per image corner."""
    with record_function("aggregate_mgm"):
        total = torch.zeros_like(volume)
        for sy, sx in MGM_QUADRANTS:
            dims = [d for d, s in ((0, sy), (1, sx)) if s < 0]
            flipped = volume.flip(dims) if dims else volume
            agg = _mgm_pass(flipped, p1, p2)
            total += agg.flip(dims) if dims else agg
        return total


def _winner_take_all(volume: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    H, W, _, nx = volume.shape
    best = volume.reshape(H, W, -1).argmin(dim=-1)
    return best // nx, best % nx


def _gather(volume: torch.Tensor, iy: torch.Tensor, ix: torch.Tensor) -> torch.Tensor:
    H, W = iy.shape
    hh = torch.arange(H, device=volume.device).view(H, 1).expand(H, W)
    ww = torch.arange(W, device=volume.device).view(1, W).expand(H, W)
    return volume[hh, ww, iy, ix]


def subpixel_offsets(
    volume: torch.Tensor,
    iy: torch.Tensor,
    ix: torch.Tensor,
    mode: str,
    raw: torch.Tensor | None = None,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Fractional offsets around the winning candidate, per axis.

    Args:
        volume: Cost volume (H, W, Ny, Nx) the winner was picked from.
        iy: Winning row index (H, W).
        ix: Winning column index (H, W).
        mode: "none", "parabola" or "linear" (equiangular line fit).
        raw: Unaggregated volume used to check neighbour validity
            (defaults to ``volume``).

    Returns:
        Tuple (ox, oy) of offsets in [-0.5, 0.5]; zero where the winner sits on
        the volume border or a neighbour is invalid.
    """
    zeros = torch.zeros(iy.shape, device=volume.device)
    if mode == "none":
        return zeros, zeros

    raw = volume if raw is None else raw
    eps = 1e-8
    c0 = _gather(volume, iy, ix)
    offsets = []
    for axis in ("x", "y"):
        idx, size = (ix, volume.shape[3]) if axis == "x" else (iy, volume.shape[2])
        minus = (idx - 1).clamp(min=0)
        plus = (idx + 1).clamp(max=size - 1)
        if axis == "x":
            c_minus, c_plus = _gather(volume, iy, minus), _gather(volume, iy, plus)
            r_minus, r_plus = _gather(raw, iy, minus), _gather(raw, iy, plus)
        else:
            c_minus, c_plus = _gather(volume, minus, ix), _gather(volume, plus, ix)
            r_minus, r_plus = _gather(raw, minus, ix), _gather(raw, plus, ix)

        match mode:
            case "parabola":
                denom = c_minus - 2.0 * c0 + c_plus
                offset = 0.5 * (c_minus - c_plus) / (denom + eps)
                usable = denom > eps
            case "linear":
                slope = torch.maximum(c_minus - c0, c_plus - c0)
                offset = 0.5 * (c_minus - c_plus) / (slope + eps)
                usable = slope > eps
            case _:
                raise ValueError(f"Unknown subpixel mode: {mode!r}")

        usable = (
            usable
            & (idx > 0)
            & (idx < size - 1)
            & (r_minus < INVALID_COST)
            & (r_plus < INVALID_COST)
        )
        offsets.append(torch.where(usable, offset.clamp(-0.5, 0.5), zeros))
    return offsets[0], offsets[1]


def _upsample(disparity: torch.Tensor, factor: int, shape: tuple[int, int]) -> torch.Tensor:
    """Nearest-neighbour upsample of an (h, w, 2) raster, scaling the vectors."""
    up = F.interpolate(disparity.permute(2, 0, 1)[None], size=shape, mode="nearest")[0]
    return up.permute(1, 2, 0) * factor


def _fill_invalid(disparity: torch.Tensor) -> torch.Tensor | None:
    """Replace invalid vectors by the median valid one; None if nothing is valid."""
    mask = valid_mask(disparity)
    if not mask.any():
        return None
    median = disparity[mask].median(dim=0).values
    return torch.where(mask.unsqueeze(-1), disparity, median.expand_as(disparity))


def _match(
    ref: torch.Tensor,
    src: torch.Tensor,
    window: SearchWindow,
    config: CorrelationConfig,
    algorithm: str,
    timeout: float,
) -> torch.Tensor:
    """One-directional coarse-to-fine matching of ``ref`` against ``src``."""
    start = time.perf_counter()
    kernel = (config.kernel_size[0], config.kernel_size[1])
    buffer = (max(1, config.search_buffer[0]), max(1, config.search_buffer[1]))
    window = window.grow_to_int()
    H, W = ref.shape

    levels = num_pyramid_levels(ref.shape, window, kernel, config.corr_max_levels, buffer)
    ref_pyr = build_pyramid(ref, levels)
    src_pyr = build_pyramid(src, levels)
    seconds_per_op = (
        calc_seconds_per_op(config.cost_function, ref, src, kernel) if timeout > 0 else 0.0
    )

    scale = 2**levels
    coarse_window = window.scaled(1.0 / scale, 1.0 / scale)
    xs_np, ys_np = coarse_window.integer_offsets()
    estimate = seconds_per_op * ref_pyr[levels].numel() * len(xs_np) * len(ys_np)
    if timeout > 0 and estimate > timeout:
        raise BackendFailure(
            f"Estimated {estimate:.1f} s for the coarsest level exceeds the "
            f"{timeout:.1f} s time budget"
        )
    logger.debug(
        "%s: %d pyramid levels, coarse window %s, %d x %d offsets",
        algorithm,
        levels,
        coarse_window,
        len(xs_np),
        len(ys_np),
    )

    raw, xs, ys = build_cost_volume(
        ref_pyr[levels], src_pyr[levels], coarse_window, config.cost_function, kernel
    )
    match algorithm:
        case "asp_sgm":
            volume = aggregate_sgm(raw, config.sgm_p1, config.sgm_p2, directions=8)
        case "asp_mgm":
            volume = aggregate_mgm(raw, config.sgm_p1, config.sgm_p2)
        case _:
            volume = raw

    iy, ix = _winner_take_all(volume)
    disparity = torch.stack([xs[ix], ys[iy]], dim=-1)
    if levels == 0:
        ox, oy = subpixel_offsets(volume, iy, ix, config.subpixel_mode, raw=raw)
        disparity = disparity + torch.stack([ox, oy], dim=-1)
    keep = _gather(raw, iy, ix) < INVALID_COST
    disparity = invalidate(disparity, keep)

    for level in range(levels - 1, -1, -1):
        level_ref = ref_pyr[level]
        h, w = level_ref.shape
        estimate = seconds_per_op * h * w * (2 * buffer[0] + 1) * (2 * buffer[1] + 1)
        if timeout > 0 and time.perf_counter() - start + estimate > timeout:
            logger.warning(
                "Time budget of %.1f s reached, stopping at pyramid level %d",
                timeout,
                level + 1,
            )
            return _upsample(disparity, 2 ** (level + 1), (H, W))

        filled = _fill_invalid(disparity)
        if filled is None:
            return invalid_disparity(H, W, device=ref.device)
        center = torch.round(_upsample(filled, 2, (h, w))).long()

        level_window = window.scaled(1.0 / 2**level, 1.0 / 2**level)
        disparity = refine_disparity(
            level_ref,
            src_pyr[level],
            center,
            level_window,
            buffer,
            config.cost_function,
            kernel,
            subpixel_mode=config.subpixel_mode if level == 0 else None,
        )

    return disparity


def cross_check(
    left_to_right: torch.Tensor, right_to_left: torch.Tensor, threshold: float
) -> torch.Tensor:
    """Invalidate vectors that the reverse match does not confirm.

    A left vector d at p passes when the right vector at round(p + d) is
    within ``threshold`` of -d in both axes.

    Args:
        left_to_right: Disparity from left to right (H, W, 2).
        right_to_left: Disparity from right to left (H', W', 2).
        threshold: Maximum disagreement in pixels.

    Returns:
        Filtered copy of ``left_to_right``.
    """
    H, W = left_to_right.shape[:2]
    Hr, Wr = right_to_left.shape[:2]
    device = left_to_right.device
    gy, gx = torch.meshgrid(
        torch.arange(H, device=device), torch.arange(W, device=device), indexing="ij"
    )
    qx = torch.round(gx + left_to_right[..., 0])
    qy = torch.round(gy + left_to_right[..., 1])
    inside = valid_mask(left_to_right) & (qx >= 0) & (qx < Wr) & (qy >= 0) & (qy < Hr)
    qx_i = torch.nan_to_num(qx, nan=0.0).long().clamp(0, Wr - 1)
    qy_i = torch.nan_to_num(qy, nan=0.0).long().clamp(0, Hr - 1)
    back = right_to_left[qy_i, qx_i]
    error = (left_to_right + back).abs().amax(dim=-1)
    return invalidate(left_to_right, inside & (error <= threshold))


def _masked(image: torch.Tensor, mask: torch.Tensor | None) -> torch.Tensor:
    image = image.float()
    if mask is None:
        return image
    return torch.where(mask.bool(), image, torch.full_like(image, float("nan")))


def correlate_pyramid(
    left: torch.Tensor,
    right: torch.Tensor,
    left_mask: torch.Tensor | None,
    right_mask: torch.Tensor | None,
    window: SearchWindow,
    config: CorrelationConfig,
    algorithm: str = "asp_bm",
    timeout: float | None = None,
    xcorr_threshold: float | None = None,
) -> torch.Tensor:
    """Match a left/right pair with the internal pyramid matcher.

    Args:
        left: Left image (H, W).
        right: Right image (H', W').
        left_mask: Left validity (H, W), bool, or None.
        right_mask: Right validity (H', W'), bool, or None.
        window: Search window in (dx, dy) = right - left.
        config: Correlation settings (kernel, cost, levels, subpixel, penalties).
        algorithm: "asp_bm", "asp_sgm" or "asp_mgm".
        timeout: Time budget in seconds shared by the forward and cross-check
            passes (config.corr_timeout if None, <= 0 disables). The
            cross-check is skipped once the forward pass has spent it.
        xcorr_threshold: Cross-check threshold (config value if None, < 0 disables).

    Returns:
        Disparity (H, W, 2), float32, NaN where invalid.

    Raises:
        BackendFailure: If the coarsest level alone exceeds the time budget.
    """
    timeout = config.corr_timeout if timeout is None else timeout
    xcorr_threshold = config.xcorr_threshold if xcorr_threshold is None else xcorr_threshold

    with record_function("correlate_pyramid"), torch.no_grad():
        start = time.perf_counter()
        ref, src = normalize_pair(_masked(left, left_mask), _masked(right, right_mask))
        disparity = _match(ref, src, window, config, algorithm, timeout)

        # Both passes share one budget
        remaining = timeout - (time.perf_counter() - start) if timeout > 0 else timeout
        if xcorr_threshold >= 0 and timeout > 0 and remaining <= 0:
            logger.warning(
                "Time budget of %.1f s spent before the cross-check; skipping it", timeout
            )
        elif xcorr_threshold >= 0:
            reverse = SearchWindow(-window.max_x, -window.max_y, -window.min_x, -window.min_y)
            back = _match(src, ref, reverse, config, algorithm, remaining)
            before = int(valid_mask(disparity).sum())
            disparity = cross_check(disparity, back, xcorr_threshold)
            logger.debug(
                "Cross-check kept %d of %d pixels", int(valid_mask(disparity).sum()), before
            )

        if left_mask is not None:
            disparity = invalidate(disparity, left_mask.bool())
        return disparity


__all__ = [
    "calc_seconds_per_op",
    "build_pyramid",
    "num_pyramid_levels",
    "build_cost_volume",
    "refine_disparity",
    "aggregate_sgm",
    "aggregate_mgm",
    "subpixel_offsets",
    "cross_check",
    "correlate_pyramid",
]
