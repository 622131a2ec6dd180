"""Photometric cost functions for window matching."""

import torch
import torch.nn.functional as F

# Cost assigned where a window has too few valid pixels. Above every real cost.
INVALID_COST = 4.0


def shift_image(image: torch.Tensor, dx: int, dy: int) -> torch.Tensor:
    """Sample ``image`` at integer offset: ``out[y, x] = image[y + dy, x + dx]``.

    Args:
        image: Image, shape (H, W), float32.
        dx: Horizontal offset.
        dy: Vertical offset.

    Returns:
        Shifted image, shape (H, W), NaN where the source falls outside.
    """
    H, W = image.shape
    out = torch.full_like(image, float("nan"))
    y0, y1 = max(0, -dy), min(H, H - dy)
    x0, x1 = max(0, -dx), min(W, W - dx)
    if y0 < y1 and x0 < x1:
        out[y0:y1, x0:x1] = image[y0 + dy : y1 + dy, x0 + dx : x1 + dx]
    return out


def crop_at(image: torch.Tensor, row: int, col: int, height: int, width: int) -> torch.Tensor:
    """Crop ``out[y, x] = image[row + y, col + x]`` of size (height, width).

    Args:
        image: Image, shape (H, W), float32.
        row: Image row of the crop's first row; may be negative.
        col: Image column of the crop's first column; may be negative.
        height: Crop height.
        width: Crop width.

    Returns:
        Crop, shape (height, width), NaN where it extends past the image.
    """
    H, W = image.shape
    out = torch.full((height, width), float("nan"), device=image.device, dtype=image.dtype)
    y0, y1 = max(0, -row), min(height, H - row)
    x0, x1 = max(0, -col), min(width, W - col)
    if y0 < y1 and x0 < x1:
        out[y0:y1, x0:x1] = image[row + y0 : row + y1, col + x0 : col + x1]
    return out


def _box_sums(
    tensors: list[torch.Tensor], kernel_size: tuple[int, int]
) -> list[torch.Tensor]:
    """Window sums of several (H, W) maps with one (kh, kw) box kernel."""
    kw, kh = kernel_size
    stacked = torch.stack(tensors, dim=0).unsqueeze(1)  # (N, 1, H, W)
    kernel = torch.ones(1, 1, kh, kw, device=stacked.device, dtype=stacked.dtype)
    sums = F.conv2d(stacked, kernel, padding=(kh // 2, kw // 2))
    return list(sums[:, 0])


def _valid_pair(ref: torch.Tensor, src: torch.Tensor):
    valid = ~torch.isnan(ref) & ~torch.isnan(src)
    ref_clean = torch.where(valid, ref, torch.zeros_like(ref))
    src_clean = torch.where(valid, src, torch.zeros_like(src))
    return valid.to(ref.dtype), ref_clean, src_clean


def _min_support(kernel_size: tuple[int, int]) -> float:
    # Require at least half the window
    return float((kernel_size[0] * kernel_size[1]) // 2)


def compute_ncc(
    ref: torch.Tensor,
    src: torch.Tensor,
    kernel_size: tuple[int, int] = (11, 11),
) -> torch.Tensor:
    """Compute normalized cross-correlation cost between two images.

    NCC measures similarity in local windows, normalized by local mean and
    standard deviation. This makes it robust to linear intensity changes
    between views (e.g., exposure differences).

    Cost = 1 - NCC, so 0 = perfect match, 1 = uncorrelated, 2 = anti-correlated.

    Args:
        ref: Reference image, shape (H, W), float32 in [0, 1].
            May contain NaN for masked pixels.
        src: Shifted source image, shape (H, W), float32 in [0, 1].
            May contain NaN for invalid (out-of-bounds or masked) pixels.
        kernel_size: Window (width, height), both odd.

    Returns:
        Cost map, shape (H, W), float32 in [0, 2].
        Windows with too few valid pixels are set to INVALID_COST.
    """
    mask, ref_clean, src_clean = _valid_pair(ref, src)

    count, sum_ref, sum_src = _box_sums([mask, ref_clean, src_clean], kernel_size)
    support = count
    count = count.clamp(min=1.0)

    # Local means over pixels valid in both images
    mean_ref = sum_ref / count
    mean_src = sum_src / count

    # Second moments, then variance and covariance
    sum_rr, sum_ss, sum_rs = _box_sums(
        [ref_clean * ref_clean, src_clean * src_clean, ref_clean * src_clean],
        kernel_size,
    )
    var_ref = (sum_rr / count - mean_ref**2).clamp(min=0.0)
    var_src = (sum_ss / count - mean_src**2).clamp(min=0.0)
    covar = sum_rs / count - mean_ref * mean_src

    eps = 1e-8
    ncc = covar / (torch.sqrt(var_ref * var_src) + eps)

    cost = (1.0 - ncc).clamp(0.0, 2.0)

    insufficient = support < _min_support(kernel_size)
    return torch.where(insufficient, torch.full_like(cost, INVALID_COST), cost)


def compute_sad(
    ref: torch.Tensor,
    src: torch.Tensor,
    kernel_size: tuple[int, int] = (11, 11),
) -> torch.Tensor:
    """Mean absolute difference over each window.

    Args:
        ref: Reference image, shape (H, W), float32 in [0, 1], may contain NaN.
        src: Shifted source image, shape (H, W), float32 in [0, 1], may contain NaN.
        kernel_size: Window (width, height), both odd.

    Returns:
        Cost map, shape (H, W), float32 in [0, 1]; INVALID_COST where the
        window has too few valid pixels.
    """
    mask, ref_clean, src_clean = _valid_pair(ref, src)
    count, total = _box_sums([mask, (ref_clean - src_clean).abs()], kernel_size)
    cost = total / count.clamp(min=1.0)
    insufficient = count < _min_support(kernel_size)
    return torch.where(insufficient, torch.full_like(cost, INVALID_COST), cost)


def compute_ssd(
    ref: torch.Tensor,
    src: torch.Tensor,
    kernel_size: tuple[int, int] = (11, 11),
) -> torch.Tensor:
    """Mean squared difference over each window. Same conventions as compute_sad."""
    mask, ref_clean, src_clean = _valid_pair(ref, src)
    count, total = _box_sums([mask, (ref_clean - src_clean) ** 2], kernel_size)
    cost = total / count.clamp(min=1.0)
    insufficient = count < _min_support(kernel_size)
    return torch.where(insufficient, torch.full_like(cost, INVALID_COST), cost)


def compute_cost(
    ref: torch.Tensor,
    src: torch.Tensor,
    cost_function: str = "ncc",
    kernel_size: tuple[int, int] = (11, 11),
) -> torch.Tensor:
    """Compute photometric cost between a reference and a shifted source image.

    Dispatches to the appropriate cost function based on the string name.

    Args:
        ref: Reference image, shape (H, W), float32 in [0, 1].
        src: Shifted source image, shape (H, W), float32 in [0, 1].
        cost_function: "sad", "ssd" or "ncc".
        kernel_size: Window (width, height), both odd.

    Returns:
        Cost map, shape (H, W), float32. Lower = better match.

    Raises:
        ValueError: If cost_function is unknown.
    """
    match cost_function:
        case "ncc":
            return compute_ncc(ref, src, kernel_size)
        case "sad":
            return compute_sad(ref, src, kernel_size)
        case "ssd":
            return compute_ssd(ref, src, kernel_size)
        case _:
            raise ValueError(
                f"Unknown cost function: {cost_function!r}. "
                "Expected 'sad', 'ssd' or 'ncc'."
            )


def normalize_pair(
    left: torch.Tensor, right: torch.Tensor
) -> tuple[torch.Tensor, torch.Tensor]:
    """Scale two images jointly to [0, 1] using their common valid range.

    NaN pixels are preserved.
    """
    values = torch.cat([left[~torch.isnan(left)], right[~torch.isnan(right)]])
    if values.numel() == 0:
        return left, right
    lo, hi = values.min(), values.max()
    scale = (hi - lo).clamp(min=1e-8)
    return (left - lo) / scale, (right - lo) / scale
