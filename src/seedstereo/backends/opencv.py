"""In-process adapter around OpenCV's block matcher and semi-global block matcher.

OpenCV reports ``d = x_left - x_right`` in 1/16 pixel on equally sized
8-bit images. Results are converted to ``dx = x_right - x_left`` with
``dy = 0``.
"""

import logging
import math

import cv2
import numpy as np
import torch

from ..disparity import disparity_from_1d
from ..errors import BackendFailure
from ..geometry import SearchWindow

logger = logging.getLogger(__name__)

SGBM_MODES = {
    "sgbm": cv2.STEREO_SGBM_MODE_SGBM,
    "hh": cv2.STEREO_SGBM_MODE_HH,
    "3way": cv2.STEREO_SGBM_MODE_SGBM_3WAY,
    "hh4": cv2.STEREO_SGBM_MODE_HH4,
}


def opencv_disparity_range(window: SearchWindow) -> tuple[int, int]:
    """Map a search window to OpenCV's (minDisparity, numDisparities).

    OpenCV searches ``d in [minDisparity, minDisparity + numDisparities)``
    with ``d = -dx`` and needs ``numDisparities`` divisible by 16.
    """
    min_disparity = int(math.floor(-window.max_x))
    span = int(math.ceil(-window.min_x)) - min_disparity + 1
    num_disparities = 16 * max(1, math.ceil(span / 16))
    return min_disparity, num_disparities


def _to_uint8(
    left: np.ndarray, right: np.ndarray, left_mask: np.ndarray, right_mask: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """Jointly rescale both images to 0-255 on a common canvas; masked pixels are 0."""
    values = np.concatenate([left[left_mask], right[right_mask]])
    values = values[np.isfinite(values)]
    lo, hi = (float(values.min()), float(values.max())) if values.size else (0.0, 1.0)
    scale = 255.0 / max(hi - lo, 1e-8)

    height = max(left.shape[0], right.shape[0])
    width = max(left.shape[1], right.shape[1])
    canvases = []
    for image, mask in ((left, left_mask), (right, right_mask)):
        canvas = np.zeros((height, width), dtype=np.uint8)
        scaled = np.clip((np.nan_to_num(image, nan=lo) - lo) * scale, 0, 255)
        scaled[~mask] = 0
        canvas[: image.shape[0], : image.shape[1]] = scaled.astype(np.uint8)
        canvases.append(canvas)
    return canvases[0], canvases[1]


def _int_option(options: dict[str, str], key: str) -> int:
    try:
        return int(float(options[key]))
    except (KeyError, ValueError) as e:
        raise BackendFailure(f"Invalid or missing OpenCV option {key}: {e}") from e


def create_matcher(name: str, options: dict[str, str], window: SearchWindow):
    """Build a configured cv2.StereoBM or cv2.StereoSGBM.

    Args:
        name: "opencv_bm" or "opencv_sgbm".
        options: Option map with keys such as "-block_size", "-P1".
        window: Search window.

    Returns:
        OpenCV stereo matcher.
    """
    min_disparity, num_disparities = opencv_disparity_range(window)
    block_size = _int_option(options, "-block_size")

    match name:
        case "opencv_bm":
            # StereoBM only accepts odd block sizes of at least 5
            block_size = max(5, block_size | 1)
            matcher = cv2.StereoBM_create(numDisparities=num_disparities, blockSize=block_size)
            matcher.setMinDisparity(min_disparity)
            matcher.setPreFilterCap(_int_option(options, "-prefilter_cap"))
            matcher.setTextureThreshold(_int_option(options, "-texture_thresh"))
        case "opencv_sgbm":
            mode = options.get("-mode", "sgbm")
            if mode not in SGBM_MODES:
                raise BackendFailure(f"Unknown SGBM mode {mode!r}. Valid: {list(SGBM_MODES)}")
            matcher = cv2.StereoSGBM_create(
                minDisparity=min_disparity,
                numDisparities=num_disparities,
                blockSize=block_size,
                P1=_int_option(options, "-P1") * block_size * block_size,
                P2=_int_option(options, "-P2") * block_size * block_size,
                preFilterCap=_int_option(options, "-prefilter_cap"),
                mode=SGBM_MODES[mode],
            )
        case _:
            raise ValueError(f"Not an OpenCV algorithm: {name!r}")

    matcher.setUniquenessRatio(_int_option(options, "-uniqueness_ratio"))
    matcher.setSpeckleWindowSize(_int_option(options, "-speckle_size"))
    matcher.setSpeckleRange(_int_option(options, "-speckle_range"))
    matcher.setDisp12MaxDiff(_int_option(options, "-disp12_diff"))
    return matcher


def correlate_opencv(
    left: torch.Tensor,
    right: torch.Tensor,
    left_mask: torch.Tensor | None,
    right_mask: torch.Tensor | None,
    window: SearchWindow,
    name: str,
    options: dict[str, str],
) -> torch.Tensor:
    """Match a pair with OpenCV.

    Args:
        left: Left image (H, W).
        right: Right image (H', W').
        left_mask: Left validity (H, W), or None.
        right_mask: Right validity (H', W'), or None.
        window: Search window; only the horizontal extent is used.
        name: "opencv_bm" or "opencv_sgbm".
        options: Merged option map.

    Returns:
        Disparity (H, W, 2) with dy = 0, NaN where invalid.

    Raises:
        BackendFailure: If OpenCV rejects the configuration or fails.
    """
    device = left.device
    left_np = left.detach().cpu().numpy().astype(np.float32)
    right_np = right.detach().cpu().numpy().astype(np.float32)
    lmask = np.ones(left_np.shape, bool) if left_mask is None else left_mask.cpu().numpy().astype(bool)
    rmask = np.ones(right_np.shape, bool) if right_mask is None else right_mask.cpu().numpy().astype(bool)
    lmask &= np.isfinite(left_np)
    rmask &= np.isfinite(right_np)

    if window.height > 0:
        logger.debug("%s is a 1D matcher; ignoring vertical search extent %s", name, window)

    left_u8, right_u8 = _to_uint8(left_np, right_np, lmask, rmask)
    matcher = create_matcher(name, options, window)
    min_disparity = matcher.getMinDisparity()
    try:
        raw = matcher.compute(left_u8, right_u8)
    except cv2.error as e:
        raise BackendFailure(f"{name} failed: {e}") from e

    raw = raw[: left_np.shape[0], : left_np.shape[1]]
    disp = raw.astype(np.float32) / 16.0
    invalid = (raw < min_disparity * 16) | ~lmask
    dx = np.where(invalid, np.nan, -disp).astype(np.float32)
    return disparity_from_1d(torch.from_numpy(dx).to(device))


__all__ = ["SGBM_MODES", "opencv_disparity_range", "create_matcher", "correlate_opencv"]
