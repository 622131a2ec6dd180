"""Image, mask and intermediate artifact I/O."""

import logging
from pathlib import Path

import cv2
import numpy as np
import torch

from .errors import MissingArtifact

logger = logging.getLogger(__name__)


def load_image(path: str | Path) -> np.ndarray:
    """Load an image as single-channel float32.

    Color images are converted to grayscale. Intensities keep their native
    range (e.g., 0-255 for 8-bit, 0-65535 for 16-bit).

    Args:
        path: Image file path.

    Returns:
        Image array (H, W) float32.

    Raises:
        FileNotFoundError: If the file does not exist or cannot be decoded.
    """
    img = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if img is None:
        raise FileNotFoundError(f"Could not read image: {path}")

    if img.ndim == 3:
        if img.shape[2] == 4:
            img = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
        else:
            img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)

    return img.astype(np.float32)


def load_mask(
    path: str | Path | None, expected_shape: tuple[int, int]
) -> np.ndarray:
    """Load a validity mask (nonzero = valid).

    A missing path means "all valid". A mask whose size differs from the
    image is ignored with a warning.

    Args:
        path: Mask image path, or None.
        expected_shape: Image shape (H, W).

    Returns:
        Boolean mask (H, W).
    """
    full = np.ones(expected_shape, dtype=bool)
    if path is None:
        return full

    mask = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if mask is None:
        logger.warning("Failed to load mask from %s (invalid image)", path)
        return full

    if mask.shape != tuple(expected_shape):
        logger.warning(
            "Mask size mismatch for %s: expected %s, got %s. Ignoring mask.",
            path,
            tuple(expected_shape),
            mask.shape,
        )
        return full

    return mask > 0


def downsample_image(image: np.ndarray, factor: int) -> np.ndarray:
    """Downsample an image by an integer factor using area averaging.

    Args:
        image: Image (H, W) float32.
        factor: Downsampling factor (1 returns a copy).

    Returns:
        Image of size (round(H / factor), round(W / factor)), at least 1x1.
    """
    if factor == 1:
        return image.copy()
    h, w = image.shape[:2]
    size = (max(1, round(w / factor)), max(1, round(h / factor)))
    return cv2.resize(image, size, interpolation=cv2.INTER_AREA)


def downsample_mask(mask: np.ndarray, factor: int) -> np.ndarray:
    """Downsample a boolean mask; a coarse pixel is valid only if fully valid."""
    if factor == 1:
        return mask.copy()
    coarse = downsample_image(mask.astype(np.float32), factor)
    return coarse > 0.999


def is_latest_timestamp(path: str | Path, inputs: list[str | Path]) -> bool:
    """Check that ``path`` exists and is strictly newer than every input.

    Inputs that do not exist are ignored.

    Args:
        path: Artifact path.
        inputs: Files the artifact was derived from.

    Returns:
        True if the artifact is up to date.
    """
    path = Path(path)
    if not path.exists():
        return False
    mtime = path.stat().st_mtime_ns
    for inp in inputs:
        inp = Path(inp)
        if inp.exists() and inp.stat().st_mtime_ns >= mtime:
            return False
    return True


def save_matches(left: torch.Tensor, right: torch.Tensor, path: str | Path) -> None:
    """Save interest point matches to a .pt file.

    Args:
        left: Left keypoints (M, 2) as (x, y).
        right: Right keypoints (M, 2) as (x, y).
        path: Output file path (should end with .pt).
    """
    torch.save(
        {
            "left_keypoints": torch.as_tensor(left, dtype=torch.float32),
            "right_keypoints": torch.as_tensor(right, dtype=torch.float32),
        },
        path,
    )


def load_matches(
    path: str | Path, inputs: list[str | Path] | None = None
) -> tuple[np.ndarray, np.ndarray]:
    """Load interest point matches saved by ``save_matches``.

    Args:
        path: Path to .pt file.
        inputs: Files the matches were computed from. When given, a match
            file that is not newer than all of them is rejected.

    Returns:
        Tuple of (left, right) keypoint arrays (M, 2) float64.

    Raises:
        MissingArtifact: If the file is missing, stale, or malformed.
    """
    path = Path(path)
    if not path.exists():
        raise MissingArtifact(f"Match file not found: {path}")
    if inputs and not is_latest_timestamp(path, inputs):
        raise MissingArtifact(
            f"Match file {path} is older than its inputs; recompute the matches."
        )

    data = torch.load(path, weights_only=True)
    try:
        left = np.asarray(data["left_keypoints"].cpu().numpy(), dtype=np.float64)
        right = np.asarray(data["right_keypoints"].cpu().numpy(), dtype=np.float64)
    except (KeyError, AttributeError) as e:
        raise MissingArtifact(f"Malformed match file {path}: {e}") from e

    if left.shape != right.shape or left.ndim != 2 or left.shape[1] != 2:
        raise MissingArtifact(
            f"Malformed match file {path}: shapes {left.shape} and {right.shape}"
        )
    return left, right


def load_alignment_matrices(prefix: str | Path) -> tuple[np.ndarray, np.ndarray]:
    """Load the 3x3 global alignment matrices written next to the output.

    Reads ``{prefix}-align-L.txt`` and ``{prefix}-align-R.txt``. A missing
    file yields the identity.

    Args:
        prefix: Output prefix of the run.

    Returns:
        Tuple of (left, right) 3x3 float64 matrices.
    """
    matrices = []
    for side in ("L", "R"):
        path = Path(f"{prefix}-align-{side}.txt")
        if path.exists():
            matrix = np.loadtxt(path, dtype=np.float64).reshape(3, 3)
            logger.debug("Loaded alignment matrix %s", path)
        else:
            matrix = np.eye(3)
        matrices.append(matrix)
    return matrices[0], matrices[1]


def save_alignment_matrices(
    left: np.ndarray, right: np.ndarray, prefix: str | Path
) -> None:
    """Write alignment matrices in the format read by ``load_alignment_matrices``."""
    np.savetxt(f"{prefix}-align-L.txt", left)
    np.savetxt(f"{prefix}-align-R.txt", right)


__all__ = [
    "load_image",
    "load_mask",
    "downsample_image",
    "downsample_mask",
    "is_latest_timestamp",
    "save_matches",
    "load_matches",
    "load_alignment_matrices",
    "save_alignment_matrices",
]
