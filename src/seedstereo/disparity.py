"""Disparity raster helpers, seed maps, and their on-disk format.

A disparity raster is a float32 tensor of shape (H, W, 2) holding
``(dx, dy) = (x_right - x_left, y_right - y_left)`` per left pixel.
Invalid vectors are NaN in both channels.
"""

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch

from .errors import DimensionMismatch
from .geometry import PixelBox, SearchWindow


def invalid_disparity(height: int, width: int, device: str = "cpu") -> torch.Tensor:
    """Create an all-invalid disparity raster.

    Args:
        height: Raster height.
        width: Raster width.
        device: Device for the output tensor.

    Returns:
        Tensor of shape (height, width, 2), float32, filled with NaN.
    """
    return torch.full((height, width, 2), float("nan"), device=device)


def valid_mask(disparity: torch.Tensor) -> torch.Tensor:
    """Per-pixel validity, shape (H, W), bool."""
    return ~torch.isnan(disparity).any(dim=-1)


def invalidate(disparity: torch.Tensor, keep: torch.Tensor) -> torch.Tensor:
    """Return a copy of ``disparity`` with pixels where ``keep`` is False set to NaN."""
    out = disparity.clone()
    out[~keep] = float("nan")
    return out


def disparity_range(disparity: torch.Tensor) -> SearchWindow | None:
    """Bounding window of all valid disparity vectors.

    Args:
        disparity: Disparity raster (H, W, 2).

    Returns:
        Window spanning the min/max of the valid vectors, or None when no
        vector is valid.
    """
    mask = valid_mask(disparity)
    if not mask.any():
        return None
    vectors = disparity[mask]  # (N, 2)
    lo = vectors.min(dim=0).values
    hi = vectors.max(dim=0).values
    return SearchWindow(
        float(lo[0].item()), float(lo[1].item()), float(hi[0].item()), float(hi[1].item())
    )


def disparity_from_1d(disparity: torch.Tensor) -> torch.Tensor:
    """Promote a scalar (H, W) horizontal disparity to (H, W, 2) with dy = 0."""
    dy = torch.where(
        torch.isnan(disparity), torch.full_like(disparity, float("nan")), torch.zeros_like(disparity)
    )
    return torch.stack([disparity, dy], dim=-1)


@dataclass
class SeedMap:
    """Coarse disparity estimate used to bound full-resolution search.

    Attributes:
        disparity: Low-resolution disparity raster (h, w, 2), float32.
        spread: Optional per-pixel uncertainty radius (h, w, 2), float32.
            Must have the same height and width as ``disparity``.
    """

    disparity: torch.Tensor
    spread: torch.Tensor | None = None

    def __post_init__(self):
        if self.spread is not None and self.spread.shape[:2] != self.disparity.shape[:2]:
            raise DimensionMismatch(
                "Seed disparity and spread must have equal sizes: "
                f"{tuple(self.disparity.shape[:2])} vs {tuple(self.spread.shape[:2])}"
            )

    @property
    def height(self) -> int:
        return self.disparity.shape[0]

    @property
    def width(self) -> int:
        return self.disparity.shape[1]

    @property
    def bounds(self) -> PixelBox:
        return PixelBox(0, 0, self.width, self.height)


def save_disparity_map(disparity: torch.Tensor, path: str | Path) -> None:
    """Save a disparity raster to an .npz file under the key ``disparity``."""
    np.savez(path, disparity=disparity.detach().cpu().numpy().astype(np.float32))


def load_disparity_map(path: str | Path, device: str = "cpu") -> torch.Tensor:
    """Load a disparity raster saved by ``save_disparity_map``.

    Raises:
        ValueError: If the file does not hold an (H, W, 2) array.
    """
    with np.load(path) as data:
        disparity = data["disparity"]
    if disparity.ndim != 3 or disparity.shape[2] != 2:
        raise ValueError(
            f"Expected an (H, W, 2) disparity in {path}, got shape {disparity.shape}"
        )
    return torch.from_numpy(disparity.astype(np.float32)).to(device)


def save_spread_map(spread: torch.Tensor, path: str | Path) -> None:
    """Save a spread map to an .npz file under the key ``spread``."""
    np.savez(path, spread=spread.detach().cpu().numpy().astype(np.float32))


def load_spread_map(path: str | Path, device: str = "cpu") -> torch.Tensor:
    """Load a spread map saved by ``save_spread_map``."""
    with np.load(path) as data:
        spread = data["spread"]
    return torch.from_numpy(spread.astype(np.float32)).to(device)


__all__ = [
    "SeedMap",
    "invalid_disparity",
    "valid_mask",
    "invalidate",
    "disparity_range",
    "disparity_from_1d",
    "save_disparity_map",
    "load_disparity_map",
    "save_spread_map",
    "load_spread_map",
]
