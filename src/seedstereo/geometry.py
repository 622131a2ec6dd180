"""Axis-aligned boxes in pixel space and in disparity space."""

import math
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class SearchWindow:
    """Rectangle in disparity (dx, dy) space.

    Bounds are inclusive. A window handed to a correlation backend must be
    non-empty: ``min_x < max_x`` and ``min_y < max_y``.

    Attributes:
        min_x: Smallest horizontal disparity.
        min_y: Smallest vertical disparity.
        max_x: Largest horizontal disparity.
        max_y: Largest vertical disparity.
    """

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @classmethod
    def from_list(cls, values: list[float]) -> "SearchWindow":
        """Build a window from ``[min_x, min_y, max_x, max_y]``."""
        if len(values) != 4:
            raise ValueError(
                f"Search window needs 4 values [min_x, min_y, max_x, max_y], got {values}"
            )
        return cls(*(float(v) for v in values))

    def to_list(self) -> list[float]:
        return [self.min_x, self.min_y, self.max_x, self.max_y]

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def is_empty(self) -> bool:
        return not (self.min_x < self.max_x and self.min_y < self.max_y)

    def expand(self, dx: float, dy: float | None = None) -> "SearchWindow":
        """Grow the window by ``dx`` horizontally and ``dy`` vertically on each side."""
        if dy is None:
            dy = dx
        return SearchWindow(
            self.min_x - dx, self.min_y - dy, self.max_x + dx, self.max_y + dy
        )

    def grow_to_int(self) -> "SearchWindow":
        """Round outward to integer bounds."""
        return SearchWindow(
            float(math.floor(self.min_x)),
            float(math.floor(self.min_y)),
            float(math.ceil(self.max_x)),
            float(math.ceil(self.max_y)),
        )

    def scaled(self, scale_x: float, scale_y: float) -> "SearchWindow":
        """Scale by per-axis factors, flooring the minimum and ceiling the maximum.

        The asymmetric rounding guarantees that the scaled window never
        undercovers the exact scaled range.
        """
        return SearchWindow(
            float(math.floor(self.min_x * scale_x)),
            float(math.floor(self.min_y * scale_y)),
            float(math.ceil(self.max_x * scale_x)),
            float(math.ceil(self.max_y * scale_y)),
        )

    def translate(self, dx: float, dy: float) -> "SearchWindow":
        return SearchWindow(
            self.min_x + dx, self.min_y + dy, self.max_x + dx, self.max_y + dy
        )

    def intersect(self, other: "SearchWindow") -> "SearchWindow":
        """Crop this window to ``other``. The result may be empty."""
        return SearchWindow(
            max(self.min_x, other.min_x),
            max(self.min_y, other.min_y),
            min(self.max_x, other.max_x),
            min(self.max_y, other.max_y),
        )

    def contains(self, other: "SearchWindow") -> bool:
        return (
            self.min_x <= other.min_x
            and self.min_y <= other.min_y
            and self.max_x >= other.max_x
            and self.max_y >= other.max_y
        )

    def integer_offsets(self) -> tuple[np.ndarray, np.ndarray]:
        """Integer disparities covered by the window along each axis.

        Returns:
            Tuple ``(xs, ys)`` of int64 arrays, ascending.
        """
        xs = np.arange(math.ceil(self.min_x), math.floor(self.max_x) + 1)
        ys = np.arange(math.ceil(self.min_y), math.floor(self.max_y) + 1)
        return xs.astype(np.int64), ys.astype(np.int64)

    def __str__(self) -> str:
        return (
            f"[({self.min_x:g}, {self.min_y:g}) -> ({self.max_x:g}, {self.max_y:g})]"
        )


@dataclass(frozen=True)
class PixelBox:
    """Axis-aligned pixel rectangle ``[col, col + width) x [row, row + height)``.

    Used both for output tiles and for image crops.
    """

    col: int
    row: int
    width: int
    height: int

    @property
    def max_col(self) -> int:
        return self.col + self.width

    @property
    def max_row(self) -> int:
        return self.row + self.height

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def shape(self) -> tuple[int, int]:
        """Raster shape ``(height, width)``."""
        return (self.height, self.width)

    @classmethod
    def from_bounds(cls, col0: int, row0: int, col1: int, row1: int) -> "PixelBox":
        """Build a box from exclusive max bounds."""
        return cls(int(col0), int(row0), int(col1 - col0), int(row1 - row0))

    def expand(self, n: int) -> "PixelBox":
        return PixelBox(self.col - n, self.row - n, self.width + 2 * n, self.height + 2 * n)

    def crop(self, other: "PixelBox") -> "PixelBox":
        """Intersect with ``other``. Empty intersections have zero size."""
        col0 = max(self.col, other.col)
        row0 = max(self.row, other.row)
        col1 = min(self.max_col, other.max_col)
        row1 = min(self.max_row, other.max_row)
        return PixelBox(col0, row0, max(0, col1 - col0), max(0, row1 - row0))

    def contains(self, col: float, row: float) -> bool:
        return self.col <= col < self.max_col and self.row <= row < self.max_row

    def slices(self) -> tuple[slice, slice]:
        """Row and column slices for indexing an (H, W, ...) array."""
        return slice(self.row, self.max_row), slice(self.col, self.max_col)

    def __str__(self) -> str:
        return f"({self.col}, {self.row}) {self.width}x{self.height}"


# A tile is just a pixel box of the output raster.
Tile = PixelBox

__all__ = ["SearchWindow", "PixelBox", "Tile"]
