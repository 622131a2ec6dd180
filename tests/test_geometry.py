"""Tests for search windows and pixel boxes."""

import numpy as np
import pytest

from seedstereo.geometry import PixelBox, SearchWindow


class TestSearchWindow:
    """Tests for SearchWindow."""

    def test_from_list_round_trip(self):
        window = SearchWindow.from_list([-5, -1, 7, 2])
        assert window == SearchWindow(-5.0, -1.0, 7.0, 2.0)
        assert window.to_list() == [-5.0, -1.0, 7.0, 2.0]

    def test_from_list_wrong_length(self):
        with pytest.raises(ValueError, match="4 values"):
            SearchWindow.from_list([1, 2, 3])

    def test_is_empty(self):
        """A window is empty when it is degenerate in either axis."""
        assert not SearchWindow(0, 0, 1, 1).is_empty
        assert SearchWindow(0, 0, 0, 1).is_empty
        assert SearchWindow(0, 2, 1, 1).is_empty

    def test_expand_defaults_to_both_axes(self):
        assert SearchWindow(0, 0, 1, 1).expand(2) == SearchWindow(-2, -2, 3, 3)
        assert SearchWindow(0, 0, 1, 1).expand(10, 1) == SearchWindow(-10, -1, 11, 2)

    def test_grow_to_int_rounds_outward(self):
        window = SearchWindow(-1.5, 0.2, 2.1, 3.0).grow_to_int()
        assert window == SearchWindow(-2.0, 0.0, 3.0, 3.0)

    def test_scaled_never_undercovers(self):
        """Floor on the minimum, ceil on the maximum."""
        window = SearchWindow(-3, -1, 5, 1)
        scaled = window.scaled(2.5, 0.3)
        assert scaled == SearchWindow(-8.0, -1.0, 13.0, 1.0)
        assert scaled.min_x <= -3 * 2.5 and scaled.max_x >= 5 * 2.5

    def test_intersect(self):
        a = SearchWindow(-10, -2, 10, 2)
        b = SearchWindow(0, -5, 20, 1)
        assert a.intersect(b) == SearchWindow(0, -2, 10, 1)
        assert a.intersect(SearchWindow(11, 0, 12, 1)).is_empty

    def test_contains(self):
        outer = SearchWindow(-5, -5, 5, 5)
        assert outer.contains(SearchWindow(-1, -1, 1, 1))
        assert not outer.contains(SearchWindow(-6, -1, 1, 1))

    def test_integer_offsets(self):
        xs, ys = SearchWindow(-1.5, 0, 2, 1).integer_offsets()
        np.testing.assert_array_equal(xs, [-1, 0, 1, 2])
        np.testing.assert_array_equal(ys, [0, 1])
        assert xs.dtype == np.int64


class TestPixelBox:
    """Tests for PixelBox."""

    def test_bounds(self):
        box = PixelBox(2, 3, 10, 4)
        assert box.max_col == 12
        assert box.max_row == 7
        assert box.shape == (4, 10)

    def test_from_bounds(self):
        assert PixelBox.from_bounds(1, 2, 5, 8) == PixelBox(1, 2, 4, 6)

    def test_expand_and_crop(self):
        """Expanding past the image and cropping back clips at the edges."""
        box = PixelBox(0, 0, 4, 4).expand(2)
        assert box == PixelBox(-2, -2, 8, 8)
        assert box.crop(PixelBox(0, 0, 5, 5)) == PixelBox(0, 0, 5, 5)

    def test_disjoint_crop_is_empty(self):
        box = PixelBox(0, 0, 4, 4).crop(PixelBox(10, 10, 4, 4))
        assert box.is_empty

    def test_contains_is_half_open(self):
        box = PixelBox(0, 0, 4, 4)
        assert box.contains(0, 0)
        assert box.contains(3.9, 3.9)
        assert not box.contains(4, 0)

    def test_slices_index_the_box(self):
        array = np.arange(100).reshape(10, 10)
        rows, cols = PixelBox(2, 1, 3, 2).slices()
        np.testing.assert_array_equal(array[rows, cols], [[12, 13, 14], [22, 23, 24]])
