"""Tests for disparity raster helpers and seed maps."""

import numpy as np
import pytest
import torch

from seedstereo.disparity import (
    SeedMap,
    disparity_from_1d,
    disparity_range,
    invalid_disparity,
    invalidate,
    load_disparity_map,
    load_spread_map,
    save_disparity_map,
    save_spread_map,
    valid_mask,
)
from seedstereo.errors import DimensionMismatch
from seedstereo.geometry import SearchWindow


class TestRasterHelpers:
    """Tests for validity handling."""

    def test_invalid_disparity(self, device):
        d = invalid_disparity(3, 4, device=device)
        assert d.shape == (3, 4, 2)
        assert d.dtype == torch.float32
        assert not valid_mask(d).any()

    def test_half_nan_vector_is_invalid(self):
        d = torch.zeros(1, 2, 2)
        d[0, 1, 1] = float("nan")
        assert valid_mask(d).tolist() == [[True, False]]

    def test_invalidate_copies(self):
        d = torch.ones(2, 2, 2)
        keep = torch.tensor([[True, False], [False, True]])
        out = invalidate(d, keep)
        assert valid_mask(out).tolist() == keep.tolist()
        assert valid_mask(d).all()

    def test_disparity_range(self):
        d = invalid_disparity(3, 3)
        d[0, 0] = torch.tensor([-2.0, 1.0])
        d[2, 1] = torch.tensor([4.0, -0.5])
        assert disparity_range(d) == SearchWindow(-2.0, -0.5, 4.0, 1.0)

    def test_disparity_range_all_invalid(self):
        assert disparity_range(invalid_disparity(2, 2)) is None

    def test_disparity_from_1d(self):
        d = torch.tensor([[1.5, float("nan")]])
        out = disparity_from_1d(d)
        assert out.shape == (1, 2, 2)
        assert out[0, 0].tolist() == [1.5, 0.0]
        assert torch.isnan(out[0, 1]).all()


class TestSeedMap:
    """Tests for SeedMap."""

    def test_spread_size_mismatch(self):
        with pytest.raises(DimensionMismatch):
            SeedMap(torch.zeros(4, 4, 2), torch.zeros(4, 5, 2))

    def test_bounds(self):
        seed = SeedMap(torch.zeros(4, 6, 2))
        assert (seed.height, seed.width) == (4, 6)
        assert seed.bounds.shape == (4, 6)


class TestPersistence:
    """Tests for the .npz disparity and spread files."""

    def test_disparity_round_trip_keeps_nan(self, tmp_path):
        d = torch.arange(24, dtype=torch.float32).reshape(3, 4, 2)
        d[1, 2] = float("nan")
        path = tmp_path / "out-D.npz"
        save_disparity_map(d, path)
        loaded = load_disparity_map(path)
        assert torch.equal(valid_mask(loaded), valid_mask(d))
        assert torch.equal(loaded[valid_mask(d)], d[valid_mask(d)])

    def test_load_rejects_wrong_shape(self, tmp_path):
        path = tmp_path / "bad.npz"
        np.savez(path, disparity=np.zeros((3, 4), dtype=np.float32))
        with pytest.raises(ValueError, match="H, W, 2"):
            load_disparity_map(path)

    def test_spread_round_trip(self, tmp_path):
        spread = torch.full((2, 3, 2), 0.5)
        path = tmp_path / "out-D_sub_spread.npz"
        save_spread_map(spread, path)
        assert torch.equal(load_spread_map(path), spread)
