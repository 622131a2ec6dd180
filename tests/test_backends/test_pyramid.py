"""Tests for the internal pyramid matcher."""

from unittest.mock import patch

import numpy as np
import pytest
import torch

from seedstereo.backends.pyramid import (
    aggregate_mgm,
    aggregate_sgm,
    build_cost_volume,
    build_pyramid,
    correlate_pyramid,
    cross_check,
    num_pyramid_levels,
    refine_disparity,
    subpixel_offsets,
)
from seedstereo.config import CorrelationConfig
from seedstereo.disparity import valid_mask
from seedstereo.errors import BackendFailure
from seedstereo.geometry import SearchWindow


WINDOW = SearchWindow(-5, -5, 5, 5)

# Disparity of the shifted_pair fixture
SHIFT_X, SHIFT_Y = 3, -1


@pytest.fixture
def small_config():
    return CorrelationConfig(kernel_size=[7, 7], corr_timeout=0)


class TestPyramid:
    """Tests for pyramid construction and level selection."""

    def test_build_pyramid_halves(self):
        pyramid = build_pyramid(torch.rand(33, 64), 2)
        assert [tuple(p.shape) for p in pyramid] == [(33, 64), (17, 32), (9, 16)]

    def test_nan_aware_downsample(self):
        image = torch.ones(4, 4)
        image[0, 0] = float("nan")
        coarse = build_pyramid(image, 1)[1]
        assert torch.allclose(coarse, torch.ones(2, 2))

    def test_levels_stop_at_small_images(self):
        assert num_pyramid_levels((64, 64), SearchWindow(-100, -100, 100, 100), (21, 21), 5, (2, 2)) == 0

    def test_levels_stop_when_window_is_small(self):
        assert num_pyramid_levels((1024, 1024), SearchWindow(-2, -2, 2, 2), (7, 7), 5, (2, 2)) == 0
        assert num_pyramid_levels((1024, 1024), SearchWindow(-50, -4, 50, 4), (7, 7), 5, (2, 2)) == 4


class TestCostVolumes:
    """Tests for build_cost_volume."""

    def test_full_volume_minimum_at_shift(self, shifted_pair):
        left, right = (torch.from_numpy(a) / 255.0 for a in shifted_pair)
        volume, xs, ys = build_cost_volume(left, right, WINDOW, "ncc", (7, 7))
        assert volume.shape == (64, 64, 11, 11)
        best = volume[32, 32].argmin()
        assert xs[best % 11] == SHIFT_X
        assert ys[best // 11] == SHIFT_Y

    def test_volume_with_origin(self, shifted_pair):
        """A cropped reference is scored against the full matched image."""
        left, right = (torch.from_numpy(a) / 255.0 for a in shifted_pair)
        volume, xs, ys = build_cost_volume(
            left[20:40, 24:44], right, WINDOW, "ncc", (7, 7), origin=(20, 24)
        )
        assert volume.shape == (20, 20, 11, 11)
        best = volume[10, 10].argmin()
        assert xs[best % 11] == SHIFT_X
        assert ys[best // 11] == SHIFT_Y


class TestRefineDisparity:
    """Tests for refine_disparity."""

    @pytest.fixture
    def ramp_pair(self):
        """Horizontal ramp and its copy displaced by 3 columns: SAD cost is |dx - 3| / 32."""
        ref = torch.arange(32, dtype=torch.float32).expand(16, 32) / 32.0
        src = (torch.arange(32, dtype=torch.float32) - 3.0).expand(16, 32) / 32.0
        return ref.contiguous(), src.contiguous()

    def _center(self, dx, shape=(16, 32)):
        center = torch.zeros(*shape, 2, dtype=torch.long)
        center[..., 0] = dx
        return center

    def test_mixed_estimates_scored_exactly(self, shifted_pair):
        """Neighbouring estimates that disagree still recover the true offset."""
        left, right = (torch.from_numpy(a) / 255.0 for a in shifted_pair)
        center = torch.zeros(64, 64, 2, dtype=torch.long)
        checker = (torch.arange(64).view(-1, 1) + torch.arange(64).view(1, -1)) % 2 == 0
        center[..., 0] = torch.where(checker, 2, 4)
        center[..., 1] = torch.where(checker, 0, -2)
        disparity = refine_disparity(left, right, center, WINDOW, (2, 2), "ncc", (7, 7))
        interior = disparity[4:-4, 4:-4]
        assert valid_mask(interior).all()
        assert (interior[..., 0] == SHIFT_X).all()
        assert (interior[..., 1] == SHIFT_Y).all()

    def test_winner_on_range_edge_invalid(self, ramp_pair):
        ref, src = ramp_pair
        window = SearchWindow(-5, 0, 5, 0)
        disparity = refine_disparity(ref, src, self._center(0), window, (1, 0), "sad", (3, 3))
        # Best offset of [-1, 1] is 1, short of the true 3
        assert not valid_mask(disparity).any()

    def test_winner_inside_range_kept(self, ramp_pair):
        ref, src = ramp_pair
        window = SearchWindow(-5, 0, 5, 0)
        disparity = refine_disparity(ref, src, self._center(2), window, (2, 0), "sad", (3, 3))
        assert valid_mask(disparity[:, :24]).all()
        assert (disparity[:, :24, 0] == 3.0).all()

    def test_edge_imposed_by_window_kept(self, ramp_pair):
        ref, src = ramp_pair
        window = SearchWindow(-5, 0, 3, 0)
        disparity = refine_disparity(ref, src, self._center(3), window, (1, 0), "sad", (3, 3))
        assert (disparity[:, :24, 0] == 3.0).all()


class TestAggregation:
    """Tests for semi-global aggregation."""

    def _noisy_volume(self):
        torch.manual_seed(0)
        volume = 0.8 + torch.rand(12, 12, 1, 5) * 0.1
        volume[..., 0, 2] = 0.2  # consistent offset index 2
        volume[5, 5, 0, 2] = 0.3
        volume[5, 5, 0, 4] = 0.0  # isolated outlier
        return volume

    def test_sgm_removes_isolated_outlier(self):
        volume = self._noisy_volume()
        assert volume[5, 5].argmin() == 4
        aggregated = aggregate_sgm(volume, p1=0.2, p2=1.0)
        assert aggregated.shape == volume.shape
        assert aggregated[5, 5].argmin() == 2

    def test_mgm_removes_isolated_outlier(self):
        volume = self._noisy_volume()
        aggregated = aggregate_mgm(volume, p1=0.2, p2=1.0)
        assert aggregated.shape == volume.shape
        assert aggregated[5, 5].argmin() == 2


class TestSubpixel:
    """Tests for subpixel refinement."""

    def test_parabola_symmetric_is_zero(self):
        volume = torch.tensor([1.0, 0.0, 1.0]).view(1, 1, 1, 3)
        iy = torch.zeros(1, 1, dtype=torch.long)
        ix = torch.ones(1, 1, dtype=torch.long)
        ox, oy = subpixel_offsets(volume, iy, ix, "parabola")
        assert ox.item() == pytest.approx(0.0)
        assert oy.item() == 0.0

    def test_parabola_shifts_toward_lower_neighbour(self):
        volume = torch.tensor([1.0, 0.0, 0.5]).view(1, 1, 1, 3)
        iy = torch.zeros(1, 1, dtype=torch.long)
        ix = torch.ones(1, 1, dtype=torch.long)
        ox, _ = subpixel_offsets(volume, iy, ix, "parabola")
        assert 0.0 < ox.item() <= 0.5

    def test_border_winner_not_refined(self):
        volume = torch.tensor([0.0, 1.0, 2.0]).view(1, 1, 1, 3)
        zero = torch.zeros(1, 1, dtype=torch.long)
        ox, _ = subpixel_offsets(volume, zero, zero, "linear")
        assert ox.item() == 0.0


class TestCrossCheck:
    """Tests for the left-right consistency check."""

    def test_consistent_vectors_kept(self):
        lr = torch.zeros(4, 6, 2)
        lr[..., 0] = 1.0
        rl = torch.zeros(4, 6, 2)
        rl[..., 0] = -1.0
        out = cross_check(lr, rl, 0.5)
        # The last column points outside the right image
        assert valid_mask(out)[:, :5].all()
        assert not valid_mask(out)[:, 5].any()

    def test_inconsistent_vectors_removed(self):
        lr = torch.zeros(3, 3, 2)
        rl = torch.full((3, 3, 2), 3.0)
        assert not valid_mask(cross_check(lr, rl, 2.0)).any()


class TestCorrelatePyramid:
    """Tests for correlate_pyramid."""

    @pytest.mark.parametrize("algorithm", ["asp_bm", "asp_sgm", "asp_mgm"])
    def test_recovers_uniform_shift(self, shifted_pair, small_config, algorithm):
        left, right = (torch.from_numpy(a) for a in shifted_pair)
        disparity = correlate_pyramid(left, right, None, None, WINDOW, small_config, algorithm)
        assert disparity.shape == (64, 64, 2)
        interior = disparity[12:-12, 12:-12]
        assert valid_mask(interior).float().mean() > 0.9
        good = interior[valid_mask(interior)]
        assert torch.allclose(good[:, 0].median(), torch.tensor(float(SHIFT_X)), atol=0.25)
        assert torch.allclose(good[:, 1].median(), torch.tensor(float(SHIFT_Y)), atol=0.25)

        # One coarse level: a half-pixel shift there must not leave wrong vectors
        core = disparity[4:-4, 4:-4]
        vectors = core[valid_mask(core)]
        error = (vectors - torch.tensor([SHIFT_X, SHIFT_Y], dtype=vectors.dtype)).abs()
        assert (error <= 1.0).all()

    def test_reverse_pass_gets_remaining_budget(self, shifted_pair, small_config):
        left, right = (torch.from_numpy(a) for a in shifted_pair)
        budgets = []

        def fake_match(ref, src, window, config, algorithm, timeout):
            budgets.append(timeout)
            return torch.zeros(*ref.shape, 2)

        with patch("seedstereo.backends.pyramid._match", side_effect=fake_match), patch(
            "seedstereo.backends.pyramid.time"
        ) as mock_time:
            mock_time.perf_counter.side_effect = [100.0, 104.0]
            correlate_pyramid(left, right, None, None, WINDOW, small_config, timeout=10.0)

        assert budgets == [10.0, 6.0]

    def test_cross_check_skipped_when_budget_spent(self, shifted_pair, small_config, caplog):
        left, right = (torch.from_numpy(a) for a in shifted_pair)
        budgets = []

        def fake_match(ref, src, window, config, algorithm, timeout):
            budgets.append(timeout)
            return torch.zeros(*ref.shape, 2)

        with patch("seedstereo.backends.pyramid._match", side_effect=fake_match), patch(
            "seedstereo.backends.pyramid.time"
        ) as mock_time:
            mock_time.perf_counter.side_effect = [100.0, 111.0]
            disparity = correlate_pyramid(
                left, right, None, None, WINDOW, small_config, timeout=10.0
            )

        assert budgets == [10.0]
        assert valid_mask(disparity).all()
        assert "skipping it" in caplog.text

    def test_left_mask_applied(self, shifted_pair, small_config):
        left, right = (torch.from_numpy(a) for a in shifted_pair)
        mask = torch.ones(64, 64, dtype=torch.bool)
        mask[:, :32] = False
        disparity = correlate_pyramid(left, right, mask, None, WINDOW, small_config)
        assert not valid_mask(disparity)[:, :32].any()

    def test_coarsest_level_over_budget(self, shifted_pair, small_config):
        left, right = (torch.from_numpy(a) for a in shifted_pair)
        with patch("seedstereo.backends.pyramid.calc_seconds_per_op", return_value=1.0):
            with pytest.raises(BackendFailure, match="time budget"):
                correlate_pyramid(left, right, None, None, WINDOW, small_config, timeout=10.0)

    def test_bails_out_at_coarse_level(self, shifted_pair, small_config, caplog):
        """When refinement would exceed the budget, the coarse result is upsampled."""
        left, right = (torch.from_numpy(a) for a in shifted_pair)
        # Coarse level: 32 * 32 * 7 * 7 ops ~ 5 s; refinement: 64 * 64 * 25 ops ~ 10 s
        with patch("seedstereo.backends.pyramid.calc_seconds_per_op", return_value=1e-4):
            disparity = correlate_pyramid(
                left, right, None, None, WINDOW, small_config, timeout=8.0, xcorr_threshold=-1
            )
        assert disparity.shape == (64, 64, 2)
        values = disparity[valid_mask(disparity)].numpy()
        np.testing.assert_array_equal(values % 2, 0)
        assert "Time budget" in caplog.text
