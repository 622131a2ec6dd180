"""Tests for the low-resolution seed stage."""

import os
from unittest.mock import patch

import numpy as np
import pytest
import torch

from seedstereo.backends.dispatch import BackendConfig, BackendKind
from seedstereo.config import PipelineConfig
from seedstereo.disparity import (
    SeedMap,
    load_disparity_map,
    save_disparity_map,
    save_spread_map,
    valid_mask,
)
from seedstereo.errors import EmptySearchWindow, MissingArtifact
from seedstereo.geometry import SearchWindow
from seedstereo.lowres import (
    filter_seed,
    load_seed,
    lowres_correlation,
    produce_lowres_disparity,
    rm_outliers_using_quantiles,
    rm_outliers_using_thresh,
    search_range_from_seed,
    seed_search_window,
    should_rebuild_seed,
)

BACKEND = BackendConfig(name="asp_bm", kind=BackendKind.INTERNAL_PYRAMID)


def _set_mtime(path, seconds):
    os.utime(path, (seconds, seconds))


def _field_with_outlier():
    disparity = torch.zeros(5, 5, 2)
    disparity[..., 0] = 1.0
    disparity[2, 2] = torch.tensor([10.0, 4.0])
    return disparity


@pytest.fixture
def run_config(tmp_path, pair_files):
    left_path, right_path = pair_files
    _set_mtime(left_path, 1_000_000)
    _set_mtime(right_path, 1_000_000)
    return PipelineConfig(
        left_image=str(left_path),
        right_image=str(right_path),
        output_prefix=str(tmp_path / "out" / "run"),
        seed={"downsample_factor": 2, "outlier_removal_mode": "none"},
    )


@pytest.fixture
def full_res_inputs(shifted_pair):
    left, right = shifted_pair
    mask = np.ones(left.shape, dtype=bool)
    return left, right, mask, mask.copy()


class TestSeedSearchWindow:
    """Tests for seed_search_window."""

    def test_scaled_and_padded(self):
        window = seed_search_window(SearchWindow(-8, -4, 8, 4), (0.25, 0.25), 0.25)
        assert window == SearchWindow(-3, -2, 3, 2)

    def test_no_padding(self):
        window = seed_search_window(SearchWindow(-8, -4, 8, 4), (0.5, 0.5), 0.0)
        assert window == SearchWindow(-4, -2, 4, 2)


class TestOutlierRemoval:
    """Tests for seed outlier filters."""

    def test_threshold_removes_isolated_vector(self):
        filtered = rm_outliers_using_thresh(_field_with_outlier(), 1, 1, 1.0, 0.5)
        valid = valid_mask(filtered)
        assert not valid[2, 2]
        assert valid.sum() == 24

    def test_threshold_drops_pixels_without_valid_neighbours(self):
        disparity = torch.full((3, 3, 2), float("nan"))
        disparity[1, 1] = torch.tensor([1.0, 0.0])
        filtered = rm_outliers_using_thresh(disparity, 1, 1, 1.0, 0.5)
        assert not valid_mask(filtered).any()

    def test_quantile_removes_far_vector(self):
        filtered = rm_outliers_using_quantiles(_field_with_outlier(), 0.85, 3.0)
        valid = valid_mask(filtered)
        assert not valid[2, 2]
        assert valid.sum() == 24

    def test_quantile_all_invalid(self):
        disparity = torch.full((2, 2, 2), float("nan"))
        assert not valid_mask(rm_outliers_using_quantiles(disparity, 0.85, 3.0)).any()

    def test_filter_seed_modes(self):
        disparity = _field_with_outlier()
        config = PipelineConfig(seed={"outlier_removal_mode": "none"})
        assert filter_seed(disparity, config) is disparity
        config = PipelineConfig(seed={"outlier_removal_mode": "threshold"})
        assert not valid_mask(filter_seed(disparity, config))[2, 2]
        config = PipelineConfig(seed={"outlier_removal_mode": "quantile"})
        assert not valid_mask(filter_seed(disparity, config))[2, 2]


class TestProduceLowresDisparity:
    """Tests for produce_lowres_disparity."""

    def test_timeout_and_cross_check_forced(self):
        config = PipelineConfig(
            correlation={"corr_timeout": 10, "xcorr_threshold": -1},
            seed={"outlier_removal_mode": "none"},
        )
        with patch(
            "seedstereo.lowres.run_backend", return_value=torch.zeros(8, 8, 2)
        ) as mock_run:
            result = produce_lowres_disparity(
                torch.rand(8, 8), torch.rand(8, 8), None, None,
                SearchWindow(-8, -8, 8, 8), (0.5, 0.5), BACKEND, config,
            )
        assert result.shape == (8, 8, 2)
        kwargs = mock_run.call_args.kwargs
        assert kwargs["timeout"] == 50.0
        assert kwargs["xcorr_threshold"] == 2.0
        # Window passed positionally after the masks
        assert mock_run.call_args.args[4] == SearchWindow(-5, -5, 5, 5)


class TestShouldRebuildSeed:
    """Tests for the seed cache check."""

    def test_missing_seed(self, tmp_path):
        assert should_rebuild_seed(tmp_path / "D_sub.npz", [], False)

    def test_fresh_seed_reused(self, tmp_path):
        seed = tmp_path / "D_sub.npz"
        image = tmp_path / "left.tif"
        image.write_bytes(b"x")
        save_disparity_map(torch.zeros(2, 2, 2), seed)
        _set_mtime(image, 1_000_000)
        _set_mtime(seed, 2_000_000)
        assert not should_rebuild_seed(seed, [image], False)

    def test_crop_forces_rebuild(self, tmp_path):
        seed = tmp_path / "D_sub.npz"
        save_disparity_map(torch.zeros(2, 2, 2), seed)
        assert should_rebuild_seed(seed, [], True)

    def test_older_than_input(self, tmp_path):
        seed = tmp_path / "D_sub.npz"
        image = tmp_path / "left.tif"
        image.write_bytes(b"x")
        save_disparity_map(torch.zeros(2, 2, 2), seed)
        _set_mtime(seed, 1_000_000)
        _set_mtime(image, 1_000_000)
        assert should_rebuild_seed(seed, [image], False)

    def test_corrupt_seed(self, tmp_path):
        seed = tmp_path / "D_sub.npz"
        seed.write_bytes(b"not an archive")
        assert should_rebuild_seed(seed, [], False)


class TestSearchRangeFromSeed:
    """Tests for search_range_from_seed."""

    def _seed(self):
        disparity = torch.zeros(2, 2, 2)
        disparity[..., 0] = torch.tensor([[1.0, 2.0], [3.0, float("nan")]])
        disparity[1, 1, 1] = float("nan")
        return disparity

    def test_without_spread(self):
        window = search_range_from_seed(SeedMap(self._seed()), (2.0, 2.0))
        assert window == SearchWindow(2, 0, 6, 0)

    def test_with_spread(self):
        spread = torch.full((2, 2, 2), 0.5)
        window = search_range_from_seed(SeedMap(self._seed(), spread), (2.0, 2.0))
        assert window == SearchWindow(1, -1, 7, 1)

    def test_no_valid_vector(self):
        seed = SeedMap(torch.full((2, 2, 2), float("nan")))
        with pytest.raises(EmptySearchWindow):
            search_range_from_seed(seed, (1.0, 1.0))


class TestLoadSeed:
    """Tests for load_seed."""

    def test_missing_seed(self, tmp_path):
        config = PipelineConfig(output_prefix=str(tmp_path / "run"))
        with pytest.raises(MissingArtifact, match="D_sub"):
            load_seed(config)

    def test_missing_required_spread(self, tmp_path):
        config = PipelineConfig(output_prefix=str(tmp_path / "run"))
        save_disparity_map(torch.zeros(3, 3, 2), config.artifact_path("D_sub.npz"))
        assert load_seed(config).spread is None
        with pytest.raises(MissingArtifact, match="spread"):
            load_seed(config, require_spread=True)

    def test_with_spread(self, tmp_path):
        config = PipelineConfig(output_prefix=str(tmp_path / "run"))
        save_disparity_map(torch.zeros(3, 3, 2), config.artifact_path("D_sub.npz"))
        save_spread_map(torch.ones(3, 3, 2), config.artifact_path("D_sub_spread.npz"))
        seed = load_seed(config, require_spread=True)
        assert torch.equal(seed.spread, torch.ones(3, 3, 2))


class TestLowresCorrelation:
    """Tests for lowres_correlation and its on-disk cache."""

    def _run(self, config, inputs, result=None):
        result = torch.zeros(32, 32, 2) if result is None else result
        with patch("seedstereo.lowres.run_backend", return_value=result) as mock_run:
            seed = lowres_correlation(config, *inputs, SearchWindow(-5, -5, 5, 5), BACKEND)
        return seed, mock_run

    def test_writes_seed(self, run_config, full_res_inputs):
        seed, mock_run = self._run(run_config, full_res_inputs)
        path = run_config.artifact_path("D_sub.npz")
        assert path.exists()
        assert mock_run.call_count == 1
        # Backend sees the downsampled pair
        assert tuple(mock_run.call_args.args[0].shape) == (32, 32)
        assert seed.spread is None
        assert torch.equal(load_disparity_map(path), seed.disparity)

    def test_second_run_reuses_seed(self, run_config, full_res_inputs):
        self._run(run_config, full_res_inputs)
        path = run_config.artifact_path("D_sub.npz")
        before = path.read_bytes()
        mtime = path.stat().st_mtime_ns

        seed, mock_run = self._run(run_config, full_res_inputs)
        assert mock_run.call_count == 0
        assert path.stat().st_mtime_ns == mtime
        assert path.read_bytes() == before
        assert seed.disparity.shape == (32, 32, 2)

    def test_crop_forces_recompute(self, run_config, full_res_inputs):
        self._run(run_config, full_res_inputs)
        cropped = run_config.model_copy(
            update={"search_range": run_config.search_range.model_copy(
                update={"left_image_crop_win": [0, 0, 32, 32]}
            )}
        )
        _, mock_run = self._run(cropped, full_res_inputs)
        assert mock_run.call_count == 1

    def test_stale_spread_removed(self, run_config, full_res_inputs):
        spread_path = run_config.artifact_path("D_sub_spread.npz")
        spread_path.parent.mkdir(parents=True)
        save_spread_map(torch.ones(4, 4, 2), spread_path)
        self._run(run_config, full_res_inputs)
        assert not spread_path.exists()

    def test_skip_uses_existing_seed(self, run_config, full_res_inputs):
        path = run_config.artifact_path("D_sub.npz")
        path.parent.mkdir(parents=True)
        save_disparity_map(torch.ones(5, 5, 2), path)
        # Older than the inputs, but taken as is
        _set_mtime(path, 10)
        config = run_config.model_copy(
            update={"seed": run_config.seed.model_copy(
                update={"skip_low_res_disparity_comp": True}
            )}
        )
        seed, mock_run = self._run(config, full_res_inputs)
        assert mock_run.call_count == 0
        assert seed.disparity.shape == (5, 5, 2)
