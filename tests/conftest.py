"""Shared pytest fixtures for seedstereo tests."""

import cv2
import numpy as np
import pytest
import torch

# Uniform disparity of the synthetic pair: right[y + DY, x + DX] = left[y, x]
SHIFT_X = 3
SHIFT_Y = -1


@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    """Parametrized device fixture for CPU and CUDA testing.

    Raises:
        pytest.skip: If CUDA is requested but not available.
    """
    if request.param == "cuda" and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
    return request.param


def make_textured_image(height: int = 64, width: int = 64, seed: int = 0) -> np.ndarray:
    """Smoothed random texture in [0, 255], float32."""
    rng = np.random.default_rng(seed)
    noise = rng.random((height, width)).astype(np.float32)
    smooth = cv2.GaussianBlur(noise, (5, 5), 1.2)
    smooth = (smooth - smooth.min()) / (smooth.max() - smooth.min())
    return (smooth * 255.0).astype(np.float32)


@pytest.fixture
def texture_factory():
    return make_textured_image


@pytest.fixture
def textured_image():
    return make_textured_image()


@pytest.fixture
def shifted_pair(textured_image):
    """Left/right pair related by a uniform (SHIFT_X, SHIFT_Y) disparity."""
    right = np.roll(textured_image, shift=(SHIFT_Y, SHIFT_X), axis=(0, 1))
    return textured_image, np.ascontiguousarray(right)


@pytest.fixture
def pair_files(tmp_path, shifted_pair):
    """The shifted pair written as float32 TIFFs."""
    left, right = shifted_pair
    left_path = tmp_path / "left.tif"
    right_path = tmp_path / "right.tif"
    cv2.imwrite(str(left_path), left)
    cv2.imwrite(str(right_path), right)
    return left_path, right_path
