"""Out-of-process correlation backends.

An external matcher is invoked as::

    <executable> <options...> <left.tif> <right.tif> <out.tif> [<mask.tif>]

with stdin and stdout unused. It writes a single-band float32 horizontal
disparity ``dx = x_right - x_left`` the size of the left image (NaN or
non-finite = invalid). ``msmw`` and ``msmw2`` also write an 8-bit validity
mask (0 = invalid). The exit code is not trusted; only the output files are.
"""

import logging
import math
import os
import shlex
import subprocess
import tempfile
from pathlib import Path

import cv2
import numpy as np
import torch

from ..disparity import disparity_from_1d
from ..errors import BackendFailure
from ..geometry import SearchWindow
from .dispatch import BackendConfig, format_options

logger = logging.getLogger(__name__)

MASKED_OUTPUT_ALGORITHMS = ("msmw", "msmw2")


def range_options(name: str, min_disp: int, max_disp: int) -> dict[str, str]:
    """Options carrying the horizontal disparity bounds for known algorithms."""
    match name:
        case "mgm":
            return {"-r": str(min_disp), "-R": str(max_disp)}
        case "msmw" | "msmw2":
            return {"-m": str(min_disp), "-M": str(max_disp)}
        case "libelas":
            # libelas fails with a tight search range
            extra = 10 + max(0, min_disp)
            logger.info("For libelas, growing the search range on each end by %d", extra)
            return {"-disp_min": str(min_disp - extra), "-disp_max": str(max_disp + extra)}
        case _:
            return {}


def build_command(
    backend: BackendConfig,
    window: SearchWindow,
    left_path: Path,
    right_path: Path,
    output_path: Path,
    mask_path: Path | None = None,
) -> list[str]:
    """Assemble the command line for an external matcher."""
    min_disp = int(math.floor(window.min_x))
    max_disp = int(math.ceil(window.max_x))
    options = dict(backend.options)
    for key, value in range_options(backend.name, min_disp, max_disp).items():
        options.setdefault(key, value)

    cmd = [backend.executable, *format_options(options), str(left_path), str(right_path), str(output_path)]
    if mask_path is not None:
        cmd.append(str(mask_path))
    return cmd


def build_environment(backend: BackendConfig) -> dict[str, str]:
    """Process environment plus the plugin library path and user variables."""
    env = dict(os.environ)
    if backend.lib_dir:
        env["LD_LIBRARY_PATH"] = backend.lib_dir  # Linux
        env["DYLD_LIBRARY_PATH"] = backend.lib_dir  # macOS
        logger.debug("Path to libraries: %s", backend.lib_dir)
    env.update(backend.env)
    return env


def _run_with_timeout(
    cmd: list[str], env: dict[str, str], timeout: float
) -> tuple[int | None, bool]:
    """Run a command, killing it after ``timeout`` seconds.

    Args:
        cmd: Command and arguments.
        env: Environment for the child.
        timeout: Wall-clock limit in seconds (<= 0 waits indefinitely).

    Returns:
        Tuple (returncode, timed_out).
    """
    proc = subprocess.Popen(
        cmd, env=env, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL
    )
    try:
        returncode = proc.wait(timeout=timeout if timeout > 0 else None)
        return returncode, False
    except subprocess.TimeoutExpired:
        proc.kill()
        # Reap the child so no zombie is left behind
        returncode = proc.wait()
        return returncode, True


def write_image(image: np.ndarray, mask: np.ndarray, path: Path, fill: float) -> None:
    """Write a float32 tif with masked pixels set to ``fill``."""
    data = np.where(mask & np.isfinite(image), image, fill).astype(np.float32)
    if not cv2.imwrite(str(path), data):
        raise BackendFailure(f"Could not write {path}")


def read_disparity(
    output_path: Path, expected_shape: tuple[int, int], mask_path: Path | None = None
) -> np.ndarray:
    """Read and validate the 1D disparity written by an external matcher.

    Raises:
        BackendFailure: If the output is missing, malformed, or mis-sized.
    """
    if not output_path.exists():
        raise BackendFailure(f"External matcher wrote no output: {output_path}")
    disp = cv2.imread(str(output_path), cv2.IMREAD_UNCHANGED)
    if disp is None or disp.ndim != 2:
        raise BackendFailure(f"Could not read a single-band disparity from {output_path}")
    if disp.shape != tuple(expected_shape):
        raise BackendFailure(
            f"Disparity {output_path} has size {disp.shape}, expected {tuple(expected_shape)}"
        )
    disp = disp.astype(np.float32)
    disp[~np.isfinite(disp)] = np.nan

    if mask_path is not None:
        mask = cv2.imread(str(mask_path), cv2.IMREAD_UNCHANGED)
        if mask is None or mask.shape != disp.shape:
            raise BackendFailure(
                f"Validity mask {mask_path} is missing or does not match {output_path}"
            )
        disp[mask == 0] = np.nan
    return disp


def correlate_external(
    left: torch.Tensor,
    right: torch.Tensor,
    left_mask: torch.Tensor | None,
    right_mask: torch.Tensor | None,
    window: SearchWindow,
    backend: BackendConfig,
    timeout: float,
    work_dir: str | None = None,
) -> torch.Tensor:
    """Run an external matcher on a pair and read back its disparity.

    Args:
        left: Left image (H, W).
        right: Right image (H', W').
        left_mask: Left validity, or None.
        right_mask: Right validity, or None.
        window: Search window; the horizontal extent sets the disparity bounds.
        backend: Resolved external backend.
        timeout: Wall-clock limit in seconds.
        work_dir: Parent of the per-invocation scratch directory.

    Returns:
        Disparity (H, W, 2) with dy = 0, NaN where invalid.

    Raises:
        BackendFailure: On timeout or unusable output.
    """
    device = left.device
    left_np = left.detach().cpu().numpy().astype(np.float32)
    right_np = right.detach().cpu().numpy().astype(np.float32)
    lmask = np.ones(left_np.shape, bool) if left_mask is None else left_mask.cpu().numpy().astype(bool)
    rmask = np.ones(right_np.shape, bool) if right_mask is None else right_mask.cpu().numpy().astype(bool)

    wants_mask = backend.name in MASKED_OUTPUT_ALGORITHMS
    # msmw's tif reader does not accept NaN nodata
    fill = 0.0 if wants_mask else float("nan")

    with tempfile.TemporaryDirectory(prefix="seedstereo-", dir=work_dir) as tmp:
        tmp = Path(tmp)
        left_path = tmp / "left.tif"
        right_path = tmp / "right.tif"
        output_path = tmp / "disparity.tif"
        mask_path = tmp / "disparity-mask.tif" if wants_mask else None
        write_image(left_np, lmask, left_path, fill)
        write_image(right_np, rmask, right_path, fill)

        cmd = build_command(backend, window, left_path, right_path, output_path, mask_path)
        env = build_environment(backend)
        if backend.env:
            logger.info(
                "Using environment variables: %s",
                " ".join(f"{k}={v}" for k, v in backend.env.items()),
            )
        logger.info("Running: %s", shlex.join(cmd))

        try:
            returncode, timed_out = _run_with_timeout(cmd, env, timeout)
        except OSError as e:
            raise BackendFailure(f"Could not start {backend.executable}: {e}") from e

        if timed_out:
            raise BackendFailure(
                f"{backend.name} terminated after {timeout:g} s time budget"
            )
        if returncode != 0:
            logger.debug("%s exited with code %s", backend.name, returncode)

        disp = read_disparity(output_path, left_np.shape, mask_path)

    disp[~lmask] = np.nan
    return disparity_from_1d(torch.from_numpy(disp).to(device))


__all__ = [
    "range_options",
    "build_command",
    "build_environment",
    "write_image",
    "read_disparity",
    "correlate_external",
]
