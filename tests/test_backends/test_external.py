"""Tests for out-of-process correlation backends."""

import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import patch

import cv2
import numpy as np
import pytest
import torch

from seedstereo.backends.dispatch import BackendConfig, BackendKind
from seedstereo.backends.external import (
    build_command,
    build_environment,
    correlate_external,
    range_options,
    read_disparity,
)
from seedstereo.disparity import valid_mask
from seedstereo.errors import BackendFailure
from seedstereo.geometry import SearchWindow

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires POSIX scripts")

# Writes a constant horizontal disparity of 2.5 the size of the left image
FAKE_MATCHER = """#!{python}
import sys
import cv2
import numpy as np

left, right, out = sys.argv[-3:]
image = cv2.imread(left, cv2.IMREAD_UNCHANGED)
with open(out + ".args", "w") as f:
    f.write(" ".join(sys.argv[1:-3]))
cv2.imwrite(out, np.full(image.shape, 2.5, dtype=np.float32))
"""


def _script(tmp_path: Path, name: str, body: str) -> Path:
    path = tmp_path / name
    path.write_text(body)
    path.chmod(0o755)
    return path


def _backend(executable, name="mgm", options=None, env=None, lib_dir=""):
    return BackendConfig(
        name=name,
        kind=BackendKind.EXTERNAL,
        options=options or {},
        env=env or {},
        executable=str(executable),
        lib_dir=lib_dir,
    )


class TestCommandLine:
    """Tests for command and environment assembly."""

    def test_range_options(self):
        assert range_options("mgm", -4, 7) == {"-r": "-4", "-R": "7"}
        assert range_options("msmw2", -4, 7) == {"-m": "-4", "-M": "7"}
        assert range_options("unknown", -4, 7) == {}

    def test_libelas_range_grown(self):
        assert range_options("libelas", 2, 7) == {"-disp_min": "-10", "-disp_max": "19"}

    def test_build_command(self, tmp_path):
        backend = _backend("/bin/mgm", options={"-s": "vfit", "-R": "99"})
        cmd = build_command(
            backend, SearchWindow(-3.5, -1, 4.2, 1),
            tmp_path / "l.tif", tmp_path / "r.tif", tmp_path / "d.tif",
        )
        assert cmd[0] == "/bin/mgm"
        # User bounds win over the window
        assert cmd[1:7] == ["-s", "vfit", "-R", "99", "-r", "-4"]
        assert cmd[-3:] == [str(tmp_path / "l.tif"), str(tmp_path / "r.tif"), str(tmp_path / "d.tif")]

    def test_mask_path_appended(self, tmp_path):
        backend = _backend("/bin/msmw", name="msmw")
        cmd = build_command(
            backend, SearchWindow(-1, -1, 1, 1),
            Path("l.tif"), Path("r.tif"), Path("d.tif"), Path("m.tif"),
        )
        assert cmd[-1] == "m.tif"

    def test_environment(self):
        backend = _backend("/bin/mgm", env={"MEDIAN": "1"}, lib_dir="/opt/lib")
        env = build_environment(backend)
        assert env["LD_LIBRARY_PATH"] == "/opt/lib"
        assert env["DYLD_LIBRARY_PATH"] == "/opt/lib"
        assert env["MEDIAN"] == "1"
        assert "PATH" in env


class TestReadDisparity:
    """Tests for reading external output."""

    def test_missing(self, tmp_path):
        with pytest.raises(BackendFailure, match="no output"):
            read_disparity(tmp_path / "none.tif", (4, 4))

    def test_wrong_size(self, tmp_path):
        path = tmp_path / "d.tif"
        cv2.imwrite(str(path), np.zeros((3, 4), dtype=np.float32))
        with pytest.raises(BackendFailure, match="expected"):
            read_disparity(path, (4, 4))

    def test_validity_mask(self, tmp_path):
        path = tmp_path / "d.tif"
        mask_path = tmp_path / "m.tif"
        cv2.imwrite(str(path), np.ones((2, 2), dtype=np.float32))
        cv2.imwrite(str(mask_path), np.array([[255, 0], [255, 255]], dtype=np.uint8))
        disp = read_disparity(path, (2, 2), mask_path)
        assert np.isnan(disp[0, 1])
        assert np.isfinite(disp).sum() == 3


class TestCorrelateExternal:
    """Tests for running external matchers."""

    def test_fake_matcher(self, tmp_path):
        exe = _script(tmp_path, "fake_mgm", FAKE_MATCHER.format(python=sys.executable))
        work_dir = tmp_path / "work"
        work_dir.mkdir()
        left_mask = torch.ones(6, 8, dtype=torch.bool)
        left_mask[0] = False
        disparity = correlate_external(
            torch.rand(6, 8), torch.rand(6, 10), left_mask, None,
            SearchWindow(-2, -1, 5, 1), _backend(exe), timeout=60, work_dir=str(work_dir),
        )
        assert disparity.shape == (6, 8, 2)
        assert not valid_mask(disparity)[0].any()
        assert torch.all(disparity[1:, :, 0] == 2.5)
        assert torch.all(disparity[1:, :, 1] == 0.0)
        # Scratch directory removed
        assert list(work_dir.iterdir()) == []

    def test_missing_output(self, tmp_path):
        exe = _script(tmp_path, "noop", "#!/bin/sh\nexit 3\n")
        with pytest.raises(BackendFailure, match="no output"):
            correlate_external(
                torch.rand(4, 4), torch.rand(4, 4), None, None,
                SearchWindow(-1, -1, 1, 1), _backend(exe), timeout=60,
            )

    def test_missing_executable(self, tmp_path):
        with pytest.raises(BackendFailure, match="Could not start"):
            correlate_external(
                torch.rand(4, 4), torch.rand(4, 4), None, None,
                SearchWindow(-1, -1, 1, 1), _backend(tmp_path / "absent"), timeout=60,
            )

    def test_timeout_kills_and_reaps_child(self, tmp_path):
        """Exactly one child is started, killed at the deadline, and reaped."""
        exe = _script(tmp_path, "slow", "#!/bin/sh\nsleep 30\n")
        children = []
        real_popen = subprocess.Popen

        def spy(*args, **kwargs):
            proc = real_popen(*args, **kwargs)
            children.append(proc)
            return proc

        start = time.monotonic()
        with patch("seedstereo.backends.external.subprocess.Popen", side_effect=spy):
            with pytest.raises(BackendFailure, match="terminated"):
                correlate_external(
                    torch.rand(4, 4), torch.rand(4, 4), None, None,
                    SearchWindow(-1, -1, 1, 1), _backend(exe), timeout=0.5,
                )
        assert time.monotonic() - start < 20
        assert len(children) == 1
        assert children[0].returncode is not None
        assert children[0].poll() is not None
