"""Backend selection and the single entry point for all correlation backends."""

import logging
import re
import shlex
from dataclasses import dataclass, field
from enum import Enum

import torch
from torch.profiler import record_function

from ..config import ExternalConfig, PipelineConfig
from ..errors import BackendFailure, EmptySearchWindow
from ..geometry import SearchWindow

logger = logging.getLogger(__name__)


class BackendKind(str, Enum):
    """Closed set of backend families."""

    INTERNAL_PYRAMID = "internal-pyramid"
    THIRD_PARTY = "third-party"
    EXTERNAL = "external"


INTERNAL_ALGORITHMS = ("asp_bm", "asp_sgm", "asp_mgm")
OPENCV_ALGORITHMS = ("opencv_bm", "opencv_sgbm")
EXTERNAL_ALGORITHMS = ("mgm", "msmw", "msmw2", "libelas")

# Numeric algorithm names accepted by older configs
LEGACY_ALGORITHM_NUMBERS = {"0": "asp_bm", "1": "asp_sgm", "2": "asp_mgm"}

# Defaults that do not depend on the search window. Window-dependent options
# (disparity bounds) are added at run time unless the user sets them.
DEFAULT_OPTIONS = {
    "opencv_bm": (
        "-block_size 21 -texture_thresh 10 -prefilter_cap 31 "
        "-uniqueness_ratio 15 -speckle_size 100 -speckle_range 32 -disp12_diff 1"
    ),
    "opencv_sgbm": (
        "-mode sgbm -block_size 3 -P1 8 -P2 32 -prefilter_cap 63 "
        "-uniqueness_ratio 10 -speckle_size 100 -speckle_range 32 -disp12_diff 1"
    ),
    "mgm": (
        "MEDIAN=1 CENSUS_NCC_WIN=5 USE_TRUNCATED_LINEAR_POTENTIALS=1 TSGM=3 "
        "-s vfit -t census -O 8"
    ),
    "msmw": (
        "-i 1 -n 4 -p 4 -W 5 -x 9 -y 9 -r 1 -d 1 -t -1 "
        "-s 0 -b 0 -o 0.25 -f 0 -P 32"
    ),
    "msmw2": (
        "-i 1 -n 4 -p 4 -W 5 -x 9 -y 9 -r 1 -d 1 -t -1 "
        "-s 0 -b 0 -o -0.25 -f 0 -P 32 -D 0 -O 25 -c 0"
    ),
    "libelas": (
        "-support_threshold 0.85 -support_texture 10 "
        "-candidate_stepsize 5 -incon_window_size 5 "
        "-incon_threshold 5 -incon_min_support 5 "
        "-add_corners 0 -grid_size 20 "
        "-beta 0.02 -gamma 3 -sigma 1 -sradius 2 "
        "-match_texture 1 -lr_threshold 2 -speckle_sim_threshold 1 "
        "-speckle_size 200 -ipol_gap_width 3 -filter_median 0 "
        "-filter_adaptive_mean 1 -postprocess_only_left 0"
    ),
}

_NUMBER = re.compile(r"^-?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?$")
_ENV_VAR = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


@dataclass(frozen=True)
class BackendConfig:
    """Resolved backend: what to run and with which options.

    Attributes:
        name: Algorithm name, e.g. "asp_sgm" or "mgm".
        kind: Backend family.
        options: Option name to value, defaults merged with user overrides.
            Flags without a value map to "".
        env: Environment variables for external backends.
        executable: Executable path (external backends only).
        lib_dir: Library directory prepended to the loader path (external only).
    """

    name: str
    kind: BackendKind
    options: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    executable: str | None = None
    lib_dir: str = ""

    @property
    def is_1d(self) -> bool:
        """Whether the backend only searches along rows."""
        return self.kind is not BackendKind.INTERNAL_PYRAMID


def parse_stereo_alg_name_and_opts(text: str) -> tuple[str, str]:
    """Split "mgm -s vfit" into ("mgm", "-s vfit").

    The name is lowercased; numeric legacy names map to internal algorithms.

    Raises:
        ValueError: If the text is empty.
    """
    text = text.strip()
    if not text:
        raise ValueError("No stereo algorithm given")
    parts = text.split(None, 1)
    name = parts[0].lower()
    name = LEGACY_ALGORITHM_NUMBERS.get(name, name)
    return name, parts[1] if len(parts) > 1 else ""


def extract_opts_and_env_vars(text: str) -> tuple[dict[str, str], dict[str, str]]:
    """Split an option string into command-line options and environment variables.

    ``KEY=VALUE`` tokens are environment variables. A token starting with
    "-" that is not a number is an option name; it takes the next token as
    its value unless that token is itself an option name. Later occurrences
    override earlier ones, so user options appended after the defaults win.

    Args:
        text: e.g. "MEDIAN=1 -s vfit -t -1 -verbose".

    Returns:
        Tuple (options, env) of ordered dicts.
    """
    options: dict[str, str] = {}
    env: dict[str, str] = {}
    tokens = shlex.split(text)
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if _ENV_VAR.match(token):
            key, value = token.split("=", 1)
            env[key] = value
            i += 1
        elif token.startswith("-") and not _NUMBER.match(token):
            value = ""
            if i + 1 < len(tokens):
                nxt = tokens[i + 1]
                is_name = nxt.startswith("-") and not _NUMBER.match(nxt)
                if not is_name and not _ENV_VAR.match(nxt):
                    value = nxt
                    i += 1
            options[token] = value
            i += 1
        else:
            logger.warning("Ignoring stray stereo option token %r", token)
            i += 1
    return options, env


def format_options(options: dict[str, str]) -> list[str]:
    """Flatten an option map into command-line tokens."""
    tokens = []
    for key, value in options.items():
        tokens.append(key)
        if value != "":
            tokens.append(value)
    return tokens


def resolve_backend(stereo_algorithm: str, external: ExternalConfig) -> BackendConfig:
    """Resolve an algorithm string into a backend configuration.

    Args:
        stereo_algorithm: Name optionally followed by user options.
        external: Plugin registry and global environment for external matchers.

    Returns:
        Immutable backend configuration.

    Raises:
        ValueError: If the algorithm is unknown or an external one has no
            executable configured.
    """
    name, user_opts = parse_stereo_alg_name_and_opts(stereo_algorithm)
    options, env = extract_opts_and_env_vars(DEFAULT_OPTIONS.get(name, "") + " " + user_opts)

    if name in INTERNAL_ALGORITHMS:
        if options or env:
            logger.warning(
                "Options %s are ignored by %s; use the correlation config section",
                user_opts,
                name,
            )
        return BackendConfig(name=name, kind=BackendKind.INTERNAL_PYRAMID)

    if name in OPENCV_ALGORITHMS:
        return BackendConfig(name=name, kind=BackendKind.THIRD_PARTY, options=options)

    if name in EXTERNAL_ALGORITHMS or name in external.plugins:
        plugin = external.plugins.get(name)
        if plugin is None:
            raise ValueError(
                f"No executable configured for external algorithm '{name}'. "
                f"Add it under external.plugins."
            )
        merged_env = {**external.env, **env}
        return BackendConfig(
            name=name,
            kind=BackendKind.EXTERNAL,
            options=options,
            env=merged_env,
            executable=plugin.executable,
            lib_dir=plugin.lib_dir,
        )

    valid = [*INTERNAL_ALGORITHMS, *OPENCV_ALGORITHMS, *EXTERNAL_ALGORITHMS, *external.plugins]
    raise ValueError(f"Unknown stereo algorithm '{name}'. Valid: {valid}")


def run_backend(
    left: torch.Tensor,
    right: torch.Tensor,
    left_mask: torch.Tensor | None,
    right_mask: torch.Tensor | None,
    window: SearchWindow,
    backend: BackendConfig,
    config: PipelineConfig,
    timeout: float | None = None,
    xcorr_threshold: float | None = None,
) -> torch.Tensor:
    """Correlate a left/right pair with the given backend.

    Args:
        left: Left image (H, W), float32.
        right: Right image (H', W'), float32.
        left_mask: Left validity (H, W), bool, or None for all valid.
        right_mask: Right validity (H', W'), bool, or None.
        window: Non-empty search window in (dx, dy) = right - left.
        backend: Resolved backend.
        config: Pipeline configuration.
        timeout: Time budget in seconds (correlation.corr_timeout if None).
        xcorr_threshold: Cross-check threshold for internal matchers
            (correlation.xcorr_threshold if None).

    Returns:
        Disparity (H, W, 2), float32, NaN where invalid. 1D backends report dy = 0.

    Raises:
        EmptySearchWindow: If the window is degenerate.
        BackendFailure: If the backend produced no usable result.
    """
    if window.is_empty:
        raise EmptySearchWindow(f"Cannot correlate with an empty search window {window}")

    timeout = config.correlation.corr_timeout if timeout is None else timeout
    logger.debug("Running %s on %s with window %s", backend.name, tuple(left.shape), window)

    with record_function(f"backend_{backend.name}"):
        match backend.kind:
            case BackendKind.INTERNAL_PYRAMID:
                from .pyramid import correlate_pyramid

                result = correlate_pyramid(
                    left,
                    right,
                    left_mask,
                    right_mask,
                    window,
                    config.correlation,
                    algorithm=backend.name,
                    timeout=timeout,
                    xcorr_threshold=xcorr_threshold,
                )
            case BackendKind.THIRD_PARTY:
                from .opencv import correlate_opencv

                result = correlate_opencv(
                    left, right, left_mask, right_mask, window, backend.name, backend.options
                )
            case BackendKind.EXTERNAL:
                from .external import correlate_external

                result = correlate_external(
                    left,
                    right,
                    left_mask,
                    right_mask,
                    window,
                    backend,
                    timeout=timeout,
                    work_dir=config.external.work_dir,
                )
            case _:
                raise ValueError(f"Unknown backend kind: {backend.kind!r}")

    expected = (left.shape[0], left.shape[1], 2)
    if tuple(result.shape) != expected:
        raise BackendFailure(
            f"{backend.name} returned shape {tuple(result.shape)}, expected {expected}"
        )
    return result


__all__ = [
    "BackendKind",
    "BackendConfig",
    "INTERNAL_ALGORITHMS",
    "OPENCV_ALGORITHMS",
    "EXTERNAL_ALGORITHMS",
    "DEFAULT_OPTIONS",
    "parse_stereo_alg_name_and_opts",
    "extract_opts_and_env_vars",
    "format_options",
    "resolve_backend",
    "run_backend",
]
