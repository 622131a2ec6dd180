"""Configuration management for the SeedStereo correlation pipeline."""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .geometry import PixelBox, SearchWindow

logger = logging.getLogger(__name__)

# Flat option names used by older configs, mapped to (section, field).
LEGACY_KEYS = {
    "corr_kernel": ("correlation", "kernel_size"),
    "corr_timeout": ("correlation", "corr_timeout"),
    "corr_max_levels": ("correlation", "corr_max_levels"),
    "cost_mode": ("correlation", "cost_function"),
    "stereo_algorithm": ("correlation", "stereo_algorithm"),
    "subpixel_mode": ("correlation", "subpixel_mode"),
    "xcorr_threshold": ("correlation", "xcorr_threshold"),
    "alignment_method": ("correlation", "alignment_method"),
    "search_range": ("search_range", "search_range"),
    "search_range_limit": ("search_range", "search_range_limit"),
    "min_num_ip": ("search_range", "min_num_matches"),
    "seed_percent_pad": ("seed", "seed_percent_pad"),
    "corr_tile_size": ("tiling", "tile_size"),
}

# Numeric cost modes of older configs.
LEGACY_COST_MODES = {0: "sad", 1: "ssd", 2: "ncc"}


class _Section(BaseModel):
    """Common behaviour for config sections: frozen, unknown keys warned about."""

    model_config = ConfigDict(extra="allow", frozen=True)

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "_Section":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in %s (ignored): %s",
                type(self).__name__,
                list(self.__pydantic_extra__.keys()),
            )
        return self


def _check_window(v: list[float] | None, name: str) -> list[float] | None:
    if v is None:
        return v
    if len(v) != 4:
        raise ValueError(f"{name} must be [min_x, min_y, max_x, max_y], got {v}")
    if not (v[0] < v[2] and v[1] < v[3]):
        raise ValueError(f"{name} must satisfy min < max in both axes, got {v}")
    return v


def _check_box(v: list[int] | None, name: str) -> list[int] | None:
    if v is None:
        return v
    if len(v) != 4 or v[2] <= 0 or v[3] <= 0:
        raise ValueError(f"{name} must be [col, row, width, height] with positive size, got {v}")
    return v


class SearchRangeConfig(_Section):
    """Configuration for the run-wide search range.

    Attributes:
        search_range: User-defined search window [min_x, min_y, max_x, max_y].
            When set, interest point estimation is skipped.
        search_range_limit: Hard clamp applied to every computed window.
        min_num_matches: Minimum number of matches that must survive filtering.
        remove_outliers_by_disp_params: (percentile, factor) for box-and-whisker
            filtering of match disparities. Disabled when percentile >= 100.
        left_image_crop_win: Optional crop [col, row, width, height] of the left image.
        right_image_crop_win: Optional crop [col, row, width, height] of the right image.
    """

    search_range: list[float] | None = None
    search_range_limit: list[float] | None = None
    min_num_matches: int = 30
    remove_outliers_by_disp_params: list[float] = Field(
        default_factory=lambda: [100.0, 3.0]
    )
    left_image_crop_win: list[int] | None = None
    right_image_crop_win: list[int] | None = None

    @field_validator("search_range", "search_range_limit")
    @classmethod
    def validate_windows(cls, v, info):
        """Validate window lists."""
        return _check_window(v, info.field_name)

    @field_validator("left_image_crop_win", "right_image_crop_win")
    @classmethod
    def validate_crop_windows(cls, v, info):
        """Validate crop boxes."""
        return _check_box(v, info.field_name)

    @field_validator("remove_outliers_by_disp_params")
    @classmethod
    def validate_disp_params(cls, v: list[float]) -> list[float]:
        """Validate that the disparity filter has (percentile, factor)."""
        if len(v) != 2:
            raise ValueError(f"remove_outliers_by_disp_params needs 2 values, got {v}")
        return v

    @property
    def user_window(self) -> SearchWindow | None:
        return SearchWindow.from_list(self.search_range) if self.search_range else None

    @property
    def limit_window(self) -> SearchWindow | None:
        if self.search_range_limit is None:
            return None
        return SearchWindow.from_list(self.search_range_limit)

    @property
    def crop_requested(self) -> bool:
        return self.left_image_crop_win is not None or self.right_image_crop_win is not None


class SeedConfig(_Section):
    """Configuration for the low-resolution seed stage.

    Attributes:
        seed_mode: "none" searches every tile with the run-wide window,
            "lowres" computes a seed by correlating downsampled images,
            "external" reads a seed and spread produced by another tool.
        downsample_factor: Integer downsampling of the seed images.
        seed_percent_pad: Fraction of the window width/height added (half
            on each side) to the seed search window.
        outlier_removal_mode: Filtering applied to the seed disparity.
        rm_threshold: Neighbour agreement threshold (pixels) in threshold mode.
        rm_min_matches: Minimum percentage of agreeing neighbours in threshold mode.
        rm_quantile_percentile: Upper percentile of the quantile band.
        rm_quantile_multiple: Multiple of the inter-quantile range kept on each side.
        skip_low_res_disparity_comp: Reuse the seed on disk without checking it.
        compute_low_res_disparity_only: Stop after the seed stage.
    """

    seed_mode: Literal["none", "lowres", "external"] = "lowres"
    downsample_factor: int = 4
    seed_percent_pad: float = 0.25
    outlier_removal_mode: Literal["threshold", "quantile", "none"] = "threshold"
    rm_threshold: float = 3.0
    rm_min_matches: float = 60.0
    rm_quantile_percentile: float = 0.85
    rm_quantile_multiple: float = 3.0
    skip_low_res_disparity_comp: bool = False
    compute_low_res_disparity_only: bool = False

    @field_validator("downsample_factor")
    @classmethod
    def validate_downsample_factor(cls, v: int) -> int:
        """Validate that the downsampling factor is at least 1."""
        if v < 1:
            raise ValueError(f"downsample_factor must be >= 1, got {v}")
        return v

    @field_validator("rm_quantile_percentile")
    @classmethod
    def validate_percentile(cls, v: float) -> float:
        """Validate that the quantile lies in (0.5, 1)."""
        if not 0.5 < v < 1.0:
            raise ValueError(f"rm_quantile_percentile must be in (0.5, 1), got {v}")
        return v


class CorrelationConfig(_Section):
    """Configuration for full-resolution correlation.

    Attributes:
        stereo_algorithm: Algorithm name optionally followed by user options,
            e.g. "asp_mgm" or "mgm -s vfit MEDIAN=1".
        alignment_method: "none" for 2D whole-image correlation,
            "local_epipolar" for per-tile alignment and 1D matching.
        kernel_size: Correlation kernel (width, height), odd.
        cost_function: Matching cost used by the internal matchers.
        corr_max_levels: Maximum number of pyramid levels below full resolution.
        subpixel_mode: Subpixel refinement of the internal matchers.
        xcorr_threshold: Left-right consistency threshold in pixels (negative disables).
        corr_timeout: Time budget in seconds per backend invocation.
        sgm_p1: Penalty for a one-step disparity change (SGM/MGM).
        sgm_p2: Penalty for a larger disparity change (SGM/MGM).
        search_buffer: Refinement radius (x, y) at each finer pyramid level.
    """

    stereo_algorithm: str = "asp_bm"
    alignment_method: Literal["none", "local_epipolar"] = "none"
    kernel_size: list[int] = Field(default_factory=lambda: [21, 21])
    cost_function: Literal["sad", "ssd", "ncc"] = "ncc"
    corr_max_levels: int = 5
    subpixel_mode: Literal["none", "parabola", "linear"] = "parabola"
    xcorr_threshold: float = 2.0
    corr_timeout: float = 900.0
    sgm_p1: float = 0.05
    sgm_p2: float = 0.4
    search_buffer: list[int] = Field(default_factory=lambda: [2, 2])

    @field_validator("kernel_size")
    @classmethod
    def validate_kernel_size(cls, v: list[int]) -> list[int]:
        """Validate that the kernel is a pair of positive odd sizes."""
        if len(v) != 2 or any(k <= 0 or k % 2 == 0 for k in v):
            raise ValueError(f"kernel_size must be two positive odd values, got {v}")
        return v

    @field_validator("cost_function", mode="before")
    @classmethod
    def map_legacy_cost_mode(cls, v: Any) -> Any:
        """Accept the numeric cost modes of older configs."""
        if isinstance(v, int) and not isinstance(v, bool):
            if v not in LEGACY_COST_MODES:
                raise ValueError(f"Unknown cost mode {v}. Valid: {LEGACY_COST_MODES}")
            return LEGACY_COST_MODES[v]
        return v

    @field_validator("corr_max_levels")
    @classmethod
    def validate_levels(cls, v: int) -> int:
        """Validate that the level count is not negative."""
        if v < 0:
            raise ValueError(f"corr_max_levels must be >= 0, got {v}")
        return v


class PluginConfig(_Section):
    """External matcher executable and the directory holding its libraries."""

    executable: str
    lib_dir: str = ""


class ExternalConfig(_Section):
    """Configuration for out-of-process matchers.

    Attributes:
        plugins: Mapping from algorithm name to executable and library directory.
        env: Extra environment variables passed to every external matcher.
        work_dir: Directory for per-invocation scratch files (system temp if None).
    """

    plugins: dict[str, PluginConfig] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    work_dir: str | None = None


class TilingConfig(_Section):
    """Configuration for tiling and per-tile alignment.

    Attributes:
        tile_size: Output tile edge length (rounded up to a multiple of 16).
        num_workers: Number of tiles processed concurrently.
        crop_win: Restrict processing to this window [col, row, width, height].
        alignment_min_matches: Matches needed to align a tile.
        alignment_disparity_margin: Padding added to the aligned disparity bound.
        alignment_collar: Extra pixels around a tile used when aligning it.
    """

    tile_size: int = 1024
    num_workers: int = 1
    crop_win: list[int] | None = None
    alignment_min_matches: int = 10
    alignment_disparity_margin: float = 5.0
    alignment_collar: int = 64

    @field_validator("tile_size", "num_workers")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        """Validate that sizes and counts are positive."""
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive, got {v}")
        return v

    @field_validator("crop_win")
    @classmethod
    def validate_crop_win(cls, v):
        """Validate the processing window."""
        return _check_box(v, "crop_win")

    @property
    def crop_box(self) -> PixelBox | None:
        return PixelBox(*self.crop_win) if self.crop_win else None


class RuntimeConfig(_Section):
    """Runtime settings.

    Attributes:
        device: PyTorch device string.
        quiet: Suppress progress output.
    """

    device: Literal["cpu", "cuda"] = "cpu"
    quiet: bool = False


class PipelineConfig(_Section):
    """Top-level configuration for a correlation run.

    Attributes:
        left_image: Path to the left (reference) image.
        right_image: Path to the right image.
        left_mask: Optional left validity mask (nonzero = valid).
        right_mask: Optional right validity mask.
        camera_files: Camera files whose modification invalidates cached artifacts.
        output_prefix: Prefix of every file the run writes.
        match_file: Interest point match file (defaults to ``{prefix}-matches.pt``).
        search_range: Search range configuration.
        seed: Seed stage configuration.
        correlation: Full-resolution correlation configuration.
        external: External matcher configuration.
        tiling: Tiling configuration.
        runtime: Runtime configuration.
    """

    left_image: str = ""
    right_image: str = ""
    left_mask: str | None = None
    right_mask: str | None = None
    camera_files: list[str] = Field(default_factory=list)
    output_prefix: str = ""
    match_file: str | None = None

    search_range: SearchRangeConfig = Field(default_factory=SearchRangeConfig)
    seed: SeedConfig = Field(default_factory=SeedConfig)
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    external: ExternalConfig = Field(default_factory=ExternalConfig)
    tiling: TilingConfig = Field(default_factory=TilingConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @model_validator(mode="after")
    def check_cross_section_constraints(self) -> "PipelineConfig":
        """Warn about settings that combine poorly."""
        if (
            self.correlation.alignment_method == "local_epipolar"
            and self.seed.seed_mode == "lowres"
            and not self.seed.compute_low_res_disparity_only
        ):
            logger.info(
                "alignment_method=local_epipolar bounds each tile from its own "
                "alignment; the low-resolution seed is only used when computed "
                "on its own (compute_low_res_disparity_only)."
            )
        if self.seed.outlier_removal_mode == "quantile" and self.seed.rm_quantile_multiple <= 0:
            logger.warning(
                "outlier_removal_mode=quantile with rm_quantile_multiple=%.2f "
                "discards everything outside the quantile band.",
                self.seed.rm_quantile_multiple,
            )
        return self

    @property
    def prefix(self) -> Path:
        return Path(self.output_prefix)

    def artifact_path(self, suffix: str) -> Path:
        """Path of an artifact named ``{output_prefix}-{suffix}``."""
        return Path(f"{self.output_prefix}-{suffix}")

    @property
    def match_path(self) -> Path:
        if self.match_file:
            return Path(self.match_file)
        return self.artifact_path("matches.pt")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "PipelineConfig":
        """Load configuration from a YAML file.

        Missing fields use their default values. Flat option names from older
        configs are moved into their sections.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Loaded configuration with defaults filled in.

        Raises:
            FileNotFoundError: If the file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            ValueError: If validation fails (with all errors collected).
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}

        data = cls._migrate_legacy_config(data)

        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            formatted_errors = format_validation_errors(e)
            raise ValueError(
                f"Configuration validation failed:\n{formatted_errors}"
            ) from None

        return config

    @staticmethod
    def _migrate_legacy_config(data: dict[str, Any]) -> dict[str, Any]:
        """Move flat legacy keys into their sections.

        Args:
            data: Configuration dictionary loaded from YAML.

        Returns:
            Migrated configuration dictionary.
        """
        migrated = dict(data)
        for old_key, (section, field) in LEGACY_KEYS.items():
            if old_key not in migrated:
                continue
            # "search_range" is both a legacy key and a section name
            if old_key == section and isinstance(migrated[old_key], dict):
                continue
            logger.info(
                "Migrating legacy config key '%s' to '%s.%s'", old_key, section, field
            )
            value = migrated.pop(old_key)
            target = dict(migrated.get(section) or {})
            target.setdefault(field, value)
            migrated[section] = target
        return migrated

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file.

        All fields including defaults are written for explicitness.

        Args:
            path: Path to output YAML file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors with YAML-style paths.

    Args:
        error: Pydantic ValidationError.

    Returns:
        Formatted error string with YAML paths and messages.
    """
    lines = []
    for err in error.errors():
        path_parts = []
        for part in err["loc"]:
            if isinstance(part, int) and path_parts:
                path_parts[-1] = f"{path_parts[-1]}[{part}]"
            else:
                path_parts.append(str(part))

        lines.append(f"  {'.'.join(path_parts)}: {err['msg']}")

    return "\n".join(lines)
