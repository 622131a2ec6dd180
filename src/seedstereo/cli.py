"""Command-line interface for seed-and-refine stereo correlation."""

import argparse
import logging
import sys
from pathlib import Path

from seedstereo.config import PipelineConfig
from seedstereo.errors import SeedStereoError


def init_config(
    left_image: str,
    right_image: str,
    output_prefix: str,
    config_path: Path,
    stereo_algorithm: str | None = None,
) -> PipelineConfig:
    """Write a configuration with defaults for a left/right pair.

    Args:
        left_image: Path to the left image.
        right_image: Path to the right image.
        output_prefix: Prefix of every file the run writes.
        config_path: Where the YAML is saved.
        stereo_algorithm: Optional algorithm (with options) to set.

    Returns:
        The generated PipelineConfig.
    """
    for path in (left_image, right_image):
        if not Path(path).exists():
            print(f"Error: Image does not exist: {path}", file=sys.stderr)
            sys.exit(1)

    data = {
        "left_image": left_image,
        "right_image": right_image,
        "output_prefix": output_prefix,
    }
    if stereo_algorithm:
        data["correlation"] = {"stereo_algorithm": stereo_algorithm}
    config = PipelineConfig.model_validate(data)
    config.to_yaml(config_path)
    print(f"[OK] Configuration saved to: {config_path}")
    return config


def run_command(
    config_path: Path,
    verbose: bool = False,
    device: str | None = None,
    quiet: bool = False,
) -> Path:
    """Execute a correlation run from a config file.

    Args:
        config_path: Path to the pipeline config YAML file.
        verbose: If True, set logging to DEBUG level.
        device: Optional device override (replaces runtime.device).
        quiet: If True, hide progress bars.

    Returns:
        Path of the written disparity.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}", file=sys.stderr)
        sys.exit(1)

    try:
        config = PipelineConfig.from_yaml(config_path)
    except Exception as e:
        print(f"Error: Failed to load config: {e}", file=sys.stderr)
        sys.exit(1)

    # Sections are frozen, so overrides build new ones
    overrides = {}
    if device is not None:
        overrides["device"] = device
    if quiet:
        overrides["quiet"] = True
    if overrides:
        try:
            runtime = config.runtime.model_validate(
                {**config.runtime.model_dump(), **overrides}
            )
        except ValueError as e:
            print(f"Error: Invalid configuration: {e}", file=sys.stderr)
            sys.exit(1)
        config = config.model_copy(update={"runtime": runtime})

    from seedstereo.pipeline import run_correlation

    try:
        return run_correlation(config)
    except (SeedStereoError, ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def main() -> None:
    """Main entry point for the seedstereo CLI."""
    parser = argparse.ArgumentParser(
        prog="seedstereo",
        description="Seed-and-refine dense stereo correlation.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init subcommand
    init_parser = subparsers.add_parser(
        "init",
        help="Generate a config for a left/right image pair",
    )
    init_parser.add_argument("left", type=str, help="Left (reference) image")
    init_parser.add_argument("right", type=str, help="Right image")
    init_parser.add_argument(
        "--output-prefix",
        type=str,
        required=True,
        help="Prefix of every file the run writes (e.g. run/out)",
    )
    init_parser.add_argument(
        "--stereo-algorithm",
        type=str,
        default=None,
        help="Algorithm name with options, e.g. 'mgm -s vfit'",
    )
    init_parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to output config YAML file (default: config.yaml)",
    )

    # run subcommand
    run_parser = subparsers.add_parser(
        "run",
        help="Run the correlation",
    )
    run_parser.add_argument(
        "config",
        type=Path,
        help="Path to pipeline config YAML file",
    )
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    run_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Hide progress bars",
    )
    run_parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Override device (e.g., 'cpu' or 'cuda')",
    )

    args = parser.parse_args()

    if args.command == "init":
        init_config(
            left_image=args.left,
            right_image=args.right,
            output_prefix=args.output_prefix,
            config_path=args.config,
            stereo_algorithm=args.stereo_algorithm,
        )
    elif args.command == "run":
        run_command(
            config_path=args.config,
            verbose=args.verbose,
            device=args.device,
            quiet=args.quiet,
        )
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
