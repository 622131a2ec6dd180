"""Correlation backends behind a single dispatch function."""

from .dispatch import (
    BackendConfig,
    BackendKind,
    extract_opts_and_env_vars,
    parse_stereo_alg_name_and_opts,
    resolve_backend,
    run_backend,
)

__all__ = [
    "BackendConfig",
    "BackendKind",
    "extract_opts_and_env_vars",
    "parse_stereo_alg_name_and_opts",
    "resolve_backend",
    "run_backend",
]
