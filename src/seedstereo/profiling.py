"""Stage timing for the correlation pipeline."""

import logging
import time
from contextlib import contextmanager

import torch
from torch.profiler import record_function


@contextmanager
def timed_stage(name: str, log: logging.Logger | None = None):
    """Time a pipeline stage.

    Wraps torch.profiler.record_function so the stage shows up in profiler
    traces, and logs the elapsed wall-clock time at INFO level.

    Args:
        name: Stage name (e.g., "lowres_correlation", "tile_correlation").
        log: Logger receiving the timing message. Defaults to this module's logger.

    Yields:
        None.
    """
    log = log or logging.getLogger(__name__)
    start = time.perf_counter()
    with record_function(name):
        yield
    if torch.cuda.is_available():
        torch.cuda.synchronize()
    log.info("%s took %.2f s", name, time.perf_counter() - start)


__all__ = ["timed_stage"]
