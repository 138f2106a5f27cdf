"""
Time utilities for performance measurement.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager


@contextmanager
def timer(label: str, logger: logging.Logger) -> Iterator[dict]:
    """
    Context manager for timing operations.

    The yielded dict receives `elapsed` (seconds) once the block exits.

    Usage:
        with timer("reconcile pass", logger) as t:
            await reconciler.run_pass(roots)
    """
    start = time.perf_counter()
    box: dict = {}
    try:
        yield box
    finally:
        box["elapsed"] = time.perf_counter() - start
        logger.debug("%s took %.3fs", label, box["elapsed"])
