"""
Small shared utilities.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Context manager that records elapsed wall-clock milliseconds.

    The value is stored as a float so sub-millisecond compilation stages
    still report a non-zero duration.
    """
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 3)


def clamp(value: int, lower: int, upper: int) -> int:
    """Clamp *value* into ``[lower, upper]``."""
    return max(lower, min(upper, value))
