"""Nearest-rank percentiles over latency samples."""

from __future__ import annotations

from collections.abc import Sequence
from math import floor

PERCENTILES = {"p50": 0.50, "p95": 0.95, "p99": 0.99}


def nearest_rank(sorted_values: Sequence[int], fraction: float) -> int | None:
    """Return the sample at 0-indexed offset ``floor(N * fraction)``.

    ``sorted_values`` must already be in ascending order. No interpolation is
    done, so ties resolve to whatever sample occupies the offset.
    """
    if not sorted_values:
        return None
    offset = floor(len(sorted_values) * fraction)
    if offset >= len(sorted_values):
        return None
    return sorted_values[offset]


def latency_percentiles(sorted_values: Sequence[int]) -> dict[str, int | None]:
    return {name: nearest_rank(sorted_values, fraction) for name, fraction in PERCENTILES.items()}
