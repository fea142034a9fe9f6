"""
Flow QC - Time Binning

Overlapping acquisition-order windows over the event stream and the
mapping from per-bin verdicts back to per-event keep flags.
"""

from __future__ import annotations

import math

import numpy as np

from flow_qc.config.defaults import EVENTS_PER_BIN_STEP
from flow_qc.core.errors import ConfigError
from flow_qc.core.types import Bin


def create_breaks(n_events: int, events_per_bin: int) -> list[Bin]:
    """
    Split ``n_events`` into half-open windows overlapping by 50%.

    Windows start every ``events_per_bin // 2`` events (at least 1) and span
    ``events_per_bin`` events. Every start below ``n_events`` opens a window,
    clamped to end at ``n_events``, so the tail may hold a shorter window
    nearly duplicating the one before it.

    Args:
        n_events: Total number of events.
        events_per_bin: Window length.

    Returns:
        List of (start, end) pairs with non-decreasing starts.

    Raises:
        ConfigError: If either argument is not positive.
    """
    if events_per_bin <= 0:
        raise ConfigError(f"events_per_bin must be positive, got {events_per_bin}")
    if n_events <= 0:
        raise ConfigError(f"Cannot bin an empty event stream (n_events={n_events})")

    overlap = (events_per_bin + 1) // 2
    step = max(1, events_per_bin - overlap)

    return [
        (start, min(start + events_per_bin, n_events)) for start in range(0, n_events, step)
    ]


def find_events_per_bin(
    n_events: int, min_cells: int, max_bins: int, step: int = EVENTS_PER_BIN_STEP
) -> int:
    """
    Choose a window length giving at most ``max_bins`` overlapping bins.

    The length is rounded up to the next multiple of ``step`` and never
    drops below ``min_cells``.
    """
    if max_bins <= 0 or step <= 0:
        raise ConfigError(f"max_bins and step must be positive, got {max_bins}, {step}")
    max_cells = math.ceil(n_events / max_bins * 2)
    max_cells = (max_cells // step) * step + step
    return max(min_cells, max_cells)


def bins_to_event_mask(bin_outliers: np.ndarray, breaks: list[Bin], n_events: int) -> np.ndarray:
    """
    Per-event keep flags from per-bin verdicts.

    An event is discarded when any bin covering it is an outlier.

    Args:
        bin_outliers: Bool per bin, True = bad.
        breaks: Windows matching ``bin_outliers``.
        n_events: Length of the returned mask.

    Returns:
        Bool per event, True = keep.
    """
    bin_outliers = np.asarray(bin_outliers, dtype=bool)
    if bin_outliers.size != len(breaks):
        raise ValueError(f"Got {bin_outliers.size} verdicts for {len(breaks)} bins")

    keep = np.ones(n_events, dtype=bool)
    for (start, end), bad in zip(breaks, bin_outliers):
        if bad:
            keep[start:end] = False
    return keep
