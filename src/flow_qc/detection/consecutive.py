"""
Flow QC - Consecutive Bin Filter

Removes short stretches of good bins trapped between bad ones.
"""

from __future__ import annotations

import numpy as np


def remove_short_regions(outlier_bins: np.ndarray, consecutive_bins: int) -> np.ndarray:
    """
    Mark interior good runs shorter than ``consecutive_bins`` as bad.

    A run touching either end of the sequence is never changed.

    Args:
        outlier_bins: Bool per bin, True = bad.
        consecutive_bins: Minimum length of a good run to survive.

    Returns:
        New bool array with the short runs flipped to True.
    """
    result = np.array(outlier_bins, dtype=bool, copy=True)
    n = result.size
    if n == 0 or consecutive_bins <= 1:
        return result

    # Boundaries of maximal runs of equal values
    change = np.flatnonzero(result[1:] != result[:-1]) + 1
    starts = np.concatenate(([0], change))
    ends = np.concatenate((change, [n]))

    for start, end in zip(starts, ends):
        if result[start] or start == 0 or end == n:
            continue
        if end - start < consecutive_bins:
            result[start:end] = True
    return result
