"""
Flow QC - Robust Statistics

Median and median-absolute-deviation helpers shared by the MAD detector,
the monotonic check and the feature-matrix imputation.
"""

from __future__ import annotations

import numpy as np

from flow_qc.config.defaults import MAD_SCALE_FACTOR
from flow_qc.core.errors import StatsError


def _finite(values) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64).ravel()
    arr = arr[np.isfinite(arr)]
    if arr.size == 0:
        raise StatsError("Cannot compute statistics of empty data")
    return arr


def median(values) -> float:
    """Median of the finite values (mean of the two middle ones for even n)."""
    return float(np.median(_finite(values)))


def median_mad(values) -> tuple[float, float]:
    """
    Median and unscaled median absolute deviation.

    Args:
        values: Array-like of numbers; NaN and inf are ignored.

    Returns:
        (median, MAD) where MAD = median(|x - median|).

    Raises:
        StatsError: If no finite values remain.
    """
    arr = _finite(values)
    med = float(np.median(arr))
    return med, float(np.median(np.abs(arr - med)))


def median_mad_scaled(values) -> tuple[float, float]:
    """Median and MAD scaled by 1.4826 (consistent with sigma for normal data)."""
    med, mad = median_mad(values)
    return med, mad * MAD_SCALE_FACTOR


def mad_scaled(values) -> float:
    return median_mad_scaled(values)[1]
