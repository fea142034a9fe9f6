"""
Flow QC - MAD Outlier Detection

Flags bins whose representative peak position deviates from the run median
by more than a multiple of the scaled median absolute deviation.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field

import numpy as np

from flow_qc.config.defaults import MIN_BINS_FOR_MAD
from flow_qc.config.schema import MADConfig
from flow_qc.core.types import ChannelPeakFrame
from flow_qc.dsp.stats import median_mad_scaled

logger = logging.getLogger(__name__)


@dataclass
class MADResult:
    """Result of MAD outlier detection."""

    outlier_bins: np.ndarray  # bool per bin, True = outlier
    contribution: dict[str, float] = field(default_factory=dict)  # channel -> % of bins

    @property
    def n_outliers(self) -> int:
        return int(self.outlier_bins.sum())


def smooth_trajectory(values: np.ndarray, smooth_param: float) -> np.ndarray:
    """
    Triangular moving average over a bin trajectory.

    The half window is ceil(n * smooth_param / 2), clamped to [1, n // 4].
    Edge points average over the part of the window that exists.
    """
    n = values.size
    if n < 2 or smooth_param <= 0:
        return values.copy()

    half = min(max(math.ceil(n * smooth_param * 0.5), 1), max(n // 4, 1))
    offsets = np.arange(-half, half + 1)
    weights = (half + 1 - np.abs(offsets)).astype(np.float64)

    padded = np.pad(values, half, mode="constant")
    present = np.pad(np.ones(n), half, mode="constant")
    num = np.convolve(padded, weights, mode="valid")
    den = np.convolve(present, weights, mode="valid")
    return num / den


def mad_outlier_method(
    peak_results: Mapping[str, ChannelPeakFrame],
    candidate_bins: np.ndarray,
    n_bins: int,
    config: MADConfig | None = None,
) -> MADResult:
    """
    Flag outlier bins channel by channel with the MAD rule.

    For each channel the per-bin value is the median of that bin's peaks.
    Only bins marked in ``candidate_bins`` take part. A channel with fewer
    than 3 such bins, or a zero MAD, flags nothing.

    Args:
        peak_results: Channel -> clustered peaks.
        candidate_bins: Bool per bin, True = evaluate this bin.
        n_bins: Total number of bins.
        config: Threshold (in scaled MADs) and optional smoothing.

    Returns:
        MADResult with the union of flagged bins and, per channel, the
        percentage of all bins that channel flagged.
    """
    config = config or MADConfig()
    candidate_bins = np.asarray(candidate_bins, dtype=bool)
    outliers = np.zeros(n_bins, dtype=bool)
    contribution: dict[str, float] = {}

    for channel in sorted(peak_results):
        by_bin = peak_results[channel].values_by_bin()
        bins = np.array(
            [b for b in sorted(by_bin) if 0 <= b < n_bins and candidate_bins[b]], dtype=np.int64
        )
        if bins.size < MIN_BINS_FOR_MAD:
            contribution[channel] = 0.0
            continue

        trajectory = np.array([np.median(by_bin[b]) for b in bins], dtype=np.float64)
        trajectory = smooth_trajectory(trajectory, config.smooth_param)

        med, mad = median_mad_scaled(trajectory)
        if mad == 0:
            contribution[channel] = 0.0
            continue

        flagged = np.abs(trajectory - med) > config.mad_threshold * mad
        outliers[bins[flagged]] = True
        contribution[channel] = float(flagged.sum()) / n_bins * 100.0
        if flagged.any():
            logger.debug(
                f"MAD flagged {int(flagged.sum())} bins on {channel}",
                extra={"channel": channel, "median": med, "mad": mad},
            )

    return MADResult(outlier_bins=outliers, contribution=contribution)
