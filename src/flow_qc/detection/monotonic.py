"""
Flow QC - Monotonic Channel Check

Diagnostic for channels whose per-bin median drifts steadily up or down
over the run, a sign of unstable acquisition conditions. It never removes
events; the findings are reported alongside the QC result.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

import numpy as np
from scipy.stats import spearmanr

from flow_qc.config.defaults import MONOTONIC_BANDWIDTH, MONOTONIC_FRACTION
from flow_qc.core.types import Bin

logger = logging.getLogger(__name__)

_TOLERANCE = 1e-10


@dataclass
class MonotonicResult:
    """Channels with a monotonic trend in their bin medians."""

    increasing: list[str] = field(default_factory=list)
    decreasing: list[str] = field(default_factory=list)
    both: list[str] = field(default_factory=list)
    correlations: dict[str, float] = field(default_factory=dict)

    @property
    def has_issues(self) -> bool:
        return bool(self.increasing or self.decreasing)

    def summary(self) -> str:
        if not self.has_issues:
            return "No increasing or decreasing channels detected"
        parts = []
        if self.increasing:
            parts.append(f"Increasing: {', '.join(self.increasing)}")
        if self.decreasing:
            parts.append(f"Decreasing: {', '.join(self.decreasing)}")
        if self.both:
            parts.append(f"Both: {', '.join(self.both)}")
        return "; ".join(parts)


def kernel_smooth(y: np.ndarray, bandwidth: float) -> np.ndarray:
    """Gaussian-weighted average of ``y`` over its own index positions."""
    x = np.arange(y.size, dtype=np.float64)
    weights = np.exp(-0.5 * ((x[:, None] - x[None, :]) / bandwidth) ** 2)
    return weights @ y / weights.sum(axis=1)


def _fraction_on_envelope(smoothed: np.ndarray, envelope: np.ndarray) -> float:
    return float(np.mean(np.abs(envelope - smoothed) < _TOLERANCE))


def find_increasing_decreasing_channels(
    channel_data: Mapping[str, np.ndarray],
    breaks: list[Bin],
    bandwidth: float = MONOTONIC_BANDWIDTH,
    fraction: float = MONOTONIC_FRACTION,
) -> MonotonicResult:
    """
    Detect channels whose smoothed bin medians are mostly monotonic.

    A channel is increasing when more than ``fraction`` of its smoothed
    medians sit on their running maximum, decreasing likewise for the
    running minimum; a flat curve is neither. ``both`` lists every flagged
    channel when some channels rise while others fall.

    Args:
        channel_data: Channel name -> event values.
        breaks: Bins over the events.
        bandwidth: Gaussian smoothing width, in bins.
        fraction: Share of bins that must follow the envelope.

    Returns:
        MonotonicResult with Spearman correlations of median vs bin index.
    """
    result = MonotonicResult()

    for channel in sorted(channel_data):
        values = np.asarray(channel_data[channel], dtype=np.float64)
        medians = []
        for start, end in breaks:
            segment = values[start:end]
            segment = segment[np.isfinite(segment)]
            if segment.size:
                medians.append(float(np.median(segment)))
        if len(medians) < 3:
            continue

        medians = np.asarray(medians)
        if np.ptp(medians) == 0:
            result.correlations[channel] = 0.0
        else:
            rho = spearmanr(np.arange(medians.size), medians).statistic
            result.correlations[channel] = float(rho)

        smoothed = kernel_smooth(medians, bandwidth)
        if np.ptp(smoothed) < _TOLERANCE:
            continue
        if _fraction_on_envelope(smoothed, np.maximum.accumulate(smoothed)) > fraction:
            result.increasing.append(channel)
        elif _fraction_on_envelope(smoothed, np.minimum.accumulate(smoothed)) > fraction:
            result.decreasing.append(channel)

    if result.increasing and result.decreasing:
        result.both = sorted(set(result.increasing) | set(result.decreasing))
        logger.warning("Both increasing and decreasing channels detected, unstable run")
    if result.increasing:
        logger.warning(f"Increasing channels detected: {', '.join(result.increasing)}")
    if result.decreasing:
        logger.warning(f"Decreasing channels detected: {', '.join(result.decreasing)}")
    return result
