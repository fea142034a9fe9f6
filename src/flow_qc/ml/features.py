"""
Flow QC - Feature Matrix

Turns clustered per-channel peaks into a dense bins x features matrix,
one column per (channel, cluster) population.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np

from flow_qc.core.errors import NoPeaksDetected
from flow_qc.core.types import ChannelPeakFrame


@dataclass
class FeatureMatrix:
    """Dense feature matrix with one row per bin."""

    values: np.ndarray  # (n_bins, n_features) float64
    feature_names: list[str]

    @property
    def n_bins(self) -> int:
        return self.values.shape[0]

    @property
    def n_features(self) -> int:
        return self.values.shape[1]

    def column(self, name: str) -> np.ndarray:
        return self.values[:, self.feature_names.index(name)]

    def to_dict(self) -> dict[str, list[float]]:
        """Convert to a column-name keyed dictionary."""
        return {name: self.values[:, i].tolist() for i, name in enumerate(self.feature_names)}


def feature_name(channel: str, cluster: int) -> str:
    return f"{channel}_cluster_{cluster}"


def build_feature_matrix(
    peak_results: Mapping[str, ChannelPeakFrame], n_bins: int
) -> FeatureMatrix:
    """
    Build the bins x (channel, cluster) matrix of peak positions.

    Channels are taken in lexicographic order and clusters by id. Every
    column starts filled with the median of its observed peaks; observed
    bins then get their own value (the median when a bin holds several
    peaks of the same cluster). No NaN is left in the result.

    Args:
        peak_results: Channel -> clustered peaks.
        n_bins: Number of rows.

    Returns:
        FeatureMatrix with unique ``"{channel}_cluster_{id}"`` names.

    Raises:
        NoPeaksDetected: If there are no peaks at all.
    """
    columns = []
    names = []
    for channel in sorted(peak_results):
        frame = peak_results[channel]
        for cluster in frame.clusters():
            observed: dict[int, list[float]] = {}
            for bin_idx, value in frame.cluster_values(cluster):
                observed.setdefault(bin_idx, []).append(value)

            all_values = [v for vals in observed.values() for v in vals]
            column = np.full(n_bins, float(np.median(all_values)), dtype=np.float64)
            for bin_idx, vals in observed.items():
                if 0 <= bin_idx < n_bins:
                    column[bin_idx] = float(np.median(vals))

            columns.append(column)
            names.append(feature_name(channel, cluster))

    if not columns:
        raise NoPeaksDetected()

    return FeatureMatrix(values=np.column_stack(columns), feature_names=names)
