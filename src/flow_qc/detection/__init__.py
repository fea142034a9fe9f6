"""
Flow QC - Detection Module

Time binning, density peak detection, MAD outliers, consecutive-bin
filtering and the monotonic-channel diagnostic.
"""

from flow_qc.detection.binning import bins_to_event_mask, create_breaks, find_events_per_bin
from flow_qc.detection.consecutive import remove_short_regions
from flow_qc.detection.mad import MADResult, mad_outlier_method
from flow_qc.detection.monotonic import MonotonicResult, find_increasing_decreasing_channels
from flow_qc.detection.peaks import (
    PeakDetectionConfig,
    cluster_peaks,
    detect_channel_peaks,
    determine_peaks_all_channels,
)

__all__ = [
    "create_breaks",
    "find_events_per_bin",
    "bins_to_event_mask",
    "remove_short_regions",
    "MADResult",
    "mad_outlier_method",
    "MonotonicResult",
    "find_increasing_decreasing_channels",
    "PeakDetectionConfig",
    "cluster_peaks",
    "detect_channel_peaks",
    "determine_peaks_all_channels",
]
