"""
Flow QC - Density Peak Detection

Per-bin KDE peaks for every channel and greedy cross-bin clustering of
those peaks into populations that can be tracked through the run.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from flow_qc.config import defaults
from flow_qc.core.errors import NoPeaksDetected
from flow_qc.core.logging_config import log_performance
from flow_qc.core.types import Bin, ChannelPeakFrame, PeakInfo
from flow_qc.dsp.backend import CpuBackend, DensityBackend, GpuBackend
from flow_qc.dsp.kde import KernelDensity

logger = logging.getLogger(__name__)


@dataclass
class PeakDetectionConfig:
    """Configuration for per-bin peak detection and clustering."""

    peak_removal: float = defaults.DEFAULT_PEAK_REMOVAL
    min_nr_bins_peakdetection: float = defaults.DEFAULT_MIN_NR_BINS_PEAKDETECTION
    cluster_tolerance: float = defaults.DEFAULT_CLUSTER_TOLERANCE
    bandwidth_factor: float = defaults.KDE_BANDWIDTH_FACTOR
    grid_size: int = defaults.KDE_GRID_SIZE
    remove_zeros: bool = False

    @classmethod
    def from_qc_config(cls, config) -> PeakDetectionConfig:
        return cls(
            peak_removal=config.peak_removal,
            min_nr_bins_peakdetection=config.min_nr_bins_peakdetection,
            cluster_tolerance=config.kde.cluster_tolerance,
            bandwidth_factor=config.kde.bandwidth_factor,
            grid_size=config.kde.grid_size,
            remove_zeros=config.remove_zeros,
        )


def robust_range(values: np.ndarray) -> float:
    """1st-99th percentile span, then the full span, then 1.0 if still zero."""
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return 1.0
    lo, hi = np.percentile(finite, defaults.ROBUST_RANGE_PERCENTILES)
    span = float(hi - lo)
    if span <= 0:
        span = float(finite.max() - finite.min())
    return span if span > 0 else 1.0


class _Cluster:
    __slots__ = ("total", "count", "bins")

    def __init__(self):
        self.total = 0.0
        self.count = 0
        self.bins: set[int] = set()

    @property
    def mean(self) -> float:
        return self.total / self.count

    def add(self, bin_idx: int, value: float) -> None:
        self.total += value
        self.count += 1
        self.bins.add(bin_idx)


def cluster_peaks(
    peaks_per_bin: Mapping[int, list[float]],
    tolerance: float,
    n_bins: int,
    min_nr_bins_peakdetection: float = defaults.DEFAULT_MIN_NR_BINS_PEAKDETECTION,
) -> ChannelPeakFrame:
    """
    Group per-bin peak values into clusters by running mean.

    Bins are visited in order. Each peak joins the closest cluster whose
    running mean lies within ``tolerance``, otherwise it opens a new one.
    A cluster takes at most one peak per bin. Clusters seen in fewer than
    ``min_nr_bins_peakdetection`` percent of bins are folded into the
    nearest supported cluster. Ids are renumbered 1..k by ascending mean.

    Args:
        peaks_per_bin: Bin index -> peak values found in that bin.
        tolerance: Maximum distance to a cluster mean.
        n_bins: Total bin count, the denominator of cluster support.
        min_nr_bins_peakdetection: Minimum support in percent.

    Returns:
        Frame ordered by bin, then value.
    """
    clusters: list[_Cluster] = []
    assigned: list[tuple[int, float, int]] = []

    for bin_idx in sorted(peaks_per_bin):
        taken: set[int] = set()
        for value in sorted(peaks_per_bin[bin_idx]):
            best = None
            best_dist = tolerance
            for ci, cluster in enumerate(clusters):
                if ci in taken:
                    continue
                dist = abs(cluster.mean - value)
                if dist <= best_dist:
                    best, best_dist = ci, dist
            if best is None:
                clusters.append(_Cluster())
                best = len(clusters) - 1
            clusters[best].add(bin_idx, value)
            taken.add(best)
            assigned.append((bin_idx, value, best))

    if not clusters:
        return ChannelPeakFrame()

    min_support = min_nr_bins_peakdetection / 100.0 * n_bins
    supported = [ci for ci, c in enumerate(clusters) if len(c.bins) >= min_support]
    if not supported:
        supported = [max(range(len(clusters)), key=lambda ci: len(clusters[ci].bins))]

    target = {}
    for ci, cluster in enumerate(clusters):
        if ci in supported:
            target[ci] = ci
        else:
            target[ci] = min(supported, key=lambda si: abs(clusters[si].mean - cluster.mean))

    merged: dict[int, list[float]] = {}
    for _, value, ci in assigned:
        merged.setdefault(target[ci], []).append(value)
    order = sorted(merged, key=lambda ci: float(np.mean(merged[ci])))
    new_id = {ci: rank + 1 for rank, ci in enumerate(order)}

    peaks = [PeakInfo(bin_idx, value, new_id[target[ci]]) for bin_idx, value, ci in assigned]
    peaks.sort(key=lambda p: (p.bin, p.peak_value))
    return ChannelPeakFrame(peaks)


def detect_channel_peaks(
    values: np.ndarray,
    breaks: list[Bin],
    config: PeakDetectionConfig,
    *,
    channel: str = "",
    backend: DensityBackend | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> ChannelPeakFrame | None:
    """
    KDE peaks of one channel in every bin, clustered across bins.

    Bins with fewer than 3 usable values (finite, and non-zero when
    ``remove_zeros`` is set) contribute no peaks.

    Returns:
        The clustered peaks, or None if cancelled.

    Raises:
        NoPeaksDetected: If no bin yields a peak.
    """
    backend = backend if backend is not None else CpuBackend()
    cache = backend.create_cache()
    values = np.asarray(values, dtype=np.float64)

    peaks_per_bin: dict[int, list[float]] = {}
    for bin_idx, (start, end) in enumerate(breaks):
        segment = values[start:end]
        segment = segment[np.isfinite(segment)]
        if config.remove_zeros:
            segment = segment[segment != 0]
        if segment.size < defaults.MIN_EVENTS_PER_BIN_FOR_KDE:
            continue

        kde = KernelDensity.estimate(
            segment,
            config.bandwidth_factor,
            config.grid_size,
            backend=backend,
            cache=cache,
            should_cancel=should_cancel,
        )
        if kde is None:
            return None
        peaks_per_bin[bin_idx] = kde.peak_values(config.peak_removal)

    if not peaks_per_bin:
        raise NoPeaksDetected(channel)

    usable = values[values != 0] if config.remove_zeros else values
    tolerance = config.cluster_tolerance * robust_range(usable)
    return cluster_peaks(
        peaks_per_bin, tolerance, len(breaks), config.min_nr_bins_peakdetection
    )


def determine_peaks_all_channels(
    channel_data: Mapping[str, np.ndarray],
    breaks: list[Bin],
    config: PeakDetectionConfig,
    *,
    backend_factory: Callable[[], DensityBackend] = CpuBackend,
    n_workers: int = 1,
    should_cancel: Callable[[], bool] | None = None,
) -> dict[str, ChannelPeakFrame] | None:
    """
    Run ``detect_channel_peaks`` for every channel on a thread pool.

    Each pool thread builds one backend from ``backend_factory`` on its
    first channel and reuses it, with its kernel cache, for every later
    channel it handles; the backends are closed once the pool is done.
    Channels without any peak are dropped with a warning.

    Args:
        channel_data: Channel name -> event values.
        breaks: Bins shared by all channels.
        config: Peak detection settings.
        backend_factory: Zero-argument callable returning a fresh backend.
        n_workers: Thread pool size.
        should_cancel: Cooperative cancellation predicate.

    Returns:
        Channel -> peaks in input order, or None if cancelled.
    """

    local = threading.local()
    backends: list[DensityBackend] = []
    lock = threading.Lock()

    def worker_backend() -> DensityBackend:
        backend = getattr(local, "backend", None)
        if backend is None:
            backend = backend_factory()
            local.backend = backend
            with lock:
                backends.append(backend)
        return backend

    def run(channel: str) -> ChannelPeakFrame | None:
        return detect_channel_peaks(
            channel_data[channel],
            breaks,
            config,
            channel=channel,
            backend=worker_backend(),
            should_cancel=should_cancel,
        )

    names = list(channel_data)
    if not names:
        return {}

    t0 = time.perf_counter()
    workers = max(1, min(n_workers, len(names)))
    try:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="peaks") as pool:
            futures = {name: pool.submit(run, name) for name in names}
    finally:
        for backend in backends:
            if isinstance(backend, GpuBackend):
                backend.close()

    results: dict[str, ChannelPeakFrame] = {}
    cancelled = False
    for name, future in futures.items():
        try:
            frame = future.result()
        except NoPeaksDetected:
            logger.warning(f"No peaks detected for channel {name}, dropping it")
            continue
        if frame is None:
            cancelled = True
            continue
        results[name] = frame

    if cancelled:
        return None

    log_performance(
        logger,
        "peak_detection",
        (time.perf_counter() - t0) * 1000,
        n_channels=len(names),
        n_bins=len(breaks),
    )
    return results

