"""
Flow QC - Peak Detection Tests

Unit tests for per-bin peak detection and cross-bin clustering.
"""

import contextlib

import pytest
import numpy as np

from flow_qc.core.errors import NoPeaksDetected
from flow_qc.detection.binning import create_breaks
from flow_qc.detection.peaks import (
    PeakDetectionConfig,
    cluster_peaks,
    detect_channel_peaks,
    determine_peaks_all_channels,
    robust_range,
)
from flow_qc.dsp.backend import CpuBackend, GpuBackend, KernelSpectrumCache


class _CountingContext:
    """GPU context stand-in that records how often it is closed."""

    def __init__(self):
        self.device = contextlib.nullcontext()
        self.cache = KernelSpectrumCache()
        self.fallback_count = 0
        self.closed = 0

    def close(self):
        self.closed += 1


class TestClusterPeaks:
    """Tests for cluster_peaks."""

    def test_two_stable_populations(self):
        peaks = {b: [1.0 + 0.01 * (b % 3), 5.0 - 0.01 * (b % 2)] for b in range(20)}
        frame = cluster_peaks(peaks, tolerance=0.5, n_bins=20)

        assert frame.clusters() == [1, 2]
        for b, values in frame.values_by_bin().items():
            assert len(values) == 2
        assert all(p.cluster == 1 for p in frame.peaks if p.peak_value < 3)
        assert all(p.cluster == 2 for p in frame.peaks if p.peak_value > 3)

    def test_ordered_by_bin_then_value(self):
        peaks = {1: [5.0, 1.0], 0: [5.0, 1.0]}
        frame = cluster_peaks(peaks, tolerance=0.5, n_bins=2)
        assert [(p.bin, p.peak_value) for p in frame.peaks] == [
            (0, 1.0), (0, 5.0), (1, 1.0), (1, 5.0)
        ]

    def test_ids_follow_mean(self):
        """The population seen first can still get the higher id."""
        peaks = {b: [5.0] for b in range(10)}
        peaks.update({b: [1.0, 5.0] for b in range(10, 20)})
        frame = cluster_peaks(peaks, tolerance=0.5, n_bins=20)
        assert {p.cluster for p in frame.peaks if p.peak_value == 1.0} == {1}
        assert {p.cluster for p in frame.peaks if p.peak_value == 5.0} == {2}

    def test_one_peak_per_cluster_per_bin(self):
        peaks = {0: [1.0, 1.1]}
        peaks.update({b: [1.0] for b in range(1, 10)})
        frame = cluster_peaks(peaks, tolerance=0.5, n_bins=10, min_nr_bins_peakdetection=0.0)
        first_bin = [p.cluster for p in frame.peaks if p.bin == 0]
        assert len(set(first_bin)) == 2

    def test_sparse_cluster_merged(self):
        """A population seen in 1 of 20 bins folds into its nearest neighbour."""
        peaks = {b: [1.0] for b in range(20)}
        peaks[3] = [1.0, 3.0]
        frame = cluster_peaks(peaks, tolerance=0.5, n_bins=20, min_nr_bins_peakdetection=10.0)
        assert frame.clusters() == [1]
        assert len(frame) == 21

    def test_sparse_cluster_kept_without_threshold(self):
        peaks = {b: [1.0] for b in range(20)}
        peaks[3] = [1.0, 3.0]
        frame = cluster_peaks(peaks, tolerance=0.5, n_bins=20, min_nr_bins_peakdetection=0.0)
        assert frame.clusters() == [1, 2]

    def test_empty(self):
        assert len(cluster_peaks({}, tolerance=0.5, n_bins=10)) == 0


class TestRobustRange:
    """Tests for robust_range."""

    def test_percentile_span(self):
        assert robust_range(np.arange(101, dtype=float)) == pytest.approx(98.0)

    def test_constant_falls_back_to_one(self):
        assert robust_range(np.full(10, 3.0)) == 1.0

    def test_ignores_nan(self):
        assert robust_range(np.array([np.nan, 0.0, 0.0])) == 1.0


class TestDetectChannelPeaks:
    """Tests for detect_channel_peaks."""

    def test_bimodal_channel(self, rng):
        n = 10_000
        values = np.where(rng.random(n) < 0.5, rng.normal(0.0, 1.0, n), rng.normal(10.0, 1.0, n))
        breaks = create_breaks(n, 1000)
        frame = detect_channel_peaks(values, breaks, PeakDetectionConfig(), channel="CD4")

        assert frame.clusters() == [1, 2]
        assert frame.bins() == list(range(len(breaks)))
        low = [v for _, v in frame.cluster_values(1)]
        high = [v for _, v in frame.cluster_values(2)]
        assert np.median(low) == pytest.approx(0.0, abs=0.5)
        assert np.median(high) == pytest.approx(10.0, abs=0.5)

    def test_bins_with_too_few_values_skipped(self, rng):
        values = rng.normal(size=2000)
        values[:500] = np.nan
        breaks = create_breaks(2000, 500)
        frame = detect_channel_peaks(values, breaks, PeakDetectionConfig())
        assert 0 not in frame.bins()
        assert 1 in frame.bins()

    def test_remove_zeros(self, rng):
        values = rng.normal(5.0, 1.0, 2000)
        values[:500] = 0.0
        breaks = create_breaks(2000, 500)
        frame = detect_channel_peaks(values, breaks, PeakDetectionConfig(remove_zeros=True))
        assert 0 not in frame.bins()

    def test_no_peaks(self):
        with pytest.raises(NoPeaksDetected) as exc:
            detect_channel_peaks(np.full(1000, np.nan), create_breaks(1000, 500),
                                 PeakDetectionConfig(), channel="CD8")
        assert exc.value.channel == "CD8"

    def test_cancelled(self, rng):
        frame = detect_channel_peaks(
            rng.normal(size=1000), create_breaks(1000, 500), PeakDetectionConfig(),
            should_cancel=lambda: True,
        )
        assert frame is None


class TestDeterminePeaksAllChannels:
    """Tests for determine_peaks_all_channels."""

    def test_parallel_channels(self, gaussian_events):
        data = gaussian_events(n_events=5000)
        breaks = create_breaks(5000, 500)
        results = determine_peaks_all_channels(data, breaks, PeakDetectionConfig(), n_workers=2)
        assert list(results) == ["FSC-A", "SSC-A"]
        assert all(len(frame) >= len(breaks) for frame in results.values())

    def test_empty_channel_dropped(self, gaussian_events):
        data = gaussian_events(n_events=5000)
        data["dead"] = np.full(5000, np.nan)
        breaks = create_breaks(5000, 500)
        results = determine_peaks_all_channels(data, breaks, PeakDetectionConfig(), n_workers=3)
        assert "dead" not in results
        assert set(results) == {"FSC-A", "SSC-A"}

    def test_cancelled(self, gaussian_events):
        data = gaussian_events(n_events=5000)
        results = determine_peaks_all_channels(
            data, create_breaks(5000, 500), PeakDetectionConfig(), should_cancel=lambda: True
        )
        assert results is None

    def test_no_channels(self):
        assert determine_peaks_all_channels({}, [(0, 10)], PeakDetectionConfig()) == {}

    def test_one_backend_per_worker(self, gaussian_events):
        """A single worker reuses one backend for every channel."""
        data = gaussian_events(n_events=5000, channels=("FSC-A", "SSC-A", "FL1-A", "FL2-A"))
        created = []

        def factory():
            created.append(CpuBackend())
            return created[-1]

        results = determine_peaks_all_channels(
            data, create_breaks(5000, 500), PeakDetectionConfig(), backend_factory=factory, n_workers=1
        )
        assert len(results) == 4
        assert len(created) == 1

    def test_worker_backends_closed_once(self, gaussian_events):
        data = gaussian_events(n_events=5000, channels=("FSC-A", "SSC-A", "FL1-A", "FL2-A"))
        contexts = []

        def factory():
            contexts.append(_CountingContext())
            return GpuBackend(context=contexts[-1])

        results = determine_peaks_all_channels(
            data, create_breaks(5000, 500), PeakDetectionConfig(), backend_factory=factory, n_workers=2
        )
        assert sorted(results) == ["FL1-A", "FL2-A", "FSC-A", "SSC-A"]
        assert 1 <= len(contexts) <= 2
        assert all(context.closed == 1 for context in contexts)
