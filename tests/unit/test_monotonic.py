"""
Flow QC - Monotonic Channel Tests
"""

import numpy as np

from flow_qc.detection.binning import create_breaks
from flow_qc.detection.monotonic import find_increasing_decreasing_channels, kernel_smooth


class TestKernelSmooth:
    """Tests for kernel_smooth."""

    def test_constant(self):
        np.testing.assert_allclose(kernel_smooth(np.full(30, 2.0), 50.0), 2.0)

    def test_linear_stays_increasing(self):
        smoothed = kernel_smooth(np.arange(80, dtype=float), 50.0)
        assert np.all(np.diff(smoothed) > 0)


class TestFindIncreasingDecreasingChannels:
    """Tests for find_increasing_decreasing_channels."""

    def test_drifting_channels(self, rng):
        n = 20_000
        drift = np.linspace(0.0, 10.0, n)
        data = {
            "up": rng.normal(0.0, 1.0, n) + drift,
            "down": rng.normal(0.0, 1.0, n) - drift,
        }
        result = find_increasing_decreasing_channels(data, create_breaks(n, 500))

        assert result.increasing == ["up"]
        assert result.decreasing == ["down"]
        assert result.both == ["down", "up"]
        assert result.correlations["up"] > 0.9
        assert result.correlations["down"] < -0.9
        assert result.has_issues
        assert "Increasing: up" in result.summary()

    def test_constant_channel_not_flagged(self):
        data = {"flat": np.full(5000, 3.0)}
        result = find_increasing_decreasing_channels(data, create_breaks(5000, 500))
        assert not result.has_issues
        assert result.correlations["flat"] == 0.0
        assert result.summary() == "No increasing or decreasing channels detected"

    def test_too_few_bins(self, rng):
        data = {"FSC-A": rng.normal(size=100)}
        result = find_increasing_decreasing_channels(data, create_breaks(100, 100))
        assert "FSC-A" not in result.correlations
