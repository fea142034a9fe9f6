"""
Flow QC - Robust Statistics Tests
"""

import pytest
import numpy as np

from flow_qc.core.errors import StatsError
from flow_qc.dsp.stats import mad_scaled, median, median_mad, median_mad_scaled


class TestMedian:
    """Tests for median helpers."""

    def test_odd(self):
        assert median([3.0, 1.0, 2.0]) == 2.0

    def test_even(self):
        assert median([1.0, 2.0, 3.0, 4.0]) == 2.5

    def test_ignores_nan(self):
        assert median([1.0, np.nan, 3.0]) == 2.0

    def test_empty(self):
        with pytest.raises(StatsError):
            median([])

    def test_all_nan(self):
        with pytest.raises(StatsError):
            median([np.nan, np.inf])


class TestMAD:
    """Tests for median absolute deviation."""

    def test_unscaled(self):
        med, mad = median_mad([1.0, 2.0, 3.0, 4.0, 100.0])
        assert med == 3.0
        assert mad == 1.0

    def test_scaled(self):
        med, mad = median_mad_scaled([1.0, 2.0, 3.0, 4.0, 100.0])
        assert med == 3.0
        assert mad == pytest.approx(1.4826)
        assert mad_scaled([1.0, 2.0, 3.0, 4.0, 100.0]) == pytest.approx(1.4826)

    def test_constant_is_zero(self):
        assert median_mad([5.0] * 10) == (5.0, 0.0)

    def test_consistent_with_sigma(self, rng):
        """Scaled MAD estimates sigma for normal data."""
        assert mad_scaled(rng.normal(0.0, 2.0, 100_000)) == pytest.approx(2.0, rel=0.02)
