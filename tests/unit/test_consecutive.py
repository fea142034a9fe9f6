"""
Flow QC - Consecutive Bin Filter Tests
"""

import numpy as np

from flow_qc.detection.consecutive import remove_short_regions


def _bins(pattern: str) -> np.ndarray:
    """'B' = bad bin, 'G' = good bin."""
    return np.array([c == "B" for c in pattern.replace(" ", "")])


class TestRemoveShortRegions:
    """Tests for remove_short_regions."""

    def test_short_interior_runs_removed(self):
        """GGG and GG are shorter than 5 and become bad; GGGGG survives."""
        result = remove_short_regions(_bins("BB GGG BBB GG BBBB GGGGG B"), 5)
        np.testing.assert_array_equal(result, _bins("BB BBB BBB BB BBBB GGGGG B"))

    def test_longer_threshold_removes_all_interior(self):
        result = remove_short_regions(_bins("BB GGG BBB GG BBBB GGGGG B"), 6)
        assert result.all()

    def test_boundary_runs_untouched(self):
        pattern = _bins("GG BBB GG")
        np.testing.assert_array_equal(remove_short_regions(pattern, 5), pattern)

    def test_all_good_unchanged(self):
        assert not remove_short_regions(np.zeros(10, dtype=bool), 5).any()

    def test_threshold_one_is_identity(self):
        pattern = _bins("B G B G B")
        np.testing.assert_array_equal(remove_short_regions(pattern, 1), pattern)

    def test_input_not_modified(self):
        pattern = _bins("B G B")
        remove_short_regions(pattern, 5)
        np.testing.assert_array_equal(pattern, _bins("B G B"))

    def test_empty(self):
        assert remove_short_regions(np.zeros(0, dtype=bool), 5).size == 0
