"""
Flow QC - Test Configuration

Pytest fixtures and configuration for testing.
"""

import pytest
import numpy as np

from flow_qc.core.gpu_compat import is_gpu_available
from flow_qc.core.types import ArrayEventTable


@pytest.fixture
def rng():
    """Seeded random generator so synthetic data is reproducible."""
    return np.random.default_rng(12345)


@pytest.fixture
def gaussian_events(rng):
    """Generate a stable run: independent Gaussian channels."""
    def _generate(n_events=20_000, channels=("FSC-A", "SSC-A"), means=None, sd=1.0):
        means = means or {name: 5.0 + 2.0 * i for i, name in enumerate(channels)}
        return {name: rng.normal(means[name], sd, n_events) for name in channels}
    return _generate


@pytest.fixture
def event_table(gaussian_events):
    """Build an ArrayEventTable from generated channels."""
    def _build(**kwargs):
        return ArrayEventTable(gaussian_events(**kwargs))
    return _build


@pytest.fixture
def burst_table(gaussian_events):
    """A stable run with one channel shifted over a contiguous event range."""
    def _build(n_events=20_000, start=9_000, stop=11_000, channel="FSC-A", shift=3.0):
        columns = gaussian_events(n_events=n_events)
        columns[channel][start:stop] += shift
        return ArrayEventTable(columns)
    return _build


# Markers for GPU tests
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "gpu: mark test as requiring GPU"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Skip GPU tests if no usable CUDA device."""
    if not is_gpu_available():
        skip_gpu = pytest.mark.skip(reason="CUDA device not available")
        for item in items:
            if "gpu" in item.keywords:
                item.add_marker(skip_gpu)
