"""
Flow QC - DSP Module

Robust statistics, FFT kernel density estimation and the CPU/GPU backend.
"""

from flow_qc.dsp.backend import (
    CpuBackend,
    DensityBackend,
    GpuBackend,
    GpuContext,
    KernelSpectrumCache,
    create_backend,
    resolve_backend_name,
    select_backend,
)
from flow_qc.dsp.kde import KernelDensity, estimate_batch, find_peaks
from flow_qc.dsp.stats import mad_scaled, median, median_mad, median_mad_scaled

__all__ = [
    "CpuBackend",
    "DensityBackend",
    "GpuBackend",
    "GpuContext",
    "KernelSpectrumCache",
    "create_backend",
    "resolve_backend_name",
    "select_backend",
    "KernelDensity",
    "estimate_batch",
    "find_peaks",
    "median",
    "median_mad",
    "median_mad_scaled",
    "mad_scaled",
]
