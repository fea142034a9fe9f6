"""
Flow QC - Kernel Density Estimation

Gaussian KDE on a fixed grid via linear binning and FFT convolution,
plus local-maximum extraction on the resulting density curve.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import numpy as np

from flow_qc.config.defaults import (
    KDE_BANDWIDTH_FACTOR,
    KDE_CANCEL_CHECK_INTERVAL,
    KDE_GRID_EXTENSION_BW,
    KDE_GRID_SIZE,
)
from flow_qc.core.errors import ConfigError, StatsError
from flow_qc.dsp.backend import CpuBackend, DensityBackend, KernelSpectrumCache

logger = logging.getLogger(__name__)

_SQRT_2PI = np.sqrt(2.0 * np.pi)


def silverman_bandwidth(data: np.ndarray, bandwidth_factor: float = 1.0) -> float:
    """
    Rule-of-thumb bandwidth, as R's ``bw.nrd0``.

    0.9 * min(sd, IQR / 1.34) * n^(-1/5), falling back to sd, then |x0|,
    then 1 when the spread is zero.
    """
    n = data.size
    sd = float(np.std(data, ddof=1)) if n > 1 else 0.0
    q25, q75 = np.percentile(data, [25.0, 75.0])
    spread = min(sd, float(q75 - q25) / 1.34)
    if spread <= 0:
        spread = sd or abs(float(data[0])) or 1.0
    return 0.9 * spread * n ** (-0.2) * bandwidth_factor


def next_pow2(n: int) -> int:
    return 1 << max(0, int(n - 1).bit_length())


def find_peaks(density: np.ndarray, prominence_fraction: float) -> list[int]:
    """
    Indices of local maxima higher than ``prominence_fraction * max``.

    A point is a local maximum when it rises from its left neighbour and
    the next differing value to its right is lower; a flat top resolves to
    its first point. When nothing qualifies the first global maximum is
    returned so every non-empty curve yields at least one peak.

    Args:
        density: Density values on the grid.
        prominence_fraction: Minimum height relative to the curve maximum.

    Returns:
        Sorted grid indices.
    """
    y = np.asarray(density, dtype=np.float64)
    if y.size == 0:
        return []

    # Collapse plateaus to their first index
    run_starts = np.flatnonzero(np.concatenate(([True], y[1:] != y[:-1])))
    values = y[run_starts]

    if values.size >= 3:
        rising = values[1:-1] > values[:-2]
        falling = values[1:-1] > values[2:]
        candidates = run_starts[1:-1][rising & falling]
    else:
        candidates = np.empty(0, dtype=np.int64)

    threshold = prominence_fraction * y.max()
    peaks = [int(i) for i in candidates if y[i] > threshold]
    if not peaks:
        peaks = [int(np.argmax(y))]
    return peaks


@dataclass
class KernelDensity:
    """Density curve evaluated on an equally spaced grid."""

    x: np.ndarray
    y: np.ndarray
    bandwidth: float
    n_values: int

    @classmethod
    def estimate(
        cls,
        data,
        bandwidth_factor: float = KDE_BANDWIDTH_FACTOR,
        grid_size: int = KDE_GRID_SIZE,
        *,
        backend: DensityBackend | None = None,
        cache: KernelSpectrumCache | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> KernelDensity | None:
        """
        Estimate the density of ``data``.

        Args:
            data: 1-D values; NaN and inf are dropped.
            bandwidth_factor: Multiplier on the Silverman bandwidth.
            grid_size: Number of grid points.
            backend: Spectrum multiply strategy (CPU when None).
            cache: Kernel-spectrum cache; the backend's own when None.
            should_cancel: Polled while binning; True aborts the estimate.

        Returns:
            The density, or None if cancelled.

        Raises:
            ConfigError: If grid_size < 2.
            StatsError: If no finite values remain or the FFT fails.
        """
        if grid_size < 2:
            raise ConfigError(f"KDE grid_size must be at least 2, got {grid_size}")

        values = np.asarray(data, dtype=np.float64).ravel()
        values = values[np.isfinite(values)]
        n = values.size
        if n == 0:
            raise StatsError("Cannot estimate density of empty data")

        backend = backend if backend is not None else CpuBackend()
        cache = cache if cache is not None else backend.create_cache()

        bw = silverman_bandwidth(values, bandwidth_factor)
        lo = float(values.min()) - KDE_GRID_EXTENSION_BW * bw
        hi = float(values.max()) + KDE_GRID_EXTENSION_BW * bw
        grid = np.linspace(lo, hi, grid_size)
        spacing = (hi - lo) / (grid_size - 1)

        counts = np.zeros(grid_size, dtype=np.float64)
        for start in range(0, n, KDE_CANCEL_CHECK_INTERVAL):
            if should_cancel is not None and should_cancel():
                logger.debug("Density estimate cancelled")
                return None
            chunk = values[start : start + KDE_CANCEL_CHECK_INTERVAL]
            pos = (chunk - lo) / spacing
            idx = np.clip(np.floor(pos).astype(np.int64), 0, grid_size - 2)
            frac = pos - idx
            counts += np.bincount(idx, weights=1.0 - frac, minlength=grid_size)
            counts += np.bincount(idx + 1, weights=frac, minlength=grid_size)

        fft_size = next_pow2(2 * grid_size)

        def kernel_spectrum() -> np.ndarray:
            offsets = np.arange(grid_size) * spacing / bw
            half = np.exp(-0.5 * offsets**2) / _SQRT_2PI
            kernel = np.zeros(fft_size, dtype=np.float64)
            kernel[:grid_size] = half
            kernel[fft_size - grid_size + 1 :] = half[1:][::-1]
            return np.fft.rfft(kernel)

        try:
            signal = np.fft.rfft(counts, n=fft_size)
            product = backend.multiply_spectra(
                signal, (fft_size, bw, spacing), kernel_spectrum, cache
            )
            smoothed = np.fft.irfft(product, n=fft_size)[:grid_size]
        except (ValueError, TypeError) as e:
            raise StatsError(f"FFT convolution failed: {e}") from e

        density = np.maximum(smoothed / (n * bw), 0.0)
        return cls(x=grid, y=density, bandwidth=bw, n_values=n)

    def peaks(self, prominence_fraction: float) -> list[int]:
        return find_peaks(self.y, prominence_fraction)

    def peak_values(self, prominence_fraction: float) -> list[float]:
        """Grid x positions of the density peaks."""
        return [float(self.x[i]) for i in self.peaks(prominence_fraction)]


def estimate_batch(
    datasets: Iterable,
    backend: DensityBackend | None = None,
    bandwidth_factor: float = KDE_BANDWIDTH_FACTOR,
    grid_size: int = KDE_GRID_SIZE,
    should_cancel: Callable[[], bool] | None = None,
) -> list[KernelDensity] | None:
    """
    Run several estimates sequentially against one backend and cache.

    Returns None as soon as any estimate is cancelled.
    """
    backend = backend if backend is not None else CpuBackend()
    cache = backend.create_cache()
    results = []
    for data in datasets:
        kde = KernelDensity.estimate(
            data,
            bandwidth_factor,
            grid_size,
            backend=backend,
            cache=cache,
            should_cancel=should_cancel,
        )
        if kde is None:
            return None
        results.append(kde)
    return results
