"""
Flow QC - Density Numeric Backend

CPU/GPU strategy for the frequency-domain multiply at the heart of the
FFT kernel density estimate.

Forward and inverse FFTs always run on the host; only the product of the
data spectrum with the Gaussian kernel spectrum is dispatched here. The GPU
path keeps the kernel spectrum resident on the device between calls and
falls back to the CPU path on any CUDA failure.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

import numpy as np

from flow_qc.config.defaults import KERNEL_CACHE_TOLERANCE
from flow_qc.core.errors import ConfigError
from flow_qc.core.gpu_compat import CUPY_AVAILABLE, cp, free_gpu_memory, is_gpu_available

logger = logging.getLogger(__name__)

# (fft_size, bandwidth, grid spacing)
SpectrumKey = tuple[int, float, float]
KernelFactory = Callable[[], np.ndarray]


class KernelSpectrumCache:
    """
    Single-slot cache for the most recent kernel spectrum.

    Bandwidth and spacing match within an absolute tolerance of 1e-10.
    Not thread-safe; each worker owns its own cache.
    """

    def __init__(self, tolerance: float = KERNEL_CACHE_TOLERANCE):
        self._tolerance = tolerance
        self._spectrum = None
        self._key: SpectrumKey | None = None
        self.hits = 0
        self.misses = 0

    def _matches(self, fft_size: int, bandwidth: float, spacing: float) -> bool:
        if self._key is None:
            return False
        cached_size, cached_bw, cached_spacing = self._key
        return (
            cached_size == fft_size
            and abs(cached_bw - bandwidth) <= self._tolerance
            and abs(cached_spacing - spacing) <= self._tolerance
        )

    def get(self, fft_size: int, bandwidth: float, spacing: float):
        """Return the cached spectrum for this key, or None."""
        if self._matches(fft_size, bandwidth, spacing):
            self.hits += 1
            return self._spectrum
        self.misses += 1
        return None

    def put(self, spectrum, fft_size: int, bandwidth: float, spacing: float) -> None:
        self._spectrum = spectrum
        self._key = (fft_size, bandwidth, spacing)

    def clear(self) -> None:
        self._spectrum = None
        self._key = None

    @property
    def is_empty(self) -> bool:
        return self._key is None


class GpuContext:
    """
    Caller-owned GPU state: device handle plus a device-resident kernel cache.

    Create one per worker thread. Usable as a context manager; ``close``
    drops the cached spectrum and releases pooled device memory.
    """

    def __init__(self, device_id: int = 0):
        if not CUPY_AVAILABLE:
            raise RuntimeError("CuPy is not installed")
        self.device = cp.cuda.Device(device_id)
        self.device_id = device_id
        self.cache = KernelSpectrumCache()
        self.fallback_count = 0
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self.cache.clear()
        free_gpu_memory()
        self._closed = True

    def __enter__(self) -> GpuContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DensityBackend(ABC):
    """Strategy for multiplying a data spectrum by a kernel spectrum."""

    name: str = "base"

    def create_cache(self) -> KernelSpectrumCache:
        return KernelSpectrumCache()

    @abstractmethod
    def multiply_spectra(
        self,
        signal_spectrum: np.ndarray,
        key: SpectrumKey,
        kernel_factory: KernelFactory,
        cache: KernelSpectrumCache | None = None,
    ) -> np.ndarray:
        """
        Multiply ``signal_spectrum`` by the kernel spectrum identified by ``key``.

        Args:
            signal_spectrum: Host rfft of the zero-padded binned counts.
            key: (fft_size, bandwidth, spacing) identifying the kernel.
            kernel_factory: Builds the host kernel spectrum on a cache miss.
            cache: Optional single-slot cache consulted before the factory.

        Returns:
            Host complex array of the same shape as ``signal_spectrum``.
        """


class CpuBackend(DensityBackend):
    """NumPy complex multiply."""

    name = "cpu"

    def multiply_spectra(self, signal_spectrum, key, kernel_factory, cache=None):
        kernel = cache.get(*key) if cache is not None else None
        if kernel is None:
            kernel = kernel_factory()
            if cache is not None:
                cache.put(kernel, *key)
        return signal_spectrum * kernel


class GpuBackend(DensityBackend):
    """
    CuPy upload + multiply + download.

    Failures never propagate: the call is redone on the CPU, logged as a
    warning and counted in ``context.fallback_count``.
    """

    name = "gpu"

    def __init__(self, context: GpuContext | None = None, device_id: int = 0):
        self.context = context if context is not None else GpuContext(device_id)

    def create_cache(self) -> KernelSpectrumCache:
        return self.context.cache

    def multiply_spectra(self, signal_spectrum, key, kernel_factory, cache=None):
        cache = cache if cache is not None else self.context.cache
        try:
            with self.context.device:
                kernel = cache.get(*key)
                if kernel is None:
                    kernel = cp.asarray(kernel_factory())
                    cache.put(kernel, *key)
                product = cp.asarray(signal_spectrum) * kernel
                return cp.asnumpy(product)
        except Exception as e:
            self.context.fallback_count += 1
            cache.clear()
            logger.warning(
                f"GPU spectrum multiply failed, using CPU: {e}",
                extra={"fallback_count": self.context.fallback_count},
            )
            return signal_spectrum * kernel_factory()

    def close(self) -> None:
        self.context.close()


def select_backend(prefer_gpu: bool = True) -> DensityBackend:
    """
    Pick the GPU backend when preferred and a device is usable, else CPU.

    Each call returns a fresh instance; give every worker its own.
    """
    if prefer_gpu and is_gpu_available():
        try:
            return GpuBackend()
        except Exception as e:
            logger.warning(f"GPU context creation failed, using CPU: {e}")
    return CpuBackend()


def resolve_backend_name(name: str | None = None, prefer_gpu: bool = True) -> str:
    """
    Decide which backend a run will use.

    Args:
        name: "cpu", "gpu" or None/"auto" to defer to ``prefer_gpu``.
        prefer_gpu: Used when ``name`` is None or "auto".

    Returns:
        "gpu" if it was asked for and a device is usable, else "cpu".
    """
    if name not in (None, "auto", "cpu", "gpu"):
        raise ConfigError(f"Unknown density backend: {name!r}")
    wants_gpu = name == "gpu" or (name in (None, "auto") and prefer_gpu)
    if wants_gpu and is_gpu_available():
        return "gpu"
    if name == "gpu":
        logger.warning("GPU backend requested but unavailable, using CPU")
    return "cpu"


def create_backend(name: str | None = None, prefer_gpu: bool = True) -> DensityBackend:
    """Build a fresh backend instance by name (see ``resolve_backend_name``)."""
    if resolve_backend_name(name, prefer_gpu) == "gpu":
        return select_backend(prefer_gpu=True)
    return CpuBackend()
