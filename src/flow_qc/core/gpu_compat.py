"""
GPU Compatibility Module

Provides unified access to GPU array operations (CuPy) with automatic
fallback to NumPy when CUDA is not available.

Usage:
    from flow_qc.core.gpu_compat import cp, np, CUPY_AVAILABLE, is_gpu_available

    # Importable is not the same as usable: probe a device before the GPU path
    if is_gpu_available():
        spectrum = cp.asarray(host_spectrum)
"""

import logging
from functools import lru_cache

import numpy as np

logger = logging.getLogger(__name__)

try:
    import cupy as cp

    CUPY_AVAILABLE = True
except ImportError:
    CUPY_AVAILABLE = False
    cp = np  # type: ignore[misc]


@lru_cache(maxsize=None)
def is_gpu_available() -> bool:
    """
    Check once per process whether a CUDA device can actually be used.

    The probe counts devices and performs a tiny allocation round-trip.
    The answer is memoized and never re-probed.

    Returns:
        True if CuPy imports and a device initializes, else False.
    """
    if not CUPY_AVAILABLE:
        logger.info("CuPy not installed, density backend will run on CPU")
        return False

    try:
        if cp.cuda.runtime.getDeviceCount() < 1:
            logger.info("No CUDA device found, density backend will run on CPU")
            return False
        probe = cp.arange(4, dtype=cp.float64)
        float(cp.asnumpy(probe.sum()))
    except Exception as e:
        logger.warning(f"GPU probe failed, density backend will run on CPU: {e}")
        return False

    logger.info("CUDA device available for density backend")
    return True


def free_gpu_memory():
    """Free all GPU memory pools."""
    if CUPY_AVAILABLE:
        try:
            cp.get_default_memory_pool().free_all_blocks()
            cp.get_default_pinned_memory_pool().free_all_blocks()
        except Exception as e:
            logger.debug(f"Error freeing GPU memory pools: {e}")

