"""
Centralized Configuration Defaults

Contains all default values and magic numbers used throughout the codebase.
Import these constants instead of hardcoding values.

Usage:
    from flow_qc.config.defaults import (
        DEFAULT_MAD_THRESHOLD,
        DEFAULT_IT_LIMIT,
        KDE_GRID_SIZE,
    )
"""

import os

# =========================================================================
# Binning
# =========================================================================
DEFAULT_MIN_CELLS = 150
DEFAULT_MAX_BINS = 500
EVENTS_PER_BIN_STEP = 500  # events_per_bin is rounded up to a multiple of this
MIN_BINS_FOR_QC = 3
MIN_EVENTS_PER_BIN_FOR_KDE = 3

# =========================================================================
# Kernel Density Estimation
# =========================================================================
KDE_GRID_SIZE = 512
KDE_BANDWIDTH_FACTOR = 1.0
KDE_GRID_EXTENSION_BW = 3.0  # Grid spans [min - 3 bw, max + 3 bw]
KDE_CANCEL_CHECK_INTERVAL = 250_000  # Values binned between cancellation polls
KERNEL_CACHE_TOLERANCE = 1e-10

# =========================================================================
# Peak Detection
# =========================================================================
DEFAULT_PEAK_REMOVAL = 1.0 / 3.0
DEFAULT_MIN_NR_BINS_PEAKDETECTION = 10.0  # percent
DEFAULT_CLUSTER_TOLERANCE = 0.1  # fraction of the channel's robust range
ROBUST_RANGE_PERCENTILES = (1.0, 99.0)

# =========================================================================
# Isolation Tree
# =========================================================================
DEFAULT_IT_LIMIT = 0.6
DEFAULT_FORCE_IT = 150
DEFAULT_N_TREES = 100
DEFAULT_SUBSAMPLE_SIZE = 256
DEFAULT_IT_SEED = 42
EULER_MASCHERONI = 0.5772156649

# =========================================================================
# MAD
# =========================================================================
DEFAULT_MAD_THRESHOLD = 6.0
MAD_SCALE_FACTOR = 1.4826  # 1 / qnorm(3/4)
DEFAULT_MAD_SMOOTHING = 0.0
MIN_BINS_FOR_MAD = 3

# =========================================================================
# Consecutive Bins
# =========================================================================
DEFAULT_CONSECUTIVE_BINS = 5

# =========================================================================
# Monotonic Channels
# =========================================================================
MONOTONIC_BANDWIDTH = 50.0  # bins, as R's ksmooth(bandwidth=50)
MONOTONIC_FRACTION = 0.75

# =========================================================================
# Reporting
# =========================================================================
HIGH_REMOVAL_WARNING_PERCENT = 70.0

# =========================================================================
# Runtime
# =========================================================================
DEFAULT_N_WORKERS = int(os.getenv("FLOW_QC_WORKERS", "4"))
PREFER_GPU = os.getenv("FLOW_QC_DISABLE_GPU", "0") not in ("1", "true", "yes")

# =========================================================================
# Logging
# =========================================================================
DEFAULT_LOG_LEVEL = "INFO"
