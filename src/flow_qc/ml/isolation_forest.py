"""
Flow QC - Isolation Tree Outlier Detection

Ensemble of random isolation trees over the bin feature matrix, scoring
bins that are isolated in few splits close to 1, and a deterministic
SD-gain partition whose largest leaf holds the good bins.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from flow_qc.config.defaults import EULER_MASCHERONI
from flow_qc.config.schema import IsolationTreeConfig
from flow_qc.core.errors import InsufficientData, NoPeaksDetected
from flow_qc.core.logging_config import log_performance
from flow_qc.core.types import ChannelPeakFrame
from flow_qc.ml.features import FeatureMatrix, build_feature_matrix

logger = logging.getLogger(__name__)


def avg_path_length(n: int) -> float:
    """
    Average path length of an unsuccessful BST search over ``n`` points.

    c(n) = 2 (ln(n - 1) + gamma) - 2 (n - 1) / n, with c(n) = 0 for n <= 1.
    """
    if n <= 1:
        return 0.0
    return 2.0 * (math.log(n - 1) + EULER_MASCHERONI) - 2.0 * (n - 1) / n


def _avg_path_length_array(sizes: np.ndarray) -> np.ndarray:
    sizes = np.asarray(sizes, dtype=np.float64)
    out = np.zeros_like(sizes)
    big = sizes > 1
    n = sizes[big]
    out[big] = 2.0 * (np.log(n - 1) + EULER_MASCHERONI) - 2.0 * (n - 1) / n
    return out


class IsolationTree:
    """One isolation tree stored as flat node arrays (feature -1 = leaf)."""

    def __init__(self, feature, threshold, left, right, size):
        self.feature = np.asarray(feature, dtype=np.int64)
        self.threshold = np.asarray(threshold, dtype=np.float64)
        self.left = np.asarray(left, dtype=np.int64)
        self.right = np.asarray(right, dtype=np.int64)
        self.size = np.asarray(size, dtype=np.int64)

    @property
    def n_nodes(self) -> int:
        return self.feature.size

    @classmethod
    def fit(cls, sample: np.ndarray, rng: np.random.Generator, max_depth: int) -> IsolationTree:
        """
        Grow a tree on ``sample`` with random feature / uniform split choices.

        Growth stops at ``max_depth``, at a single point, or when every
        feature is constant over the node's points.
        """
        feature: list[int] = []
        threshold: list[float] = []
        left: list[int] = []
        right: list[int] = []
        size: list[int] = []

        def grow(rows: np.ndarray, depth: int) -> int:
            node = len(feature)
            feature.append(-1)
            threshold.append(0.0)
            left.append(-1)
            right.append(-1)
            size.append(rows.size)

            if depth >= max_depth or rows.size <= 1:
                return node
            points = sample[rows]
            lo = points.min(axis=0)
            hi = points.max(axis=0)
            splittable = np.flatnonzero(hi > lo)
            if splittable.size == 0:
                return node

            f = int(rng.choice(splittable))
            split = float(rng.uniform(lo[f], hi[f]))
            goes_left = points[:, f] < split

            feature[node] = f
            threshold[node] = split
            left[node] = grow(rows[goes_left], depth + 1)
            right[node] = grow(rows[~goes_left], depth + 1)
            return node

        grow(np.arange(sample.shape[0]), 0)
        return cls(feature, threshold, left, right, size)

    def path_lengths(self, X: np.ndarray) -> np.ndarray:
        """Depth of the leaf reached by each row plus c(leaf size)."""
        n = X.shape[0]
        node = np.zeros(n, dtype=np.int64)
        depth = np.zeros(n, dtype=np.float64)
        while True:
            feat = self.feature[node]
            rows = np.flatnonzero(feat >= 0)
            if rows.size == 0:
                break
            current = node[rows]
            goes_left = X[rows, feat[rows]] < self.threshold[current]
            node[rows] = np.where(goes_left, self.left[current], self.right[current])
            depth[rows] += 1
        return depth + _avg_path_length_array(self.size[node])


def _sample_sd(s1: np.ndarray, s2: np.ndarray, k: np.ndarray) -> np.ndarray:
    k = k.astype(np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        var = (s2 - s1 * s1 / k) / (k - 1)
    return np.sqrt(np.clip(np.nan_to_num(var), 0.0, None))


def _best_column_split(values: np.ndarray, gain_limit: float) -> tuple[float, float] | None:
    """Split value and gain of the best cut of one column, or None below the limit."""
    ordered = np.sort(values)
    n = ordered.size
    if n < 2 or ordered[-1] == ordered[0]:
        return None

    centered = ordered - ordered.mean()
    base_sd = float(np.std(centered, ddof=1))
    sizes = np.arange(1, n)
    c1 = np.cumsum(centered)[:-1]
    c2 = np.cumsum(centered * centered)[:-1]
    left_sd = _sample_sd(c1, c2, sizes)
    right_sd = _sample_sd(centered.sum() - c1, (centered * centered).sum() - c2, n - sizes)
    left_sd[0] = 0.0
    right_sd[-1] = 0.0

    gains = (base_sd - 0.5 * (left_sd + right_sd)) / base_sd
    gains[~np.isfinite(gains)] = -np.inf
    # Last cut among equal gains
    best = gains.size - 1 - int(np.argmax(gains[::-1]))
    if gains[best] < gain_limit:
        return None
    return float(ordered[best]), float(gains[best])


def homogeneous_bins(X: np.ndarray, gain_limit: float) -> np.ndarray:
    """
    Bins in the largest leaf of a deterministic SD-gain partition of ``X``.

    A node is cut at the column and value that most reduce the mean
    standard deviation of its two halves, relative to the node's own
    spread, and only while that gain reaches ``gain_limit``. The limit
    then rises to the gain just used. Growth stops at nodes of three bins
    or fewer and at depth ``ceil(log2(n_bins))``. Gaussian columns top out
    at a gain of about 0.5, so a stationary run stays in the root.

    Args:
        X: Feature matrix, bins x features.
        gain_limit: Minimum relative SD reduction for a cut.

    Returns:
        Bool per bin, True = member of the largest leaf.
    """
    n_bins = X.shape[0]
    max_depth = math.ceil(math.log2(n_bins)) if n_bins > 1 else 0
    leaves: list[np.ndarray] = []
    pending = [(np.arange(n_bins), 0)]

    while pending:
        rows, depth = pending.pop()
        best = None
        if rows.size > 3 and depth < max_depth:
            best_gain = gain_limit
            for col in range(X.shape[1]):
                split = _best_column_split(X[rows, col], best_gain)
                if split is not None:
                    best = (col, split[0])
                    best_gain = split[1]
        if best is None:
            leaves.append(rows)
            continue

        col, value = best
        goes_left = X[rows, col] <= value
        if goes_left.all() or not goes_left.any():
            leaves.append(rows)
            continue
        gain_limit = best_gain
        pending.append((rows[goes_left], depth + 1))
        pending.append((rows[~goes_left], depth + 1))

    largest = max(leaves, key=len)
    members = np.zeros(n_bins, dtype=bool)
    members[largest] = True
    return members


@dataclass
class IsolationTreeResult:
    """Result of Isolation-Tree scoring."""

    outlier_bins: np.ndarray  # bool per bin, True = outlier
    scores: np.ndarray  # anomaly score per bin in (0, 1)
    feature_names: list[str]
    n_trees: int
    threshold: float
    largest_group_size: int = 0

    @property
    def n_outliers(self) -> int:
        return int(self.outlier_bins.sum())


def isolation_tree_detect(
    features: FeatureMatrix | Mapping[str, ChannelPeakFrame],
    n_bins: int,
    config: IsolationTreeConfig | None = None,
) -> IsolationTreeResult:
    """
    Score every bin with an isolation-tree ensemble and flag the bins
    outside the largest homogeneous group.

    Each tree sees a subsample of ``min(subsample_size, n_bins)`` bins and
    is a pure function of the matrix and its child seed, so results are
    reproducible regardless of ``n_workers``. The score is
    ``2^(-E[h(x)] / c(psi))``. The verdict comes from ``homogeneous_bins``
    with ``it_limit`` as the gain limit: every bin outside its largest
    leaf is an outlier, and a stationary run flags nothing.

    Args:
        features: Feature matrix, or clustered peaks to build one from.
        n_bins: Number of bins (rows).
        config: Ensemble settings.

    Returns:
        IsolationTreeResult with per-bin scores and verdicts.

    Raises:
        InsufficientData: If n_bins < force_it (or < 2).
        NoPeaksDetected: If there are no features.
    """
    config = config or IsolationTreeConfig()
    minimum = max(config.force_it, 2)
    if n_bins < minimum:
        raise InsufficientData(minimum, n_bins, what="bins")

    if not isinstance(features, FeatureMatrix):
        features = build_feature_matrix(features, n_bins)
    if features.n_features == 0:
        raise NoPeaksDetected()
    X = features.values

    t0 = time.perf_counter()
    psi = min(config.subsample_size, n_bins)
    max_depth = math.ceil(math.log2(psi))
    child_seeds = np.random.SeedSequence(config.seed).spawn(config.n_trees)

    def build(seed: np.random.SeedSequence) -> IsolationTree:
        rng = np.random.default_rng(seed)
        rows = rng.choice(n_bins, size=psi, replace=False)
        return IsolationTree.fit(X[rows], rng, max_depth)

    if config.n_workers > 1:
        with ThreadPoolExecutor(max_workers=config.n_workers, thread_name_prefix="itree") as pool:
            trees = list(pool.map(build, child_seeds))
    else:
        trees = [build(seed) for seed in child_seeds]

    mean_path = np.mean([tree.path_lengths(X) for tree in trees], axis=0)
    scores = np.power(2.0, -mean_path / avg_path_length(psi))
    members = homogeneous_bins(X, config.it_limit)
    outliers = ~members

    log_performance(
        logger,
        "isolation_tree",
        (time.perf_counter() - t0) * 1000,
        n_bins=n_bins,
        n_features=features.n_features,
        n_trees=config.n_trees,
    )
    logger.info(
        f"Isolation tree flagged {int(outliers.sum())}/{n_bins} bins "
        f"(gain limit {config.it_limit}, largest group {int(members.sum())} bins)"
    )
    return IsolationTreeResult(
        outlier_bins=outliers,
        scores=scores,
        feature_names=list(features.feature_names),
        n_trees=config.n_trees,
        threshold=config.it_limit,
        largest_group_size=int(members.sum()),
    )
