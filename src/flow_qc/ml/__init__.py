"""
Flow QC - ML Module

Feature matrix construction and Isolation-Tree outlier scoring.
"""

from flow_qc.ml.features import FeatureMatrix, build_feature_matrix
from flow_qc.ml.isolation_forest import (
    IsolationTree,
    IsolationTreeResult,
    avg_path_length,
    homogeneous_bins,
    isolation_tree_detect,
)

__all__ = [
    "FeatureMatrix",
    "build_feature_matrix",
    "IsolationTree",
    "IsolationTreeResult",
    "avg_path_length",
    "homogeneous_bins",
    "isolation_tree_detect",
]
