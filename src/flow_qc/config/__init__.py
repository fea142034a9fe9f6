"""
Flow QC - Configuration Module
"""

from flow_qc.config.schema import (
    PRESETS,
    IsolationTreeConfig,
    KDEConfig,
    LoggingConfig,
    MADConfig,
    QCConfig,
)

__all__ = [
    "QCConfig",
    "KDEConfig",
    "IsolationTreeConfig",
    "MADConfig",
    "LoggingConfig",
    "PRESETS",
]
