"""
Flow QC - Core Module

Core components: data model, error taxonomy, GPU compatibility, logging.
"""

from flow_qc.core.errors import (
    ChannelNotFound,
    ConfigError,
    InsufficientData,
    InvalidChannel,
    NoPeaksDetected,
    QCError,
    StatsError,
)
from flow_qc.core.types import (
    ArrayEventTable,
    Bin,
    ChannelPeakFrame,
    EventTable,
    PeakInfo,
    QCMode,
)

__all__ = [
    "QCError",
    "ConfigError",
    "ChannelNotFound",
    "InvalidChannel",
    "StatsError",
    "InsufficientData",
    "NoPeaksDetected",
    "ArrayEventTable",
    "Bin",
    "ChannelPeakFrame",
    "EventTable",
    "PeakInfo",
    "QCMode",
]
