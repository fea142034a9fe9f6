"""
Flow QC

Peak-based quality control for flow-cytometry event streams: finds
acquisition time windows whose signal departs from the rest of the run
(clogs, bubbles, drift) and returns a per-event keep mask.

Version: 0.3.0
"""

__version__ = "0.3.0"
__author__ = "Flow QC Team"

from flow_qc.config.schema import QCConfig
from flow_qc.core.types import ArrayEventTable, QCMode
from flow_qc.pipeline.orchestrator import QCPipeline, QCResult, run_qc

__all__ = ["QCConfig", "QCMode", "ArrayEventTable", "QCPipeline", "QCResult", "run_qc"]
