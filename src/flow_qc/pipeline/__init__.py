"""
Flow QC - Pipeline Module
"""

from flow_qc.pipeline.orchestrator import QCPipeline, QCResult, QCStage, run_qc

__all__ = ["QCPipeline", "QCResult", "QCStage", "run_qc"]
