"""
Pipeline Engine — deployment pipeline orchestrator.

This package runs declared build/test/deploy pipelines stage by stage,
with quality gates, human approvals, environment leases and rollback.
"""

from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.definitions import Pipeline, Stage, Step
from deployflow.pipeline.engine import ExecutionEngine
from deployflow.pipeline.records import ExecutionTrigger, PipelineExecution

__all__ = [
    "ExecutionContext",
    "ExecutionEngine",
    "ExecutionTrigger",
    "Pipeline",
    "PipelineExecution",
    "Stage",
    "Step",
]
