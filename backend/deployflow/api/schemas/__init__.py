"""API schema package."""

from deployflow.api.schemas.executions import (
    CancelRequest,
    DecisionRequest,
    ExecuteRequest,
    RollbackRequest,
    TriggerInfo,
)
from deployflow.api.schemas.pipelines import (
    PipelineCreate,
    PipelineStatusUpdate,
    serialize_pipeline,
)
from deployflow.api.schemas.templates import TemplateCreate, TemplateInstantiate

__all__ = [
    "CancelRequest",
    "DecisionRequest",
    "ExecuteRequest",
    "PipelineCreate",
    "PipelineStatusUpdate",
    "RollbackRequest",
    "TemplateCreate",
    "TemplateInstantiate",
    "TriggerInfo",
    "serialize_pipeline",
]
