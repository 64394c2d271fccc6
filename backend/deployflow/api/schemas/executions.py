"""Execution, approval decision and rollback request schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from deployflow.core.constants import ApprovalDecision, TriggerType
from deployflow.pipeline.records import ExecutionTrigger


class TriggerInfo(BaseModel):
    type: TriggerType = TriggerType.MANUAL
    user: str | None = None
    commit: str | None = None
    branch: str | None = None
    tag: str | None = None
    source: dict[str, Any] | None = None

    def to_trigger(self) -> ExecutionTrigger:
        return ExecutionTrigger(**self.model_dump())


class ExecuteRequest(BaseModel):
    """Request payload for starting an execution."""

    trigger: TriggerInfo = Field(default_factory=TriggerInfo)
    variables: dict[str, Any] = Field(default_factory=dict)
    version: int | None = Field(default=None, ge=1)


class CancelRequest(BaseModel):
    reason: str = "Cancelled by operator"


class DecisionRequest(BaseModel):
    """An approver's decision on a pending approval."""

    decision: ApprovalDecision
    approver: str = Field(..., min_length=1)
    comments: str | None = None


class RollbackRequest(BaseModel):
    target_version: str | None = None
    reason: str | None = None
    # queue behind a deployment holding the environment instead of answering 409
    wait: bool = False
