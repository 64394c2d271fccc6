"""
Pipeline definition request/response schemas.

Request models mirror the frozen definition dataclasses and convert to
them with `to_definition()`; the dataclasses do the real validation and
raise PipelineDefinitionError, which the API maps to 422.
"""

from __future__ import annotations

import dataclasses
from typing import Any

from pydantic import BaseModel, Field

from deployflow.core.constants import (
    ApproverRole,
    EnvironmentType,
    FailureStrategy,
    GateOperator,
    GateType,
    LifecycleEventType,
    PipelineStatus,
    StageType,
    StepType,
    TriggerType,
    VariableScope,
)
from deployflow.pipeline import conditions
from deployflow.pipeline.definitions import (
    ApprovalEscalation,
    ApprovalRequirement,
    ApprovalUser,
    Environment,
    NotificationRule,
    Pipeline,
    PipelineSecret,
    PipelineTrigger,
    PipelineVariable,
    QualityGate,
    RollbackStrategy,
    RollbackTrigger,
    Stage,
    StageApproval,
    Step,
)


class ConditionIn(BaseModel):
    """Declarative condition: every given rule must hold."""

    branch: str | list[str] | None = None
    tag: str | None = None
    variables: dict[str, str] = Field(default_factory=dict)

    def to_predicate(self):
        return conditions.from_spec(self.model_dump(exclude_none=True))


class VariableIn(BaseModel):
    key: str = Field(..., min_length=1)
    value: str
    scope: VariableScope = VariableScope.GLOBAL
    encrypted: bool = False
    description: str | None = None

    def to_definition(self) -> PipelineVariable:
        return PipelineVariable(**self.model_dump())


class SecretIn(BaseModel):
    key: str = Field(..., min_length=1)
    value_ref: str = Field(..., min_length=1)
    scope: VariableScope = VariableScope.GLOBAL

    def to_definition(self) -> PipelineSecret:
        return PipelineSecret(**self.model_dump())


class TriggerIn(BaseModel):
    type: TriggerType = TriggerType.MANUAL
    enabled: bool = True
    configuration: dict[str, Any] = Field(default_factory=dict)

    def to_definition(self) -> PipelineTrigger:
        return PipelineTrigger(**self.model_dump())


class NotificationIn(BaseModel):
    event: LifecycleEventType
    channel: str
    recipients: list[str] = Field(default_factory=list)

    def to_definition(self) -> NotificationRule:
        return NotificationRule(**self.model_dump())


class GateIn(BaseModel):
    name: str
    metric: str
    operator: GateOperator
    threshold: float
    warning_threshold: float | None = None
    fail_pipeline: bool = True
    type: GateType = GateType.CUSTOM

    def to_definition(self) -> QualityGate:
        return QualityGate(**self.model_dump())


class ApproverIn(BaseModel):
    user_id: str
    role: ApproverRole = ApproverRole.APPROVER
    notification_channels: list[str] = Field(default_factory=lambda: ["email"])


class ApprovalIn(BaseModel):
    approvers: list[ApproverIn | str]
    minimum_approvers: int = 1
    require_all_approvers: bool = False
    allow_self_approval: bool = False
    require_comments: bool = False
    blocked_by_rejection: bool = True
    timeout_seconds: float = 86400.0
    escalate_after_seconds: float | None = None
    escalate_to: list[str] = Field(default_factory=list)
    auto_approve: bool = False

    def to_definition(self) -> StageApproval:
        escalation = None
        if self.escalate_after_seconds is not None:
            escalation = ApprovalEscalation(
                after_seconds=self.escalate_after_seconds,
                escalate_to=tuple(self.escalate_to),
                auto_approve=self.auto_approve,
            )
        return StageApproval(
            approvers=tuple(
                ApprovalUser(user_id=a) if isinstance(a, str) else ApprovalUser(
                    user_id=a.user_id,
                    role=a.role,
                    notification_channels=tuple(a.notification_channels),
                )
                for a in self.approvers
            ),
            requirements=ApprovalRequirement(
                minimum_approvers=self.minimum_approvers,
                require_all_approvers=self.require_all_approvers,
                allow_self_approval=self.allow_self_approval,
                require_comments=self.require_comments,
                blocked_by_rejection=self.blocked_by_rejection,
            ),
            timeout_seconds=self.timeout_seconds,
            escalation=escalation,
        )


class StepIn(BaseModel):
    name: str
    type: StepType = StepType.SHELL
    action: dict[str, Any] = Field(default_factory=dict)
    condition: ConditionIn | None = None
    retry_attempts: int | None = None
    timeout_seconds: float | None = None
    continue_on_error: bool = False
    depends_on: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    def to_definition(self) -> Step:
        return Step(
            name=self.name,
            type=self.type,
            action=self.action,
            condition=self.condition.to_predicate() if self.condition else None,
            retry_attempts=self.retry_attempts,
            timeout_seconds=self.timeout_seconds,
            continue_on_error=self.continue_on_error,
            depends_on=tuple(self.depends_on),
            env=self.env,
        )


class StageIn(BaseModel):
    name: str
    steps: list[StepIn]
    type: StageType = StageType.CUSTOM
    condition: ConditionIn | None = None
    parallel_execution: bool = False
    continue_on_failure: bool = False
    gates: list[GateIn] = Field(default_factory=list)
    approvals: list[ApprovalIn] = Field(default_factory=list)
    timeout_seconds: float | None = None
    environment: str | None = None
    description: str = ""

    def to_definition(self) -> Stage:
        return Stage(
            name=self.name,
            steps=tuple(s.to_definition() for s in self.steps),
            type=self.type,
            condition=self.condition.to_predicate() if self.condition else None,
            parallel_execution=self.parallel_execution,
            continue_on_failure=self.continue_on_failure,
            gates=tuple(g.to_definition() for g in self.gates),
            approvals=tuple(a.to_definition() for a in self.approvals),
            timeout_seconds=self.timeout_seconds,
            environment=self.environment,
            description=self.description,
        )


class RollbackTriggerIn(BaseModel):
    metric: str
    operator: GateOperator
    threshold: float
    window_seconds: float = 300.0


class RollbackStrategyIn(BaseModel):
    automatic: bool = False
    triggers: list[RollbackTriggerIn] = Field(default_factory=list)
    max_rollbacks: int = 3
    window_seconds: float = 3600.0
    preserve_data: bool = True
    preserved_data: list[str] = Field(default_factory=list)
    notifications: bool = True
    notification_channel: str = "email"
    notification_recipients: list[str] = Field(default_factory=list)

    def to_definition(self) -> RollbackStrategy:
        data = self.model_dump(exclude={"triggers"})
        return RollbackStrategy(
            triggers=tuple(RollbackTrigger(**t.model_dump()) for t in self.triggers),
            **{k: tuple(v) if isinstance(v, list) else v for k, v in data.items()},
        )


class EnvironmentIn(BaseModel):
    name: str
    type: EnvironmentType = EnvironmentType.DEVELOPMENT
    rollback_strategy: RollbackStrategyIn = Field(default_factory=RollbackStrategyIn)
    variables: list[VariableIn] = Field(default_factory=list)

    def to_definition(self) -> Environment:
        return Environment(
            name=self.name,
            type=self.type,
            rollback_strategy=self.rollback_strategy.to_definition(),
            variables=tuple(v.to_definition() for v in self.variables),
        )


class PipelineCreate(BaseModel):
    """Request payload for creating a pipeline (or a new version of one)."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    stages: list[StageIn]
    triggers: list[TriggerIn] = Field(default_factory=lambda: [TriggerIn()])
    failure_strategy: FailureStrategy = FailureStrategy.STOP
    timeout_seconds: float = 7200.0
    retry_attempts: int = 0
    step_timeout_seconds: float = 1800.0
    variables: list[VariableIn] = Field(default_factory=list)
    secrets: list[SecretIn] = Field(default_factory=list)
    environments: list[EnvironmentIn] = Field(default_factory=list)
    notifications: list[NotificationIn] = Field(default_factory=list)
    queue_deployments: bool = False
    created_by: str | None = None

    def to_definition(self) -> Pipeline:
        return Pipeline(
            name=self.name,
            description=self.description,
            stages=tuple(s.to_definition() for s in self.stages),
            triggers=tuple(t.to_definition() for t in self.triggers),
            failure_strategy=self.failure_strategy,
            timeout_seconds=self.timeout_seconds,
            retry_attempts=self.retry_attempts,
            step_timeout_seconds=self.step_timeout_seconds,
            variables=tuple(v.to_definition() for v in self.variables),
            secrets=tuple(s.to_definition() for s in self.secrets),
            environments=tuple(e.to_definition() for e in self.environments),
            notifications=tuple(n.to_definition() for n in self.notifications),
            queue_deployments=self.queue_deployments,
            created_by=self.created_by,
        )


class PipelineStatusUpdate(BaseModel):
    status: PipelineStatus


def _without_conditions(items: list[tuple[str, Any]]) -> dict[str, Any]:
    """asdict() factory: predicates are not serializable, report their presence."""
    data = {}
    for key, value in items:
        if key == "condition":
            data["has_condition"] = value is not None
        else:
            data[key] = value
    return data


def serialize_pipeline(pipeline: Pipeline, status: PipelineStatus | None = None) -> dict[str, Any]:
    data = dataclasses.asdict(pipeline, dict_factory=_without_conditions)
    data["created_at"] = pipeline.created_at.isoformat()
    if status is not None:
        data["status"] = status
    return data
