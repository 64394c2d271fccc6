"""
Execution records — per-run state mirroring the definitions.

These are the mutable counterparts of `definitions`: the engine owns a
PipelineExecution and everything reachable from it while it runs.  Once
an execution reaches a terminal status it is never mutated again.

Every record serialises to a plain dict (`to_dict`) — that dict is the
persisted audit format stored by `deployflow.db`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from deployflow.core.constants import (
    TERMINAL_STATUSES,
    ApprovalDecision,
    ApprovalStatus,
    ArtifactType,
    ExecutionStatus,
    GateStatus,
    RollbackStepType,
    RollbackTriggerSource,
    StageType,
    TriggerType,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _duration_ms(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


# ═══════════════════════════════════════════════════════════
#  Artifacts, triggers, deployments
# ═══════════════════════════════════════════════════════════

@dataclass
class Artifact:
    name: str
    type: ArtifactType = ArtifactType.BINARY
    path: str = ""
    size: int = 0
    hash: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def coerce(cls, value: "Artifact | dict[str, Any]") -> "Artifact":
        """Accept an Artifact or the dict form returned by executors."""
        if isinstance(value, Artifact):
            return value
        return cls(
            name=value.get("name", "artifact"),
            type=ArtifactType(value.get("type", ArtifactType.BINARY)),
            path=value.get("path", ""),
            size=int(value.get("size", 0)),
            hash=value.get("hash", ""),
            metadata=dict(value.get("metadata", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "path": self.path,
            "size": self.size,
            "hash": self.hash,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
        }


@dataclass
class ExecutionTrigger:
    """Who/what/when started an execution."""

    type: TriggerType = TriggerType.MANUAL
    user: str | None = None
    commit: str | None = None
    branch: str | None = None
    tag: str | None = None
    source: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "user": self.user,
            "commit": self.commit,
            "branch": self.branch,
            "tag": self.tag,
            "source": self.source,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class DeploymentResult:
    """What the environment provisioner reports back."""

    status: ExecutionStatus
    environment: str
    version: str
    output: str = ""
    error: str | None = None
    artifacts: list[Artifact] = field(default_factory=list)
    deployed_at: datetime = field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "environment": self.environment,
            "version": self.version,
            "output": self.output,
            "error": self.error,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "deployed_at": _iso(self.deployed_at),
        }


# ═══════════════════════════════════════════════════════════
#  Step / gate / approval records
# ═══════════════════════════════════════════════════════════

@dataclass
class StepExecution:
    """Outcome of one step within one stage execution."""

    step_id: str
    name: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    exit_code: int | None = None
    output: str = ""
    error: str | None = None
    retry_count: int = 0
    attempts: int = 0
    skipped: bool = False
    continue_on_error: bool = False
    artifacts: list[Artifact] = field(default_factory=list)

    @property
    def blocks_stage(self) -> bool:
        """True when this step's failure must be held against its stage."""
        return (
            self.status in (ExecutionStatus.FAILURE, ExecutionStatus.TIMEOUT)
            and not self.continue_on_error
        )

    @property
    def satisfied(self) -> bool:
        """True when dependents may run after this step."""
        if self.status == ExecutionStatus.SUCCESS:
            return True
        return self.continue_on_error and self.status in (
            ExecutionStatus.FAILURE, ExecutionStatus.TIMEOUT,
        )

    def finish(self, status: ExecutionStatus, error: str | None = None) -> None:
        self.status = status
        if error is not None:
            self.error = error
        self.end_time = _now()
        if self.start_time is None:
            self.start_time = self.end_time
        self.duration_ms = _duration_ms(self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "name": self.name,
            "status": self.status,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_ms": self.duration_ms,
            "exit_code": self.exit_code,
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
            "attempts": self.attempts,
            "skipped": self.skipped,
            "continue_on_error": self.continue_on_error,
            "artifacts": [a.to_dict() for a in self.artifacts],
        }


@dataclass
class QualityGateResult:
    gate_id: str
    name: str
    status: GateStatus
    actual_value: float | None
    threshold: float
    message: str
    fail_pipeline: bool = True
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate_id": self.gate_id,
            "name": self.name,
            "status": self.status,
            "actual_value": self.actual_value,
            "threshold": self.threshold,
            "message": self.message,
            "fail_pipeline": self.fail_pipeline,
            "details": self.details,
        }


@dataclass
class ApprovalDecisionRecord:
    approver: str
    decision: ApprovalDecision
    comments: str | None = None
    decided_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "approver": self.approver,
            "decision": self.decision,
            "comments": self.comments,
            "decided_at": _iso(self.decided_at),
        }


@dataclass
class ApprovalExecution:
    """One outstanding (or resolved) approval request for a stage."""

    approval_id: str
    execution_id: str
    stage_id: str
    eligible_approvers: list[str]
    required_approvals: int
    requested_by: str | None = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = field(default_factory=_now)
    decided_at: datetime | None = None
    approver: str | None = None
    comments: str | None = None
    escalated: bool = False
    decisions: list[ApprovalDecisionRecord] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_resolved(self) -> bool:
        return self.status != ApprovalStatus.PENDING

    def approved_by(self) -> set[str]:
        return {d.approver for d in self.decisions if d.decision == ApprovalDecision.APPROVED}

    def rejected_by(self) -> set[str]:
        return {d.approver for d in self.decisions if d.decision == ApprovalDecision.REJECTED}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "approval_id": self.approval_id,
            "execution_id": self.execution_id,
            "stage_id": self.stage_id,
            "status": self.status,
            "eligible_approvers": list(self.eligible_approvers),
            "required_approvals": self.required_approvals,
            "requested_by": self.requested_by,
            "requested_at": _iso(self.requested_at),
            "decided_at": _iso(self.decided_at),
            "approver": self.approver,
            "comments": self.comments,
            "escalated": self.escalated,
            "decisions": [d.to_dict() for d in self.decisions],
        }


# ═══════════════════════════════════════════════════════════
#  Stage execution
# ═══════════════════════════════════════════════════════════

@dataclass
class StageExecution:
    stage_id: str
    name: str
    type: StageType
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    reason: str | None = None
    skipped: bool = False
    environment: str | None = None
    steps: list[StepExecution] = field(default_factory=list)
    quality_gates: list[QualityGateResult] = field(default_factory=list)
    approvals: list[ApprovalExecution] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    deployment: DeploymentResult | None = None

    def finish(self, status: ExecutionStatus, reason: str | None = None) -> None:
        self.status = status
        self.reason = reason
        self.end_time = _now()
        if self.start_time is None:
            self.start_time = self.end_time
        self.duration_ms = _duration_ms(self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_ms": self.duration_ms,
            "reason": self.reason,
            "skipped": self.skipped,
            "environment": self.environment,
            "steps": [s.to_dict() for s in self.steps],
            "quality_gates": [g.to_dict() for g in self.quality_gates],
            "approvals": [a.to_dict() for a in self.approvals],
            "warnings": list(self.warnings),
            "deployment": self.deployment.to_dict() if self.deployment else None,
        }


# ═══════════════════════════════════════════════════════════
#  Rollback
# ═══════════════════════════════════════════════════════════

@dataclass
class RollbackStep:
    type: RollbackStepType
    description: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    output: str = ""
    error: str | None = None
    retry_count: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "status": self.status,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
        }


@dataclass
class RollbackExecution:
    environment: str | None
    triggered_by: RollbackTriggerSource
    target_version: str | None
    reason: str | None = None
    trigger: dict[str, Any] | None = None
    previous_version: str | None = None
    execution_id: str | None = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    start_time: datetime = field(default_factory=_now)
    end_time: datetime | None = None
    steps: list[RollbackStep] = field(default_factory=list)
    preserved_data: list[str] = field(default_factory=list)
    notifications: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def finish(self, status: ExecutionStatus, error: str | None = None) -> None:
        self.status = status
        if error is not None:
            self.error = error
        self.end_time = _now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "environment": self.environment,
            "triggered_by": self.triggered_by,
            "trigger": self.trigger,
            "reason": self.reason,
            "target_version": self.target_version,
            "previous_version": self.previous_version,
            "execution_id": self.execution_id,
            "status": self.status,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "steps": [s.to_dict() for s in self.steps],
            "preserved_data": list(self.preserved_data),
            "notifications": list(self.notifications),
            "error": self.error,
        }


# ═══════════════════════════════════════════════════════════
#  Pipeline execution
# ═══════════════════════════════════════════════════════════

@dataclass
class ExecutionMetrics:
    total_steps: int = 0
    successful_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    total_duration_ms: int = 0
    queue_time_ms: int = 0
    build_time_ms: int = 0
    test_time_ms: int = 0
    deploy_time_ms: int = 0

    @classmethod
    def from_execution(cls, execution: "PipelineExecution") -> "ExecutionMetrics":
        metrics = cls()
        for stage in execution.stages:
            duration = stage.duration_ms or 0
            if stage.type == StageType.BUILD:
                metrics.build_time_ms += duration
            elif stage.type in (
                StageType.TEST,
                StageType.INTEGRATION_TEST,
                StageType.PERFORMANCE_TEST,
                StageType.SMOKE_TEST,
            ):
                metrics.test_time_ms += duration
            elif stage.type == StageType.DEPLOY:
                metrics.deploy_time_ms += duration

            for step in stage.steps:
                metrics.total_steps += 1
                if step.skipped:
                    metrics.skipped_steps += 1
                elif step.status == ExecutionStatus.SUCCESS:
                    metrics.successful_steps += 1
                elif step.status in (ExecutionStatus.FAILURE, ExecutionStatus.TIMEOUT):
                    metrics.failed_steps += 1

        metrics.total_duration_ms = execution.duration_ms or 0
        metrics.queue_time_ms = max(
            0, _duration_ms(execution.trigger.timestamp, execution.start_time) or 0
        )
        return metrics

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_steps": self.total_steps,
            "successful_steps": self.successful_steps,
            "failed_steps": self.failed_steps,
            "skipped_steps": self.skipped_steps,
            "total_duration_ms": self.total_duration_ms,
            "queue_time_ms": self.queue_time_ms,
            "build_time_ms": self.build_time_ms,
            "test_time_ms": self.test_time_ms,
            "deploy_time_ms": self.deploy_time_ms,
        }


@dataclass
class PipelineExecution:
    """
    One run of one pipeline version.

    Mutated only by the ExecutionEngine that owns it.  `finish()` is the
    single entry into a terminal status: end time and duration are
    recorded on the first call, later calls are ignored.
    """

    pipeline_id: str
    pipeline_version: int
    number: int
    trigger: ExecutionTrigger
    variables: dict[str, Any] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    reason: str | None = None
    start_time: datetime = field(default_factory=_now)
    end_time: datetime | None = None
    duration_ms: int | None = None
    stages: list[StageExecution] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    rollback: RollbackExecution | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def stage(self, name: str) -> StageExecution | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def finish(self, status: ExecutionStatus, reason: str | None = None) -> bool:
        """Move into a terminal status.  Returns False if already terminal."""
        if self.is_terminal:
            return False
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        self.end_time = _now()
        self.duration_ms = _duration_ms(self.start_time, self.end_time)
        self.reason = reason
        self.status = status
        self.metrics = ExecutionMetrics.from_execution(self)
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "pipeline_version": self.pipeline_version,
            "number": self.number,
            "trigger": self.trigger.to_dict(),
            "status": self.status,
            "reason": self.reason,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_ms": self.duration_ms,
            "variables": dict(self.variables),
            "stages": [s.to_dict() for s in self.stages],
            "artifacts": [a.to_dict() for a in self.artifacts],
            "metrics": self.metrics.to_dict(),
            "rollback": self.rollback.to_dict() if self.rollback else None,
        }
