"""
Pipeline definitions — validated, immutable records describing WHAT runs.

A Pipeline is built once (or once per version) and then only read:
every collection is stored as a tuple and every dataclass is frozen.
Constructors reject invalid combinations with PipelineDefinitionError
so a malformed pipeline never reaches the execution engine.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Mapping

from deployflow.core.constants import (
    EnvironmentType,
    FailureStrategy,
    GateOperator,
    GateType,
    ApproverRole,
    LifecycleEventType,
    StageType,
    StepType,
    TriggerType,
    VariableScope,
)
from deployflow.pipeline.errors import PipelineDefinitionError

if TYPE_CHECKING:
    from deployflow.pipeline.context import ExecutionContext

Condition = Callable[["ExecutionContext"], bool]


def _new_id() -> str:
    return str(uuid.uuid4())


def _freeze(obj: Any, name: str, factory=tuple) -> None:
    """Coerce a list-like field of a frozen dataclass to an immutable type."""
    object.__setattr__(obj, name, factory(getattr(obj, name) or ()))


def _require_positive(value: float | None, label: str) -> None:
    if value is not None and value <= 0:
        raise PipelineDefinitionError(f"{label} must be positive, got {value}")


# ═══════════════════════════════════════════════════════════
#  Variables, secrets, triggers, notifications
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PipelineVariable:
    key: str
    value: str
    scope: VariableScope = VariableScope.GLOBAL
    encrypted: bool = False
    description: str | None = None


@dataclass(frozen=True)
class PipelineSecret:
    """Reference to a secret in an external store; never the value itself."""

    key: str
    value_ref: str
    scope: VariableScope = VariableScope.GLOBAL


@dataclass(frozen=True)
class PipelineTrigger:
    type: TriggerType = TriggerType.MANUAL
    enabled: bool = True
    configuration: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class NotificationRule:
    """Forward a lifecycle event to a notification channel."""

    event: LifecycleEventType
    channel: str
    recipients: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _freeze(self, "recipients")


# ═══════════════════════════════════════════════════════════
#  Quality gates and approvals
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class QualityGate:
    """Compare a named metric against a threshold."""

    name: str
    metric: str
    operator: GateOperator
    threshold: float
    warning_threshold: float | None = None
    fail_pipeline: bool = True
    type: GateType = GateType.CUSTOM
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        if not self.metric:
            raise PipelineDefinitionError(f"Quality gate '{self.name}' must name a metric")
        object.__setattr__(self, "operator", GateOperator(self.operator))


@dataclass(frozen=True)
class ApprovalUser:
    user_id: str
    role: ApproverRole = ApproverRole.APPROVER
    notification_channels: tuple[str, ...] = ("email",)

    def __post_init__(self) -> None:
        _freeze(self, "notification_channels")


@dataclass(frozen=True)
class ApprovalRequirement:
    minimum_approvers: int = 1
    require_all_approvers: bool = False
    allow_self_approval: bool = False
    require_comments: bool = False
    blocked_by_rejection: bool = True


@dataclass(frozen=True)
class ApprovalEscalation:
    """After `after_seconds` without quorum, bring in a fallback set."""

    after_seconds: float
    escalate_to: tuple[str, ...] = ()
    auto_approve: bool = False

    def __post_init__(self) -> None:
        _freeze(self, "escalate_to")
        _require_positive(self.after_seconds, "Escalation delay")
        if not self.escalate_to and not self.auto_approve:
            raise PipelineDefinitionError(
                "Escalation needs an escalation set or auto_approve"
            )


@dataclass(frozen=True)
class StageApproval:
    approvers: tuple[ApprovalUser, ...]
    requirements: ApprovalRequirement = field(default_factory=ApprovalRequirement)
    timeout_seconds: float = 86400.0
    escalation: ApprovalEscalation | None = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        approvers = tuple(
            a if isinstance(a, ApprovalUser) else ApprovalUser(user_id=a)
            for a in self.approvers or ()
        )
        object.__setattr__(self, "approvers", approvers)

        if not approvers:
            raise PipelineDefinitionError("Approval must list at least one approver")
        user_ids = [a.user_id for a in approvers]
        if len(set(user_ids)) != len(user_ids):
            raise PipelineDefinitionError("Approval lists the same approver twice")
        minimum = self.requirements.minimum_approvers
        if minimum < 1 or minimum > len(approvers):
            raise PipelineDefinitionError(
                f"minimum_approvers must be between 1 and {len(approvers)}, got {minimum}"
            )
        _require_positive(self.timeout_seconds, "Approval timeout")
        escalation = self.escalation
        if (
            escalation is not None
            and not escalation.auto_approve
            and escalation.after_seconds >= self.timeout_seconds
        ):
            raise PipelineDefinitionError(
                f"Escalation after {escalation.after_seconds}s leaves no time before "
                f"the {self.timeout_seconds}s approval timeout"
            )

    @property
    def approver_ids(self) -> tuple[str, ...]:
        return tuple(a.user_id for a in self.approvers)


# ═══════════════════════════════════════════════════════════
#  Steps and stages
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Step:
    """Smallest unit of work; `action` is interpreted by an ActionExecutor."""

    name: str
    type: StepType = StepType.SHELL
    action: Mapping[str, Any] = field(default_factory=dict)
    condition: Condition | None = None
    retry_attempts: int | None = None     # None → pipeline default
    timeout_seconds: float | None = None  # None → pipeline default
    continue_on_error: bool = False
    depends_on: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        if not self.name:
            raise PipelineDefinitionError("Step must have a name")
        _freeze(self, "depends_on")
        object.__setattr__(self, "type", StepType(self.type))
        if self.retry_attempts is not None and self.retry_attempts < 0:
            raise PipelineDefinitionError(
                f"Step '{self.name}' retry_attempts must be >= 0",
                step_name=self.name,
            )
        _require_positive(self.timeout_seconds, f"Step '{self.name}' timeout")


@dataclass(frozen=True)
class Stage:
    name: str
    steps: tuple[Step, ...]
    type: StageType = StageType.CUSTOM
    condition: Condition | None = None
    parallel_execution: bool = False
    continue_on_failure: bool = False
    gates: tuple[QualityGate, ...] = ()
    approvals: tuple[StageApproval, ...] = ()
    timeout_seconds: float | None = None
    environment: str | None = None
    description: str = ""
    id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        _freeze(self, "steps")
        _freeze(self, "gates")
        _freeze(self, "approvals")
        object.__setattr__(self, "type", StageType(self.type))

        if not self.steps:
            raise PipelineDefinitionError(f"Stage {self.name} must have at least one step")
        names = [s.name for s in self.steps]
        if len(set(names)) != len(names):
            raise PipelineDefinitionError(f"Stage {self.name} has duplicate step names")
        _require_positive(self.timeout_seconds, f"Stage '{self.name}' timeout")

        known = set(names)
        for step in self.steps:
            for dep in step.depends_on:
                if dep not in known:
                    raise PipelineDefinitionError(
                        f"Step '{step.name}' depends on unknown step '{dep}'",
                        step_name=step.name,
                    )
                if dep == step.name:
                    raise PipelineDefinitionError(
                        f"Step '{step.name}' depends on itself",
                        step_name=step.name,
                    )
        self._check_cycles()

    def _check_cycles(self) -> None:
        graph = {s.name: s.depends_on for s in self.steps}
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                raise PipelineDefinitionError(
                    f"Stage {self.name} has a dependency cycle through '{name}'"
                )
            visiting.add(name)
            for dep in graph[name]:
                visit(dep)
            visiting.discard(name)
            done.add(name)

        for name in graph:
            visit(name)


# ═══════════════════════════════════════════════════════════
#  Environments
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RollbackTrigger:
    """Metric breach that starts an automatic rollback."""

    metric: str
    operator: GateOperator
    threshold: float
    window_seconds: float = 300.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "operator", GateOperator(self.operator))


@dataclass(frozen=True)
class RollbackStrategy:
    automatic: bool = False
    triggers: tuple[RollbackTrigger, ...] = ()
    max_rollbacks: int = 3
    window_seconds: float = 3600.0
    preserve_data: bool = True
    preserved_data: tuple[str, ...] = ()
    notifications: bool = True
    notification_channel: str = "email"
    notification_recipients: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _freeze(self, "triggers")
        _freeze(self, "preserved_data")
        _freeze(self, "notification_recipients")
        if self.max_rollbacks < 1:
            raise PipelineDefinitionError("max_rollbacks must be at least 1")
        _require_positive(self.window_seconds, "Rollback window")


@dataclass(frozen=True)
class Environment:
    name: str
    type: EnvironmentType = EnvironmentType.DEVELOPMENT
    rollback_strategy: RollbackStrategy = field(default_factory=RollbackStrategy)
    variables: tuple[PipelineVariable, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise PipelineDefinitionError("Environment must have a name")
        _freeze(self, "variables")
        object.__setattr__(self, "type", EnvironmentType(self.type))


# ═══════════════════════════════════════════════════════════
#  Pipeline
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Pipeline:
    """
    A versioned, named pipeline definition.

    Invariants (checked at construction):
        - at least one stage, every stage has at least one step
        - at least one trigger
        - unique stage names and environment names
        - every deploy stage targets a declared environment
    """

    name: str
    stages: tuple[Stage, ...]
    triggers: tuple[PipelineTrigger, ...] = (PipelineTrigger(),)
    failure_strategy: FailureStrategy = FailureStrategy.STOP
    timeout_seconds: float = 7200.0
    retry_attempts: int = 0
    step_timeout_seconds: float = 1800.0
    variables: tuple[PipelineVariable, ...] = ()
    secrets: tuple[PipelineSecret, ...] = ()
    environments: tuple[Environment, ...] = ()
    notifications: tuple[NotificationRule, ...] = ()
    queue_deployments: bool = False
    description: str = ""
    created_by: str | None = None
    version: int = 1
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        for name in ("stages", "triggers", "variables", "secrets", "environments", "notifications"):
            _freeze(self, name)
        object.__setattr__(self, "failure_strategy", FailureStrategy(self.failure_strategy))

        if not self.name:
            raise PipelineDefinitionError("Pipeline must have a name")
        if not self.stages:
            raise PipelineDefinitionError("Pipeline must have at least one stage")
        if not self.triggers:
            raise PipelineDefinitionError("Pipeline must have at least one trigger")
        if self.retry_attempts < 0:
            raise PipelineDefinitionError("retry_attempts must be >= 0")
        _require_positive(self.timeout_seconds, "Pipeline timeout")
        _require_positive(self.step_timeout_seconds, "Default step timeout")

        stage_names = [s.name for s in self.stages]
        if len(set(stage_names)) != len(stage_names):
            raise PipelineDefinitionError("Pipeline has duplicate stage names")

        env_names = [e.name for e in self.environments]
        if len(set(env_names)) != len(env_names):
            raise PipelineDefinitionError("Pipeline declares an environment twice")

        for stage in self.stages:
            if stage.type == StageType.DEPLOY:
                if not stage.environment:
                    raise PipelineDefinitionError(
                        f"Deploy stage {stage.name} must name a target environment"
                    )
            if stage.environment and stage.environment not in env_names:
                raise PipelineDefinitionError(
                    f"Stage {stage.name} targets undeclared environment '{stage.environment}'"
                )

    # ─── Lookups ───────────────────────────────────────

    def environment(self, name: str) -> Environment | None:
        for env in self.environments:
            if env.name == name:
                return env
        return None

    def stage(self, name: str) -> Stage | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def variable_defaults(self) -> dict[str, str]:
        """Global variables as a plain mapping (execution variables override)."""
        return {v.key: v.value for v in self.variables}

    def secret_refs(self) -> dict[str, str]:
        return {s.key: s.value_ref for s in self.secrets}
