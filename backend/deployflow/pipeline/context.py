"""
ExecutionContext — the read-mostly view handed to conditions and actions.

One context is built per execution and narrowed per stage, step and
attempt with `for_stage` / `for_step` / `for_attempt`.  The narrowed
copies share the `outputs` and `artifacts` containers, so data produced
by one step is visible to later steps (and to conditions) of the same
execution.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from deployflow.core.constants import StageType, StepType
from deployflow.pipeline.records import Artifact, ExecutionTrigger, StepExecution


@dataclass
class ExecutionContext:
    """Carries identity and shared state for one execution."""

    # ─── Identity (set at init) ────────────────────────
    execution_id: str
    pipeline_id: str
    pipeline_version: int
    execution_number: int
    trigger: ExecutionTrigger

    # ─── Inputs ────────────────────────────────────────
    variables: dict[str, Any] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)   # key → secret ref

    # ─── Position (narrowed per stage / step / attempt) ──
    stage_id: str | None = None
    stage_name: str | None = None
    stage_type: StageType | None = None
    environment: str | None = None
    step_id: str | None = None
    step_name: str | None = None
    step_type: StepType | None = None
    step_env: dict[str, str] = field(default_factory=dict)
    attempt: int = 0

    # ─── Shared across narrowed copies ─────────────────
    outputs: dict[str, str] = field(default_factory=dict)
    artifacts: list[Artifact] = field(default_factory=list)

    # ─── Narrowing ─────────────────────────────────────

    def for_stage(self, stage) -> "ExecutionContext":
        return dataclasses.replace(
            self,
            stage_id=stage.id,
            stage_name=stage.name,
            stage_type=stage.type,
            environment=stage.environment,
            step_id=None,
            step_name=None,
            step_type=None,
            step_env={},
            attempt=0,
        )

    def for_step(self, step) -> "ExecutionContext":
        return dataclasses.replace(
            self,
            step_id=step.id,
            step_name=step.name,
            step_type=step.type,
            step_env=dict(step.env),
            attempt=0,
        )

    def for_attempt(self, attempt: int) -> "ExecutionContext":
        return dataclasses.replace(self, attempt=attempt)

    # ─── Helpers ───────────────────────────────────────

    @property
    def invocation_id(self) -> str:
        """Distinct per attempt, so retried invocations can be told apart."""
        return ":".join([
            self.execution_id,
            self.stage_id or "-",
            self.step_id or "-",
            str(self.attempt),
        ])

    @property
    def version(self) -> str:
        """Version being deployed: explicit variable, else commit, else run number."""
        explicit = self.variables.get("version")
        if explicit:
            return str(explicit)
        if self.trigger.commit:
            return self.trigger.commit
        return f"{self.pipeline_id}-{self.execution_number}"

    def record_step(self, result: StepExecution) -> None:
        """Publish a finished step's output and artifacts for later steps."""
        self.outputs[result.name] = result.output
        self.artifacts.extend(result.artifacts)

    def to_dict(self) -> dict[str, Any]:
        """Serialisable view handed to action executors."""
        return {
            "execution_id": self.execution_id,
            "pipeline_id": self.pipeline_id,
            "pipeline_version": self.pipeline_version,
            "execution_number": self.execution_number,
            "invocation_id": self.invocation_id,
            "stage": self.stage_name,
            "step": self.step_name,
            "attempt": self.attempt,
            "environment": self.environment,
            "version": self.version,
            "variables": dict(self.variables),
            "trigger": self.trigger.to_dict(),
        }
