"""
Collaborator interfaces — what the engine calls out to.

Everything behind these protocols is outside the engine: real
infrastructure, metric stores, notification delivery.  Production
wiring injects implementations from `deployflow.executors`; tests
inject doubles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.definitions import Environment
from deployflow.pipeline.records import Artifact, DeploymentResult


@dataclass
class ActionResult:
    """What an action executor reports for one invocation."""

    exit_code: int = 0
    output: str = ""
    error: str | None = None
    artifacts: list[Artifact | dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class ActionExecutor(Protocol):
    async def execute(
        self, action: Mapping[str, Any], context: ExecutionContext
    ) -> ActionResult:
        """Run one step action.  May raise; a raise counts as a failed attempt."""
        ...


class MetricsSource(Protocol):
    async def sample(self, metric: str, scope: Mapping[str, Any]) -> float | None:
        """Return the current value of `metric` within `scope`, or None."""
        ...


class NotificationSender(Protocol):
    async def notify(
        self,
        channel: str,
        event: str,
        recipients: Sequence[str],
        payload: Mapping[str, Any],
    ) -> None:
        ...


class EnvironmentProvisioner(Protocol):
    async def apply(
        self,
        environment: Environment,
        artifacts: Sequence[Artifact],
        version: str,
    ) -> DeploymentResult:
        ...
