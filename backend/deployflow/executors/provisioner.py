"""DryRunProvisioner — records the requested deployment without touching infrastructure."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from deployflow.core.constants import ExecutionStatus
from deployflow.core.logging import get_logger
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.definitions import Environment
from deployflow.pipeline.interfaces import ActionResult
from deployflow.pipeline.records import Artifact, DeploymentResult

logger = get_logger(__name__)


class DryRunProvisioner:
    """
    Deployments and rollback operations both succeed immediately.

    Doubles as the action executor for `{"operation": "rollback"}`
    actions issued by the RollbackController.
    """

    async def apply(
        self,
        environment: Environment,
        artifacts: Sequence[Artifact],
        version: str,
    ) -> DeploymentResult:
        logger.info(
            "Dry-run deployment",
            environment=environment.name,
            version=version,
            artifacts=[a.name for a in artifacts],
        )
        return DeploymentResult(
            status=ExecutionStatus.SUCCESS,
            environment=environment.name,
            version=version,
            output=f"dry-run: {version} -> {environment.name} ({len(artifacts)} artifacts)",
            artifacts=list(artifacts),
        )

    async def execute(self, action: Mapping[str, Any], context: ExecutionContext) -> ActionResult:
        logger.info(
            "Dry-run rollback",
            environment=action.get("environment"),
            component=action.get("component"),
            target_version=action.get("target_version"),
        )
        return ActionResult(
            output=(
                f"dry-run: {action.get('component')} of {action.get('environment')} "
                f"restored to {action.get('target_version')}"
            ),
        )
