"""
ActionExecutorRegistry — dispatches a step action to the executor
registered for the step's type.

Lookup order:
    1. Executor registered for the action's `operation` (e.g. rollback)
    2. Executor registered for the step type
    3. The fallback executor, if one is set
    4. StepExecutionError
"""

from __future__ import annotations

from typing import Any, Mapping

from deployflow.core.constants import StepType
from deployflow.executors.rest_api import RestActionExecutor
from deployflow.executors.shell import ShellActionExecutor
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.errors import StepExecutionError
from deployflow.pipeline.interfaces import ActionExecutor, ActionResult


class ActionExecutorRegistry:

    def __init__(
        self,
        executors: dict[StepType, ActionExecutor] | None = None,
        fallback: ActionExecutor | None = None,
    ) -> None:
        self._executors: dict[StepType, ActionExecutor] = dict(executors or {})
        self._operations: dict[str, ActionExecutor] = {}
        self.fallback = fallback

    def register_operation(self, operation: str, executor: ActionExecutor) -> None:
        self._operations[operation] = executor

    def register(self, step_type: StepType | str, executor: ActionExecutor) -> None:
        self._executors[StepType(step_type)] = executor

    def resolve(self, step_type: StepType | str | None) -> ActionExecutor | None:
        if step_type is not None and StepType(step_type) in self._executors:
            return self._executors[StepType(step_type)]
        return self.fallback

    def registered_types(self) -> list[StepType]:
        return list(self._executors)

    async def execute(self, action: Mapping[str, Any], context: ExecutionContext) -> ActionResult:
        executor = self._operations.get(action.get("operation")) or self.resolve(context.step_type)
        if executor is None:
            raise StepExecutionError(
                f"No executor registered for step type '{context.step_type}'",
                execution_id=context.execution_id,
                step_name=context.step_name,
            )
        return await executor.execute(action, context)


def default_registry(provisioner=None) -> ActionExecutorRegistry:
    """Shell for command-line tooling, httpx for REST steps, rollbacks to the provisioner."""
    shell = ShellActionExecutor()
    registry = ActionExecutorRegistry(fallback=shell)
    for step_type in (
        StepType.SHELL,
        StepType.DOCKER,
        StepType.KUBERNETES,
        StepType.TERRAFORM,
        StepType.ANSIBLE,
        StepType.AWS_CLI,
        StepType.AZURE_CLI,
        StepType.GCP_CLI,
    ):
        registry.register(step_type, shell)
    registry.register(StepType.REST_API, RestActionExecutor())
    if provisioner is not None:
        registry.register_operation("rollback", provisioner)
    return registry
