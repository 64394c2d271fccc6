"""
ExecutionEngine — the orchestrator that runs a pipeline's stages in order.

Responsibilities:
    - Create, number and store the PipelineExecution
    - Run stages sequentially in a background task
    - Apply the pipeline failure strategy (stop / continue / rollback)
    - Cancellation and the global execution timeout via ExecutionSignal
    - Move the execution into exactly one terminal status
    - Publish execution lifecycle events
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from deployflow.core.config import settings as default_settings
from deployflow.core.constants import (
    FAILED_STATUSES,
    ExecutionStatus,
    FailureStrategy,
    LifecycleEventType,
    PipelineStatus,
    RollbackTriggerSource,
    StageType,
)
from deployflow.core.logging import get_logger
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.definitions import Pipeline, Stage
from deployflow.pipeline.environments import EnvironmentRegistry
from deployflow.pipeline.errors import ExecutionTerminalError, PipelineInactiveError
from deployflow.pipeline.events import EventChannel, LifecycleEvent
from deployflow.pipeline.records import ExecutionTrigger, PipelineExecution, StageExecution
from deployflow.pipeline.rollback import RollbackController
from deployflow.pipeline.signals import ExecutionSignal
from deployflow.pipeline.stage import StageExecutor
from deployflow.pipeline.store import PipelineDefinitionStore


@dataclass
class _RunningExecution:
    execution: PipelineExecution
    signal: ExecutionSignal
    task: asyncio.Task | None = None


class ExecutionEngine:
    """
    Runs PipelineExecutions against a PipelineDefinitionStore.

    Usage::

        engine = ExecutionEngine(store, stage_executor, rollbacks, environments, events)
        execution = await engine.start(pipeline, ExecutionTrigger(user="alice"))
        await engine.wait(execution.id)
    """

    def __init__(
        self,
        store: PipelineDefinitionStore,
        stage_executor: StageExecutor,
        rollbacks: RollbackController | None = None,
        environments: EnvironmentRegistry | None = None,
        events: EventChannel | None = None,
        settings=None,
    ) -> None:
        self.store = store
        self.stage_executor = stage_executor
        self.environments = environments or stage_executor.environments
        self.events = events or stage_executor.events
        self.settings = settings or default_settings
        self.rollbacks = rollbacks or RollbackController(
            self.environments, stage_executor.step_executor, self.events, settings=self.settings
        )
        self._running: dict[str, _RunningExecution] = {}
        self.logger = get_logger("pipeline.engine")

    # ─── Public API ────────────────────────────────────

    async def start(
        self,
        pipeline: Pipeline,
        trigger: ExecutionTrigger | None = None,
        variables: dict[str, Any] | None = None,
    ) -> PipelineExecution:
        """Create a running execution; stages continue in the background."""
        status = self.store.status(pipeline.id)
        if status != PipelineStatus.ACTIVE:
            raise PipelineInactiveError(f"Pipeline {pipeline.id} is {status}, not active")

        for environment in pipeline.environments:
            self.environments.register(environment)

        trigger = trigger or ExecutionTrigger()
        execution = PipelineExecution(
            pipeline_id=pipeline.id,
            pipeline_version=pipeline.version,
            number=self.store.next_execution_number(pipeline.id),
            trigger=trigger,
            variables={**pipeline.variable_defaults(), **(variables or {})},
        )
        self.store.add_execution(execution)

        context = ExecutionContext(
            execution_id=execution.id,
            pipeline_id=pipeline.id,
            pipeline_version=pipeline.version,
            execution_number=execution.number,
            trigger=trigger,
            variables=execution.variables,
            secrets=pipeline.secret_refs(),
        )
        running = _RunningExecution(execution=execution, signal=ExecutionSignal())
        self._running[execution.id] = running

        execution.status = ExecutionStatus.RUNNING
        execution.start_time = datetime.now(timezone.utc)
        self.logger.info(
            "Execution started",
            execution_id=execution.id,
            pipeline_id=pipeline.id,
            pipeline_version=pipeline.version,
            number=execution.number,
            trigger=str(trigger.type),
            user=trigger.user,
        )
        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.EXECUTION_STARTED,
            pipeline_id=pipeline.id,
            execution_id=execution.id,
            status=str(execution.status),
            payload={"number": execution.number, "trigger": trigger.to_dict()},
        ))

        running.task = asyncio.create_task(
            self._run(execution, pipeline, context, running.signal),
            name=f"execution-{execution.id}",
        )
        return execution

    def cancel(self, execution_id: str, reason: str = "Cancelled by operator") -> PipelineExecution:
        """Request cooperative cancellation; takes effect at the next boundary."""
        execution = self.store.get_execution(execution_id)
        if execution.is_terminal:
            raise ExecutionTerminalError(
                f"Execution {execution_id} already finished ({execution.status})",
                execution_id=execution_id,
            )
        running = self._running.get(execution_id)
        if running is not None:
            running.signal.cancel(reason)
            self.logger.info("Execution cancellation requested", execution_id=execution_id, reason=reason)
        return execution

    async def wait(self, execution_id: str, timeout: float | None = None) -> PipelineExecution:
        """Await an execution's terminal status."""
        running = self._running.get(execution_id)
        if running is not None and running.task is not None:
            await asyncio.wait_for(asyncio.shield(running.task), timeout=timeout)
        return self.store.get_execution(execution_id)

    def get(self, execution_id: str) -> PipelineExecution:
        return self.store.get_execution(execution_id)

    def running(self) -> list[PipelineExecution]:
        return [r.execution for r in self._running.values()]

    async def shutdown(self, reason: str = "Engine shutting down") -> None:
        """Cancel every in-flight execution and wait for them to finish."""
        tasks = []
        for running in list(self._running.values()):
            running.signal.cancel(reason)
            if running.task is not None:
                tasks.append(running.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ─── Execution loop ────────────────────────────────

    async def _run(
        self,
        execution: PipelineExecution,
        pipeline: Pipeline,
        context: ExecutionContext,
        signal: ExecutionSignal,
    ) -> None:
        log = self.logger.bind(execution_id=execution.id, pipeline_id=pipeline.id)
        timeout = pipeline.timeout_seconds
        timer = asyncio.get_running_loop().call_later(
            timeout, signal.expire, f"Execution timed out after {timeout}s"
        )
        status = ExecutionStatus.FAILURE
        reason: str | None = None
        failed_stages: list[str] = []

        try:
            for stage in pipeline.stages:
                if signal.is_set:
                    break

                if not self._condition_holds(stage, context, log):
                    self._record_skipped(execution, stage)
                    log.info("Stage skipped, condition false", stage=stage.name)
                    continue

                stage_record = await self.stage_executor.run(execution, stage, pipeline, context, signal)

                if stage_record.status in FAILED_STATUSES and not signal.is_set:
                    failed_stages.append(stage.name)
                    log.warning(
                        "Stage failed",
                        stage=stage.name,
                        reason=stage_record.reason,
                        failure_strategy=str(pipeline.failure_strategy),
                    )
                    if pipeline.failure_strategy != FailureStrategy.CONTINUE:
                        break

            if signal.is_set:
                status, reason = signal.status, signal.reason
                if (
                    status == ExecutionStatus.TIMEOUT
                    and pipeline.failure_strategy == FailureStrategy.ROLLBACK
                    and self.settings.ROLLBACK_ON_TIMEOUT
                ):
                    await self._rollback(execution, pipeline, reason)
            elif failed_stages:
                status = ExecutionStatus.FAILURE
                reason = f"Stage(s) failed: {', '.join(failed_stages)}"
                if pipeline.failure_strategy == FailureStrategy.ROLLBACK:
                    await self._rollback(execution, pipeline, reason)
            else:
                status = ExecutionStatus.SUCCESS
                reason = "All stages succeeded"

        except Exception as exc:
            log.exception("Execution crashed", error=str(exc))
            status = ExecutionStatus.FAILURE
            reason = f"Unexpected error: {type(exc).__name__}: {exc}"

        finally:
            timer.cancel()
            execution.artifacts = list(context.artifacts)
            execution.finish(status, reason)
            self.store.record_last_execution(execution)
            self.stage_executor.approvals.forget(execution.id)

        log.info(
            "Execution finished",
            status=str(execution.status),
            reason=execution.reason,
            duration_ms=execution.duration_ms,
            stages=len(execution.stages),
        )
        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.EXECUTION_COMPLETED,
            pipeline_id=pipeline.id,
            execution_id=execution.id,
            status=str(execution.status),
            payload={
                "reason": execution.reason,
                "duration_ms": execution.duration_ms,
                "rollback_id": execution.rollback.id if execution.rollback else None,
            },
        ))
        self._running.pop(execution.id, None)

    async def _rollback(self, execution: PipelineExecution, pipeline: Pipeline, reason: str | None) -> None:
        """Roll back the environment this pipeline deployed most recently."""
        environment = None
        for stage_record in reversed(execution.stages):
            if stage_record.type == StageType.DEPLOY and stage_record.environment:
                environment = stage_record.environment
                break
        if environment is None:
            environment = self.environments.last_deployed_environment(pipeline.id)

        target = None
        if environment is not None and self.environments.find(environment) is not None:
            target = self.environments.last_good_version(environment, exclude_execution=execution.id)

        execution.rollback = await self.rollbacks.rollback(
            environment,
            target,
            RollbackTriggerSource.POLICY,
            reason,
            execution_id=execution.id,
            pipeline_id=pipeline.id,
            wait=True,
        )

    # ─── Helpers ───────────────────────────────────────

    @staticmethod
    def _condition_holds(stage: Stage, context: ExecutionContext, log) -> bool:
        if stage.condition is None:
            return True
        try:
            return bool(stage.condition(context.for_stage(stage)))
        except Exception as exc:
            log.warning("Stage condition raised, running stage anyway", stage=stage.name, error=str(exc))
            return True

    @staticmethod
    def _record_skipped(execution: PipelineExecution, stage: Stage) -> None:
        record = StageExecution(
            stage_id=stage.id,
            name=stage.name,
            type=stage.type,
            skipped=True,
            environment=stage.environment,
        )
        record.finish(ExecutionStatus.SUCCESS, "Condition not met")
        execution.stages.append(record)
