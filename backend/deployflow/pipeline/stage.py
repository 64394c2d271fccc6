"""
StageExecutor — runs one stage: steps, then gates, then approvals,
then (for deploy stages) the environment provisioner.

Step scheduling:
    sequential  steps run in declaration order
    parallel    steps run as concurrent asyncio tasks; `depends_on`
                holds a step back until its dependencies finish

A step whose dependency did not succeed is recorded `cancelled`.
Without `continue_on_failure` the first blocking failure decides the
stage: steps already in flight are awaited and recorded, steps not yet
started are recorded `cancelled`.  With `continue_on_failure` every
remaining step still runs and the stage fails at the end.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from deployflow.core.config import settings as default_settings
from deployflow.core.constants import (
    ApprovalStatus,
    ExecutionStatus,
    GateStatus,
    LifecycleEventType,
    StageType,
)
from deployflow.core.logging import get_logger
from deployflow.pipeline.approvals import ApprovalCoordinator
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.definitions import Pipeline, Stage, Step
from deployflow.pipeline.environments import EnvironmentRegistry
from deployflow.pipeline.errors import EnvironmentBusyError
from deployflow.pipeline.events import EventChannel, LifecycleEvent
from deployflow.pipeline.gates import QualityGateEvaluator
from deployflow.pipeline.records import (
    DeploymentResult,
    PipelineExecution,
    StageExecution,
    StepExecution,
)
from deployflow.pipeline.signals import ExecutionSignal
from deployflow.pipeline.step import StepExecutor


class StageExecutor:

    def __init__(
        self,
        step_executor: StepExecutor,
        gate_evaluator: QualityGateEvaluator | None = None,
        approvals: ApprovalCoordinator | None = None,
        environments: EnvironmentRegistry | None = None,
        provisioner=None,
        metrics_source=None,
        events: EventChannel | None = None,
        settings=None,
    ) -> None:
        self.step_executor = step_executor
        self.gate_evaluator = gate_evaluator or QualityGateEvaluator()
        self.events = events or EventChannel()
        self.approvals = approvals or ApprovalCoordinator(events=self.events)
        self.environments = environments or EnvironmentRegistry()
        self.provisioner = provisioner
        self.metrics_source = metrics_source
        self.settings = settings or default_settings
        self.logger = get_logger("pipeline.stage")

    async def run(
        self,
        execution: PipelineExecution,
        stage: Stage,
        pipeline: Pipeline,
        context: ExecutionContext,
        signal: ExecutionSignal,
    ) -> StageExecution:
        record = StageExecution(
            stage_id=stage.id,
            name=stage.name,
            type=stage.type,
            status=ExecutionStatus.RUNNING,
            start_time=datetime.now(timezone.utc),
            environment=stage.environment,
        )
        execution.stages.append(record)

        stage_ctx = context.for_stage(stage)
        stage_signal = signal.child()
        timeout = self._stage_timeout(stage)
        timer = asyncio.get_running_loop().call_later(
            timeout, stage_signal.expire, f"Stage {stage.name} timed out after {timeout}s"
        )
        log = self.logger.bind(execution_id=execution.id, stage=stage.name)
        log.info(
            "Stage started",
            stage_type=str(stage.type),
            steps=len(stage.steps),
            parallel=stage.parallel_execution,
        )
        await self._publish(LifecycleEventType.STAGE_STARTED, execution, record)

        try:
            if stage.type == StageType.DEPLOY:
                try:
                    async with self.environments.lease(
                        stage.environment,
                        holder=execution.id,
                        wait=pipeline.queue_deployments,
                    ):
                        await self._execute(record, execution, stage, pipeline, stage_ctx, stage_signal)
                except EnvironmentBusyError as exc:
                    log.warning("Environment busy", environment=exc.environment, holder=exc.holder)
                    record.finish(
                        ExecutionStatus.FAILURE,
                        f"Environment {exc.environment} busy (held by {exc.holder})",
                    )
            else:
                await self._execute(record, execution, stage, pipeline, stage_ctx, stage_signal)
        finally:
            timer.cancel()

        log.info(
            "Stage finished",
            status=str(record.status),
            reason=record.reason,
            duration_ms=record.duration_ms,
            warnings=len(record.warnings),
        )
        await self._publish(LifecycleEventType.STAGE_COMPLETED, execution, record)
        return record

    # ─── Phases ────────────────────────────────────────

    async def _execute(
        self,
        record: StageExecution,
        execution: PipelineExecution,
        stage: Stage,
        pipeline: Pipeline,
        ctx: ExecutionContext,
        signal: ExecutionSignal,
    ) -> None:
        if stage.parallel_execution:
            failed = await self._run_parallel(record, stage, pipeline, ctx, signal)
        else:
            failed = await self._run_sequential(record, stage, pipeline, ctx, signal)

        if failed:
            record.finish(ExecutionStatus.FAILURE, f"Step(s) failed: {', '.join(failed)}")
            return
        if self._interrupted(record, signal):
            return

        gate_failure = await self._evaluate_gates(record, execution, stage, ctx)
        if gate_failure:
            record.finish(ExecutionStatus.FAILURE, gate_failure)
            return
        if self._interrupted(record, signal):
            return

        approval_failure = await self._await_approvals(record, execution, stage, signal)
        if self._interrupted(record, signal):
            return
        if approval_failure:
            record.finish(ExecutionStatus.FAILURE, approval_failure)
            return

        if stage.type == StageType.DEPLOY:
            deploy_failure = await self._deploy(record, execution, stage, pipeline, ctx)
            if deploy_failure:
                record.finish(ExecutionStatus.FAILURE, deploy_failure)
                return

        record.finish(ExecutionStatus.SUCCESS)

    async def _run_sequential(
        self,
        record: StageExecution,
        stage: Stage,
        pipeline: Pipeline,
        ctx: ExecutionContext,
        signal: ExecutionSignal,
    ) -> list[str]:
        failed: list[str] = []
        results: dict[str, StepExecution] = {}

        for index, step in enumerate(stage.steps):
            if signal.is_set:
                for rest in stage.steps[index:]:
                    record.steps.append(self._cancelled(rest, signal.reason))
                break

            unmet = [d for d in step.depends_on if d in results and not results[d].satisfied]
            if unmet:
                result = self._cancelled(step, f"Dependency {', '.join(unmet)} did not succeed")
            else:
                result = await self._run_step(step, pipeline, ctx, signal)
            results[step.name] = result
            record.steps.append(result)

            if result.blocks_stage:
                failed.append(step.name)
                if not stage.continue_on_failure:
                    for rest in stage.steps[index + 1:]:
                        record.steps.append(
                            self._cancelled(rest, f"Not started, step {step.name} failed")
                        )
                    break

        return failed

    async def _run_parallel(
        self,
        record: StageExecution,
        stage: Stage,
        pipeline: Pipeline,
        ctx: ExecutionContext,
        signal: ExecutionSignal,
    ) -> list[str]:
        failed: list[str] = []
        results: dict[str, StepExecution] = {}
        waiting: dict[str, Step] = {s.name: s for s in stage.steps}
        running: dict[asyncio.Task, Step] = {}
        abort_reason: str | None = None

        while waiting or running:
            # Launch or cancel everything whose dependencies are settled.
            progressed = True
            while progressed and waiting:
                progressed = False
                if abort_reason is None and signal.is_set:
                    abort_reason = signal.reason
                for name, step in list(waiting.items()):
                    if abort_reason is not None:
                        results[name] = self._cancelled(step, abort_reason)
                    elif all(d in results for d in step.depends_on):
                        unmet = [d for d in step.depends_on if not results[d].satisfied]
                        if unmet:
                            results[name] = self._cancelled(
                                step, f"Dependency {', '.join(unmet)} did not succeed"
                            )
                        else:
                            task = asyncio.create_task(self._run_step(step, pipeline, ctx, signal))
                            running[task] = step
                    else:
                        continue
                    del waiting[name]
                    progressed = True

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                step = running.pop(task)
                try:
                    result = task.result()
                except Exception as exc:
                    self.logger.error("Parallel step crashed", step=step.name, error=str(exc))
                    result = StepExecution(
                        step_id=step.id, name=step.name, continue_on_error=step.continue_on_error
                    )
                    result.finish(ExecutionStatus.FAILURE, f"{type(exc).__name__}: {exc}")
                results[step.name] = result
                if result.blocks_stage:
                    failed.append(step.name)
                    if not stage.continue_on_failure and abort_reason is None:
                        abort_reason = f"Not started, step {step.name} failed"

        record.steps.extend(results[s.name] for s in stage.steps if s.name in results)
        return [s.name for s in stage.steps if s.name in failed]

    async def _run_step(
        self,
        step: Step,
        pipeline: Pipeline,
        ctx: ExecutionContext,
        signal: ExecutionSignal,
    ) -> StepExecution:
        step_ctx = ctx.for_step(step)
        result = await self.step_executor.run(
            step,
            step_ctx,
            retry_attempts=pipeline.retry_attempts,
            timeout=pipeline.step_timeout_seconds,
            signal=signal,
        )
        step_ctx.record_step(result)
        return result

    async def _evaluate_gates(
        self,
        record: StageExecution,
        execution: PipelineExecution,
        stage: Stage,
        ctx: ExecutionContext,
    ) -> str | None:
        scope = {
            "execution_id": execution.id,
            "pipeline_id": execution.pipeline_id,
            "stage": stage.name,
            "environment": stage.environment,
            "version": ctx.version,
        }
        for gate in stage.gates:
            value = await self._sample(gate.metric, scope)
            result = self.gate_evaluator.evaluate(gate, value)
            record.quality_gates.append(result)
            self.logger.info(
                "Quality gate evaluated",
                execution_id=execution.id,
                stage=stage.name,
                gate=gate.name,
                status=str(result.status),
                value=value,
            )
            if result.status == GateStatus.FAILED and gate.fail_pipeline:
                return f"Quality gate failed: {result.message}"
            if result.status != GateStatus.PASSED:
                record.warnings.append(result.message)
        return None

    async def _await_approvals(
        self,
        record: StageExecution,
        execution: PipelineExecution,
        stage: Stage,
        signal: ExecutionSignal,
    ) -> str | None:
        if not stage.approvals:
            return None

        record.status = ExecutionStatus.WAITING_APPROVAL
        execution.status = ExecutionStatus.WAITING_APPROVAL
        try:
            requested = [
                await self.approvals.request(execution, record, approval)
                for approval in stage.approvals
            ]
            for index, approval in enumerate(requested):
                status = await self.approvals.wait(approval.id, signal)
                if status == ApprovalStatus.APPROVED:
                    continue
                for other in requested[index + 1:]:
                    self.approvals.withdraw(other.id, f"Approval {approval.id} {status}")
                if status == ApprovalStatus.CANCELLED:
                    return None
                return f"Approval {status}"
            return None
        finally:
            record.status = ExecutionStatus.RUNNING
            if execution.status == ExecutionStatus.WAITING_APPROVAL:
                execution.status = ExecutionStatus.RUNNING

    async def _deploy(
        self,
        record: StageExecution,
        execution: PipelineExecution,
        stage: Stage,
        pipeline: Pipeline,
        ctx: ExecutionContext,
    ) -> str | None:
        environment = pipeline.environment(stage.environment)
        version = ctx.version

        if self.provisioner is None:
            result = DeploymentResult(
                status=ExecutionStatus.SUCCESS,
                environment=environment.name,
                version=version,
                output="No provisioner configured",
            )
        else:
            try:
                result = await self.provisioner.apply(environment, list(ctx.artifacts), version)
            except Exception as exc:
                result = DeploymentResult(
                    status=ExecutionStatus.FAILURE,
                    environment=environment.name,
                    version=version,
                    error=f"{type(exc).__name__}: {exc}",
                )
        record.deployment = result

        if not result.succeeded:
            self.logger.error(
                "Deployment failed",
                execution_id=execution.id,
                environment=environment.name,
                version=version,
                error=result.error,
            )
            return f"Deployment to {environment.name} failed: {result.error}"

        self.environments.record_deployment(
            environment.name, version, execution.id, execution.pipeline_id
        )
        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.DEPLOYMENT_COMPLETED,
            pipeline_id=execution.pipeline_id,
            execution_id=execution.id,
            stage_id=record.stage_id,
            status=str(result.status),
            payload={"environment": environment.name, "version": version},
        ))
        return None

    # ─── Helpers ───────────────────────────────────────

    def _stage_timeout(self, stage: Stage) -> float:
        if stage.timeout_seconds is not None:
            return stage.timeout_seconds
        timeout = self.settings.DEFAULT_STAGE_TIMEOUT_SECONDS
        if stage.approvals:
            # default budget does not count time spent waiting for humans
            timeout += sum(a.timeout_seconds for a in stage.approvals)
        return timeout

    async def _sample(self, metric: str, scope: dict[str, Any]) -> float | None:
        if self.metrics_source is None:
            return None
        try:
            return await self.metrics_source.sample(metric, scope)
        except Exception as exc:
            self.logger.warning("Metric sample failed", metric=metric, error=str(exc))
            return None

    @staticmethod
    def _interrupted(record: StageExecution, signal: ExecutionSignal) -> bool:
        if signal.is_set:
            record.finish(signal.status, signal.reason)
            return True
        return False

    @staticmethod
    def _cancelled(step: Step, reason: str | None) -> StepExecution:
        result = StepExecution(
            step_id=step.id, name=step.name, continue_on_error=step.continue_on_error
        )
        result.finish(ExecutionStatus.CANCELLED, reason)
        return result

    async def _publish(
        self,
        event_type: LifecycleEventType,
        execution: PipelineExecution,
        record: StageExecution,
    ) -> None:
        await self.events.publish(LifecycleEvent(
            type=event_type,
            pipeline_id=execution.pipeline_id,
            execution_id=execution.id,
            stage_id=record.stage_id,
            status=str(record.status),
            payload={"name": record.name, "type": str(record.type), "reason": record.reason},
        ))
