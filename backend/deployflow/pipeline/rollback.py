"""
RollbackController — restore an environment to a known-good version.

Rollback steps run in reverse-dependency order (application,
configuration, infrastructure, database) through the same StepExecutor
as pipeline steps.  Every call returns a RollbackExecution, including
refused ones (unknown environment, no known-good version, limits); the
only exception raised is EnvironmentBusyError when the environment is
leased and the caller did not ask to wait.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from deployflow.core.config import settings as default_settings
from deployflow.core.constants import (
    ROLLBACK_STEP_ORDER,
    ExecutionStatus,
    LifecycleEventType,
    RollbackStepType,
    RollbackTriggerSource,
    StepType,
    TriggerType,
)
from deployflow.core.logging import get_logger
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.definitions import Environment, Step
from deployflow.pipeline.environments import EnvironmentRegistry
from deployflow.pipeline.events import EventChannel, LifecycleEvent
from deployflow.pipeline.records import ExecutionTrigger, RollbackExecution, RollbackStep
from deployflow.pipeline.step import StepExecutor

DESCRIPTIONS = {
    RollbackStepType.APPLICATION: "Restore application release",
    RollbackStepType.CONFIGURATION: "Restore configuration",
    RollbackStepType.INFRASTRUCTURE: "Restore infrastructure",
    RollbackStepType.DATABASE: "Restore database",
}


class RollbackController:

    def __init__(
        self,
        environments: EnvironmentRegistry,
        step_executor: StepExecutor,
        events: EventChannel | None = None,
        notifier=None,
        settings=None,
    ) -> None:
        self.environments = environments
        self.step_executor = step_executor
        self.events = events or EventChannel()
        self.notifier = notifier
        self.settings = settings or default_settings
        self.logger = get_logger("pipeline.rollback")

    async def rollback(
        self,
        environment: str | None,
        target_version: str | None = None,
        triggered_by: RollbackTriggerSource | str = RollbackTriggerSource.MANUAL,
        reason: str | None = None,
        *,
        trigger: dict[str, Any] | None = None,
        execution_id: str | None = None,
        pipeline_id: str | None = None,
        wait: bool = False,
    ) -> RollbackExecution:
        """
        Roll `environment` back to `target_version`.

        When no target is given the newest successful deployment of a
        different version is used.
        """
        triggered_by = RollbackTriggerSource(triggered_by)
        record = RollbackExecution(
            environment=environment,
            triggered_by=triggered_by,
            target_version=target_version,
            reason=reason,
            trigger=trigger,
            execution_id=execution_id,
        )
        log = self.logger.bind(
            rollback_id=record.id,
            environment=environment,
            triggered_by=str(triggered_by),
        )

        env = self.environments.find(environment) if environment else None
        if env is None:
            return await self._refuse(record, f"Environment {environment} is not registered", pipeline_id)

        record.previous_version = self.environments.current_version(env.name)
        if record.target_version is None:
            record.target_version = self.environments.previous_version(env.name)
        if record.target_version is None:
            return await self._refuse(record, "No known-good version to roll back to", pipeline_id)

        strategy = env.rollback_strategy
        if triggered_by != RollbackTriggerSource.MANUAL:
            if not self.environments.automatic_enabled(env.name):
                return await self._refuse(
                    record, f"Automatic rollback is disabled for {env.name}", pipeline_id
                )
            if self.environments.rollbacks_in_window(env.name) >= strategy.max_rollbacks:
                message = (
                    f"Rollback limit of {strategy.max_rollbacks} per "
                    f"{strategy.window_seconds}s reached for {env.name}"
                )
                self.environments.disable_automatic(env.name, message)
                return await self._refuse(record, message, pipeline_id)

        log.info(
            "Rollback started",
            target_version=record.target_version,
            previous_version=record.previous_version,
            reason=reason,
        )
        async with self.environments.lease(env.name, holder=f"rollback:{record.id}", wait=wait):
            failure = await self._run_steps(record, env, pipeline_id)

        if failure:
            record.finish(ExecutionStatus.FAILURE, failure)
            self.environments.disable_automatic(
                env.name, f"Rollback {record.id} failed", for_seconds=strategy.window_seconds
            )
            log.error("Rollback failed", error=failure)
        else:
            self.environments.mark_rolled_back(env.name, record.target_version, record.id)
            self.environments.record_rollback(env.name)
            record.finish(ExecutionStatus.SUCCESS)
            log.info("Rollback completed", target_version=record.target_version)

        if strategy.notifications:
            await self._notify(env, record)
        await self._publish(record, pipeline_id)
        return record

    # ─── Internal ──────────────────────────────────────

    async def _run_steps(
        self, record: RollbackExecution, env: Environment, pipeline_id: str | None
    ) -> str | None:
        strategy = env.rollback_strategy
        context = ExecutionContext(
            execution_id=record.id,
            pipeline_id=pipeline_id or "rollback",
            pipeline_version=0,
            execution_number=0,
            trigger=ExecutionTrigger(type=TriggerType.MANUAL),
            variables={"version": record.target_version},
            environment=env.name,
        )

        for component in ROLLBACK_STEP_ORDER:
            if component == RollbackStepType.DATABASE and strategy.preserve_data:
                record.preserved_data = list(strategy.preserved_data) or ["database"]
                continue

            step = Step(
                name=f"rollback-{component}",
                type=StepType.CUSTOM,
                action={
                    "operation": "rollback",
                    "component": str(component),
                    "environment": env.name,
                    "target_version": record.target_version,
                    "previous_version": record.previous_version,
                },
                retry_attempts=self.settings.ROLLBACK_STEP_RETRY_ATTEMPTS,
                timeout_seconds=self.settings.ROLLBACK_STEP_TIMEOUT_SECONDS,
            )
            rollback_step = RollbackStep(
                type=component,
                description=DESCRIPTIONS[component],
                status=ExecutionStatus.RUNNING,
                start_time=datetime.now(timezone.utc),
            )
            record.steps.append(rollback_step)

            result = await self.step_executor.run(step, context.for_step(step))
            rollback_step.status = result.status
            rollback_step.end_time = result.end_time
            rollback_step.output = result.output
            rollback_step.error = result.error
            rollback_step.retry_count = result.retry_count

            if result.status != ExecutionStatus.SUCCESS:
                return f"{DESCRIPTIONS[component]} failed: {result.error}"
        return None

    async def _refuse(
        self, record: RollbackExecution, message: str, pipeline_id: str | None
    ) -> RollbackExecution:
        record.finish(ExecutionStatus.FAILURE, message)
        self.logger.warning(
            "Rollback refused",
            rollback_id=record.id,
            environment=record.environment,
            error=message,
        )
        await self._publish(record, pipeline_id)
        return record

    async def _notify(self, env: Environment, record: RollbackExecution) -> None:
        strategy = env.rollback_strategy
        notification = {
            "channel": strategy.notification_channel,
            "recipients": list(strategy.notification_recipients),
            "status": str(record.status),
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        if self.notifier is not None:
            try:
                await self.notifier.notify(
                    strategy.notification_channel,
                    str(LifecycleEventType.ROLLBACK_EXECUTED),
                    list(strategy.notification_recipients),
                    record.to_dict(),
                )
            except Exception as exc:
                notification["error"] = str(exc)
                self.logger.warning("Rollback notification failed", rollback_id=record.id, error=str(exc))
        record.notifications.append(notification)

    async def _publish(self, record: RollbackExecution, pipeline_id: str | None) -> None:
        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.ROLLBACK_EXECUTED,
            pipeline_id=pipeline_id,
            execution_id=record.execution_id,
            status=str(record.status),
            payload={
                "rollback_id": record.id,
                "environment": record.environment,
                "triggered_by": str(record.triggered_by),
                "target_version": record.target_version,
                "error": record.error,
            },
        ))
