"""
DeploymentService — composition root for the pipeline engine.

Builds every component once and wires them through explicit
constructor arguments; the HTTP API, the Celery worker and the tests
all go through this object.

Usage::

    service = DeploymentService()
    pipeline = await service.create_pipeline(Pipeline(name="web", stages=(...)))
    execution = await service.execute_pipeline(pipeline.id, ExecutionTrigger(user="alice"))
    await service.engine.wait(execution.id)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from deployflow.core.config import settings as default_settings
from deployflow.core.constants import (
    ApprovalDecision,
    LifecycleEventType,
    PipelineStatus,
    RollbackTriggerSource,
)
from deployflow.core.logging import get_logger
from deployflow.executors import (
    DryRunProvisioner,
    LoggingNotificationSender,
    StaticMetricsSource,
    default_registry,
)
from deployflow.pipeline.approvals import ApprovalCoordinator
from deployflow.pipeline.definitions import Pipeline
from deployflow.pipeline.engine import ExecutionEngine
from deployflow.pipeline.environments import EnvironmentRegistry
from deployflow.pipeline.errors import ApprovalNotFoundError
from deployflow.pipeline.events import (
    EventChannel,
    LifecycleEvent,
    LoggingEventSubscriber,
    NotificationEventSubscriber,
)
from deployflow.pipeline.gates import QualityGateEvaluator
from deployflow.pipeline.metrics import PipelineMetrics, calculate_pipeline_metrics
from deployflow.pipeline.monitor import HealthMonitor
from deployflow.pipeline.records import (
    ApprovalExecution,
    ExecutionTrigger,
    PipelineExecution,
    RollbackExecution,
)
from deployflow.pipeline.rollback import RollbackController
from deployflow.pipeline.stage import StageExecutor
from deployflow.pipeline.step import StepExecutor
from deployflow.pipeline.store import PipelineDefinitionStore
from deployflow.pipeline.templates import TemplateRegistry

logger = get_logger(__name__)


class DeploymentService:

    def __init__(
        self,
        executor=None,
        metrics_source=None,
        notifier=None,
        provisioner=None,
        settings=None,
        backoff_base: float | None = None,
        subscribers: list | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.provisioner = provisioner or DryRunProvisioner()
        self.executor = executor or default_registry(self.provisioner)
        self.metrics_source = metrics_source or StaticMetricsSource()
        self.notifier = notifier or LoggingNotificationSender()

        self.store = PipelineDefinitionStore()
        self.events = EventChannel()
        self.events.subscribe(LoggingEventSubscriber())
        self.events.subscribe(NotificationEventSubscriber(self.notifier, self.store))
        for subscriber in subscribers or ():
            self.events.subscribe(subscriber)

        self.environments = EnvironmentRegistry()
        self.step_executor = StepExecutor(self.executor, backoff_base=backoff_base)
        self.gates = QualityGateEvaluator()
        self.approvals = ApprovalCoordinator(self.notifier, self.events)
        self.rollbacks = RollbackController(
            self.environments, self.step_executor, self.events, self.notifier, self.settings
        )
        self.stage_executor = StageExecutor(
            self.step_executor,
            self.gates,
            self.approvals,
            self.environments,
            self.provisioner,
            self.metrics_source,
            self.events,
            self.settings,
        )
        self.engine = ExecutionEngine(
            self.store,
            self.stage_executor,
            self.rollbacks,
            self.environments,
            self.events,
            self.settings,
        )
        self.monitor = HealthMonitor(self.environments, self.metrics_source, self.rollbacks)
        self.templates = TemplateRegistry()

    # ─── Pipelines ─────────────────────────────────────

    async def create_pipeline(
        self, pipeline: Pipeline, status: PipelineStatus = PipelineStatus.ACTIVE
    ) -> Pipeline:
        pipeline = self.store.add(pipeline, status)
        for environment in pipeline.environments:
            self.environments.register(environment)
        await self.events.publish(LifecycleEvent(
            type=LifecycleEventType.PIPELINE_CREATED,
            pipeline_id=pipeline.id,
            status=str(status),
            payload={"name": pipeline.name, "version": pipeline.version,
                     "created_by": pipeline.created_by},
        ))
        return pipeline

    async def update_pipeline(self, pipeline_id: str, pipeline: Pipeline) -> Pipeline:
        updated = self.store.add_version(pipeline_id, pipeline)
        for environment in updated.environments:
            self.environments.register(environment)
        return updated

    async def create_from_template(self, template_id: str, name: str, **customizations: Any) -> Pipeline:
        pipeline = self.templates.create_pipeline(template_id, name, **customizations)
        return await self.create_pipeline(pipeline)

    def set_status(self, pipeline_id: str, status: PipelineStatus) -> None:
        self.store.set_status(pipeline_id, status)
        logger.info("Pipeline status changed", pipeline_id=pipeline_id, status=str(status))

    # ─── Executions ────────────────────────────────────

    async def execute_pipeline(
        self,
        pipeline_id: str,
        trigger: ExecutionTrigger | None = None,
        variables: dict[str, Any] | None = None,
        version: int | None = None,
    ) -> PipelineExecution:
        pipeline = self.store.get(pipeline_id, version)
        return await self.engine.start(pipeline, trigger, variables)

    def cancel_execution(self, execution_id: str, reason: str = "Cancelled by operator") -> PipelineExecution:
        return self.engine.cancel(execution_id, reason)

    async def decide(
        self,
        execution_id: str,
        approval_execution_id: str,
        decision: ApprovalDecision | str,
        approver: str,
        comments: str | None = None,
    ) -> ApprovalExecution:
        try:
            approval = self.approvals.get(approval_execution_id)
        except ApprovalNotFoundError:
            # finished executions keep their approvals only on the stage records
            approval = self._recorded_approval(execution_id, approval_execution_id)
            logger.warning(
                "Decision ignored, execution already finished",
                execution_id=execution_id,
                approval_execution_id=approval_execution_id,
                approver=approver,
                status=str(approval.status),
            )
            return approval
        if approval.execution_id != execution_id:
            raise ApprovalNotFoundError(
                f"Approval {approval_execution_id} does not belong to execution {execution_id}",
                execution_id=execution_id,
            )
        return await self.approvals.decide(approval_execution_id, decision, approver, comments)

    def _recorded_approval(self, execution_id: str, approval_execution_id: str) -> ApprovalExecution:
        execution = self.engine.get(execution_id)
        for stage_record in execution.stages:
            for approval in stage_record.approvals:
                if approval.id == approval_execution_id:
                    return approval
        raise ApprovalNotFoundError(
            f"Approval {approval_execution_id} not found",
            execution_id=execution_id,
        )

    # ─── Rollback ──────────────────────────────────────

    async def rollback(
        self,
        environment: str,
        target_version: str | None = None,
        reason: str | None = None,
        wait: bool = False,
    ) -> RollbackExecution:
        self.environments.get(environment)
        return await self.rollbacks.rollback(
            environment, target_version, RollbackTriggerSource.MANUAL, reason, wait=wait
        )

    # ─── Queries ───────────────────────────────────────

    def metrics(
        self,
        pipeline_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> PipelineMetrics:
        return calculate_pipeline_metrics(
            self.store.list_executions(pipeline_id), start, end, pipeline_id=pipeline_id
        )

    async def shutdown(self) -> None:
        await self.engine.shutdown()
