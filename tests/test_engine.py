"""Execution engine: ordering, failure strategies, cancellation, timeouts."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from deployflow.core.constants import (
    ExecutionStatus,
    FailureStrategy,
    GateOperator,
    LifecycleEventType,
    PipelineStatus,
    RollbackTriggerSource,
)
from deployflow.pipeline import conditions
from deployflow.pipeline.definitions import NotificationRule, PipelineVariable, QualityGate
from deployflow.pipeline.errors import ExecutionTerminalError, PipelineInactiveError
from deployflow.pipeline.interfaces import ActionResult
from deployflow.pipeline.records import ExecutionTrigger
from tests.conftest import deploy_stage, make_pipeline, run_pipeline, stage, step, wait_for


class TestExecutionLifecycle:

    async def test_all_stages_succeed(self, service, executor):
        pipeline = make_pipeline(stage("build", "compile"), stage("test", "unit", "lint"))
        execution = await run_pipeline(service, pipeline)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.reason == "All stages succeeded"
        assert [s.name for s in execution.stages] == ["build", "test"]
        assert executor.steps_called() == ["compile", "unit", "lint"]
        assert execution.metrics.total_steps == 3
        assert execution.metrics.successful_steps == 3
        assert execution.end_time is not None
        assert execution.duration_ms >= 0

    async def test_executions_numbered_per_pipeline(self, service):
        pipeline = await service.create_pipeline(make_pipeline(stage("build")))

        first = await run_pipeline(service, pipeline)
        second = await run_pipeline(service, pipeline)

        assert (first.number, second.number) == (1, 2)
        assert service.store.last_execution(pipeline.id) is second

    async def test_lifecycle_events_published_in_order(self, service, recorder):
        await run_pipeline(service, make_pipeline(stage("build")))

        types = recorder.types()
        assert types[0] == "pipeline_created"
        assert types[1] == "execution_started"
        assert types.index("stage_started") < types.index("stage_completed")
        assert types[-1] == "execution_completed"

    async def test_paused_pipeline_refuses_to_run(self, service):
        pipeline = await service.create_pipeline(make_pipeline(stage("build")))
        service.set_status(pipeline.id, PipelineStatus.PAUSED)

        with pytest.raises(PipelineInactiveError):
            await service.execute_pipeline(pipeline.id)

    async def test_pinned_version_runs_old_definition(self, service, executor):
        pipeline = await service.create_pipeline(make_pipeline(stage("build", "old-step")))
        await service.update_pipeline(pipeline.id, make_pipeline(stage("build", "new-step")))

        execution = await service.execute_pipeline(pipeline.id, version=1)
        execution = await service.engine.wait(execution.id, timeout=5)

        assert execution.pipeline_version == 1
        assert executor.steps_called() == ["old-step"]

    async def test_crash_in_stage_executor_finishes_execution(self, service):
        pipeline = await service.create_pipeline(make_pipeline(stage("build")))
        with patch.object(service.stage_executor, "run", AsyncMock(side_effect=RuntimeError("boom"))):
            execution = await run_pipeline(service, pipeline)

        assert execution.status == ExecutionStatus.FAILURE
        assert execution.reason == "Unexpected error: RuntimeError: boom"

    async def test_failing_subscriber_is_ignored(self, service):
        broken = AsyncMock()
        broken.handle.side_effect = RuntimeError("subscriber down")
        service.events.subscribe(broken)

        execution = await run_pipeline(service, make_pipeline(stage("build")))

        assert execution.status == ExecutionStatus.SUCCESS
        assert broken.handle.await_count > 0

    async def test_notification_rules_forward_events(self, service, notifier):
        pipeline = make_pipeline(
            stage("build"),
            notifications=(
                NotificationRule(
                    event=LifecycleEventType.EXECUTION_COMPLETED,
                    channel="slack",
                    recipients=("#deploys",),
                ),
            ),
        )
        execution = await run_pipeline(service, pipeline)

        (sent,) = [n for n in notifier.sent if n["channel"] == "slack"]
        assert sent["event"] == "execution_completed"
        assert sent["recipients"] == ["#deploys"]
        assert sent["payload"]["execution_id"] == execution.id


class TestVariablesAndConditions:

    async def test_execution_variables_override_defaults(self, service, executor):
        pipeline = make_pipeline(
            stage("build"),
            variables=(PipelineVariable(key="region", value="eu"), PipelineVariable(key="tier", value="web")),
        )
        execution = await run_pipeline(service, pipeline, {"region": "us"})

        assert execution.variables == {"region": "us", "tier": "web"}
        assert executor.calls[0]["variables"]["region"] == "us"

    async def test_outputs_shared_across_stages(self, service, executor):
        executor.script["resolve"] = [ActionResult(output="sha-123")]
        seen = {}

        def capture(ctx):
            seen["resolve"] = ctx.outputs.get("resolve")
            return True

        await run_pipeline(service, make_pipeline(
            stage("source", "resolve"),
            stage("build", steps=(step("compile", condition=capture),)),
        ))

        assert seen == {"resolve": "sha-123"}

    async def test_false_stage_condition_skips_stage(self, service, executor):
        pipeline = make_pipeline(
            stage("build"),
            deploy_stage("deploy", "production", condition=conditions.branch_in("main", "release/*")),
        )
        execution = await run_pipeline(
            service, pipeline, trigger=ExecutionTrigger(user="ci", branch="feature/login")
        )

        deploy = execution.stage("deploy")
        assert deploy.skipped is True
        assert deploy.status == ExecutionStatus.SUCCESS
        assert deploy.reason == "Condition not met"
        assert "release" not in executor.steps_called()
        assert execution.status == ExecutionStatus.SUCCESS

    async def test_matching_stage_condition_runs_stage(self, service, provisioner):
        pipeline = make_pipeline(
            deploy_stage("deploy", "production", condition=conditions.branch_in("release/*")),
        )
        execution = await run_pipeline(
            service, pipeline, trigger=ExecutionTrigger(user="ci", branch="release/2.0")
        )

        assert execution.stage("deploy").skipped is False
        assert provisioner.applied[0]["environment"] == "production"

    async def test_raising_stage_condition_runs_stage(self, service, executor):
        def broken(ctx):
            raise KeyError("missing")

        execution = await run_pipeline(service, make_pipeline(stage("build", "compile", condition=broken)))

        assert executor.steps_called() == ["compile"]
        assert execution.status == ExecutionStatus.SUCCESS


class TestFailureStrategies:

    async def test_stop_skips_later_stages(self, service, executor):
        executor.script["unit"] = [1]
        execution = await run_pipeline(service, make_pipeline(
            stage("build"), stage("test", "unit"), stage("package", "bundle"),
        ))

        assert execution.status == ExecutionStatus.FAILURE
        assert execution.reason == "Stage(s) failed: test"
        assert [s.name for s in execution.stages] == ["build", "test"]
        assert "bundle" not in executor.steps_called()

    async def test_continue_runs_every_stage_but_fails(self, service, executor):
        executor.script["unit"] = [1]
        execution = await run_pipeline(service, make_pipeline(
            stage("build"), stage("test", "unit"), stage("package", "bundle"),
            failure_strategy=FailureStrategy.CONTINUE,
        ))

        assert execution.status == ExecutionStatus.FAILURE
        assert execution.reason == "Stage(s) failed: test"
        assert execution.stage("package").status == ExecutionStatus.SUCCESS

    async def test_rollback_restores_last_good_version(self, service, executor):
        pipeline = await service.create_pipeline(make_pipeline(
            deploy_stage("deploy", "production"),
            stage("verify", "smoke"),
            failure_strategy=FailureStrategy.ROLLBACK,
        ))
        first = await run_pipeline(service, pipeline, {"version": "1.0"})
        assert first.status == ExecutionStatus.SUCCESS

        executor.script["smoke"] = [1]
        second = await run_pipeline(service, pipeline, {"version": "2.0"})

        assert second.status == ExecutionStatus.FAILURE
        assert second.reason == "Stage(s) failed: verify"
        rollback = second.rollback
        assert rollback.status == ExecutionStatus.SUCCESS
        assert rollback.triggered_by == RollbackTriggerSource.POLICY
        assert rollback.target_version == "1.0"
        assert rollback.previous_version == "2.0"
        assert rollback.execution_id == second.id
        assert [str(s.type) for s in rollback.steps] == ["application", "configuration", "infrastructure"]
        assert rollback.preserved_data == ["database"]

        assert service.environments.current_version("production") == "1.0"
        history = service.environments.history("production")
        assert [(r.version, str(r.status)) for r in history] == [
            ("1.0", "success"), ("2.0", "rolled_back"), ("1.0", "success"),
        ]

    async def test_rollback_without_good_version_is_refused(self, service, provisioner):
        provisioner.fail_environments.add("production")
        execution = await run_pipeline(service, make_pipeline(
            deploy_stage("deploy", "production"),
            failure_strategy=FailureStrategy.ROLLBACK,
        ))

        assert execution.status == ExecutionStatus.FAILURE
        assert execution.rollback.status == ExecutionStatus.FAILURE
        assert execution.rollback.error == "No known-good version to roll back to"


class TestCancellationAndTimeout:

    async def test_cancel_running_execution(self, service, executor):
        executor.delays["compile"] = 0.1
        pipeline = await service.create_pipeline(make_pipeline(stage("build", "compile"), stage("test")))
        execution = await service.execute_pipeline(pipeline.id)
        await wait_for(lambda: executor.active > 0)

        service.cancel_execution(execution.id, "superseded by newer commit")
        execution = await service.engine.wait(execution.id, timeout=5)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.reason == "superseded by newer commit"
        assert execution.stage("build").status == ExecutionStatus.CANCELLED
        assert execution.stage("test") is None

    async def test_cancel_finished_execution_refused(self, service):
        execution = await run_pipeline(service, make_pipeline(stage("build")))

        with pytest.raises(ExecutionTerminalError):
            service.cancel_execution(execution.id)

    async def test_global_timeout(self, service, executor):
        executor.delays["compile"] = 0.2
        execution = await run_pipeline(service, make_pipeline(
            stage("build", "compile"), stage("test"), timeout_seconds=0.05,
        ))

        assert execution.status == ExecutionStatus.TIMEOUT
        assert execution.reason == "Execution timed out after 0.05s"
        assert execution.stage("test") is None

    async def test_shutdown_cancels_in_flight_executions(self, service, executor):
        executor.delays["compile"] = 0.1
        pipeline = await service.create_pipeline(make_pipeline(stage("build", "compile"), stage("test")))
        execution = await service.execute_pipeline(pipeline.id)
        await asyncio.sleep(0)

        await service.shutdown()

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.reason == "Engine shutting down"
        assert service.engine.running() == []


class TestEndToEnd:

    async def test_deploy_step_recovers_within_retry_budget(self, service, executor, provisioner):
        executor.script["release"] = [1, 1, 0]
        execution = await run_pipeline(service, make_pipeline(
            stage("build", "compile"),
            stage("test", "unit"),
            deploy_stage("deploy", "staging", steps=(step("release", retry_attempts=2),)),
        ), {"version": "3.1"})

        assert execution.status == ExecutionStatus.SUCCESS
        release = execution.stage("deploy").steps[0]
        assert release.status == ExecutionStatus.SUCCESS
        assert release.retry_count == 2
        assert executor.steps_called().count("release") == 3
        assert provisioner.applied[0]["version"] == "3.1"

    async def test_blocking_coverage_gate_stops_before_deploy(self, service, executor, metrics, provisioner):
        metrics.values["coverage"] = 70
        execution = await run_pipeline(service, make_pipeline(
            stage("build", "compile"),
            stage("test", "unit", gates=(
                QualityGate(name="coverage", metric="coverage", operator=GateOperator.GTE, threshold=80),
            )),
            deploy_stage("deploy", "staging"),
            failure_strategy=FailureStrategy.STOP,
        ))

        assert execution.status == ExecutionStatus.FAILURE
        assert execution.stage("test").status == ExecutionStatus.FAILURE
        assert execution.stage("deploy") is None
        assert "release" not in executor.steps_called()
        assert provisioner.applied == []

    async def test_terminal_execution_is_stable(self, service):
        execution = await run_pipeline(service, make_pipeline(stage("build")))
        first = service.engine.get(execution.id).to_dict()

        await asyncio.sleep(0.02)
        for _ in range(3):
            again = service.engine.get(execution.id)
            assert again.status == first["status"]
            assert again.to_dict()["end_time"] == first["end_time"]
            assert again.duration_ms == first["duration_ms"]
        with pytest.raises(ExecutionTerminalError):
            service.cancel_execution(execution.id)
        assert service.engine.get(execution.id).to_dict() == first
