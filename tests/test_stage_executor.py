"""Stage execution: step scheduling, gates, approvals and deployment."""

import asyncio

import pytest

from deployflow.core.constants import ExecutionStatus, GateOperator, GateStatus
from deployflow.pipeline.definitions import QualityGate, StageApproval
from deployflow.pipeline.interfaces import ActionResult
from tests.conftest import deploy_stage, make_pipeline, run_pipeline, stage, step, wait_for


def _steps(execution, stage_name="build"):
    return {s.name: s for s in execution.stage(stage_name).steps}


class TestSequentialSteps:

    async def test_steps_run_in_declaration_order(self, service, executor):
        execution = await run_pipeline(service, make_pipeline(stage("build", "fetch", "compile", "package")))

        assert execution.status == ExecutionStatus.SUCCESS
        assert executor.steps_called() == ["fetch", "compile", "package"]
        assert [s.name for s in execution.stage("build").steps] == ["fetch", "compile", "package"]

    async def test_failure_cancels_remaining_steps(self, service, executor):
        executor.script["compile"] = [1]
        execution = await run_pipeline(service, make_pipeline(stage("build", "fetch", "compile", "package")))

        steps = _steps(execution)
        assert steps["compile"].status == ExecutionStatus.FAILURE
        assert steps["package"].status == ExecutionStatus.CANCELLED
        assert "compile" in steps["package"].error
        assert execution.stage("build").status == ExecutionStatus.FAILURE
        assert execution.stage("build").reason == "Step(s) failed: compile"
        assert "package" not in executor.steps_called()

    async def test_continue_on_failure_runs_everything_then_fails(self, service, executor):
        executor.script["compile"] = [1]
        execution = await run_pipeline(service, make_pipeline(
            stage("build", "fetch", "compile", "package", continue_on_failure=True),
        ))

        steps = _steps(execution)
        assert steps["package"].status == ExecutionStatus.SUCCESS
        assert execution.stage("build").status == ExecutionStatus.FAILURE

    async def test_continue_on_error_step_does_not_fail_stage(self, service, executor):
        executor.script["lint"] = [1]
        execution = await run_pipeline(service, make_pipeline(
            stage("build", steps=(step("lint", continue_on_error=True), step("compile"))),
        ))

        steps = _steps(execution)
        assert steps["lint"].status == ExecutionStatus.FAILURE
        assert steps["compile"].status == ExecutionStatus.SUCCESS
        assert execution.stage("build").status == ExecutionStatus.SUCCESS

    async def test_unmet_dependency_cancels_dependent(self, service, executor):
        executor.script["fetch"] = [1]
        execution = await run_pipeline(service, make_pipeline(
            stage(
                "build",
                steps=(
                    step("fetch"),
                    step("docs"),
                    step("compile", depends_on=("fetch",)),
                ),
                continue_on_failure=True,
            ),
        ))

        steps = _steps(execution)
        assert steps["docs"].status == ExecutionStatus.SUCCESS
        assert steps["compile"].status == ExecutionStatus.CANCELLED
        assert "Dependency fetch" in steps["compile"].error

    async def test_outputs_visible_to_later_steps(self, service, executor):
        executor.script["check"] = [ActionResult(output="ready")]
        execution = await run_pipeline(service, make_pipeline(stage(
            "build",
            steps=(
                step("check"),
                step("publish", condition=lambda ctx: ctx.outputs.get("check") == "ready"),
                step("alert", condition=lambda ctx: ctx.outputs.get("check") != "ready"),
            ),
        )))

        steps = _steps(execution)
        assert steps["publish"].skipped is False
        assert steps["alert"].skipped is True
        assert executor.steps_called() == ["check", "publish"]


class TestParallelSteps:

    async def test_independent_steps_overlap(self, service, executor):
        executor.delays.update({"unit": 0.1, "lint": 0.1, "types": 0.1})
        execution = await run_pipeline(service, make_pipeline(
            stage("test", "unit", "lint", "types", parallel_execution=True),
        ))

        assert execution.stage("test").status == ExecutionStatus.SUCCESS
        assert executor.max_active == 3

    async def test_dependencies_hold_steps_back(self, service, executor):
        executor.delays.update({"compile": 0.05})
        execution = await run_pipeline(service, make_pipeline(stage(
            "build",
            parallel_execution=True,
            steps=(
                step("package", depends_on=("compile",)),
                step("compile"),
                step("docs"),
            ),
        )))

        called = executor.steps_called()
        assert called.index("compile") < called.index("package")
        assert execution.stage("build").status == ExecutionStatus.SUCCESS

    async def test_records_kept_in_declaration_order(self, service, executor):
        executor.delays.update({"slow": 0.1})
        execution = await run_pipeline(service, make_pipeline(
            stage("test", "slow", "fast", parallel_execution=True),
        ))

        assert [s.name for s in execution.stage("test").steps] == ["slow", "fast"]

    async def test_failure_stops_unstarted_steps(self, service, executor):
        executor.script["unit"] = [1]
        executor.delays.update({"lint": 0.1})
        execution = await run_pipeline(service, make_pipeline(stage(
            "test",
            parallel_execution=True,
            steps=(step("unit"), step("lint"), step("report", depends_on=("lint",))),
        )))

        steps = _steps(execution, "test")
        assert steps["unit"].status == ExecutionStatus.FAILURE
        # already running when unit failed: awaited and recorded
        assert steps["lint"].status == ExecutionStatus.SUCCESS
        assert steps["report"].status == ExecutionStatus.CANCELLED
        assert execution.stage("test").status == ExecutionStatus.FAILURE

    async def test_action_exception_recorded_on_step(self, service, executor):
        executor.script["unit"] = [ValueError("bad fixture")]
        execution = await run_pipeline(service, make_pipeline(
            stage("test", "unit", "lint", parallel_execution=True),
        ))

        steps = _steps(execution, "test")
        assert steps["unit"].error == "ValueError: bad fixture"
        assert steps["lint"].status == ExecutionStatus.SUCCESS
        assert execution.status == ExecutionStatus.FAILURE


class TestQualityGates:

    def _gated(self, **gate):
        gate.setdefault("operator", GateOperator.GTE)
        gate.setdefault("threshold", 80)
        return make_pipeline(stage("test", "unit", gates=(
            QualityGate(name="coverage", metric="coverage", **gate),
        )))

    async def test_gate_passes(self, service, metrics):
        metrics.values["coverage"] = 85
        execution = await run_pipeline(service, self._gated())

        gate = execution.stage("test").quality_gates[0]
        assert gate.status == GateStatus.PASSED
        assert execution.status == ExecutionStatus.SUCCESS

    async def test_failed_gate_fails_stage(self, service, metrics):
        metrics.values["coverage"] = 60
        execution = await run_pipeline(service, self._gated())

        assert execution.stage("test").status == ExecutionStatus.FAILURE
        assert execution.stage("test").reason.startswith("Quality gate failed")
        assert execution.status == ExecutionStatus.FAILURE

    async def test_non_blocking_gate_becomes_warning(self, service, metrics):
        metrics.values["coverage"] = 60
        execution = await run_pipeline(service, self._gated(fail_pipeline=False))

        assert execution.stage("test").status == ExecutionStatus.SUCCESS
        assert len(execution.stage("test").warnings) == 1

    async def test_warning_threshold(self, service, metrics):
        metrics.values["coverage"] = 85
        execution = await run_pipeline(service, self._gated(warning_threshold=90))

        assert execution.stage("test").quality_gates[0].status == GateStatus.WARNING
        assert execution.status == ExecutionStatus.SUCCESS

    async def test_gate_sampled_with_execution_scope(self, service, metrics):
        metrics.values["coverage"] = 90
        execution = await run_pipeline(service, self._gated(), {"version": "1.4.2"})

        scope = metrics.scopes[0]
        assert scope["execution_id"] == execution.id
        assert scope["stage"] == "test"
        assert scope["version"] == "1.4.2"

    async def test_gates_skipped_when_steps_fail(self, service, executor, metrics):
        executor.script["unit"] = [1]
        execution = await run_pipeline(service, self._gated())

        assert execution.stage("test").quality_gates == []
        assert metrics.scopes == []


class TestApprovalPhase:

    def _approved_deploy(self, **approval):
        approval.setdefault("approvers", ("alice", "bob"))
        return make_pipeline(
            stage("build"),
            deploy_stage("deploy", "production", approvals=(StageApproval(**approval),)),
        )

    async def test_execution_waits_for_approval(self, service, provisioner):
        pipeline = await service.create_pipeline(self._approved_deploy())
        execution = await service.execute_pipeline(pipeline.id)

        await wait_for(lambda: execution.status == ExecutionStatus.WAITING_APPROVAL)
        assert provisioner.applied == []
        (approval,) = service.approvals.pending(execution.id)

        await service.decide(execution.id, approval.id, "approved", "alice")
        execution = await service.engine.wait(execution.id, timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        assert provisioner.applied[0]["environment"] == "production"
        assert execution.stage("deploy").approvals[0].status == "approved"

    async def test_rejection_fails_stage(self, service, provisioner):
        pipeline = await service.create_pipeline(self._approved_deploy())
        execution = await service.execute_pipeline(pipeline.id)
        await wait_for(lambda: bool(service.approvals.pending(execution.id)))

        (approval,) = service.approvals.pending(execution.id)
        await service.decide(execution.id, approval.id, "rejected", "bob", "freeze")
        execution = await service.engine.wait(execution.id, timeout=5)

        assert execution.stage("deploy").status == ExecutionStatus.FAILURE
        assert execution.stage("deploy").reason == "Approval rejected"
        assert provisioner.applied == []

    async def test_approval_timeout_fails_stage(self, service):
        execution = await run_pipeline(service, self._approved_deploy(timeout_seconds=0.05))

        assert execution.stage("deploy").status == ExecutionStatus.FAILURE
        assert execution.stage("deploy").reason == "Approval timeout"

    async def test_cancel_while_waiting(self, service):
        pipeline = await service.create_pipeline(self._approved_deploy())
        execution = await service.execute_pipeline(pipeline.id)
        await wait_for(lambda: bool(service.approvals.pending(execution.id)))

        service.cancel_execution(execution.id, "release called off")
        execution = await service.engine.wait(execution.id, timeout=5)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.stage("deploy").status == ExecutionStatus.CANCELLED
        assert execution.stage("deploy").approvals[0].status == "cancelled"

    async def test_decision_after_execution_finished_is_ignored(self, service):
        pipeline = await service.create_pipeline(self._approved_deploy())
        execution = await service.execute_pipeline(pipeline.id)
        await wait_for(lambda: bool(service.approvals.pending(execution.id)))
        (approval,) = service.approvals.pending(execution.id)
        await service.decide(execution.id, approval.id, "approved", "alice")
        execution = await service.engine.wait(execution.id, timeout=5)

        late = await service.decide(execution.id, approval.id, "rejected", "bob")

        assert late is execution.stage("deploy").approvals[0]
        assert late.status == "approved"
        assert len(late.decisions) == 1
        assert execution.status == ExecutionStatus.SUCCESS

    async def test_decision_for_other_execution_refused(self, service):
        from deployflow.pipeline.errors import ApprovalNotFoundError

        pipeline = await service.create_pipeline(self._approved_deploy())
        execution = await service.execute_pipeline(pipeline.id)
        await wait_for(lambda: bool(service.approvals.pending(execution.id)))
        (approval,) = service.approvals.pending(execution.id)

        with pytest.raises(ApprovalNotFoundError):
            await service.decide("another-execution", approval.id, "approved", "alice")


class TestDeployment:

    async def test_deploy_records_version_and_artifacts(self, service, executor, provisioner, recorder):
        executor.script["package"] = [ActionResult(artifacts=[{"name": "web.tar"}])]
        execution = await run_pipeline(
            service,
            make_pipeline(stage("build", "package"), deploy_stage("deploy", "staging")),
            {"version": "3.1.0"},
        )

        assert execution.status == ExecutionStatus.SUCCESS
        assert provisioner.applied == [
            {"environment": "staging", "version": "3.1.0", "artifacts": ["web.tar"]}
        ]
        assert execution.stage("deploy").deployment.version == "3.1.0"
        assert service.environments.current_version("staging") == "3.1.0"
        assert "deployment_completed" in recorder.types()

    async def test_provisioner_failure_fails_stage(self, service, provisioner):
        provisioner.fail_environments.add("staging")
        execution = await run_pipeline(service, make_pipeline(deploy_stage("deploy", "staging")))

        assert execution.stage("deploy").status == ExecutionStatus.FAILURE
        assert "provisioning failed" in execution.stage("deploy").reason
        assert service.environments.current_version("staging") is None

    async def test_busy_environment_fails_stage(self, service, provisioner):
        pipeline = await service.create_pipeline(make_pipeline(deploy_stage("deploy", "staging")))
        async with service.environments.lease("staging", holder="someone-else"):
            execution = await run_pipeline(service, pipeline)

        assert execution.stage("deploy").status == ExecutionStatus.FAILURE
        assert execution.stage("deploy").reason == "Environment staging busy (held by someone-else)"
        assert provisioner.applied == []

    async def test_queued_deployment_waits_for_lease(self, service, provisioner):
        pipeline = await service.create_pipeline(
            make_pipeline(deploy_stage("deploy", "staging"), queue_deployments=True)
        )
        async with service.environments.lease("staging", holder="someone-else"):
            execution = await service.execute_pipeline(pipeline.id)
            await asyncio.sleep(0.05)
            assert not execution.is_terminal
            assert provisioner.applied == []

        execution = await service.engine.wait(execution.id, timeout=5)
        assert execution.status == ExecutionStatus.SUCCESS
        assert not service.environments.is_busy("staging")


class TestStageTimeout:

    async def test_stage_timeout_cancels_remaining_steps(self, service, executor):
        executor.delays["slow"] = 0.2
        execution = await run_pipeline(service, make_pipeline(
            stage("build", "slow", "after", timeout_seconds=0.05),
            stage("test"),
        ))

        build = execution.stage("build")
        assert build.status == ExecutionStatus.TIMEOUT
        # a running step is never interrupted
        assert _steps(execution)["slow"].status == ExecutionStatus.SUCCESS
        assert _steps(execution)["after"].status == ExecutionStatus.CANCELLED
        assert execution.status == ExecutionStatus.FAILURE
        assert execution.stage("test") is None
