#!/usr/bin/env python3
"""
Demo script — run the deployment engine locally without Docker/Celery.

Shows a template pipeline deploying to staging, an approval gate being
decided while the execution waits, and a failed production deploy that
rolls the environment back.  Steps run real shell commands (`echo`,
`false`); the provisioner is the dry-run default.

Usage:
    cd backend
    python -m scripts.demo_pipeline
"""

import asyncio

from deployflow.core.constants import (
    EnvironmentType,
    ExecutionStatus,
    FailureStrategy,
    StageType,
)
from deployflow.core.logging import setup_logging
from deployflow.pipeline.definitions import Environment, Pipeline, Stage, StageApproval, Step
from deployflow.pipeline.records import ExecutionTrigger
from deployflow.pipeline.service import DeploymentService


def _echo(name: str, text: str, **kwargs) -> Step:
    return Step(name=name, action={"command": f"echo {text}"}, **kwargs)


async def run_template_flow(service: DeploymentService):
    """DEMO 1: build → test → deploy-staging from the built-in template."""
    print("\n" + "=" * 70)
    print("  DEMO 1: Template pipeline (build-test-deploy)")
    print("=" * 70)

    pipeline = await service.create_from_template("build-test-deploy", "demo-web")
    # template steps call `make`; swap in echo so the demo runs anywhere
    pipeline = await service.update_pipeline(pipeline.id, Pipeline(
        name=pipeline.name,
        environments=pipeline.environments,
        stages=tuple(
            Stage(
                name=stage.name,
                type=stage.type,
                environment=stage.environment,
                gates=stage.gates,
                steps=tuple(_echo(s.name, s.name, depends_on=s.depends_on) for s in stage.steps),
            )
            for stage in pipeline.stages
        ),
    ))
    service.metrics_source.set("coverage", 91)

    execution = await service.execute_pipeline(
        pipeline.id, ExecutionTrigger(user="demo", branch="main"), {"version": "1.0.0"}
    )
    _print_result(await service.engine.wait(execution.id))


async def run_approval_flow(service: DeploymentService):
    """DEMO 2: production deploy waiting on two approvers."""
    print("\n" + "=" * 70)
    print("  DEMO 2: Approval before production")
    print("=" * 70)

    pipeline = await service.create_pipeline(Pipeline(
        name="demo-approval",
        environments=(Environment(name="production", type=EnvironmentType.PRODUCTION),),
        stages=(
            Stage(name="build", steps=(_echo("compile", "compiled"),)),
            Stage(
                name="deploy-production",
                type=StageType.DEPLOY,
                environment="production",
                steps=(_echo("release", "released"),),
                approvals=(StageApproval(approvers=("alice", "bob"), timeout_seconds=30),),
            ),
        ),
    ))
    execution = await service.execute_pipeline(
        pipeline.id, ExecutionTrigger(user="carol"), {"version": "2.0.0"}
    )

    while execution.status != ExecutionStatus.WAITING_APPROVAL:
        await asyncio.sleep(0.05)
    for approval in service.approvals.pending(execution.id):
        print(f"  Approval {approval.id[:8]} pending, alice approves")
        await service.decide(execution.id, approval.id, "approved", "alice", "ship it")

    _print_result(await service.engine.wait(execution.id))


async def run_rollback_flow(service: DeploymentService):
    """DEMO 3: a failing release rolls production back to 2.0.0."""
    print("\n" + "=" * 70)
    print("  DEMO 3: Failed deploy with rollback strategy")
    print("=" * 70)

    pipeline = await service.create_pipeline(Pipeline(
        name="demo-rollback",
        failure_strategy=FailureStrategy.ROLLBACK,
        environments=(Environment(name="production", type=EnvironmentType.PRODUCTION),),
        stages=(
            Stage(
                name="deploy-production",
                type=StageType.DEPLOY,
                environment="production",
                steps=(Step(name="release", action={"command": "false"}),),
            ),
        ),
    ))
    execution = await service.execute_pipeline(
        pipeline.id, ExecutionTrigger(user="carol"), {"version": "2.1.0"}
    )
    _print_result(await service.engine.wait(execution.id))
    print(f"  production is now at {service.environments.current_version('production')}\n")


def _print_result(execution):
    """Pretty-print a finished PipelineExecution."""
    print(f"\n{'─' * 50}")
    print(f"  Execution ID : {execution.id[:12]}...")
    print(f"  Status       : {execution.status}")
    print(f"  Reason       : {execution.reason}")
    print(f"  Duration     : {execution.duration_ms}ms")

    print("\n  Stages:")
    for stage in execution.stages:
        icon = "✅" if stage.status == ExecutionStatus.SUCCESS else "❌"
        print(f"    {icon} {stage.name} [{stage.status}]")
        for step in stage.steps:
            print(f"        - {step.name}: {step.status} (exit {step.exit_code}, {step.duration_ms}ms)")
        for gate in stage.quality_gates:
            print(f"        gate {gate.name}: {gate.status} ({gate.actual_value})")

    if execution.rollback:
        rb = execution.rollback
        print(f"\n  Rollback     : {rb.status} → {rb.target_version}")
        for step in rb.steps:
            print(f"        - {step.type}: {step.status}")
    print(f"{'─' * 50}\n")


async def main():
    setup_logging("WARNING")     # quiet logs, show formatted output only

    print("\n╔" + "═" * 68 + "╗")
    print("║             DEPLOYFLOW — PIPELINE ENGINE DEMO                     ║")
    print("╚" + "═" * 68 + "╝")

    service = DeploymentService(backoff_base=0)
    try:
        await run_template_flow(service)
        await run_approval_flow(service)
        await run_rollback_flow(service)
    finally:
        await service.shutdown()

    print("\n✅ All demos completed.\n")


if __name__ == "__main__":
    asyncio.run(main())
