"""
Shared fixtures and test doubles.

The doubles stand in for everything outside the engine: action
execution, metric sampling, notification delivery and provisioning.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from deployflow.core.constants import ExecutionStatus, StageType, StepType
from deployflow.pipeline.definitions import Environment, Pipeline, Stage, Step
from deployflow.pipeline.interfaces import ActionResult
from deployflow.pipeline.records import DeploymentResult, ExecutionTrigger
from deployflow.pipeline.service import DeploymentService


class ScriptedActionExecutor:
    """
    Plays back outcomes per step name.

    An outcome is an ActionResult, an int exit code, or an exception to
    raise.  The last outcome of a script repeats; unscripted steps
    succeed.  `delays` makes a step take that many seconds.
    """

    def __init__(self, script: dict[str, list] | None = None, delays: dict[str, float] | None = None):
        self.script = {name: list(outcomes) for name, outcomes in (script or {}).items()}
        self.delays = dict(delays or {})
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def execute(self, action, context) -> ActionResult:
        self.calls.append({
            "step": context.step_name,
            "stage": context.stage_name,
            "attempt": context.attempt,
            "invocation_id": context.invocation_id,
            "variables": dict(context.variables),
            "action": dict(action),
        })
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(context.step_name)
            if delay:
                await asyncio.sleep(delay)
            outcomes = self.script.get(context.step_name)
            if not outcomes:
                return ActionResult(output=f"{context.step_name} ok")
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, int):
                return ActionResult(
                    exit_code=outcome,
                    output=f"{context.step_name} exited {outcome}",
                    error=f"{context.step_name} failed" if outcome else None,
                )
            return outcome
        finally:
            self.active -= 1

    def steps_called(self) -> list[str]:
        return [c["step"] for c in self.calls]


class FakeMetricsSource:
    def __init__(self, values: dict[str, float] | None = None):
        self.values = dict(values or {})
        self.scopes: list[dict[str, Any]] = []

    async def sample(self, metric, scope):
        self.scopes.append({"metric": metric, **scope})
        return self.values.get(metric)


class RecordingNotificationSender:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def notify(self, channel, event, recipients, payload):
        self.sent.append({
            "channel": channel,
            "event": event,
            "recipients": list(recipients),
            "payload": dict(payload),
        })

    def events(self) -> list[str]:
        return [n["event"] for n in self.sent]


class RecordingProvisioner:
    def __init__(self, fail_environments: set[str] | None = None):
        self.fail_environments = set(fail_environments or ())
        self.applied: list[dict[str, Any]] = []

    async def apply(self, environment, artifacts, version):
        self.applied.append({
            "environment": environment.name,
            "version": version,
            "artifacts": [a.name for a in artifacts],
        })
        if environment.name in self.fail_environments:
            return DeploymentResult(
                status=ExecutionStatus.FAILURE,
                environment=environment.name,
                version=version,
                error="provisioning failed",
            )
        return DeploymentResult(
            status=ExecutionStatus.SUCCESS,
            environment=environment.name,
            version=version,
            artifacts=list(artifacts),
        )


class RecordingSubscriber:
    def __init__(self):
        self.events = []

    async def handle(self, event):
        self.events.append(event)

    def types(self) -> list[str]:
        return [str(e.type) for e in self.events]


# ─── Builders ──────────────────────────────────────────────

def step(name: str, **kwargs) -> Step:
    kwargs.setdefault("action", {"command": f"run {name}"})
    return Step(name=name, type=kwargs.pop("type", StepType.SHELL), **kwargs)


def stage(name: str, *step_names: str, **kwargs) -> Stage:
    steps = kwargs.pop("steps", None) or tuple(step(n) for n in (step_names or ("main",)))
    return Stage(name=name, steps=steps, **kwargs)


def deploy_stage(name: str, environment: str, *step_names: str, **kwargs) -> Stage:
    return stage(name, *(step_names or ("release",)), type=StageType.DEPLOY, environment=environment, **kwargs)


def make_pipeline(*stages: Stage, environments=("staging", "production"), **kwargs) -> Pipeline:
    envs = tuple(e if isinstance(e, Environment) else Environment(name=e) for e in environments)
    return Pipeline(name=kwargs.pop("name", "web"), stages=stages, environments=envs, **kwargs)


async def run_pipeline(
    service: DeploymentService,
    pipeline: Pipeline,
    variables: dict | None = None,
    trigger: ExecutionTrigger | None = None,
):
    """Register (if needed), execute and wait for the terminal execution."""
    if service.store.find(pipeline.id) is None:
        pipeline = await service.create_pipeline(pipeline)
    execution = await service.execute_pipeline(pipeline.id, trigger or ExecutionTrigger(user="ci"), variables)
    return await service.engine.wait(execution.id, timeout=10)


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


# ─── Fixtures ──────────────────────────────────────────────

@pytest.fixture
def executor():
    return ScriptedActionExecutor()


@pytest.fixture
def metrics():
    return FakeMetricsSource()


@pytest.fixture
def notifier():
    return RecordingNotificationSender()


@pytest.fixture
def provisioner():
    return RecordingProvisioner()


@pytest.fixture
def recorder():
    return RecordingSubscriber()


@pytest.fixture
async def service(executor, metrics, notifier, provisioner, recorder):
    service = DeploymentService(
        executor=executor,
        metrics_source=metrics,
        notifier=notifier,
        provisioner=provisioner,
        backoff_base=0,
        subscribers=[recorder],
    )
    yield service
    await service.shutdown()
