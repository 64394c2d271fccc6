"""Concrete collaborators: shell, REST, registry, metrics, provisioning."""

import json

import httpx
import pytest

from deployflow.core.constants import ExecutionStatus, StepType
from deployflow.executors import (
    ActionExecutorRegistry,
    DryRunProvisioner,
    LoggingNotificationSender,
    RestActionExecutor,
    ShellActionExecutor,
    StaticMetricsSource,
    default_registry,
)
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.definitions import Environment
from deployflow.pipeline.errors import StepExecutionError
from deployflow.pipeline.interfaces import ActionResult
from deployflow.pipeline.records import Artifact, ExecutionTrigger
from tests.conftest import step


def _context(step_type=StepType.SHELL, **variables) -> ExecutionContext:
    ctx = ExecutionContext(
        execution_id="exec-1",
        pipeline_id="web",
        pipeline_version=1,
        execution_number=4,
        trigger=ExecutionTrigger(user="ci"),
        variables=variables,
        environment="staging",
    )
    return ctx.for_step(step("compile", type=step_type))


class _Recording:
    def __init__(self, label):
        self.label = label
        self.actions = []

    async def execute(self, action, context):
        self.actions.append(dict(action))
        return ActionResult(output=self.label)


class TestShellActionExecutor:

    async def test_command_sees_execution_environment(self):
        result = await ShellActionExecutor().execute(
            {"command": 'echo "$DEPLOYFLOW_STEP:$region:$DEPLOYFLOW_VERSION:$DEPLOYFLOW_ENVIRONMENT"'},
            _context(region="eu", version="1.2.0"),
        )

        assert result.exit_code == 0
        assert result.output.strip() == "compile:eu:1.2.0:staging"
        assert result.error is None

    async def test_failing_command(self):
        result = await ShellActionExecutor().execute(
            {"command": "echo oops >&2; exit 3"}, _context()
        )

        assert result.exit_code == 3
        assert result.error.strip() == "oops"
        assert not result.succeeded

    async def test_script_stops_at_first_failure(self):
        result = await ShellActionExecutor().execute(
            {"script": "echo one\nfalse\necho two"}, _context()
        )

        assert result.exit_code != 0
        assert result.output.strip() == "one"

    async def test_action_env_overrides_variables(self):
        result = await ShellActionExecutor().execute(
            {"command": 'echo "$region"', "env": {"region": "us"}}, _context(region="eu")
        )

        assert result.output.strip() == "us"

    async def test_missing_command(self):
        with pytest.raises(StepExecutionError):
            await ShellActionExecutor().execute({}, _context())


class TestRestActionExecutor:

    def _executor(self, handler):
        self.requests = []

        def record(request):
            self.requests.append(request)
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(record))
        return RestActionExecutor(client=client)

    async def test_renders_placeholders_and_posts(self):
        executor = self._executor(lambda request: httpx.Response(201, json={"id": 7}))

        result = await executor.execute(
            {
                "method": "post",
                "url": "https://deploy.example/{environment}/releases",
                "json": {"version": "{version}", "tags": ["{region}"]},
            },
            _context(StepType.REST_API, version="1.2.0", region="eu"),
        )

        request = self.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://deploy.example/staging/releases"
        assert json.loads(request.content) == {"version": "1.2.0", "tags": ["eu"]}
        assert request.headers["X-Invocation-Id"].startswith("exec-1:-:")
        assert result.exit_code == 0
        assert json.loads(result.output) == {"id": 7}

    async def test_unexpected_status_fails_attempt(self):
        executor = self._executor(lambda request: httpx.Response(500, text="boom"))

        result = await executor.execute(
            {"method": "GET", "url": "https://deploy.example/health"}, _context(StepType.REST_API)
        )

        assert result.exit_code == 1
        assert result.error == "API returned 500: boom"

    async def test_expected_status_override(self):
        executor = self._executor(lambda request: httpx.Response(404, text="gone"))

        result = await executor.execute(
            {"url": "https://deploy.example/old", "expected_status": [404]}, _context(StepType.REST_API)
        )

        assert result.succeeded
        assert result.output == "gone"

    async def test_unknown_placeholder_left_as_is(self):
        executor = self._executor(lambda request: httpx.Response(200, json={}))

        await executor.execute({"url": "https://deploy.example/{missing}"}, _context(StepType.REST_API))

        assert "missing" in str(self.requests[0].url)

    async def test_unsupported_method(self):
        with pytest.raises(StepExecutionError):
            await RestActionExecutor().execute(
                {"method": "TRACE", "url": "https://deploy.example"}, _context(StepType.REST_API)
            )


class TestActionExecutorRegistry:

    async def test_dispatch_by_step_type(self):
        shell, rest = _Recording("shell"), _Recording("rest")
        registry = ActionExecutorRegistry({StepType.SHELL: shell, StepType.REST_API: rest})

        assert (await registry.execute({}, _context(StepType.REST_API))).output == "rest"
        assert (await registry.execute({}, _context(StepType.SHELL))).output == "shell"

    async def test_operation_takes_precedence(self):
        shell, rollback = _Recording("shell"), _Recording("rollback")
        registry = ActionExecutorRegistry({StepType.SHELL: shell})
        registry.register_operation("rollback", rollback)

        result = await registry.execute({"operation": "rollback"}, _context(StepType.SHELL))

        assert result.output == "rollback"
        assert shell.actions == []

    async def test_fallback(self):
        fallback = _Recording("fallback")
        registry = ActionExecutorRegistry(fallback=fallback)

        assert (await registry.execute({}, _context(StepType.DATABASE))).output == "fallback"

    async def test_no_executor(self):
        with pytest.raises(StepExecutionError, match="database"):
            await ActionExecutorRegistry().execute({}, _context(StepType.DATABASE))

    async def test_default_registry(self):
        provisioner = DryRunProvisioner()
        registry = default_registry(provisioner)

        assert isinstance(registry.resolve(StepType.KUBERNETES), ShellActionExecutor)
        assert isinstance(registry.resolve(StepType.REST_API), RestActionExecutor)
        assert isinstance(registry.resolve(StepType.CUSTOM), ShellActionExecutor)

        result = await registry.execute(
            {"operation": "rollback", "component": "application",
             "environment": "production", "target_version": "1.0"},
            _context(StepType.CUSTOM),
        )
        assert result.output == "dry-run: application of production restored to 1.0"


class TestCollaborators:

    async def test_dry_run_provisioner(self):
        result = await DryRunProvisioner().apply(
            Environment(name="staging"), [Artifact(name="web.tar")], "1.2.0"
        )

        assert result.status == ExecutionStatus.SUCCESS
        assert result.version == "1.2.0"
        assert result.output == "dry-run: 1.2.0 -> staging (1 artifacts)"

    async def test_static_metrics_source(self):
        source = StaticMetricsSource({"coverage": 82})
        source.set("error_rate", 7, environment="production")

        assert await source.sample("coverage", {"environment": "staging"}) == 82
        assert await source.sample("error_rate", {"environment": "production"}) == 7
        assert await source.sample("error_rate", {"environment": "staging"}) is None

        source.clear("coverage")
        assert await source.sample("coverage", {}) is None

    async def test_logging_notification_sender_keeps_recent(self):
        sender = LoggingNotificationSender(keep=2)
        for event in ("a", "b", "c"):
            await sender.notify("email", event, ["ops"], {})

        assert [n["event"] for n in sender.sent] == ["b", "c"]
