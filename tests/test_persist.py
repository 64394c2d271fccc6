"""Execution audit rows and the persistence subscriber."""

import uuid
from unittest.mock import AsyncMock, patch

from deployflow.core.constants import LifecycleEventType
from deployflow.db.persist import (
    PersistenceSubscriber,
    build_execution_row,
    build_step_logs,
    persist_execution,
)
from deployflow.pipeline.events import LifecycleEvent
from tests.conftest import make_pipeline, run_pipeline, stage


async def _finished(service, executor):
    executor.script["lint"] = [1]
    return await run_pipeline(service, make_pipeline(
        stage("build", "compile", "package"),
        stage("test", "unit", "lint", continue_on_failure=True),
    ))


class TestRows:

    async def test_execution_row(self, service, executor):
        execution = await _finished(service, executor)
        row = build_execution_row(execution.to_dict())

        assert row.id == uuid.UUID(execution.id)
        assert row.pipeline_id == execution.pipeline_id
        assert row.number == 1
        assert row.status == "failure"
        assert row.reason == "Stage(s) failed: test"
        assert row.started_at == execution.start_time
        assert row.completed_at == execution.end_time
        assert [s["name"] for s in row.stage_log] == ["build", "test"]
        assert row.metrics["failed_steps"] == 1
        assert row.rollback is None

    async def test_step_logs_in_execution_order(self, service, executor):
        execution = await _finished(service, executor)
        logs = build_step_logs(execution.to_dict())

        assert [(log.stage_index, log.step_index, log.step_name) for log in logs] == [
            (0, 0, "compile"), (0, 1, "package"), (1, 0, "unit"), (1, 1, "lint"),
        ]
        lint = logs[-1]
        assert lint.status == "failure"
        assert lint.exit_code == 1
        assert lint.error_message == "lint failed"
        assert lint.execution_id == uuid.UUID(execution.id)


class TestPersistExecution:

    async def test_database_failure_is_not_raised(self, service, executor):
        execution = await _finished(service, executor)

        with patch("deployflow.db.persist.make_engine", side_effect=RuntimeError("db down")):
            assert await persist_execution(execution.to_dict()) is None


class TestPersistenceSubscriber:

    async def test_persists_completed_executions(self, service, executor):
        persist = AsyncMock(return_value="ok")
        service.events.subscribe(PersistenceSubscriber(service.engine.get, persist=persist))

        execution = await _finished(service, executor)

        persist.assert_awaited_once()
        (data,), _ = persist.await_args
        assert data["id"] == execution.id
        assert data["status"] == "failure"

    async def test_ignores_other_events(self):
        persist = AsyncMock()
        subscriber = PersistenceSubscriber(lambda execution_id: None, persist=persist)

        await subscriber.handle(LifecycleEvent(type=LifecycleEventType.STAGE_COMPLETED, execution_id="x"))
        await subscriber.handle(LifecycleEvent(type=LifecycleEventType.EXECUTION_COMPLETED))

        persist.assert_not_awaited()
