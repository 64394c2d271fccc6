"""Pipeline definition store: versions, status and execution history."""

from datetime import datetime, timedelta, timezone

import pytest

from deployflow.core.constants import ExecutionStatus, PipelineStatus
from deployflow.pipeline.errors import (
    ExecutionNotFoundError,
    PipelineDefinitionError,
    PipelineNotFoundError,
)
from deployflow.pipeline.records import ExecutionTrigger, PipelineExecution
from deployflow.pipeline.store import PipelineDefinitionStore
from tests.conftest import make_pipeline, stage


def _execution(store, pipeline, minutes=0):
    execution = PipelineExecution(
        pipeline_id=pipeline.id,
        pipeline_version=pipeline.version,
        number=store.next_execution_number(pipeline.id),
        trigger=ExecutionTrigger(),
        start_time=datetime(2026, 3, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )
    store.add_execution(execution)
    return execution


class TestDefinitions:

    def setup_method(self):
        self.store = PipelineDefinitionStore()
        self.pipeline = self.store.add(make_pipeline(stage("build")))

    def test_add_registers_version_one(self):
        assert self.pipeline.version == 1
        assert self.store.get(self.pipeline.id) is self.pipeline
        assert self.store.status(self.pipeline.id) == PipelineStatus.ACTIVE

    def test_add_twice_rejected(self):
        with pytest.raises(PipelineDefinitionError):
            self.store.add(self.pipeline)

    def test_add_version_keeps_identity(self):
        updated = self.store.add_version(self.pipeline.id, make_pipeline(stage("build"), stage("test"), name="web-v2"))

        assert updated.id == self.pipeline.id
        assert updated.version == 2
        assert updated.created_at == self.pipeline.created_at
        assert self.store.get(self.pipeline.id) is updated
        assert self.store.get(self.pipeline.id, version=1) is self.pipeline
        assert [p.version for p in self.store.versions(self.pipeline.id)] == [1, 2]

    def test_missing_version(self):
        with pytest.raises(PipelineNotFoundError):
            self.store.get(self.pipeline.id, version=7)

    def test_unknown_pipeline(self):
        assert self.store.find("nope") is None
        with pytest.raises(PipelineNotFoundError):
            self.store.get("nope")

    def test_status_change(self):
        self.store.set_status(self.pipeline.id, "archived")

        assert self.store.status(self.pipeline.id) == PipelineStatus.ARCHIVED


class TestExecutions:

    def setup_method(self):
        self.store = PipelineDefinitionStore()
        self.pipeline = self.store.add(make_pipeline(stage("build")))

    def test_numbers_increase_per_pipeline(self):
        other = self.store.add(make_pipeline(stage("build"), name="api"))

        assert [_execution(self.store, self.pipeline).number for _ in range(3)] == [1, 2, 3]
        assert _execution(self.store, other).number == 1

    def test_list_most_recent_first(self):
        first = _execution(self.store, self.pipeline, minutes=0)
        second = _execution(self.store, self.pipeline, minutes=5)
        third = _execution(self.store, self.pipeline, minutes=10)

        assert self.store.list_executions(self.pipeline.id) == [third, second, first]
        assert self.store.list_executions(self.pipeline.id, limit=2) == [third, second]

    def test_unknown_execution(self):
        with pytest.raises(ExecutionNotFoundError):
            self.store.get_execution("missing")

    def test_last_execution_only_tracks_terminal(self):
        first = _execution(self.store, self.pipeline)
        first.finish(ExecutionStatus.SUCCESS, "All stages succeeded")
        self.store.record_last_execution(first)

        running = _execution(self.store, self.pipeline, minutes=1)
        self.store.record_last_execution(running)

        assert self.store.last_execution(self.pipeline.id) is first
