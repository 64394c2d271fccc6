"""
PipelineDefinitionStore — versioned pipeline definitions and their runs.

The store is an explicit object handed to the engine; nothing here is a
module-level registry.  Definitions are immutable per version: editing a
pipeline appends a new version, earlier versions stay readable for the
executions that reference them.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field

from deployflow.core.constants import PipelineStatus
from deployflow.core.logging import get_logger
from deployflow.pipeline.definitions import Pipeline
from deployflow.pipeline.errors import (
    ExecutionNotFoundError,
    PipelineDefinitionError,
    PipelineNotFoundError,
)
from deployflow.pipeline.records import PipelineExecution

logger = get_logger(__name__)


@dataclass
class _PipelineEntry:
    versions: list[Pipeline]
    status: PipelineStatus
    execution_counter: int = 0
    execution_ids: list[str] = field(default_factory=list)
    last_execution: PipelineExecution | None = None

    @property
    def latest(self) -> Pipeline:
        return self.versions[-1]


class PipelineDefinitionStore:

    def __init__(self) -> None:
        self._pipelines: dict[str, _PipelineEntry] = {}
        self._executions: dict[str, PipelineExecution] = {}

    # ─── Definitions ───────────────────────────────────

    def add(self, pipeline: Pipeline, status: PipelineStatus = PipelineStatus.ACTIVE) -> Pipeline:
        """Register a new pipeline as version 1."""
        if pipeline.id in self._pipelines:
            raise PipelineDefinitionError(f"Pipeline {pipeline.id} already exists")
        if pipeline.version != 1:
            pipeline = dataclasses.replace(pipeline, version=1)
        self._pipelines[pipeline.id] = _PipelineEntry(
            versions=[pipeline], status=PipelineStatus(status)
        )
        logger.info("Pipeline registered", pipeline_id=pipeline.id, name=pipeline.name)
        return pipeline

    def add_version(self, pipeline_id: str, pipeline: Pipeline) -> Pipeline:
        """Store `pipeline` as the next version of `pipeline_id`."""
        entry = self._entry(pipeline_id)
        pipeline = dataclasses.replace(
            pipeline,
            id=pipeline_id,
            version=entry.latest.version + 1,
            created_at=entry.versions[0].created_at,
        )
        entry.versions.append(pipeline)
        logger.info(
            "Pipeline version added",
            pipeline_id=pipeline_id,
            version=pipeline.version,
        )
        return pipeline

    def get(self, pipeline_id: str, version: int | None = None) -> Pipeline:
        entry = self._entry(pipeline_id)
        if version is None:
            return entry.latest
        for candidate in entry.versions:
            if candidate.version == version:
                return candidate
        raise PipelineNotFoundError(f"Pipeline {pipeline_id} has no version {version}")

    def find(self, pipeline_id: str) -> Pipeline | None:
        entry = self._pipelines.get(pipeline_id)
        return entry.latest if entry else None

    def list(self) -> list[Pipeline]:
        return [entry.latest for entry in self._pipelines.values()]

    def versions(self, pipeline_id: str) -> list[Pipeline]:
        return list(self._entry(pipeline_id).versions)

    def status(self, pipeline_id: str) -> PipelineStatus:
        return self._entry(pipeline_id).status

    def set_status(self, pipeline_id: str, status: PipelineStatus) -> None:
        self._entry(pipeline_id).status = PipelineStatus(status)

    # ─── Executions ────────────────────────────────────

    def next_execution_number(self, pipeline_id: str) -> int:
        entry = self._entry(pipeline_id)
        entry.execution_counter += 1
        return entry.execution_counter

    def add_execution(self, execution: PipelineExecution) -> None:
        entry = self._entry(execution.pipeline_id)
        self._executions[execution.id] = execution
        entry.execution_ids.append(execution.id)

    def get_execution(self, execution_id: str) -> PipelineExecution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(
                f"Execution {execution_id} not found", execution_id=execution_id
            )
        return execution

    def list_executions(self, pipeline_id: str, limit: int | None = None) -> list[PipelineExecution]:
        """Executions of a pipeline, most recent first."""
        entry = self._entry(pipeline_id)
        executions = sorted(
            (self._executions[i] for i in entry.execution_ids),
            key=lambda e: (e.start_time, e.number),
            reverse=True,
        )
        return executions[:limit] if limit is not None else executions

    def all_executions(self) -> list[PipelineExecution]:
        return list(self._executions.values())

    def record_last_execution(self, execution: PipelineExecution) -> None:
        """Bookkeeping once an execution is terminal."""
        entry = self._entry(execution.pipeline_id)
        if not execution.is_terminal:
            return
        current = entry.last_execution
        if current is None or execution.number > current.number:
            entry.last_execution = execution

    def last_execution(self, pipeline_id: str) -> PipelineExecution | None:
        return self._entry(pipeline_id).last_execution

    # ─── Internal ──────────────────────────────────────

    def _entry(self, pipeline_id: str) -> _PipelineEntry:
        entry = self._pipelines.get(pipeline_id)
        if entry is None:
            raise PipelineNotFoundError(f"Pipeline {pipeline_id} not found")
        return entry
