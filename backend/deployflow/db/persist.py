"""
Execution persistence — saves finished executions to the database.

Uses a FRESH engine per call so it can run from the API event loop and
from Celery workers (which use asyncio.run() per task) alike.
Persistence failures are logged and never change an execution.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable

from deployflow.core.constants import LifecycleEventType
from deployflow.core.logging import get_logger
from deployflow.db.models import PipelineExecutionRecord, PipelineStepLog
from deployflow.db.session import create_tables, make_engine, make_session_factory
from deployflow.pipeline.events import LifecycleEvent
from deployflow.pipeline.records import PipelineExecution

logger = get_logger(__name__)


def _parse_dt(value):
    """ISO string → datetime, passthrough datetime/None."""
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


def build_execution_row(data: dict[str, Any]) -> PipelineExecutionRecord:
    """Map an execution's `to_dict()` form to its table row."""
    return PipelineExecutionRecord(
        id=uuid.UUID(data["id"]),
        pipeline_id=data["pipeline_id"],
        pipeline_version=data["pipeline_version"],
        number=data["number"],
        status=str(data["status"]),
        reason=data.get("reason"),
        started_at=_parse_dt(data.get("start_time")),
        completed_at=_parse_dt(data.get("end_time")),
        duration_ms=data.get("duration_ms"),
        trigger=data.get("trigger") or {},
        variables=data.get("variables") or {},
        stage_log=data.get("stages") or [],
        artifacts=data.get("artifacts") or [],
        metrics=data.get("metrics") or {},
        rollback=data.get("rollback"),
    )


def build_step_logs(data: dict[str, Any]) -> list[PipelineStepLog]:
    """One PipelineStepLog per step of every stage, in execution order."""
    execution_id = uuid.UUID(data["id"])
    rows = []
    for stage_index, stage in enumerate(data.get("stages") or []):
        for step_index, step in enumerate(stage.get("steps") or []):
            rows.append(PipelineStepLog(
                execution_id=execution_id,
                stage_index=stage_index,
                stage_name=stage["name"],
                step_index=step_index,
                step_name=step["name"],
                status=str(step["status"]),
                exit_code=step.get("exit_code"),
                started_at=_parse_dt(step.get("start_time")),
                completed_at=_parse_dt(step.get("end_time")),
                duration_ms=step.get("duration_ms"),
                output=step.get("output"),
                error_message=step.get("error"),
                retry_count=step.get("retry_count", 0),
                attempts=step.get("attempts", 0),
            ))
    return rows


async def persist_execution(data: dict[str, Any], create: bool = False) -> str | None:
    """
    Persist one terminal execution (its `to_dict()` form).

    Returns the row id, or None if persisting failed.
    """
    engine = None
    try:
        engine = make_engine()
        if create:
            await create_tables(engine)
        session_factory = make_session_factory(engine)

        async with session_factory() as session:
            async with session.begin():
                row = build_execution_row(data)
                session.add(row)
                await session.flush()
                for step_log in build_step_logs(data):
                    session.add(step_log)

        logger.info(
            "Execution persisted to DB",
            execution_id=data["id"],
            pipeline_id=data["pipeline_id"],
            status=str(data["status"]),
        )
        return data["id"]

    except Exception as exc:
        logger.error(
            "Failed to persist execution to DB (non-fatal)",
            execution_id=data.get("id"),
            error=str(exc),
        )
        return None
    finally:
        if engine:
            await engine.dispose()


class PersistenceSubscriber:
    """Event subscriber that persists every execution once it completes."""

    def __init__(
        self,
        lookup: Callable[[str], PipelineExecution],
        persist=persist_execution,
    ) -> None:
        self.lookup = lookup
        self.persist = persist

    async def handle(self, event: LifecycleEvent) -> None:
        if event.type != LifecycleEventType.EXECUTION_COMPLETED or event.execution_id is None:
            return
        execution = self.lookup(event.execution_id)
        await self.persist(execution.to_dict())
