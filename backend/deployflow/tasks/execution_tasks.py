"""
Celery tasks — run a pipeline definition to completion on a worker.

Each task builds its own DeploymentService inside `asyncio.run()`, so
nothing async is shared between tasks (or with the API process).
"""

import asyncio

import structlog

from deployflow.api.schemas import PipelineCreate, TriggerInfo
from deployflow.core.config import settings
from deployflow.db.persist import persist_execution
from deployflow.pipeline.service import DeploymentService
from deployflow.tasks import celery_app

logger = structlog.get_logger("tasks.execution")


def summarize(execution: dict) -> dict:
    """Compact task result: status per stage plus the execution outcome."""
    return {
        "execution_id": execution["id"],
        "pipeline_id": execution["pipeline_id"],
        "status": execution["status"],
        "reason": execution["reason"],
        "duration_ms": execution["duration_ms"],
        "stages": {s["name"]: s["status"] for s in execution["stages"]},
        "rollback": execution["rollback"]["status"] if execution["rollback"] else None,
    }


async def run_definition(
    definition: dict,
    trigger: dict | None = None,
    variables: dict | None = None,
    service: DeploymentService | None = None,
) -> dict:
    """Register `definition`, execute it and wait for the terminal status."""
    service = service or DeploymentService()
    try:
        pipeline = await service.create_pipeline(PipelineCreate.model_validate(definition).to_definition())
        execution = await service.execute_pipeline(
            pipeline.id,
            TriggerInfo.model_validate(trigger or {}).to_trigger(),
            variables,
        )
        execution = await service.engine.wait(execution.id)
        data = execution.to_dict()
        if settings.PERSIST_EXECUTIONS:
            await persist_execution(data)
        return data
    finally:
        await service.shutdown()


@celery_app.task(bind=True, name="deployflow.tasks.execution_tasks.execute_pipeline")
def execute_pipeline(
    self,
    definition: dict,
    trigger: dict | None = None,
    variables: dict | None = None,
):
    """
    Execute a pipeline definition (the JSON body accepted by
    `POST /api/v1/pipelines`) and return a summary of the run.
    """
    task_log = logger.bind(task_id=self.request.id, pipeline=definition.get("name"))
    task_log.info("Execution task started")

    execution = asyncio.run(run_definition(definition, trigger, variables))
    result = summarize(execution)

    task_log.info(
        "Execution task finished",
        execution_id=result["execution_id"],
        status=str(result["status"]),
        duration_ms=result["duration_ms"],
    )
    return result
