"""
Pipeline endpoints — definitions, versions, executions and metrics.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, status

from deployflow.api.deps import get_service
from deployflow.api.schemas import (
    ExecuteRequest,
    PipelineCreate,
    PipelineStatusUpdate,
    serialize_pipeline,
)
from deployflow.pipeline.service import DeploymentService

router = APIRouter(prefix="/pipelines", tags=["Pipelines"])


# ─── Definitions ──────────────────────────────────────────
@router.post("", status_code=status.HTTP_201_CREATED)
async def create_pipeline(body: PipelineCreate, service: DeploymentService = Depends(get_service)):
    pipeline = await service.create_pipeline(body.to_definition())
    return serialize_pipeline(pipeline, service.store.status(pipeline.id))


@router.get("")
async def list_pipelines(service: DeploymentService = Depends(get_service)):
    pipelines = service.store.list()
    return {
        "data": [serialize_pipeline(p, service.store.status(p.id)) for p in pipelines],
        "total": len(pipelines),
    }


@router.get("/{pipeline_id}")
async def get_pipeline(
    pipeline_id: str,
    version: int | None = None,
    service: DeploymentService = Depends(get_service),
):
    pipeline = service.store.get(pipeline_id, version)
    data = serialize_pipeline(pipeline, service.store.status(pipeline_id))
    data["versions"] = [p.version for p in service.store.versions(pipeline_id)]
    last = service.store.last_execution(pipeline_id)
    data["last_execution"] = (
        {"id": last.id, "number": last.number, "status": last.status} if last else None
    )
    return data


@router.put("/{pipeline_id}")
async def update_pipeline(
    pipeline_id: str,
    body: PipelineCreate,
    service: DeploymentService = Depends(get_service),
):
    """Store a new version; running executions keep the version they started with."""
    pipeline = await service.update_pipeline(pipeline_id, body.to_definition())
    return serialize_pipeline(pipeline, service.store.status(pipeline_id))


@router.patch("/{pipeline_id}/status")
async def update_pipeline_status(
    pipeline_id: str,
    body: PipelineStatusUpdate,
    service: DeploymentService = Depends(get_service),
):
    service.set_status(pipeline_id, body.status)
    return {"id": pipeline_id, "status": body.status}


# ─── Executions ───────────────────────────────────────────
@router.post("/{pipeline_id}/executions", status_code=status.HTTP_202_ACCEPTED)
async def execute_pipeline(
    pipeline_id: str,
    body: ExecuteRequest | None = None,
    service: DeploymentService = Depends(get_service),
):
    """Start an execution; it runs in the background and is polled by id."""
    body = body or ExecuteRequest()
    execution = await service.execute_pipeline(
        pipeline_id,
        body.trigger.to_trigger(),
        body.variables,
        version=body.version,
    )
    return execution.to_dict()


@router.get("/{pipeline_id}/executions")
async def list_executions(
    pipeline_id: str,
    limit: int = 50,
    service: DeploymentService = Depends(get_service),
):
    service.store.get(pipeline_id)
    executions = service.store.list_executions(pipeline_id, limit)
    return {
        "data": [
            {
                "id": e.id,
                "number": e.number,
                "pipeline_version": e.pipeline_version,
                "status": e.status,
                "reason": e.reason,
                "start_time": e.start_time.isoformat(),
                "end_time": e.end_time.isoformat() if e.end_time else None,
                "duration_ms": e.duration_ms,
            }
            for e in executions
        ],
        "total": len(executions),
    }


@router.get("/{pipeline_id}/metrics")
async def pipeline_metrics(
    pipeline_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    service: DeploymentService = Depends(get_service),
):
    service.store.get(pipeline_id)
    return service.metrics(pipeline_id, start, end).to_dict()
