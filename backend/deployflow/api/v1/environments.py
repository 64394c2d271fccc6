"""
Environment endpoints — state, deployment history and rollback.
"""

from fastapi import APIRouter, Depends

from deployflow.api.deps import get_service
from deployflow.api.schemas import RollbackRequest
from deployflow.pipeline.service import DeploymentService

router = APIRouter(prefix="/environments", tags=["Environments"])


@router.get("")
async def list_environments(service: DeploymentService = Depends(get_service)):
    environments = service.environments.list()
    return {
        "data": [service.environments.describe(e.name) for e in environments],
        "total": len(environments),
    }


@router.get("/{name}")
async def get_environment(name: str, service: DeploymentService = Depends(get_service)):
    return service.environments.describe(name)


@router.post("/{name}/rollback")
async def rollback_environment(
    name: str,
    body: RollbackRequest | None = None,
    service: DeploymentService = Depends(get_service),
):
    """Manual rollback; a busy environment answers 409 unless `wait` is set."""
    body = body or RollbackRequest()
    rollback = await service.rollback(name, body.target_version, body.reason, wait=body.wait)
    return rollback.to_dict()


@router.post("/{name}/rollback/reset")
async def reset_automatic_rollback(name: str, service: DeploymentService = Depends(get_service)):
    """Re-enable automatic rollback after it was disabled by a failure or the limit."""
    service.environments.reset_automatic(name)
    return service.environments.describe(name)
