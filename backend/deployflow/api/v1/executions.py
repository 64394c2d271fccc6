"""
Execution endpoints — detail, cancellation and approval decisions.
"""

from fastapi import APIRouter, Depends

from deployflow.api.deps import get_service
from deployflow.api.schemas import CancelRequest, DecisionRequest
from deployflow.pipeline.service import DeploymentService

router = APIRouter(prefix="/executions", tags=["Executions"])


@router.get("/{execution_id}")
async def get_execution(execution_id: str, service: DeploymentService = Depends(get_service)):
    execution = service.engine.get(execution_id)
    data = execution.to_dict()
    data["pending_approvals"] = [a.to_dict() for a in service.approvals.pending(execution_id)]
    return data


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    body: CancelRequest | None = None,
    service: DeploymentService = Depends(get_service),
):
    """Request cancellation; the execution stops at its next step boundary."""
    body = body or CancelRequest()
    execution = service.cancel_execution(execution_id, body.reason)
    return {"id": execution.id, "status": execution.status, "cancel_requested": True}


@router.post("/{execution_id}/approvals/{approval_id}/decisions")
async def decide_approval(
    execution_id: str,
    approval_id: str,
    body: DecisionRequest,
    service: DeploymentService = Depends(get_service),
):
    approval = await service.decide(
        execution_id, approval_id, body.decision, body.approver, body.comments
    )
    return approval.to_dict()
