"""Template endpoints."""

from fastapi import APIRouter, Depends, status

from deployflow.api.deps import get_service
from deployflow.api.schemas import TemplateCreate, TemplateInstantiate, serialize_pipeline
from deployflow.pipeline.service import DeploymentService
from deployflow.pipeline.templates import PipelineTemplate

router = APIRouter(prefix="/templates", tags=["Templates"])


def _summary(template: PipelineTemplate) -> dict:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "category": template.category,
        "failure_strategy": template.failure_strategy,
        "stages": [s.name for s in template.stages],
        "environments": [e.name for e in template.environments],
        "variables": {v.key: v.value for v in template.variables},
    }


@router.get("")
async def list_templates(service: DeploymentService = Depends(get_service)):
    templates = service.templates.list()
    return {"data": [_summary(t) for t in templates], "total": len(templates)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(body: TemplateCreate, service: DeploymentService = Depends(get_service)):
    template = service.templates.add(body.to_definition())
    return _summary(template)


@router.post("/{template_id}/pipelines", status_code=status.HTTP_201_CREATED)
async def create_pipeline_from_template(
    template_id: str,
    body: TemplateInstantiate,
    service: DeploymentService = Depends(get_service),
):
    customizations = {"variables": body.variables, "created_by": body.created_by}
    if body.environments is not None:
        customizations["environments"] = [e.to_definition() for e in body.environments]
    pipeline = await service.create_from_template(template_id, body.name, **customizations)
    return serialize_pipeline(pipeline, service.store.status(pipeline.id))
