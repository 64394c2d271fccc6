"""Template request schemas."""

from __future__ import annotations

import uuid

from pydantic import BaseModel, Field

from deployflow.core.constants import FailureStrategy
from deployflow.api.schemas.pipelines import EnvironmentIn, StageIn, VariableIn
from deployflow.pipeline.templates import PipelineTemplate


class TemplateCreate(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    category: str = "custom"
    stages: list[StageIn]
    variables: list[VariableIn] = Field(default_factory=list)
    environments: list[EnvironmentIn] = Field(default_factory=list)
    failure_strategy: FailureStrategy = FailureStrategy.STOP

    def to_definition(self) -> PipelineTemplate:
        return PipelineTemplate(
            id=self.id,
            name=self.name,
            description=self.description,
            category=self.category,
            stages=tuple(s.to_definition() for s in self.stages),
            variables=tuple(v.to_definition() for v in self.variables),
            environments=tuple(e.to_definition() for e in self.environments),
            failure_strategy=self.failure_strategy,
        )


class TemplateInstantiate(BaseModel):
    """Create a pipeline from a template."""

    name: str = Field(..., min_length=1, max_length=200)
    variables: dict[str, str] = Field(default_factory=dict)
    environments: list[EnvironmentIn] | None = None
    created_by: str | None = None
