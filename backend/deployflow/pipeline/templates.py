"""
Pipeline templates — reusable stage layouts instantiated into pipelines.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from typing import Any

from deployflow.core.constants import (
    EnvironmentType,
    FailureStrategy,
    GateOperator,
    GateType,
    StageType,
)
from deployflow.core.logging import get_logger
from deployflow.pipeline.definitions import (
    Environment,
    Pipeline,
    PipelineVariable,
    QualityGate,
    Stage,
    Step,
)
from deployflow.pipeline.errors import PipelineDefinitionError, TemplateNotFoundError

logger = get_logger(__name__)


@dataclass(frozen=True)
class PipelineTemplate:
    name: str
    stages: tuple[Stage, ...]
    description: str = ""
    category: str = "custom"
    variables: tuple[PipelineVariable, ...] = ()
    environments: tuple[Environment, ...] = ()
    failure_strategy: FailureStrategy = FailureStrategy.STOP
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        for name in ("stages", "variables", "environments"):
            object.__setattr__(self, name, tuple(getattr(self, name) or ()))
        if not self.stages:
            raise PipelineDefinitionError(f"Template {self.name} must have at least one stage")

    def instantiate(
        self,
        name: str,
        *,
        variables: dict[str, str] | None = None,
        environments: list[Environment] | None = None,
        **overrides: Any,
    ) -> Pipeline:
        """
        Build a new Pipeline from this template.

        Stages and steps get fresh ids; `variables` override template
        variables by key; `environments` replace the template's.
        """
        merged = {v.key: v for v in self.variables}
        for key, value in (variables or {}).items():
            base = merged.get(key)
            merged[key] = (
                dataclasses.replace(base, value=value) if base else PipelineVariable(key=key, value=value)
            )

        stages = tuple(
            dataclasses.replace(
                stage,
                id=str(uuid.uuid4()),
                steps=tuple(dataclasses.replace(s, id=str(uuid.uuid4())) for s in stage.steps),
            )
            for stage in self.stages
        )
        overrides.setdefault("description", self.description)
        overrides.setdefault("failure_strategy", self.failure_strategy)
        return Pipeline(
            name=name,
            stages=stages,
            variables=tuple(merged.values()),
            environments=tuple(environments if environments is not None else self.environments),
            **overrides,
        )


class TemplateRegistry:

    def __init__(self, defaults: bool = True) -> None:
        self._templates: dict[str, PipelineTemplate] = {}
        if defaults:
            for template in default_templates():
                self.add(template)

    def add(self, template: PipelineTemplate) -> PipelineTemplate:
        if template.id in self._templates:
            raise PipelineDefinitionError(f"Template {template.id} already exists")
        self._templates[template.id] = template
        logger.info("Template registered", template_id=template.id, name=template.name)
        return template

    def get(self, template_id: str) -> PipelineTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template {template_id} not found")
        return template

    def list(self) -> list[PipelineTemplate]:
        return list(self._templates.values())

    def create_pipeline(self, template_id: str, name: str, **customizations: Any) -> Pipeline:
        return self.get(template_id).instantiate(name, **customizations)


def default_templates() -> list[PipelineTemplate]:
    staging = Environment(name="staging", type=EnvironmentType.STAGING)
    production = Environment(name="production", type=EnvironmentType.PRODUCTION)

    build = Stage(
        name="build",
        type=StageType.BUILD,
        steps=(
            Step(name="install", action={"command": "make install"}),
            Step(name="compile", action={"command": "make build"}, depends_on=("install",)),
        ),
    )
    test = Stage(
        name="test",
        type=StageType.TEST,
        steps=(Step(name="unit-tests", action={"command": "make test"}),),
        gates=(
            QualityGate(
                name="coverage",
                metric="coverage",
                operator=GateOperator.GTE,
                threshold=80,
                warning_threshold=90,
                type=GateType.COVERAGE,
            ),
        ),
    )

    return [
        PipelineTemplate(
            id="build-test-deploy",
            name="Build, test and deploy",
            description="Build, run the test suite behind a coverage gate, deploy to staging",
            category="web",
            stages=(
                build,
                test,
                Stage(
                    name="deploy-staging",
                    type=StageType.DEPLOY,
                    environment="staging",
                    steps=(Step(name="release", action={"command": "make release"}),),
                ),
            ),
            environments=(staging,),
        ),
        PipelineTemplate(
            id="staged-production",
            name="Staging then production",
            description="Deploy to staging, then to production with rollback on failure",
            category="web",
            failure_strategy=FailureStrategy.ROLLBACK,
            stages=(
                build,
                test,
                Stage(
                    name="deploy-staging",
                    type=StageType.DEPLOY,
                    environment="staging",
                    steps=(Step(name="release", action={"command": "make release"}),),
                ),
                Stage(
                    name="deploy-production",
                    type=StageType.DEPLOY,
                    environment="production",
                    steps=(Step(name="release", action={"command": "make release"}),),
                ),
            ),
            environments=(staging, production),
        ),
    ]
