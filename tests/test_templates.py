"""Pipeline templates."""

import pytest

from deployflow.core.constants import FailureStrategy, StageType
from deployflow.pipeline.definitions import Environment, PipelineVariable
from deployflow.pipeline.errors import PipelineDefinitionError, TemplateNotFoundError
from deployflow.pipeline.templates import PipelineTemplate, TemplateRegistry
from tests.conftest import stage


class TestTemplateRegistry:

    def test_default_templates(self):
        registry = TemplateRegistry()

        assert {t.id for t in registry.list()} == {"build-test-deploy", "staged-production"}
        assert registry.get("staged-production").failure_strategy == FailureStrategy.ROLLBACK

    def test_empty_registry(self):
        assert TemplateRegistry(defaults=False).list() == []

    def test_unknown_template(self):
        with pytest.raises(TemplateNotFoundError):
            TemplateRegistry().get("nope")

    def test_duplicate_id_rejected(self):
        registry = TemplateRegistry(defaults=False)
        registry.add(PipelineTemplate(id="t1", name="one", stages=(stage("build"),)))

        with pytest.raises(PipelineDefinitionError):
            registry.add(PipelineTemplate(id="t1", name="again", stages=(stage("build"),)))

    def test_template_needs_stages(self):
        with pytest.raises(PipelineDefinitionError):
            PipelineTemplate(name="empty", stages=())


class TestInstantiate:

    def test_instantiated_pipeline_gets_fresh_ids(self):
        template = TemplateRegistry().get("build-test-deploy")
        pipeline = template.instantiate("web")

        assert pipeline.name == "web"
        assert [s.name for s in pipeline.stages] == ["build", "test", "deploy-staging"]
        assert pipeline.stages[2].type == StageType.DEPLOY
        assert {s.id for s in pipeline.stages}.isdisjoint({s.id for s in template.stages})
        assert pipeline.stages[0].steps[0].id != template.stages[0].steps[0].id
        assert pipeline.stage("build").steps[1].depends_on == ("install",)
        assert [e.name for e in pipeline.environments] == ["staging"]

    def test_variables_merge_by_key(self):
        template = PipelineTemplate(
            name="svc",
            stages=(stage("build"),),
            variables=(PipelineVariable(key="region", value="eu", description="deploy region"),),
        )
        pipeline = template.instantiate("api", variables={"region": "us", "tier": "backend"})

        variables = {v.key: v for v in pipeline.variables}
        assert variables["region"].value == "us"
        assert variables["region"].description == "deploy region"
        assert variables["tier"].value == "backend"

    def test_environments_replaced(self):
        template = TemplateRegistry().get("build-test-deploy")
        pipeline = template.instantiate(
            "web", environments=[Environment(name="staging", type="staging"), Environment(name="qa")]
        )

        assert [e.name for e in pipeline.environments] == ["staging", "qa"]

    def test_overrides_pass_through(self):
        pipeline = TemplateRegistry().create_pipeline(
            "build-test-deploy", "web", failure_strategy=FailureStrategy.CONTINUE, created_by="alice"
        )

        assert pipeline.failure_strategy == FailureStrategy.CONTINUE
        assert pipeline.created_by == "alice"

    async def test_service_registers_template_environments(self, service):
        pipeline = await service.create_from_template("staged-production", "web")

        assert service.store.get(pipeline.id) is pipeline
        assert {e.name for e in service.environments.list()} == {"staging", "production"}
