"""Shared constants and enums used across the application."""

from enum import StrEnum


class PipelineStatus(StrEnum):
    """Lifecycle status of a pipeline definition."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"
    DISABLED = "disabled"


class ExecutionStatus(StrEnum):
    """Status of an execution, stage execution, step execution or rollback."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    WAITING_APPROVAL = "waiting_approval"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.SUCCESS,
    ExecutionStatus.FAILURE,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
    ExecutionStatus.ROLLED_BACK,
})

# Stage outcomes the failure strategy reacts to
FAILED_STATUSES = frozenset({ExecutionStatus.FAILURE, ExecutionStatus.TIMEOUT})


class FailureStrategy(StrEnum):
    """What the engine does after a stage fails."""

    STOP = "stop"
    CONTINUE = "continue"
    ROLLBACK = "rollback"


class StageType(StrEnum):
    SOURCE = "source"
    BUILD = "build"
    TEST = "test"
    SECURITY_SCAN = "security_scan"
    QUALITY_CHECK = "quality_check"
    ARTIFACT = "artifact"
    DEPLOY = "deploy"
    SMOKE_TEST = "smoke_test"
    INTEGRATION_TEST = "integration_test"
    PERFORMANCE_TEST = "performance_test"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    CUSTOM = "custom"


class StepType(StrEnum):
    SHELL = "shell"
    DOCKER = "docker"
    KUBERNETES = "kubernetes"
    TERRAFORM = "terraform"
    ANSIBLE = "ansible"
    AWS_CLI = "aws_cli"
    AZURE_CLI = "azure_cli"
    GCP_CLI = "gcp_cli"
    REST_API = "rest_api"
    DATABASE = "database"
    NOTIFICATION = "notification"
    APPROVAL = "approval"
    CUSTOM = "custom"


class TriggerType(StrEnum):
    MANUAL = "manual"
    WEBHOOK = "webhook"
    GIT_PUSH = "git_push"
    GIT_PR = "git_pr"
    SCHEDULE = "schedule"
    ARTIFACT_UPDATED = "artifact_updated"
    PIPELINE_COMPLETED = "pipeline_completed"
    EXTERNAL_EVENT = "external_event"


class GateOperator(StrEnum):
    """Comparison operators for quality gates and rollback triggers."""

    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"


class GateStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


class GateType(StrEnum):
    COVERAGE = "coverage"
    SECURITY = "security"
    PERFORMANCE = "performance"
    CUSTOM = "custom"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ApprovalDecision(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ApproverRole(StrEnum):
    APPROVER = "approver"
    REVIEWER = "reviewer"
    OPTIONAL = "optional"


class EnvironmentType(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"
    DEMO = "demo"


class RollbackTriggerSource(StrEnum):
    """Who or what started a rollback."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    POLICY = "policy"


class RollbackStepType(StrEnum):
    APPLICATION = "application"
    CONFIGURATION = "configuration"
    INFRASTRUCTURE = "infrastructure"
    DATABASE = "database"


# Reverse-dependency order in which an environment is restored
ROLLBACK_STEP_ORDER = (
    RollbackStepType.APPLICATION,
    RollbackStepType.CONFIGURATION,
    RollbackStepType.INFRASTRUCTURE,
    RollbackStepType.DATABASE,
)


class VariableScope(StrEnum):
    GLOBAL = "global"
    STAGE = "stage"
    ENVIRONMENT = "environment"


class ArtifactType(StrEnum):
    BINARY = "binary"
    DOCKER_IMAGE = "docker_image"
    HELM_CHART = "helm_chart"
    TERRAFORM_PLAN = "terraform_plan"
    TEST_RESULTS = "test_results"
    REPORT = "report"


class LifecycleEventType(StrEnum):
    """Events published on the pipeline event channel."""

    PIPELINE_CREATED = "pipeline_created"
    EXECUTION_STARTED = "execution_started"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_PROCESSED = "approval_processed"
    APPROVAL_ESCALATED = "approval_escalated"
    DEPLOYMENT_COMPLETED = "deployment_completed"
    EXECUTION_COMPLETED = "execution_completed"
    ROLLBACK_EXECUTED = "rollback_executed"


class APIRequestMethod(StrEnum):
    """HTTP methods accepted by REST API steps."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
