"""
Domain-specific exception hierarchy for the deployment pipeline engine.

All pipeline exceptions inherit from PipelineError so callers can
catch broadly or narrowly as needed.  Each exception carries structured
context (execution ID, step name, etc.) for logging/debugging.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        step_name: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.execution_id = execution_id
        self.step_name = step_name
        self.details = details or {}
        super().__init__(message)


class PipelineDefinitionError(PipelineError):
    """A pipeline definition is malformed (missing stages, steps, triggers...)."""
    pass


class PipelineNotFoundError(PipelineError):
    """No pipeline with the requested id/version exists."""
    pass


class PipelineInactiveError(PipelineError):
    """The pipeline exists but is not in the `active` status."""
    pass


class ExecutionNotFoundError(PipelineError):
    """No execution with the requested id exists."""
    pass


class ExecutionTerminalError(PipelineError):
    """An operation needs a running execution but it already finished."""
    pass


class StepExecutionError(PipelineError):
    """A step action failed during execution."""
    pass


class ApprovalError(PipelineError):
    """An approval decision was refused (not eligible, self approval, ...)."""
    pass


class ApprovalNotFoundError(ApprovalError):
    """No approval execution with the requested id exists."""
    pass


class EnvironmentNotFoundError(PipelineError):
    """The named environment is not registered."""
    pass


class EnvironmentBusyError(PipelineError):
    """The environment already has an in-flight deployment or rollback."""

    def __init__(
        self,
        message: str,
        *,
        environment: str,
        holder: str | None = None,
        **kwargs,
    ) -> None:
        self.environment = environment
        self.holder = holder
        super().__init__(message, **kwargs)


class RollbackError(PipelineError):
    """A rollback could not be started or completed."""
    pass


class TemplateNotFoundError(PipelineError):
    """No pipeline template with the requested id exists."""
    pass
