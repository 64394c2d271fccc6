"""Concrete collaborators: action executors, metrics, notifications, provisioning."""

from deployflow.executors.metrics import StaticMetricsSource
from deployflow.executors.notifications import LoggingNotificationSender
from deployflow.executors.provisioner import DryRunProvisioner
from deployflow.executors.registry import ActionExecutorRegistry, default_registry
from deployflow.executors.rest_api import RestActionExecutor
from deployflow.executors.shell import ShellActionExecutor

__all__ = [
    "ActionExecutorRegistry",
    "DryRunProvisioner",
    "LoggingNotificationSender",
    "RestActionExecutor",
    "ShellActionExecutor",
    "StaticMetricsSource",
    "default_registry",
]
