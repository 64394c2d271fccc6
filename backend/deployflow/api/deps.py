"""Shared dependencies for API routes."""

from __future__ import annotations

from fastapi import Request

from deployflow.pipeline.service import DeploymentService


def get_service(request: Request) -> DeploymentService:
    """The DeploymentService built by the application factory."""
    return request.app.state.service
