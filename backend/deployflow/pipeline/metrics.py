"""
Pipeline metrics — aggregate figures over a pipeline's executions.

    success_rate           successful / finished executions (0.0 – 1.0)
    average_duration_ms    mean duration of finished executions
    deployment_frequency   successful deployments per day in the range
    change_failure_rate    failed / attempted deployments (0.0 – 1.0)
    lead_time_ms           mean trigger → successful deployment time
    recovery_time_ms       mean failed execution end → next success end
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from statistics import mean
from typing import Any, Iterable

from deployflow.core.constants import FAILED_STATUSES, ExecutionStatus, StageType
from deployflow.pipeline.records import PipelineExecution

SECONDS_PER_DAY = 86400


@dataclass
class PipelineMetrics:
    pipeline_id: str | None
    start: datetime | None
    end: datetime | None
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    deployment_frequency: float = 0.0
    change_failure_rate: float = 0.0
    lead_time_ms: float = 0.0
    recovery_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "success_rate": self.success_rate,
            "average_duration_ms": self.average_duration_ms,
            "deployment_frequency": self.deployment_frequency,
            "change_failure_rate": self.change_failure_rate,
            "lead_time_ms": self.lead_time_ms,
            "recovery_time_ms": self.recovery_time_ms,
        }


def _deploy_stages(execution: PipelineExecution):
    return [s for s in execution.stages if s.type == StageType.DEPLOY and not s.skipped]


def calculate_pipeline_metrics(
    executions: Iterable[PipelineExecution],
    start: datetime | None = None,
    end: datetime | None = None,
    pipeline_id: str | None = None,
) -> PipelineMetrics:
    """Compute PipelineMetrics for executions started within [start, end]."""
    selected = sorted(
        (
            e for e in executions
            if (start is None or e.start_time >= start) and (end is None or e.start_time <= end)
        ),
        key=lambda e: e.start_time,
    )
    metrics = PipelineMetrics(pipeline_id=pipeline_id, start=start, end=end)
    metrics.total_executions = len(selected)
    if not selected:
        return metrics

    finished = [e for e in selected if e.is_terminal]
    successes = [e for e in finished if e.status == ExecutionStatus.SUCCESS]
    metrics.successful_executions = len(successes)
    metrics.failed_executions = len([e for e in finished if e.status in FAILED_STATUSES])
    if finished:
        metrics.success_rate = len(successes) / len(finished)
        metrics.average_duration_ms = mean(e.duration_ms or 0 for e in finished)

    # ── Deployments ───────────────────────────
    deployed_at = []
    lead_times = []
    attempted = failed = 0
    for execution in finished:
        stages = _deploy_stages(execution)
        if not stages:
            continue
        attempted += 1
        succeeded = [s for s in stages if s.deployment is not None and s.deployment.succeeded]
        if execution.status != ExecutionStatus.SUCCESS or execution.rollback is not None:
            failed += 1
        if execution.status == ExecutionStatus.SUCCESS and succeeded:
            deployed = succeeded[-1].deployment.deployed_at
            deployed_at.append(deployed)
            lead_times.append((deployed - execution.trigger.timestamp).total_seconds() * 1000)

    if attempted:
        metrics.change_failure_rate = failed / attempted
    if lead_times:
        metrics.lead_time_ms = mean(lead_times)

    range_start = start or selected[0].start_time
    range_end = end or max(e.end_time or e.start_time for e in selected)
    days = max((range_end - range_start).total_seconds() / SECONDS_PER_DAY, 1.0)
    metrics.deployment_frequency = len(deployed_at) / days

    # ── Recovery ──────────────────────────────
    recoveries = []
    failed_since: datetime | None = None
    for execution in finished:
        if execution.status in FAILED_STATUSES:
            if failed_since is None:
                failed_since = execution.end_time
        elif execution.status == ExecutionStatus.SUCCESS and failed_since is not None:
            recoveries.append((execution.end_time - failed_since).total_seconds() * 1000)
            failed_since = None
    if recoveries:
        metrics.recovery_time_ms = mean(recoveries)

    return metrics
