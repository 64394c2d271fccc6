"""
StepExecutor — runs one step's action with timeout and retry.

The engine never calls an ActionExecutor directly; every attempt goes
through here so that timing, logging, retries and error capture are
recorded the same way for normal steps and rollback steps.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from deployflow.core.config import settings
from deployflow.core.constants import ExecutionStatus
from deployflow.core.logging import get_logger
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.definitions import Step
from deployflow.pipeline.interfaces import ActionExecutor, ActionResult
from deployflow.pipeline.records import Artifact, StepExecution
from deployflow.pipeline.signals import ExecutionSignal


class StepExecutor:
    """
    Executes a Step against an ActionExecutor.

    Attempt outcomes:
        - exit_code == 0           → success, stop
        - exit_code != 0           → failed attempt
        - action raised            → failed attempt (same as non-zero exit)
        - attempt exceeded timeout → failed attempt, recorded as timeout

    Failed attempts are retried while `retry_attempts` allows, waiting
    `backoff_base * 2**retry` (capped at `backoff_max`) between them.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
    ) -> None:
        self.executor = executor
        self.backoff_base = (
            settings.STEP_RETRY_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        )
        self.backoff_max = (
            settings.STEP_RETRY_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        )
        self.logger = get_logger("pipeline.step")

    def backoff(self, retry: int) -> float:
        return min(self.backoff_base * (2 ** retry), self.backoff_max)

    async def run(
        self,
        step: Step,
        context: ExecutionContext,
        *,
        retry_attempts: int | None = None,
        timeout: float | None = None,
        signal: ExecutionSignal | None = None,
    ) -> StepExecution:
        retries = step.retry_attempts if step.retry_attempts is not None else (retry_attempts or 0)
        timeout = step.timeout_seconds if step.timeout_seconds is not None else timeout

        record = StepExecution(
            step_id=step.id,
            name=step.name,
            status=ExecutionStatus.RUNNING,
            start_time=datetime.now(timezone.utc),
            continue_on_error=step.continue_on_error,
        )
        log = self.logger.bind(
            execution_id=context.execution_id,
            stage=context.stage_name,
            step=step.name,
            step_type=str(step.type),
        )

        # ── Check condition ───────────────────────
        if step.condition is not None:
            try:
                if not step.condition(context):
                    log.info("Step skipped, condition false")
                    record.skipped = True
                    record.finish(ExecutionStatus.SUCCESS)
                    return record
            except Exception as exc:
                log.warning("Step condition raised, running step anyway", error=str(exc))

        max_attempts = retries + 1
        timed_out = False

        for attempt in range(max_attempts):
            record.retry_count = attempt
            record.attempts = attempt + 1
            attempt_ctx = context.for_attempt(attempt)
            timed_out = False

            try:
                result = await asyncio.wait_for(
                    self.executor.execute(step.action, attempt_ctx), timeout=timeout
                )
            except asyncio.TimeoutError:
                timed_out = True
                record.exit_code = None
                record.error = f"Step timed out after {timeout}s"
            except Exception as exc:
                record.exit_code = None
                record.error = f"{type(exc).__name__}: {exc}"
            else:
                self._capture(record, result)
                if result.succeeded:
                    record.error = None
                    record.finish(ExecutionStatus.SUCCESS)
                    log.info(
                        "Step completed",
                        attempts=record.attempts,
                        duration_ms=record.duration_ms,
                    )
                    return record
                record.error = result.error or f"Step exited with code {result.exit_code}"

            if attempt + 1 >= max_attempts:
                break

            if signal is not None and signal.is_set:
                record.error = f"{record.error}; retry skipped: {signal.reason}"
                break

            wait_seconds = self.backoff(attempt)
            log.warning(
                f"Step failed (attempt {attempt + 1}/{max_attempts}), retrying in {wait_seconds}s",
                error=record.error,
                invocation_id=attempt_ctx.invocation_id,
            )
            if signal is not None:
                if await signal.sleep(wait_seconds):
                    record.error = f"{record.error}; retry skipped: {signal.reason}"
                    break
            else:
                await asyncio.sleep(wait_seconds)

        # Final failure
        record.finish(ExecutionStatus.TIMEOUT if timed_out else ExecutionStatus.FAILURE)
        log.error(
            "Step failed",
            error=record.error,
            attempts=record.attempts,
            continue_on_error=step.continue_on_error,
        )
        return record

    @staticmethod
    def _capture(record: StepExecution, result: ActionResult) -> None:
        record.exit_code = result.exit_code
        record.output = result.output
        record.artifacts = [Artifact.coerce(a) for a in result.artifacts]
