"""
HealthMonitor — watches deployed environments and starts automatic
rollbacks when a rollback trigger is breached.

A trigger fires when the sampled metric satisfies `value <op> threshold`
(e.g. `error_rate gt 5`).  The metric is sampled over the trigger's
window; a missing sample never fires.
"""

from __future__ import annotations

import asyncio

from deployflow.core.config import settings
from deployflow.core.constants import RollbackTriggerSource
from deployflow.core.logging import get_logger
from deployflow.pipeline.environments import EnvironmentRegistry
from deployflow.pipeline.errors import EnvironmentBusyError
from deployflow.pipeline.gates import SYMBOLS, compare
from deployflow.pipeline.records import RollbackExecution
from deployflow.pipeline.rollback import RollbackController

logger = get_logger(__name__)


class HealthMonitor:

    def __init__(
        self,
        environments: EnvironmentRegistry,
        metrics_source,
        rollbacks: RollbackController,
        interval_seconds: float | None = None,
    ) -> None:
        self.environments = environments
        self.metrics_source = metrics_source
        self.rollbacks = rollbacks
        self.interval_seconds = interval_seconds or settings.HEALTH_MONITOR_INTERVAL_SECONDS

    async def check(self, environment: str) -> RollbackExecution | None:
        """Evaluate one environment; returns the rollback if one was started."""
        env = self.environments.get(environment)
        strategy = env.rollback_strategy
        if not strategy.automatic or not strategy.triggers:
            return None

        current = self.environments.current_version(env.name)
        if current is None:
            return None
        if not self.environments.automatic_enabled(env.name):
            logger.debug("Automatic rollback disabled, skipping check", environment=env.name)
            return None

        for trigger in strategy.triggers:
            scope = {
                "environment": env.name,
                "version": current,
                "window_seconds": trigger.window_seconds,
            }
            try:
                value = await self.metrics_source.sample(trigger.metric, scope)
            except Exception as exc:
                logger.warning("Health metric sample failed", environment=env.name,
                               metric=trigger.metric, error=str(exc))
                continue
            if value is None or not compare(value, trigger.operator, trigger.threshold):
                continue

            reason = (
                f"{trigger.metric}={value} {SYMBOLS[trigger.operator]} {trigger.threshold} "
                f"over {trigger.window_seconds}s"
            )
            logger.warning("Rollback trigger breached", environment=env.name, reason=reason)
            return await self.rollbacks.rollback(
                env.name,
                None,
                RollbackTriggerSource.AUTOMATIC,
                reason,
                trigger={
                    "metric": trigger.metric,
                    "operator": str(trigger.operator),
                    "threshold": trigger.threshold,
                    "window_seconds": trigger.window_seconds,
                    "value": value,
                },
            )
        return None

    async def check_all(self) -> list[RollbackExecution]:
        started = []
        for env in self.environments.list():
            try:
                rollback = await self.check(env.name)
            except EnvironmentBusyError as exc:
                logger.info("Environment busy, health check deferred", environment=env.name, holder=exc.holder)
                continue
            if rollback is not None:
                started.append(rollback)
        return started

    async def run_forever(self) -> None:
        logger.info("Health monitor started", interval_seconds=self.interval_seconds)
        while True:
            try:
                await self.check_all()
            except Exception as exc:
                logger.exception("Health check cycle failed", error=str(exc))
            await asyncio.sleep(self.interval_seconds)
