"""
EnvironmentRegistry — what is deployed where, and who holds the lock.

Per environment the registry keeps:
    - the declared Environment (rollback strategy)
    - an asyncio.Lock leased by the one deployment or rollback in flight
    - the deployment history (newest last)
    - timestamps of recent rollbacks, for the rolling rollback limit
    - whether automatic rollback is currently disabled, and until when
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from deployflow.core.constants import ExecutionStatus
from deployflow.core.logging import get_logger
from deployflow.pipeline.definitions import Environment
from deployflow.pipeline.errors import EnvironmentBusyError, EnvironmentNotFoundError

logger = get_logger(__name__)


@dataclass
class DeploymentRecord:
    environment: str
    version: str
    execution_id: str | None = None
    pipeline_id: str | None = None
    status: ExecutionStatus = ExecutionStatus.SUCCESS
    rollback_id: str | None = None
    deployed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "version": self.version,
            "execution_id": self.execution_id,
            "pipeline_id": self.pipeline_id,
            "status": self.status,
            "rollback_id": self.rollback_id,
            "deployed_at": self.deployed_at.isoformat(),
        }


@dataclass
class _EnvironmentState:
    environment: Environment
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holder: str | None = None
    history: list[DeploymentRecord] = field(default_factory=list)
    rollback_times: deque[float] = field(default_factory=deque)
    automatic_disabled: bool = False
    disabled_until: float | None = None      # monotonic; None → until reset
    disabled_reason: str | None = None


class EnvironmentRegistry:

    def __init__(self, clock=time.monotonic) -> None:
        self._environments: dict[str, _EnvironmentState] = {}
        self._clock = clock

    # ─── Registration ──────────────────────────────────

    def register(self, environment: Environment) -> None:
        """Declare an environment; re-registering updates its definition."""
        state = self._environments.get(environment.name)
        if state is None:
            self._environments[environment.name] = _EnvironmentState(environment=environment)
            logger.info("Environment registered", environment=environment.name,
                        type=str(environment.type))
        else:
            state.environment = environment

    def get(self, name: str) -> Environment:
        return self._state(name).environment

    def find(self, name: str) -> Environment | None:
        state = self._environments.get(name)
        return state.environment if state else None

    def list(self) -> list[Environment]:
        return [s.environment for s in self._environments.values()]

    # ─── Leases ────────────────────────────────────────

    def holder(self, name: str) -> str | None:
        return self._state(name).holder

    def is_busy(self, name: str) -> bool:
        return self._state(name).lock.locked()

    @asynccontextmanager
    async def lease(self, name: str, holder: str, wait: bool = False) -> AsyncIterator[None]:
        """
        Hold the environment for one deployment or rollback.

        Raises EnvironmentBusyError when another holder has it, unless
        `wait` is set, in which case the caller queues for the lock.
        """
        state = self._state(name)
        if state.lock.locked() and not wait:
            raise EnvironmentBusyError(
                f"Environment {name} is busy",
                environment=name,
                holder=state.holder,
            )
        await state.lock.acquire()
        state.holder = holder
        try:
            yield
        finally:
            state.holder = None
            state.lock.release()

    # ─── Deployment history ────────────────────────────

    def record_deployment(
        self,
        environment: str,
        version: str,
        execution_id: str | None = None,
        pipeline_id: str | None = None,
    ) -> DeploymentRecord:
        record = DeploymentRecord(
            environment=environment,
            version=version,
            execution_id=execution_id,
            pipeline_id=pipeline_id,
        )
        self._state(environment).history.append(record)
        logger.info(
            "Deployment recorded",
            environment=environment,
            version=version,
            execution_id=execution_id,
        )
        return record

    def history(self, environment: str) -> list[DeploymentRecord]:
        return list(self._state(environment).history)

    def current_version(self, environment: str) -> str | None:
        for record in reversed(self._state(environment).history):
            if record.status == ExecutionStatus.SUCCESS:
                return record.version
        return None

    def last_good_version(
        self, environment: str, exclude_execution: str | None = None
    ) -> str | None:
        """Newest successful deployment not produced by `exclude_execution`."""
        for record in reversed(self._state(environment).history):
            if record.status != ExecutionStatus.SUCCESS:
                continue
            if exclude_execution is not None and record.execution_id == exclude_execution:
                continue
            return record.version
        return None

    def previous_version(self, environment: str) -> str | None:
        """Newest successful deployment of a version other than the current one."""
        current = self.current_version(environment)
        for record in reversed(self._state(environment).history):
            if record.status == ExecutionStatus.SUCCESS and record.version != current:
                return record.version
        return None

    def last_deployed_environment(self, pipeline_id: str) -> str | None:
        """Environment most recently deployed successfully by `pipeline_id`."""
        latest: DeploymentRecord | None = None
        for state in self._environments.values():
            for record in state.history:
                if record.pipeline_id != pipeline_id or record.status != ExecutionStatus.SUCCESS:
                    continue
                if latest is None or record.deployed_at > latest.deployed_at:
                    latest = record
        return latest.environment if latest else None

    def mark_rolled_back(
        self, environment: str, target_version: str, rollback_id: str | None = None
    ) -> None:
        """
        Restore `target_version` as current.

        Deployments newer than the newest good entry for the target are
        marked rolled_back (only the current one when the target has no
        good entry); a history entry for the restored version is
        appended.
        """
        history = self._state(environment).history
        anchor = None
        for index in range(len(history) - 1, -1, -1):
            record = history[index]
            if record.version == target_version and record.status == ExecutionStatus.SUCCESS:
                anchor = index
                break
        if anchor is None:
            superseded = [r for r in history if r.status == ExecutionStatus.SUCCESS][-1:]
        else:
            superseded = [r for r in history[anchor + 1:] if r.status == ExecutionStatus.SUCCESS]
        for record in superseded:
            record.status = ExecutionStatus.ROLLED_BACK
        history.append(DeploymentRecord(
            environment=environment,
            version=target_version,
            rollback_id=rollback_id,
        ))

    # ─── Rollback limits ───────────────────────────────

    def rollbacks_in_window(self, environment: str) -> int:
        state = self._state(environment)
        self._prune(state)
        return len(state.rollback_times)

    def record_rollback(self, environment: str) -> int:
        """Count a rollback against the rolling window; returns the new count."""
        state = self._state(environment)
        state.rollback_times.append(self._clock())
        self._prune(state)
        return len(state.rollback_times)

    def automatic_enabled(self, environment: str) -> bool:
        state = self._state(environment)
        if not state.automatic_disabled:
            return True
        if state.disabled_until is not None and self._clock() >= state.disabled_until:
            logger.info("Automatic rollback re-enabled, window elapsed", environment=environment)
            self._clear_disabled(state)
            return True
        return False

    def disable_automatic(
        self, environment: str, reason: str, for_seconds: float | None = None
    ) -> None:
        """Disable automatic rollback until reset, or for `for_seconds`."""
        state = self._state(environment)
        state.automatic_disabled = True
        state.disabled_reason = reason
        state.disabled_until = None if for_seconds is None else self._clock() + for_seconds
        logger.warning(
            "Automatic rollback disabled",
            environment=environment,
            reason=reason,
            for_seconds=for_seconds,
        )

    def reset_automatic(self, environment: str) -> None:
        state = self._state(environment)
        self._clear_disabled(state)
        state.rollback_times.clear()
        logger.info("Automatic rollback reset", environment=environment)

    def describe(self, environment: str) -> dict[str, Any]:
        """Snapshot used by the API."""
        state = self._state(environment)
        env = state.environment
        return {
            "name": env.name,
            "type": env.type,
            "current_version": self.current_version(environment),
            "busy": state.lock.locked(),
            "holder": state.holder,
            "automatic_rollback": env.rollback_strategy.automatic,
            "automatic_rollback_enabled": self.automatic_enabled(environment),
            "automatic_rollback_disabled_reason": state.disabled_reason,
            "rollbacks_in_window": self.rollbacks_in_window(environment),
            "history": [r.to_dict() for r in state.history],
        }

    # ─── Internal ──────────────────────────────────────

    def _state(self, name: str) -> _EnvironmentState:
        state = self._environments.get(name)
        if state is None:
            raise EnvironmentNotFoundError(f"Environment {name} is not registered")
        return state

    def _prune(self, state: _EnvironmentState) -> None:
        horizon = self._clock() - state.environment.rollback_strategy.window_seconds
        while state.rollback_times and state.rollback_times[0] < horizon:
            state.rollback_times.popleft()

    @staticmethod
    def _clear_disabled(state: _EnvironmentState) -> None:
        state.automatic_disabled = False
        state.disabled_until = None
        state.disabled_reason = None
