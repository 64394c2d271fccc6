"""
ExecutionSignal — cooperative cancellation / timeout flag.

The engine owns one signal per execution; each stage gets a child.
Tripping a parent trips every child with the same status and reason,
tripping a child leaves the parent untouched (a stage timeout does not
time out the whole execution).

Signals are checked at step and stage boundaries and raced against
approval waits and retry back-off.  A step that is already running is
never interrupted by a signal.
"""

from __future__ import annotations

import asyncio

from deployflow.core.constants import ExecutionStatus


class ExecutionSignal:

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list[ExecutionSignal] = []
        self.status: ExecutionStatus | None = None
        self.reason: str | None = None

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by operator") -> None:
        self._trip(ExecutionStatus.CANCELLED, reason)

    def expire(self, reason: str = "Timed out") -> None:
        self._trip(ExecutionStatus.TIMEOUT, reason)

    def child(self) -> "ExecutionSignal":
        child = ExecutionSignal()
        if self.is_set:
            child._trip(self.status, self.reason)
        else:
            self._children.append(child)
        return child

    def _trip(self, status: ExecutionStatus, reason: str | None) -> None:
        if self._event.is_set():
            return
        self.status = status
        self.reason = reason
        self._event.set()
        for child in self._children:
            child._trip(status, reason)
        self._children.clear()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True if the signal tripped meanwhile."""
        if seconds <= 0:
            return self.is_set
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
