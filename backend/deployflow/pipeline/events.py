"""
Lifecycle events and the publish/subscribe channel that carries them.

Subscribers are registered collaborators (anything with an async
`handle(event)` method).  The channel awaits each subscriber in
registration order; a subscriber that raises is logged and skipped —
observers never change the outcome of an execution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from deployflow.core.constants import LifecycleEventType
from deployflow.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class LifecycleEvent:
    type: LifecycleEventType
    pipeline_id: str | None = None
    execution_id: str | None = None
    stage_id: str | None = None
    approval_id: str | None = None
    status: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "pipeline_id": self.pipeline_id,
            "execution_id": self.execution_id,
            "stage_id": self.stage_id,
            "approval_id": self.approval_id,
            "status": self.status,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventSubscriber(Protocol):
    async def handle(self, event: LifecycleEvent) -> None:
        ...


class EventChannel:
    """In-process publish/subscribe channel for lifecycle events."""

    def __init__(self) -> None:
        self._subscribers: list[EventSubscriber] = []

    def subscribe(self, subscriber: EventSubscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: EventSubscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscribers(self) -> list[EventSubscriber]:
        return list(self._subscribers)

    async def publish(self, event: LifecycleEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber.handle(event)
            except Exception as exc:
                logger.warning(
                    "Event subscriber failed",
                    subscriber=type(subscriber).__name__,
                    event_type=event.type,
                    error=str(exc),
                )


# ═══════════════════════════════════════════════════════════
#  Built-in subscribers
# ═══════════════════════════════════════════════════════════

class LoggingEventSubscriber:
    """Writes every lifecycle event to the structured log."""

    def __init__(self) -> None:
        self.logger = get_logger("pipeline.events")

    async def handle(self, event: LifecycleEvent) -> None:
        self.logger.info(
            "Lifecycle event",
            event_type=event.type,
            pipeline_id=event.pipeline_id,
            execution_id=event.execution_id,
            stage_id=event.stage_id,
            approval_id=event.approval_id,
            status=event.status,
        )


class NotificationEventSubscriber:
    """
    Forwards lifecycle events to a NotificationSender according to the
    owning pipeline's `notifications` rules.
    """

    def __init__(self, sender, store) -> None:
        self.sender = sender
        self.store = store

    async def handle(self, event: LifecycleEvent) -> None:
        if event.pipeline_id is None:
            return
        pipeline = self.store.find(event.pipeline_id)
        if pipeline is None:
            return
        for rule in pipeline.notifications:
            if rule.event != event.type:
                continue
            await self.sender.notify(
                rule.channel,
                str(event.type),
                list(rule.recipients),
                event.to_dict(),
            )
