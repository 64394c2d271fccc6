"""LoggingNotificationSender — delivers notifications to the structured log."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from deployflow.core.logging import get_logger

logger = get_logger(__name__)


class LoggingNotificationSender:
    """Stand-in for email/Slack delivery; keeps what it sent for inspection."""

    def __init__(self, keep: int = 200) -> None:
        self.keep = keep
        self.sent: list[dict[str, Any]] = []

    async def notify(
        self,
        channel: str,
        event: str,
        recipients: Sequence[str],
        payload: Mapping[str, Any],
    ) -> None:
        logger.info(
            "Notification",
            channel=channel,
            notification=event,
            recipients=list(recipients),
        )
        self.sent.append({"channel": channel, "event": event, "recipients": list(recipients)})
        del self.sent[:-self.keep]
