"""Usage threshold notifications.

Fires when the headline percentage crosses the warn (70), high (90) or
critical (95) threshold. The same level is never sent twice in a row; the
cooldown resets only when a different level is reached. Alerts are logged
and, when a webhook URL is configured, POSTed as JSON via httpx.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


class NotifyLevel(str, Enum):
    WARN = "warn"
    HIGH = "high"
    CRITICAL = "critical"


Sink = Callable[[float, NotifyLevel], Awaitable[None]]


class WebhookSink:
    """Logs every alert and optionally POSTs it to a webhook."""

    def __init__(self, webhook_url: str = "", timeout: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def __call__(self, percent: float, level: NotifyLevel) -> None:
        logger.warning("Usage at %.0f%% (%s)", percent, level.value)
        if not self.webhook_url:
            return
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.webhook_url,
                    json={
                        "text": f"q-status: usage at {percent:.0f}% ({level.value})",
                        "percent": percent,
                        "level": level.value,
                    },
                )
                if resp.status_code >= 300:
                    logger.warning("Webhook returned %d: %s", resp.status_code, resp.text[:200])
        except httpx.HTTPError as exc:
            logger.warning("Webhook notification failed: %s", exc)


class ThresholdNotifier:
    def __init__(
        self,
        sink: Sink | None = None,
        warn: int = 70,
        high: int = 90,
        critical: int = 95,
    ) -> None:
        self.sink: Sink = sink or WebhookSink()
        self.warn = warn
        self.high = high
        self.critical = critical
        self.last_level: NotifyLevel | None = None

    def level_for(self, percent: float) -> NotifyLevel | None:
        if percent >= self.critical:
            return NotifyLevel.CRITICAL
        if percent >= self.high:
            return NotifyLevel.HIGH
        if percent >= self.warn:
            return NotifyLevel.WARN
        return None

    async def check(self, percent: float) -> NotifyLevel | None:
        """Notify if ``percent`` crosses a level other than the last one sent.

        Returns the level that was sent, or ``None``.
        """
        level = self.level_for(percent)
        if level is None or level is self.last_level:
            return None
        self.last_level = level
        await self.sink(percent, level)
        return level

    def reset(self) -> None:
        self.last_level = None
