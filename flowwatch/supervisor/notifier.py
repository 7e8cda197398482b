"""Supervisor Notifier: delivers notification requests for detected issues.

The delivery channel is pluggable: every notification goes to the structured
log, and optionally to an HTTP endpoint (chat relay, desktop bridge, ...).
Delivery never raises and never blocks the supervision loop for longer than
the configured timeout.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from flowwatch.logging_config import get_logger

if TYPE_CHECKING:
    from flowwatch.config import Settings

logger = get_logger(__name__)


class NotificationPriority(StrEnum):
    LOW = "low"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Notification:
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.LOW
    issue_kind: Optional[str] = None
    suggested_action: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "issue_kind": self.issue_kind,
            "suggested_action": self.suggested_action,
        }


class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> None: ...


class LogNotificationSink:
    """Writes notifications to the structured log."""

    async def send(self, notification: Notification) -> None:
        log = logger.warning if notification.priority == NotificationPriority.CRITICAL else logger.info
        log(
            "supervisor_notification",
            title=notification.title,
            message=notification.message[:300],
            priority=notification.priority.value,
        )


class HttpNotificationSink:
    """POSTs notifications as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 3.0) -> None:
        self._url = url
        self._timeout = timeout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def send(self, notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(self._url, json=notification.to_dict())
            resp.raise_for_status()


class SupervisorNotifier:
    """Filters notifications by verbosity and fans them out to the sinks."""

    def __init__(
        self,
        sinks: Optional[list[NotificationSink]] = None,
        verbosity: str = "important",
        timeout: float = 3.0,
    ) -> None:
        self._sinks: list[NotificationSink] = sinks if sinks is not None else [LogNotificationSink()]
        self._verbosity = verbosity
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SupervisorNotifier":
        sinks: list[NotificationSink] = [LogNotificationSink()]
        if settings.notify_webhook_url:
            sinks.append(HttpNotificationSink(
                settings.notify_webhook_url, timeout=settings.notify_timeout_seconds,
            ))
        return cls(
            sinks=sinks,
            verbosity=settings.notify_verbosity,
            timeout=settings.notify_timeout_seconds,
        )

    @property
    def verbosity(self) -> str:
        return self._verbosity

    def should_send(self, notification: Notification) -> bool:
        if self._verbosity == "all":
            return True
        if self._verbosity == "errors-only":
            return notification.priority == NotificationPriority.CRITICAL
        return notification.priority in (NotificationPriority.HIGH, NotificationPriority.CRITICAL)

    async def notify(self, notification: Notification) -> bool:
        """Deliver to every sink. Returns True if at least one accepted it."""
        if not self.should_send(notification):
            logger.debug(
                "notification_filtered",
                title=notification.title,
                priority=notification.priority.value,
                verbosity=self._verbosity,
            )
            return False

        delivered = False
        for sink in self._sinks:
            try:
                await asyncio.wait_for(sink.send(notification), timeout=self._timeout)
                delivered = True
            except asyncio.TimeoutError:
                logger.warning("notifier_timeout", sink=type(sink).__name__, timeout=self._timeout)
            except Exception as exc:
                logger.warning("notifier_send_failed", sink=type(sink).__name__, error=str(exc))
        return delivered
