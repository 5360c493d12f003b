"""Notification sinks for alerts.

Dispatch is fire-and-forget: the alert service never waits on a sink in
the critical path and swallows (but logs) any sink failure.
"""

from abc import ABC, abstractmethod

from tradetree.logging import get_logger
from tradetree.models import Alert, AlertSeverity

logger = get_logger(__name__)


class NotificationSink(ABC):
    """Receives raised alerts."""

    @abstractmethod
    async def notify(self, alert: Alert) -> None:
        ...


class LogNotificationSink(NotificationSink):
    """Writes alerts to the structured log, level chosen by severity."""

    async def notify(self, alert: Alert) -> None:
        fields = {
            "alert_id": alert.alert_id,
            "alert_type": alert.type.value,
            "severity": alert.severity.value,
            "alert_message": alert.message,
        }
        if alert.severity == AlertSeverity.CRITICAL:
            logger.critical("alert_raised", **fields)
        elif alert.severity == AlertSeverity.HIGH:
            logger.error("alert_raised", **fields)
        else:
            logger.warning("alert_raised", **fields)
