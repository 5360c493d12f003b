"""Alerting -- threshold monitors and fire-and-forget notification sinks."""

from tradetree.alerting.alerts import AlertService
from tradetree.alerting.sinks import LogNotificationSink, NotificationSink

__all__ = ["AlertService", "LogNotificationSink", "NotificationSink"]
