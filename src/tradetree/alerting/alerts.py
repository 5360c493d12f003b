"""Threshold-based health alerting.

Monitors signal delay, venue responsiveness and stake deviation. Alerts are
kept in memory (bounded), persisted best-effort and pushed to notification
sinks as background tasks. Nothing here is on the critical path: every
failure inside alerting is logged and swallowed.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from tradetree.alerting.sinks import NotificationSink
from tradetree.config import AlertSettings
from tradetree.logging import get_logger
from tradetree.models import Alert, AlertSeverity, AlertType, utcnow

if TYPE_CHECKING:
    from tradetree.execution.venue import Venue
    from tradetree.persistence.store import SessionStore

logger = get_logger(__name__)

HEALTHY = "HEALTHY"
DEGRADED = "DEGRADED"
DOWN = "DOWN"


class AlertService:
    """Raises, stores and dispatches health alerts.

    Args:
        settings: Alert thresholds.
        sinks: Notification sinks to push alerts to.
        store: Optional durable store for alert history.
    """

    def __init__(
        self,
        settings: AlertSettings,
        sinks: list[NotificationSink] | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self._settings = settings
        self._sinks = list(sinks or [])
        self._store = store
        self._alerts: deque[Alert] = deque(maxlen=settings.max_alerts)
        self._deviations: deque[Decimal] = deque(maxlen=settings.deviation_history)
        self._venue_status = HEALTHY
        self._last_venue_response: float | None = None
        self._last_venue_check: datetime | None = None
        self._last_venue_error: str | None = None
        self._pending: set[asyncio.Task] = set()  # type: ignore[type-arg]

    # ──────────────────────────────────────────────
    # Monitors
    # ──────────────────────────────────────────────

    def check_signal_delay(
        self, signal_time: datetime, received_at: datetime | None = None
    ) -> Alert | None:
        """Alert when a signal arrives later than the delay threshold."""
        received_at = received_at or utcnow()
        delay = (received_at - signal_time).total_seconds()
        if delay <= self._settings.signal_delay_seconds:
            return None
        return self.raise_alert(
            AlertType.SIGNAL_DELAY,
            AlertSeverity.HIGH,
            f"Signal delayed by {delay:.1f}s "
            f"(threshold {self._settings.signal_delay_seconds:g}s)",
            delay_seconds=round(delay, 3),
        )

    def record_venue_response(
        self, ok: bool, elapsed_seconds: float, error: str | None = None
    ) -> Alert | None:
        """Track venue health from an observed call.

        A failed call marks the venue DOWN (CRITICAL alert); a call slower
        than the timeout threshold marks it DEGRADED (MEDIUM alert).
        """
        self._last_venue_response = elapsed_seconds
        self._last_venue_check = utcnow()
        self._last_venue_error = error

        if not ok:
            self._venue_status = DOWN
            return self.raise_alert(
                AlertType.VENUE_UNRESPONSIVE,
                AlertSeverity.CRITICAL,
                f"Venue is not responding: {error}",
                status=DOWN,
                response_time=round(elapsed_seconds, 3),
            )
        if elapsed_seconds > self._settings.venue_timeout_seconds:
            self._venue_status = DEGRADED
            return self.raise_alert(
                AlertType.VENUE_UNRESPONSIVE,
                AlertSeverity.MEDIUM,
                f"Venue responded slowly ({elapsed_seconds:.1f}s)",
                status=DEGRADED,
                response_time=round(elapsed_seconds, 3),
            )
        self._venue_status = HEALTHY
        return None

    async def check_venue(self, venue: Venue, symbol: str) -> str:
        """Probe the venue with a price request and record the result."""
        started = time.monotonic()
        try:
            await venue.get_price(symbol)
        except Exception as exc:
            self.record_venue_response(False, time.monotonic() - started, str(exc))
        else:
            self.record_venue_response(True, time.monotonic() - started)
        return self._venue_status

    def check_stake_deviation(
        self,
        expected: Decimal,
        actual: Decimal,
        session_id: str | None = None,
    ) -> Alert | None:
        """Record how far an actual stake strayed from the expected one.

        Alerts when the relative deviation exceeds the threshold.
        """
        if expected <= 0:
            return None
        deviation = abs(actual - expected) / expected
        self._deviations.append(deviation)
        if deviation <= self._settings.stake_deviation_threshold:
            return None
        return self.raise_alert(
            AlertType.STAKE_ABNORMAL,
            AlertSeverity.MEDIUM,
            f"Stake deviates {deviation * 100:.1f}% from expected",
            session_id=session_id,
            expected=str(expected),
            actual=str(actual),
            trend=self.deviation_trend(),
        )

    def deviation_trend(self) -> str:
        """Compare the last three deviations with the three before them."""
        if len(self._deviations) < 6:
            return "STABLE"
        values = list(self._deviations)
        recent = sum(values[-3:]) / 3
        previous = sum(values[-6:-3]) / 3
        if recent > previous * Decimal("1.1"):
            return "INCREASING"
        if recent < previous * Decimal("0.9"):
            return "DECREASING"
        return "STABLE"

    def report_system_error(self, message: str, **data: Any) -> Alert:
        return self.raise_alert(AlertType.SYSTEM_ERROR, AlertSeverity.HIGH, message, **data)

    # ──────────────────────────────────────────────
    # Alert lifecycle
    # ──────────────────────────────────────────────

    def raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        **data: Any,
    ) -> Alert:
        """Record an alert and dispatch it without waiting."""
        alert = Alert(
            alert_id=f"alert_{uuid4().hex[:12]}",
            type=alert_type,
            severity=severity,
            message=message,
            data={k: v for k, v in data.items() if v is not None},
        )
        self._alerts.append(alert)
        try:
            task = asyncio.get_running_loop().create_task(self._dispatch(alert))
        except RuntimeError:
            logger.warning("alert_dispatch_skipped_no_loop", alert_id=alert.alert_id)
        else:
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return alert

    async def _dispatch(self, alert: Alert) -> None:
        for sink in self._sinks:
            try:
                await sink.notify(alert)
            except Exception:
                logger.warning(
                    "alert_sink_failed",
                    alert_id=alert.alert_id,
                    sink=type(sink).__name__,
                    exc_info=True,
                )
        if self._store is not None:
            try:
                await self._store.save_alert(alert)
            except Exception:
                logger.warning("alert_persist_failed", alert_id=alert.alert_id, exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight dispatches (used at shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def acknowledge(self, alert_id: str, acknowledged_by: str = "operator") -> bool:
        """Mark an alert acknowledged. Returns False if the id is unknown."""
        for alert in self._alerts:
            if alert.alert_id == alert_id:
                alert.acknowledged = True
                alert.acknowledged_by = acknowledged_by
                alert.acknowledged_at = utcnow()
                if self._store is not None:
                    self._schedule_persist(alert)
                logger.info("alert_acknowledged", alert_id=alert_id, by=acknowledged_by)
                return True
        return False

    def _schedule_persist(self, alert: Alert) -> None:
        async def _persist() -> None:
            try:
                assert self._store is not None
                await self._store.save_alert(alert)
            except Exception:
                logger.warning("alert_persist_failed", alert_id=alert.alert_id, exc_info=True)

        try:
            task = asyncio.get_running_loop().create_task(_persist())
        except RuntimeError:
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def get_alerts(
        self, include_acknowledged: bool = True, limit: int = 50
    ) -> list[Alert]:
        """Return alerts newest first."""
        alerts = [a for a in reversed(self._alerts) if include_acknowledged or not a.acknowledged]
        return alerts[:limit]

    @property
    def venue_status(self) -> str:
        return self._venue_status

    def health(self) -> dict[str, Any]:
        """System health summary for the dashboard."""
        active = [a for a in self._alerts if not a.acknowledged]
        critical = [a for a in active if a.severity == AlertSeverity.CRITICAL]
        if critical or self._venue_status == DOWN:
            overall = "CRITICAL"
        elif active or self._venue_status == DEGRADED:
            overall = "WARNING"
        else:
            overall = "HEALTHY"
        return {
            "status": overall,
            "venue_status": self._venue_status,
            "last_venue_response_seconds": self._last_venue_response,
            "last_venue_check": (
                self._last_venue_check.isoformat() if self._last_venue_check else None
            ),
            "last_venue_error": self._last_venue_error,
            "active_alerts": len(active),
            "critical_alerts": len(critical),
            "stake_deviation_trend": self.deviation_trend(),
        }
