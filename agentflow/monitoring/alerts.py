"""Threshold alerting and on-demand health verdicts over the latest metric snapshots."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from agentflow.config import AlertThresholds
from agentflow.core.clock import Clock, SystemClock
from agentflow.core.errors import ValidationError

from .metrics import ApplicationMetricsSnapshot, MetricsCollector, SystemMetricsSnapshot

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class AlertCategory(str, Enum):
    SYSTEM = "SYSTEM"
    APPLICATION = "APPLICATION"
    SECURITY = "SECURITY"


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class HealthState(str, Enum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass(slots=True)
class Alert:
    """A recorded threshold breach; only ``resolved``/``resolved_at`` ever change."""

    id: str
    severity: AlertSeverity
    category: AlertCategory
    message: str
    created_at: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class HealthCheck:
    status: CheckStatus
    message: Optional[str] = None


@dataclass(slots=True, frozen=True)
class HealthReport:
    status: HealthState
    checks: Dict[str, HealthCheck]
    timestamp: datetime


class AlertEngine:
    """Evaluate thresholds against the latest snapshots and keep every alert raised."""

    def __init__(
        self,
        *,
        metrics: MetricsCollector,
        clock: Optional[Clock] = None,
        thresholds: Optional[AlertThresholds] = None,
        interval_seconds: float = 300.0,
    ) -> None:
        self._metrics = metrics
        self._clock = clock or SystemClock()
        self._thresholds = thresholds or AlertThresholds()
        self._interval = interval_seconds
        self._alerts: List[Alert] = []
        self._index: Dict[str, Alert] = {}
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds

    def update_thresholds(self, **changes: float) -> AlertThresholds:
        unknown = set(changes) - {f.name for f in dataclasses.fields(AlertThresholds)}
        if unknown:
            raise ValidationError(f"Unknown alert thresholds: {sorted(unknown)}")
        self._thresholds = dataclasses.replace(self._thresholds, **changes)
        logger.info("Alert thresholds updated: %s", self._thresholds)
        return self._thresholds

    def evaluate(self) -> List[Alert]:
        """Open one alert per breach seen in the latest snapshots.

        Does nothing until both a system and an application snapshot exist.
        Breaches are not deduplicated against earlier unresolved alerts.
        """
        system = self._metrics.latest_system
        application = self._metrics.latest_application
        if system is None or application is None:
            return []

        limits = self._thresholds
        raised: List[Alert] = []

        def breach(severity: AlertSeverity, category: AlertCategory, message: str, **metadata: Any) -> None:
            raised.append(self._open(severity, category, message, metadata))

        if system.cpu.usage > limits.cpu:
            breach(AlertSeverity.WARNING, AlertCategory.SYSTEM,
                   f"High CPU usage: {system.cpu.usage:.1f}%", cpu=system.cpu.usage)
        if system.memory.usage > limits.memory:
            breach(AlertSeverity.WARNING, AlertCategory.SYSTEM,
                   f"High memory usage: {system.memory.usage:.1f}%", memory=system.memory.usage)
        if system.disk.usage > limits.disk:
            breach(AlertSeverity.ERROR, AlertCategory.SYSTEM,
                   f"High disk usage: {system.disk.usage:.1f}%", disk=system.disk.usage)

        task_rate = application.task_failure_rate
        if task_rate > limits.failed_tasks:
            breach(AlertSeverity.WARNING, AlertCategory.APPLICATION,
                   f"High task failure rate: {task_rate:.1f}%",
                   failure_rate=task_rate, failed=application.tasks.failed, total=application.tasks.total)

        execution_rate = application.execution_failure_rate
        if execution_rate > limits.error_rate:
            breach(AlertSeverity.WARNING, AlertCategory.APPLICATION,
                   f"High execution failure rate: {execution_rate:.1f}%",
                   error_rate=execution_rate,
                   failed=application.executions.failed,
                   total=application.executions.total)

        average = application.executions.average_duration_ms
        if average > limits.response_time_ms:
            breach(AlertSeverity.WARNING, AlertCategory.APPLICATION,
                   f"High average execution time: {average:.0f}ms", average_duration_ms=average)

        return raised

    def resolve(self, alert_id: str) -> bool:
        """Mark an open alert resolved; False if unknown or already resolved."""
        alert = self._index.get(alert_id)
        if alert is None or alert.resolved:
            return False
        alert.resolved = True
        alert.resolved_at = self._clock.now()
        logger.info("Alert resolved: %s", alert.message)
        return True

    def get(self, alert_id: str) -> Optional[Alert]:
        return self._index.get(alert_id)

    def alerts(self, limit: int = 100, unresolved_only: bool = False) -> List[Alert]:
        """The last *limit* alerts, oldest first, optionally only unresolved ones."""
        recent = self._alerts[-limit:] if limit > 0 else []
        if unresolved_only:
            recent = [alert for alert in recent if not alert.resolved]
        return [dataclasses.replace(alert) for alert in recent]

    def health_status(self) -> HealthReport:
        return compute_health(
            self._metrics.latest_system,
            self._metrics.latest_application,
            self._thresholds,
            self._clock.now(),
        )

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="alert-evaluator")
        logger.info("Alert engine started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Alert engine stopped")

    async def _loop(self) -> None:
        while True:
            await self._clock.sleep(self._interval)
            try:
                self.evaluate()
            except Exception:
                logger.error("Error checking alerts", exc_info=True)

    def _open(
        self, severity: AlertSeverity, category: AlertCategory, message: str, metadata: Dict[str, Any]
    ) -> Alert:
        alert = Alert(
            id=f"alert_{uuid.uuid4().hex}",
            severity=severity,
            category=category,
            message=message,
            created_at=self._clock.now(),
            metadata=metadata,
        )
        self._alerts.append(alert)
        self._index[alert.id] = alert
        logger.warning("Alert created: [%s] %s", severity.value, message)
        return alert


def compute_health(
    system: Optional[SystemMetricsSnapshot],
    application: Optional[ApplicationMetricsSnapshot],
    thresholds: AlertThresholds,
    now: datetime,
) -> HealthReport:
    """Pure health verdict: ERROR if any check fails, WARNING if any warns."""
    checks: Dict[str, HealthCheck] = {}

    def check(name: str, value: float, limit: float, breached: CheckStatus, message: str) -> None:
        if value > limit:
            checks[name] = HealthCheck(status=breached, message=message)
        else:
            checks[name] = HealthCheck(status=CheckStatus.PASS)

    if system is not None:
        check("cpu", system.cpu.usage, thresholds.cpu, CheckStatus.WARN,
              f"CPU usage high: {system.cpu.usage:.1f}%")
        check("memory", system.memory.usage, thresholds.memory, CheckStatus.WARN,
              f"Memory usage high: {system.memory.usage:.1f}%")
        check("disk", system.disk.usage, thresholds.disk, CheckStatus.FAIL,
              f"Disk usage critical: {system.disk.usage:.1f}%")

    if application is not None:
        execution_rate = application.execution_failure_rate
        check("execution_error_rate", execution_rate, thresholds.error_rate, CheckStatus.WARN,
              f"Execution error rate high: {execution_rate:.1f}%")
        task_rate = application.task_failure_rate
        check("failed_tasks", task_rate, thresholds.failed_tasks, CheckStatus.WARN,
              f"Failed task rate high: {task_rate:.1f}%")
        average = application.executions.average_duration_ms
        check("execution_time", average, thresholds.response_time_ms, CheckStatus.WARN,
              f"Execution time high: {average:.0f}ms")

    statuses = {c.status for c in checks.values()}
    if CheckStatus.FAIL in statuses:
        overall = HealthState.ERROR
    elif CheckStatus.WARN in statuses:
        overall = HealthState.WARNING
    else:
        overall = HealthState.HEALTHY
    return HealthReport(status=overall, checks=checks, timestamp=now)
