"""Tests for threshold alerting and the health verdict."""
from __future__ import annotations

import pytest

from agentflow.config import AlertThresholds
from agentflow.core.errors import ValidationError
from agentflow.core.models import ExecutionStatus, TaskStatus
from agentflow.monitoring.alerts import (
    AlertCategory,
    AlertEngine,
    AlertSeverity,
    CheckStatus,
    HealthState,
    compute_health,
)
from agentflow.monitoring.metrics import MetricsCollector

from conftest import FixedSystemSource


@pytest.fixture
def source() -> FixedSystemSource:
    return FixedSystemSource()


@pytest.fixture
def metrics(store, bus, clock, source) -> MetricsCollector:
    return MetricsCollector(store=store, bus=bus, source=source, clock=clock)


@pytest.fixture
def engine(metrics, clock) -> AlertEngine:
    return AlertEngine(metrics=metrics, clock=clock)


async def _sample(metrics: MetricsCollector) -> None:
    metrics.collect_system()
    await metrics.collect_application()


@pytest.mark.anyio
async def test_no_alerts_without_both_snapshots(engine, metrics, source) -> None:
    source.cpu = 99.0
    metrics.collect_system()
    assert engine.evaluate() == []
    assert engine.alerts() == []


@pytest.mark.anyio
async def test_quiet_system_raises_nothing(engine, metrics) -> None:
    await _sample(metrics)
    assert engine.evaluate() == []


@pytest.mark.anyio
async def test_system_thresholds(engine, metrics, source) -> None:
    source.cpu, source.memory, source.disk = 95.0, 90.0, 97.5
    await _sample(metrics)

    raised = {alert.message: alert for alert in engine.evaluate()}

    cpu = raised["High CPU usage: 95.0%"]
    assert cpu.severity is AlertSeverity.WARNING
    assert cpu.category is AlertCategory.SYSTEM
    assert cpu.metadata == {"cpu": 95.0}
    assert raised["High memory usage: 90.0%"].severity is AlertSeverity.WARNING
    assert raised["High disk usage: 97.5%"].severity is AlertSeverity.ERROR
    assert all(alert.id.startswith("alert_") for alert in raised.values())


@pytest.mark.anyio
async def test_values_at_the_threshold_do_not_alert(engine, metrics, source) -> None:
    source.cpu = 80.0
    await _sample(metrics)
    assert engine.evaluate() == []


@pytest.mark.anyio
async def test_application_thresholds(
    engine, metrics, make_agent, make_task, record_execution
) -> None:
    await make_agent()
    await make_task()
    await make_task("task-2", status=TaskStatus.FAILED)
    await record_execution(duration_ms=9000)
    await record_execution(status=ExecutionStatus.FAILED)
    await _sample(metrics)

    messages = sorted(alert.message for alert in engine.evaluate())

    assert messages == [
        "High average execution time: 9000ms",
        "High execution failure rate: 50.0%",
        "High task failure rate: 50.0%",
    ]


@pytest.mark.anyio
async def test_breaches_are_not_deduplicated(engine, metrics, source) -> None:
    source.cpu = 95.0
    await _sample(metrics)
    engine.evaluate()
    engine.evaluate()
    assert len(engine.alerts()) == 2


@pytest.mark.anyio
async def test_resolve_is_one_way(engine, metrics, source, clock) -> None:
    source.cpu = 95.0
    await _sample(metrics)
    (alert,) = engine.evaluate()

    assert engine.resolve(alert.id) is True
    assert engine.resolve(alert.id) is False
    assert engine.resolve("alert_missing") is False

    stored = engine.get(alert.id)
    assert stored.resolved
    assert stored.resolved_at == clock.now()
    assert engine.alerts(unresolved_only=True) == []
    assert len(engine.alerts()) == 1


@pytest.mark.anyio
async def test_alert_listing_returns_copies(engine, metrics, source) -> None:
    source.cpu = 95.0
    await _sample(metrics)
    for _ in range(3):
        engine.evaluate()

    listed = engine.alerts(limit=2)
    assert len(listed) == 2
    listed[0].resolved = True
    assert not engine.get(listed[0].id).resolved


def test_update_thresholds(engine) -> None:
    updated = engine.update_thresholds(cpu=50.0)
    assert updated.cpu == 50.0
    assert engine.thresholds.memory == AlertThresholds().memory
    with pytest.raises(ValidationError):
        engine.update_thresholds(latency=1.0)


@pytest.mark.anyio
async def test_lowered_threshold_applies_to_next_evaluation(engine, metrics, source) -> None:
    source.cpu = 60.0
    await _sample(metrics)
    assert engine.evaluate() == []
    engine.update_thresholds(cpu=50.0)
    assert [a.message for a in engine.evaluate()] == ["High CPU usage: 60.0%"]


@pytest.mark.anyio
async def test_health_states(engine, metrics, source) -> None:
    await _sample(metrics)
    report = engine.health_status()
    assert report.status is HealthState.HEALTHY
    assert all(check.status is CheckStatus.PASS for check in report.checks.values())
    assert set(report.checks) == {
        "cpu", "memory", "disk", "execution_error_rate", "failed_tasks", "execution_time"
    }

    source.cpu = 95.0
    metrics.collect_system()
    report = engine.health_status()
    assert report.status is HealthState.WARNING
    assert report.checks["cpu"].status is CheckStatus.WARN

    source.disk = 99.0
    metrics.collect_system()
    report = engine.health_status()
    assert report.status is HealthState.ERROR
    assert report.checks["disk"].status is CheckStatus.FAIL
    assert report.checks["disk"].message == "Disk usage critical: 99.0%"


@pytest.mark.anyio
async def test_health_check_does_not_raise_alerts(engine, metrics, source) -> None:
    source.disk = 99.0
    await _sample(metrics)
    engine.health_status()
    assert engine.alerts() == []


def test_health_without_snapshots_is_healthy(clock) -> None:
    report = compute_health(None, None, AlertThresholds(), clock.now())
    assert report.status is HealthState.HEALTHY
    assert report.checks == {}


@pytest.mark.anyio
async def test_periodic_evaluation(engine, metrics, source, clock) -> None:
    source.cpu = 95.0
    await _sample(metrics)
    await engine.start()
    await clock.settle()
    try:
        await clock.advance(299)
        assert engine.alerts() == []
        await clock.advance(1)
        assert len(engine.alerts()) == 1
        await clock.advance(300)
        assert len(engine.alerts()) == 2
    finally:
        await engine.stop()
