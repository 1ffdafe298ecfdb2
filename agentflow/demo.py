"""CLI demonstration of a cron-driven task running through the state machine."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from agentflow.core.clock import ManualClock
from agentflow.core.events import NotificationBus
from agentflow.core.models import Agent, Task
from agentflow.monitoring.alerts import AlertEngine
from agentflow.monitoring.metrics import MetricsCollector, SimulatedSystemSource
from agentflow.monitoring.performance import PerformanceAggregator
from agentflow.orchestration.executor import ExecutionStateMachine
from agentflow.runtime import configure_logging
from agentflow.scheduling.registry import ScheduleRegistry
from agentflow.services.echo import EchoCompletionService
from agentflow.storage.memory import InMemoryStore


async def main() -> None:
    configure_logging("INFO")
    clock = ManualClock(datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc))
    store = InMemoryStore(clock=clock)
    bus = NotificationBus()
    executor = ExecutionStateMachine(
        store=store,
        bus=bus,
        completion=EchoCompletionService(latency=(0.0, 0.0)),
        clock=clock,
    )
    registry = ScheduleRegistry(store=store, executor=executor, clock=clock)

    now = clock.now()
    agent = await store.add_agent(
        Agent(
            id="demo-agent",
            name="Reporter",
            type="summariser",
            description="Writes hourly status digests.",
            capabilities=["summarise", "report"],
            created_at=now,
            updated_at=now,
        )
    )
    await store.add_task(
        Task(
            id="hourly-digest",
            title="Hourly digest",
            description="Summarise the last hour of activity",
            schedule="0 * * * *",
            is_recurring=True,
            assigned_agent_id=agent.id,
            created_at=now,
            updated_at=now,
        )
    )

    await registry.start()
    for _ in range(3):
        await clock.advance(3600)
        await registry.drain()
        task = await store.get_task("hourly-digest")
        print(f"{clock.now():%H:%M} task {task.status.value}, next run {task.scheduled_for:%H:%M}")
    await registry.stop()

    for execution in reversed(await store.list_executions()):
        print(f"Execution {execution.id[:8]} {execution.status.value} {execution.output.result if execution.output else ''}")

    metrics = MetricsCollector(store=store, bus=bus, source=SimulatedSystemSource(), clock=clock)
    metrics.collect_system()
    await metrics.collect_application()
    report = AlertEngine(metrics=metrics, clock=clock).health_status()
    print(f"Health: {report.status.value}")

    snapshot = await PerformanceAggregator(store=store, clock=clock).calculate(agent.id)
    print(f"Performance score for {agent.name}: {snapshot.performance_score:.1f}")
    print(f"Notifications published: {bus.published_count}")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
