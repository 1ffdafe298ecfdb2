"""Shared fixtures: deterministic clock, in-memory store and completion fakes."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional

import pytest

from agentflow.config import CompletionConfig
from agentflow.core.clock import ManualClock
from agentflow.core.errors import ExecutionFailure
from agentflow.core.events import NotificationBus
from agentflow.core.models import Agent, AgentStatus, Execution, ExecutionStatus, Task
from agentflow.monitoring.metrics import (
    CpuStats,
    NetworkStats,
    ProcessStats,
    SystemMetricsSnapshot,
    UsageStats,
)
from agentflow.orchestration.executor import ExecutionStateMachine
from agentflow.services.completion import CompletionRequest
from agentflow.storage.memory import InMemoryStore

START = datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)  # a Monday


class StaticCompletion:
    """Returns the same text for every request and remembers what it was asked."""

    def __init__(self, text: str = "All systems nominal") -> None:
        self.text = text
        self.requests: List[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        return self.text


class AdvancingCompletion(StaticCompletion):
    """Moves the manual clock forward while "working"."""

    def __init__(self, clock: ManualClock, seconds: float, text: str = "Report ready") -> None:
        super().__init__(text)
        self._clock = clock
        self._seconds = seconds

    async def complete(self, request: CompletionRequest) -> str:
        await self._clock.advance(self._seconds)
        return await super().complete(request)


class FailingCompletion:
    def __init__(self, message: str = "upstream exploded") -> None:
        self.message = message

    async def complete(self, request: CompletionRequest) -> str:
        raise ExecutionFailure(self.message)


class HangingCompletion:
    async def complete(self, request: CompletionRequest) -> str:
        await asyncio.Event().wait()
        return "never"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def store(clock: ManualClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def completion() -> StaticCompletion:
    return StaticCompletion()


@pytest.fixture
def executor(
    store: InMemoryStore, bus: NotificationBus, completion: StaticCompletion, clock: ManualClock
) -> ExecutionStateMachine:
    return ExecutionStateMachine(
        store=store,
        bus=bus,
        completion=completion,
        clock=clock,
        completion_config=CompletionConfig(timeout_seconds=5.0),
    )


@pytest.fixture
def make_agent(store: InMemoryStore, clock: ManualClock) -> Callable[..., Awaitable[Agent]]:
    async def factory(agent_id: str = "agent-1", **overrides: Any) -> Agent:
        fields = dict(
            id=agent_id,
            name="Reporter",
            type="summariser",
            description="Writes digests.",
            model="gpt-4o-mini",
            capabilities=["summarise", "report"],
            status=AgentStatus.IDLE,
            created_at=clock.now(),
            updated_at=clock.now(),
        )
        fields.update(overrides)
        return await store.add_agent(Agent(**fields))

    return factory


@pytest.fixture
def make_task(store: InMemoryStore, clock: ManualClock) -> Callable[..., Awaitable[Task]]:
    async def factory(
        task_id: str = "task-1", assigned_agent_id: Optional[str] = "agent-1", **overrides: Any
    ) -> Task:
        fields = dict(
            id=task_id,
            title="Digest",
            description="Summarise the last hour",
            assigned_agent_id=assigned_agent_id,
            created_at=clock.now(),
            updated_at=clock.now(),
        )
        fields.update(overrides)
        return await store.add_task(Task(**fields))

    return factory


class FixedSystemSource:
    """Host sampler reporting whatever usage percentages the test sets."""

    blocking = False

    def __init__(self, cpu: float = 10.0, memory: float = 20.0, disk: float = 30.0) -> None:
        self.cpu = cpu
        self.memory = memory
        self.disk = disk
        self.samples = 0

    def sample(self, now: datetime) -> SystemMetricsSnapshot:
        self.samples += 1
        return SystemMetricsSnapshot(
            timestamp=now,
            cpu=CpuStats(usage=self.cpu, cores=4),
            memory=UsageStats(total=100, used=int(self.memory), free=100 - int(self.memory), usage=self.memory),
            disk=UsageStats(total=100, used=int(self.disk), free=100 - int(self.disk), usage=self.disk),
            network=NetworkStats(bytes_in=0, bytes_out=0, packets_in=0, packets_out=0),
            processes=ProcessStats(total=10, running=1),
            uptime_seconds=60.0,
        )


@pytest.fixture
def record_execution(store: InMemoryStore, clock: ManualClock) -> Callable[..., Awaitable[Execution]]:
    """Write a finished execution straight to the store."""
    counter = iter(range(1, 10_000))

    async def factory(
        agent_id: str = "agent-1",
        *,
        status: ExecutionStatus = ExecutionStatus.COMPLETED,
        duration_ms: int = 1000,
    ) -> Execution:
        started = clock.now()
        execution = await store.create_execution(
            Execution(id=f"exec-{next(counter)}", agent_id=agent_id, started_at=started)
        )
        if status is ExecutionStatus.RUNNING:
            return execution
        return await store.finalize_execution(
            execution.id,
            status=status,
            completed_at=started + timedelta(milliseconds=duration_ms),
            duration_ms=duration_ms,
            error="boom" if status is ExecutionStatus.FAILED else None,
        )

    return factory
