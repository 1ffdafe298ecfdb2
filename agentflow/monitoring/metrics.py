"""Periodic system and application samplers with bounded snapshot history."""
from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, List, Optional, Protocol

import psutil

from agentflow.core.clock import Clock, SystemClock
from agentflow.core.events import EventType, NotificationBus
from agentflow.core.models import AgentStatus, TaskStatus
from agentflow.storage.base import Store

logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024


@dataclass(slots=True, frozen=True)
class CpuStats:
    usage: float
    cores: int


@dataclass(slots=True, frozen=True)
class UsageStats:
    total: int
    used: int
    free: int
    usage: float


@dataclass(slots=True, frozen=True)
class NetworkStats:
    bytes_in: int
    bytes_out: int
    packets_in: int
    packets_out: int


@dataclass(slots=True, frozen=True)
class ProcessStats:
    total: int
    running: int


@dataclass(slots=True, frozen=True)
class SystemMetricsSnapshot:
    timestamp: datetime
    cpu: CpuStats
    memory: UsageStats
    disk: UsageStats
    network: NetworkStats
    processes: ProcessStats
    uptime_seconds: float


@dataclass(slots=True, frozen=True)
class AgentCounts:
    total: int = 0
    running: int = 0
    idle: int = 0
    error: int = 0
    paused: int = 0
    stopped: int = 0


@dataclass(slots=True, frozen=True)
class TaskCounts:
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


@dataclass(slots=True, frozen=True)
class ExecutionCounts:
    total: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    average_duration_ms: float = 0.0


@dataclass(slots=True, frozen=True)
class MessageCounts:
    total: int = 0
    last_hour: int = 0


@dataclass(slots=True, frozen=True)
class NotificationCounts:
    subscribers: int = 0
    published: int = 0


@dataclass(slots=True, frozen=True)
class ApplicationMetricsSnapshot:
    timestamp: datetime
    agents: AgentCounts
    tasks: TaskCounts
    executions: ExecutionCounts
    messages: MessageCounts
    notifications: NotificationCounts

    @property
    def task_failure_rate(self) -> float:
        """Failed tasks as a percentage of all tasks (0 with no tasks)."""
        if not self.tasks.total:
            return 0.0
        return self.tasks.failed / self.tasks.total * 100

    @property
    def execution_failure_rate(self) -> float:
        if not self.executions.total:
            return 0.0
        return self.executions.failed / self.executions.total * 100


@dataclass(slots=True, frozen=True)
class CurrentMetrics:
    system: Optional[SystemMetricsSnapshot]
    application: Optional[ApplicationMetricsSnapshot]


class SystemMetricsSource(Protocol):
    # True when sample() does I/O and must not run on the event loop.
    blocking: bool

    def sample(self, now: datetime) -> SystemMetricsSnapshot:
        """Return one snapshot of host-level counters."""


class PsutilSystemSource:
    """Real host metrics read through psutil."""

    blocking = True

    def __init__(self, disk_path: str = "/") -> None:
        self._disk_path = disk_path
        self._started = time.time()
        # The first non-blocking call always reports 0.0.
        psutil.cpu_percent(interval=None)

    def sample(self, now: datetime) -> SystemMetricsSnapshot:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(self._disk_path)
        network = psutil.net_io_counters()

        total = running = 0
        for proc in psutil.process_iter(["status"]):
            total += 1
            if proc.info.get("status") == psutil.STATUS_RUNNING:
                running += 1

        return SystemMetricsSnapshot(
            timestamp=now,
            cpu=CpuStats(usage=float(psutil.cpu_percent(interval=None)), cores=psutil.cpu_count() or 1),
            memory=UsageStats(
                total=memory.total,
                used=memory.used,
                free=memory.available,
                usage=float(memory.percent),
            ),
            disk=UsageStats(total=disk.total, used=disk.used, free=disk.free, usage=float(disk.percent)),
            network=NetworkStats(
                bytes_in=network.bytes_recv if network else 0,
                bytes_out=network.bytes_sent if network else 0,
                packets_in=network.packets_recv if network else 0,
                packets_out=network.packets_sent if network else 0,
            ),
            processes=ProcessStats(total=total, running=running),
            uptime_seconds=max(0.0, time.time() - self._started),
        )


class SimulatedSystemSource:
    """Randomised host metrics for environments without real sampling."""

    blocking = False

    def __init__(self, rng: Optional[random.Random] = None, cores: int = 4) -> None:
        self._rng = rng or random.Random()
        self._cores = cores
        self._started = time.time()

    def _usage(self, total: int) -> UsageStats:
        usage = self._rng.uniform(0, 100)
        used = int(total * usage / 100)
        return UsageStats(total=total, used=used, free=total - used, usage=usage)

    def sample(self, now: datetime) -> SystemMetricsSnapshot:
        rng = self._rng
        return SystemMetricsSnapshot(
            timestamp=now,
            cpu=CpuStats(usage=rng.uniform(0, 100), cores=self._cores),
            memory=self._usage(16 * GIB),
            disk=self._usage(500 * GIB),
            network=NetworkStats(
                bytes_in=rng.randint(0, 1_000_000),
                bytes_out=rng.randint(0, 1_000_000),
                packets_in=rng.randint(0, 10_000),
                packets_out=rng.randint(0, 10_000),
            ),
            processes=ProcessStats(total=rng.randint(50, 249), running=rng.randint(10, 59)),
            uptime_seconds=max(0.0, time.time() - self._started),
        )


def build_system_source(name: str) -> SystemMetricsSource:
    if name == "psutil":
        return PsutilSystemSource()
    if name == "simulated":
        return SimulatedSystemSource()
    raise ValueError(f"Unknown system metrics source '{name}'")


class MetricsCollector:
    """Sample system and application health into bounded ring buffers."""

    def __init__(
        self,
        *,
        store: Store,
        bus: NotificationBus,
        source: SystemMetricsSource,
        clock: Optional[Clock] = None,
        history_size: int = 1000,
        system_interval_seconds: float = 30.0,
        application_interval_seconds: float = 60.0,
    ) -> None:
        self._store = store
        self._bus = bus
        self._source = source
        self._clock = clock or SystemClock()
        self._system: Deque[SystemMetricsSnapshot] = deque(maxlen=history_size)
        self._application: Deque[ApplicationMetricsSnapshot] = deque(maxlen=history_size)
        self._system_interval = system_interval_seconds
        self._application_interval = application_interval_seconds
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def latest_system(self) -> Optional[SystemMetricsSnapshot]:
        return self._system[-1] if self._system else None

    @property
    def latest_application(self) -> Optional[ApplicationMetricsSnapshot]:
        return self._application[-1] if self._application else None

    def collect_system(self) -> SystemMetricsSnapshot:
        snapshot = self._source.sample(self._clock.now())
        self._system.append(snapshot)
        return snapshot

    async def refresh_system(self) -> SystemMetricsSnapshot:
        """Like :meth:`collect_system`, reading a blocking source on a worker thread."""
        if not self._source.blocking:
            return self.collect_system()
        snapshot = await asyncio.to_thread(self._source.sample, self._clock.now())
        self._system.append(snapshot)
        return snapshot

    async def collect_application(self) -> ApplicationMetricsSnapshot:
        now = self._clock.now()
        agent_counts = await self._store.agent_status_counts()
        task_counts = await self._store.task_status_counts()
        summary = await self._store.execution_summary()

        snapshot = ApplicationMetricsSnapshot(
            timestamp=now,
            agents=AgentCounts(
                total=sum(agent_counts.values()),
                running=agent_counts.get(AgentStatus.RUNNING, 0),
                idle=agent_counts.get(AgentStatus.IDLE, 0),
                error=agent_counts.get(AgentStatus.ERROR, 0),
                paused=agent_counts.get(AgentStatus.PAUSED, 0),
                stopped=agent_counts.get(AgentStatus.STOPPED, 0),
            ),
            tasks=TaskCounts(
                total=sum(task_counts.values()),
                pending=task_counts.get(TaskStatus.PENDING, 0),
                running=task_counts.get(TaskStatus.RUNNING, 0),
                completed=task_counts.get(TaskStatus.COMPLETED, 0),
                failed=task_counts.get(TaskStatus.FAILED, 0),
                cancelled=task_counts.get(TaskStatus.CANCELLED, 0),
            ),
            executions=ExecutionCounts(
                total=summary.total,
                running=summary.running,
                completed=summary.completed,
                failed=summary.failed,
                average_duration_ms=summary.average_duration_ms,
            ),
            messages=MessageCounts(
                total=await self._store.count_messages(),
                last_hour=await self._store.count_messages(since=now - timedelta(hours=1)),
            ),
            notifications=NotificationCounts(
                subscribers=self._bus.subscriber_count,
                published=self._bus.published_count,
            ),
        )
        self._application.append(snapshot)
        self._bus.emit(
            EventType.SYSTEM_STATUS,
            agents=snapshot.agents.total,
            running_agents=snapshot.agents.running,
            tasks=snapshot.tasks.total,
            running_executions=snapshot.executions.running,
            timestamp=now.isoformat(),
        )
        return snapshot

    def system_metrics(self, limit: int = 100) -> List[SystemMetricsSnapshot]:
        """Most recent system snapshots, oldest first."""
        return list(self._system)[-limit:] if limit > 0 else []

    def application_metrics(self, limit: int = 100) -> List[ApplicationMetricsSnapshot]:
        return list(self._application)[-limit:] if limit > 0 else []

    def current(self) -> CurrentMetrics:
        return CurrentMetrics(system=self.latest_system, application=self.latest_application)

    async def start(self) -> None:
        """Collect once immediately, then keep sampling on both intervals."""
        if self.is_running:
            return
        await self._sample_system_safely()
        await self._sample_application_safely()
        self._tasks = [
            asyncio.create_task(self._system_loop(), name="system-metrics"),
            asyncio.create_task(self._application_loop(), name="application-metrics"),
        ]
        logger.info("Metrics collector started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Metrics collector stopped")

    async def _system_loop(self) -> None:
        while True:
            await self._clock.sleep(self._system_interval)
            await self._sample_system_safely()

    async def _application_loop(self) -> None:
        while True:
            await self._clock.sleep(self._application_interval)
            await self._sample_application_safely()

    async def _sample_system_safely(self) -> None:
        try:
            await self.refresh_system()
        except Exception:
            logger.error("Error collecting system metrics", exc_info=True)

    async def _sample_application_safely(self) -> None:
        try:
            await self.collect_application()
        except Exception:
            logger.error("Error collecting application metrics", exc_info=True)
