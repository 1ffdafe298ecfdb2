"""Per-agent performance scoring, caching and ranking."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from agentflow.core.clock import Clock, SystemClock, as_utc
from agentflow.core.errors import AgentflowError, NotFoundError, ValidationError
from agentflow.core.models import Agent, AgentStatus, AgentStatusChange, ExecutionStatus, TaskStatus
from agentflow.core.payloads import PerformanceMetricsSnapshot
from agentflow.storage.base import Store

logger = logging.getLogger(__name__)

RANKING_METRICS = ("performance_score", "efficiency", "reliability", "tasks_completed")

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(slots=True, frozen=True)
class AgentRankings:
    overall: int
    by_type: int
    by_model: int
    total_agents: int


@dataclass(slots=True, frozen=True)
class RankedAgent:
    agent: Agent
    metrics: PerformanceMetricsSnapshot


def calculate_uptime(history: Sequence[AgentStatusChange], now: datetime) -> float:
    """Percentage of observed time not spent in ERROR.

    The last recorded status is taken to hold until *now*.
    """
    if len(history) < 2:
        return 100.0
    entries = sorted(history, key=lambda change: change.timestamp)
    boundaries = [change.timestamp for change in entries[1:]] + [max(now, entries[-1].timestamp)]

    total = error = 0.0
    for change, until in zip(entries, boundaries):
        span = (until - change.timestamp).total_seconds()
        total += span
        if change.status is AgentStatus.ERROR:
            error += span
    return (total - error) / total * 100 if total > 0 else 100.0


def calculate_score(
    *,
    success_rate: float,
    average_execution_time: float,
    uptime: float,
    error_rate: float,
    tasks_completed: int,
) -> float:
    score = (
        success_rate * 0.30
        + max(0.0, 100 - average_execution_time / 100) * 0.20
        + uptime * 0.25
        + max(0.0, 100 - error_rate) * 0.15
        + min(100.0, tasks_completed * 2) * 0.10
    )
    return min(100.0, max(0.0, score))


def calculate_efficiency(tasks_completed: int, total_execution_time: float) -> float:
    if total_execution_time <= 0:
        return 0.0
    tasks_per_minute = tasks_completed / total_execution_time * 60000
    return min(100.0, tasks_per_minute * 10)


def calculate_reliability(success_rate: float, uptime: float) -> float:
    return (success_rate + uptime) / 2


class PerformanceAggregator:
    """Compute agent performance snapshots, cached per agent on the injected clock."""

    def __init__(
        self,
        *,
        store: Store,
        clock: Optional[Clock] = None,
        cache_ttl_seconds: float = 300.0,
        refresh_interval_seconds: float = 600.0,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._ttl = cache_ttl_seconds
        self._refresh_interval = refresh_interval_seconds
        self._cache: Dict[str, Tuple[datetime, PerformanceMetricsSnapshot]] = {}
        self._task: Optional[asyncio.Task[None]] = None

    async def calculate(self, agent_id: str) -> PerformanceMetricsSnapshot:
        now = self._clock.now()
        cached = self._cache.get(agent_id)
        if cached is not None and (now - cached[0]).total_seconds() < self._ttl:
            return cached[1]

        agent = await self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)

        executions = await self._store.list_executions(agent_id=agent_id)
        total = len(executions)
        successful = sum(1 for e in executions if e.status is ExecutionStatus.COMPLETED)
        failed = sum(1 for e in executions if e.status is ExecutionStatus.FAILED)
        success_rate = successful / total * 100 if total else 0.0
        error_rate = failed / total * 100 if total else 0.0

        durations = [
            e.duration_ms
            for e in executions
            if e.status is ExecutionStatus.COMPLETED and e.duration_ms
        ]
        total_time = float(sum(durations))
        average_time = total_time / len(durations) if durations else 0.0

        tasks = await self._store.list_tasks(assigned_agent_id=agent_id)
        tasks_completed = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
        days_active = max(1.0, (now - as_utc(agent.created_at)).total_seconds() / SECONDS_PER_DAY)

        uptime = calculate_uptime(await self._store.agent_status_history(agent_id), now)

        snapshot = PerformanceMetricsSnapshot(
            agent_id=agent_id,
            total_executions=total,
            successful_executions=successful,
            failed_executions=failed,
            success_rate=success_rate,
            error_rate=error_rate,
            average_execution_time=average_time,
            total_execution_time=total_time,
            last_execution=executions[0].started_at if executions else None,
            tasks_completed=tasks_completed,
            average_tasks_per_day=tasks_completed / days_active,
            uptime=uptime,
            performance_score=calculate_score(
                success_rate=success_rate,
                average_execution_time=average_time,
                uptime=uptime,
                error_rate=error_rate,
                tasks_completed=tasks_completed,
            ),
            efficiency=calculate_efficiency(tasks_completed, total_time),
            reliability=calculate_reliability(success_rate, uptime),
            computed_at=now,
        )
        self._cache[agent_id] = (now, snapshot)
        return snapshot

    def invalidate(self, agent_id: Optional[str] = None) -> None:
        if agent_id is None:
            self._cache.clear()
        else:
            self._cache.pop(agent_id, None)

    async def rankings(self, agent_id: str) -> AgentRankings:
        """1-based rank of the agent by score overall, within its type and within its model."""
        agents = await self._store.list_agents()
        target = next((a for a in agents if a.id == agent_id), None)
        if target is None:
            raise NotFoundError("Agent", agent_id)

        scores = {a.id: (await self.calculate(a.id)).performance_score for a in agents}

        def rank(pool: List[Agent]) -> int:
            ordered = sorted(pool, key=lambda a: scores[a.id], reverse=True)
            return next(i for i, a in enumerate(ordered, start=1) if a.id == agent_id)

        return AgentRankings(
            overall=rank(agents),
            by_type=rank([a for a in agents if a.type == target.type]),
            by_model=rank([a for a in agents if a.model == target.model]),
            total_agents=len(agents),
        )

    async def top_agents(self, limit: int = 10, metric: str = "performance_score") -> List[RankedAgent]:
        if metric not in RANKING_METRICS:
            raise ValidationError(f"Unknown ranking metric '{metric}'")
        ranked = [
            RankedAgent(agent=agent, metrics=await self.calculate(agent.id))
            for agent in await self._store.list_agents()
        ]
        ranked.sort(key=lambda item: getattr(item.metrics, metric), reverse=True)
        return ranked[:limit]

    async def refresh_all(self) -> int:
        """Recompute every agent and persist the snapshot on its record."""
        refreshed = 0
        agents = await self._store.list_agents()
        for agent in agents:
            try:
                self.invalidate(agent.id)
                snapshot = await self.calculate(agent.id)
                await self._store.set_agent_performance(agent.id, snapshot, self._clock.now())
                refreshed += 1
            except AgentflowError as exc:
                logger.error("Error updating performance for agent %s: %s", agent.id, exc)
        logger.info("Updated performance metrics for %d agents", refreshed)
        return refreshed

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="performance-refresh")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            await self._clock.sleep(self._refresh_interval)
            try:
                await self.refresh_all()
            except Exception:
                logger.error("Error updating agent performances", exc_info=True)
