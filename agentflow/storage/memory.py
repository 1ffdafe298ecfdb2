"""In-process store keeping encoded rows in dictionaries."""
from __future__ import annotations

import asyncio
import dataclasses
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from agentflow.core.clock import Clock, SystemClock
from agentflow.core.errors import ConflictError, NotFoundError
from agentflow.core.models import (
    Agent,
    AgentStatus,
    AgentStatusChange,
    Execution,
    ExecutionLog,
    ExecutionStatus,
    ExecutionSummary,
    LogLevel,
    Message,
    MessageType,
    Task,
    TaskPriority,
    TaskStatus,
)
from agentflow.core.payloads import (
    ExecutionOutput,
    LogMetadata,
    MessageMetadata,
    PerformanceMetricsSnapshot,
)

from . import codec
from .base import Store


Row = Dict[str, Any]

_TASK_FIELDS = frozenset(f.name for f in dataclasses.fields(Task))


class InMemoryStore(Store):
    """Reference :class:`Store` used by the runtime, the demo and the tests.

    Rows hold structured fields as JSON text exactly as a relational store
    would, so every read and write goes through :mod:`agentflow.storage.codec`.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._agents: Dict[str, Row] = {}
        self._tasks: Dict[str, Row] = {}
        self._executions: Dict[str, Row] = {}
        self._logs: Dict[str, List[Row]] = defaultdict(list)
        self._messages: List[Row] = []
        self._status_history: Dict[str, List[AgentStatusChange]] = defaultdict(list)
        self._lock = asyncio.Lock()

    # Agents

    async def add_agent(self, agent: Agent) -> Agent:
        async with self._lock:
            self._agents[agent.id] = _agent_row(agent)
            self._status_history[agent.id].append(
                AgentStatusChange(agent_id=agent.id, status=agent.status, timestamp=agent.created_at)
            )
        return await self._require_agent(agent.id)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        row = self._agents.get(agent_id)
        return _agent_from_row(row) if row else None

    async def list_agents(self) -> List[Agent]:
        return [_agent_from_row(row) for row in self._agents.values()]

    async def set_agent_status(self, agent_id: str, status: AgentStatus, at: datetime) -> Agent:
        async with self._lock:
            row = self._agent_row_or_raise(agent_id)
            row["status"] = status.value
            row["updated_at"] = at
            self._status_history[agent_id].append(
                AgentStatusChange(agent_id=agent_id, status=status, timestamp=at)
            )
            return _agent_from_row(row)

    async def set_agent_performance(
        self, agent_id: str, snapshot: PerformanceMetricsSnapshot, at: datetime
    ) -> None:
        async with self._lock:
            row = self._agent_row_or_raise(agent_id)
            row["performance"] = codec.encode_model(snapshot)
            row["updated_at"] = at

    async def agent_status_history(self, agent_id: str) -> List[AgentStatusChange]:
        return list(self._status_history.get(agent_id, ()))

    # Tasks

    async def add_task(self, task: Task) -> Task:
        async with self._lock:
            self._tasks[task.id] = _task_row(task)
        return await self._require_task(task.id)

    async def get_task(self, task_id: str) -> Optional[Task]:
        row = self._tasks.get(task_id)
        return _task_from_row(row) if row else None

    async def list_tasks(self, *, assigned_agent_id: Optional[str] = None) -> List[Task]:
        tasks = [_task_from_row(row) for row in self._tasks.values()]
        if assigned_agent_id is not None:
            tasks = [task for task in tasks if task.assigned_agent_id == assigned_agent_id]
        return tasks

    async def update_task(self, task_id: str, **changes: object) -> Task:
        unknown = set(changes) - _TASK_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        async with self._lock:
            row = self._tasks.get(task_id)
            if row is None:
                raise NotFoundError("Task", task_id)
            task = dataclasses.replace(_task_from_row(row), **changes)
            if "updated_at" not in changes:
                task.updated_at = self._clock.now()
            self._tasks[task_id] = _task_row(task)
            return task

    async def claim_task(self, task_id: str, at: datetime) -> Task:
        async with self._lock:
            row = self._tasks.get(task_id)
            if row is None:
                raise NotFoundError("Task", task_id)
            if row["status"] != TaskStatus.PENDING.value:
                raise ConflictError(f"Task '{task_id}' is {row['status']}, expected PENDING")
            row["status"] = TaskStatus.RUNNING.value
            row["last_run"] = at
            row["updated_at"] = at
            return _task_from_row(row)

    async def list_recurring_tasks(self) -> List[Task]:
        return [
            task
            for task in await self.list_tasks()
            if task.is_cron_driven and task.status is TaskStatus.PENDING
        ]

    async def list_due_tasks(self, now: datetime) -> List[Task]:
        return [
            task
            for task in await self.list_tasks()
            if task.status is TaskStatus.PENDING
            and task.scheduled_for is not None
            and task.scheduled_for <= now
        ]

    async def list_scheduled_tasks(self) -> List[Task]:
        tasks = [t for t in await self.list_tasks() if t.schedule or t.scheduled_for]
        # Upcoming one-shot instants first, cron-only tasks after them.
        return sorted(tasks, key=lambda t: (t.scheduled_for is None, t.scheduled_for or t.created_at))

    # Executions

    async def create_execution(self, execution: Execution) -> Execution:
        async with self._lock:
            if execution.id in self._executions:
                raise ConflictError(f"Execution '{execution.id}' already exists")
            self._executions[execution.id] = _execution_row(execution)
        return execution

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        row = self._executions.get(execution_id)
        return _execution_from_row(row) if row else None

    async def finalize_execution(
        self,
        execution_id: str,
        *,
        status: ExecutionStatus,
        completed_at: datetime,
        duration_ms: int,
        output: Optional[ExecutionOutput] = None,
        error: Optional[str] = None,
    ) -> Execution:
        if status is ExecutionStatus.RUNNING:
            raise ValueError("A terminal status is required")
        async with self._lock:
            row = self._executions.get(execution_id)
            if row is None:
                raise NotFoundError("Execution", execution_id)
            if row["status"] != ExecutionStatus.RUNNING.value:
                raise ConflictError(f"Execution '{execution_id}' is already {row['status']}")
            row.update(
                status=status.value,
                completed_at=completed_at,
                duration_ms=max(0, int(duration_ms)),
                output=codec.encode_model(output),
                error=error,
            )
            return _execution_from_row(row)

    async def list_executions(self, *, agent_id: Optional[str] = None) -> List[Execution]:
        executions = [_execution_from_row(row) for row in self._executions.values()]
        if agent_id is not None:
            executions = [e for e in executions if e.agent_id == agent_id]
        return sorted(executions, key=lambda e: e.started_at, reverse=True)

    # Logs and messages

    async def append_log(self, log: ExecutionLog) -> ExecutionLog:
        async with self._lock:
            self._logs[log.execution_id].append(
                {
                    "id": log.id,
                    "execution_id": log.execution_id,
                    "level": log.level.value,
                    "message": log.message,
                    "metadata": codec.encode_model(log.metadata),
                    "timestamp": log.timestamp,
                }
            )
        return log

    async def list_logs(self, execution_id: str) -> List[ExecutionLog]:
        return [
            ExecutionLog(
                id=row["id"],
                execution_id=row["execution_id"],
                level=LogLevel(row["level"]),
                message=row["message"],
                metadata=codec.decode_model(LogMetadata, row["metadata"]) or LogMetadata(),
                timestamp=row["timestamp"],
            )
            for row in self._logs.get(execution_id, ())
        ]

    async def create_message(self, message: Message) -> Message:
        async with self._lock:
            self._messages.append(
                {
                    "id": message.id,
                    "agent_id": message.agent_id,
                    "content": message.content,
                    "type": message.type.value,
                    "metadata": codec.encode_model(message.metadata),
                    "created_at": message.created_at,
                }
            )
        return message

    async def list_messages(self, *, agent_id: Optional[str] = None) -> List[Message]:
        messages = [
            Message(
                id=row["id"],
                agent_id=row["agent_id"],
                content=row["content"],
                type=MessageType(row["type"]),
                metadata=codec.decode_model(MessageMetadata, row["metadata"]),
                created_at=row["created_at"],
            )
            for row in self._messages
        ]
        if agent_id is not None:
            messages = [m for m in messages if m.agent_id == agent_id]
        return messages

    async def count_messages(self, *, since: Optional[datetime] = None) -> int:
        if since is None:
            return len(self._messages)
        return sum(1 for row in self._messages if row["created_at"] >= since)

    # Aggregates

    async def agent_status_counts(self) -> Dict[AgentStatus, int]:
        counts = Counter(AgentStatus(row["status"]) for row in self._agents.values())
        return {status: counts.get(status, 0) for status in AgentStatus}

    async def task_status_counts(self) -> Dict[TaskStatus, int]:
        counts = Counter(TaskStatus(row["status"]) for row in self._tasks.values())
        return {status: counts.get(status, 0) for status in TaskStatus}

    async def execution_summary(self) -> ExecutionSummary:
        rows = list(self._executions.values())
        counts = Counter(row["status"] for row in rows)
        durations = [
            row["duration_ms"]
            for row in rows
            if row["status"] == ExecutionStatus.COMPLETED.value and row["duration_ms"] is not None
        ]
        return ExecutionSummary(
            total=len(rows),
            running=counts.get(ExecutionStatus.RUNNING.value, 0),
            completed=counts.get(ExecutionStatus.COMPLETED.value, 0),
            failed=counts.get(ExecutionStatus.FAILED.value, 0),
            average_duration_ms=sum(durations) / len(durations) if durations else 0.0,
        )

    # Helpers

    def _agent_row_or_raise(self, agent_id: str) -> Row:
        row = self._agents.get(agent_id)
        if row is None:
            raise NotFoundError("Agent", agent_id)
        return row

    async def _require_agent(self, agent_id: str) -> Agent:
        agent = await self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    async def _require_task(self, task_id: str) -> Task:
        task = await self.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task


def _agent_row(agent: Agent) -> Row:
    return {
        "id": agent.id,
        "name": agent.name,
        "type": agent.type,
        "description": agent.description,
        "model": agent.model,
        "capabilities": codec.encode_capabilities(agent.capabilities),
        "status": agent.status.value,
        "performance": codec.encode_model(agent.performance),
        "created_at": agent.created_at,
        "updated_at": agent.updated_at,
    }


def _agent_from_row(row: Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        description=row["description"],
        model=row["model"],
        capabilities=codec.decode_capabilities(row["capabilities"]),
        status=AgentStatus(row["status"]),
        performance=codec.decode_model(PerformanceMetricsSnapshot, row["performance"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _task_row(task: Task) -> Row:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value,
        "status": task.status.value,
        "progress": task.progress,
        "schedule": task.schedule,
        "scheduled_for": task.scheduled_for,
        "is_recurring": task.is_recurring,
        "assigned_agent_id": task.assigned_agent_id,
        "last_run": task.last_run,
        "completed_at": task.completed_at,
        "input": codec.encode_object(task.input),
        "output": codec.encode_model(task.output),
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }


def _task_from_row(row: Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        priority=TaskPriority(row["priority"]),
        status=TaskStatus(row["status"]),
        progress=row["progress"],
        schedule=row["schedule"],
        scheduled_for=row["scheduled_for"],
        is_recurring=row["is_recurring"],
        assigned_agent_id=row["assigned_agent_id"],
        last_run=row["last_run"],
        completed_at=row["completed_at"],
        input=codec.decode_object(row["input"]),
        output=codec.decode_model(ExecutionOutput, row["output"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _execution_row(execution: Execution) -> Row:
    return {
        "id": execution.id,
        "agent_id": execution.agent_id,
        "task_id": execution.task_id,
        "status": execution.status.value,
        "input": codec.encode_object(execution.input),
        "output": codec.encode_model(execution.output),
        "duration_ms": execution.duration_ms,
        "error": execution.error,
        "started_at": execution.started_at,
        "completed_at": execution.completed_at,
    }


def _execution_from_row(row: Row) -> Execution:
    return Execution(
        id=row["id"],
        agent_id=row["agent_id"],
        task_id=row["task_id"],
        status=ExecutionStatus(row["status"]),
        input=codec.decode_object(row["input"]),
        output=codec.decode_model(ExecutionOutput, row["output"]),
        duration_ms=row["duration_ms"],
        error=row["error"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )
