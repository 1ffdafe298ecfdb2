"""Storage collaborator contract consumed by the orchestration core."""
from __future__ import annotations

import abc
from datetime import datetime
from typing import Dict, List, Optional

from agentflow.core.models import (
    Agent,
    AgentStatus,
    AgentStatusChange,
    Execution,
    ExecutionLog,
    ExecutionStatus,
    ExecutionSummary,
    Message,
    Task,
    TaskStatus,
)
from agentflow.core.payloads import ExecutionOutput, PerformanceMetricsSnapshot


class Store(abc.ABC):
    """Async persistence boundary.

    Implementations raise :class:`~agentflow.core.errors.PersistenceError`
    when the backing store is unreachable and
    :class:`~agentflow.core.errors.NotFoundError` for unknown identifiers.
    Returned records are detached copies; mutating them has no effect on
    stored state.
    """

    # Agents

    @abc.abstractmethod
    async def add_agent(self, agent: Agent) -> Agent: ...

    @abc.abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]: ...

    @abc.abstractmethod
    async def list_agents(self) -> List[Agent]: ...

    @abc.abstractmethod
    async def set_agent_status(self, agent_id: str, status: AgentStatus, at: datetime) -> Agent:
        """Write the status and append an entry to the agent's status history."""

    @abc.abstractmethod
    async def set_agent_performance(
        self, agent_id: str, snapshot: PerformanceMetricsSnapshot, at: datetime
    ) -> None: ...

    @abc.abstractmethod
    async def agent_status_history(self, agent_id: str) -> List[AgentStatusChange]: ...

    # Tasks

    @abc.abstractmethod
    async def add_task(self, task: Task) -> Task: ...

    @abc.abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]: ...

    @abc.abstractmethod
    async def list_tasks(self, *, assigned_agent_id: Optional[str] = None) -> List[Task]: ...

    @abc.abstractmethod
    async def update_task(self, task_id: str, **changes: object) -> Task: ...

    @abc.abstractmethod
    async def claim_task(self, task_id: str, at: datetime) -> Task:
        """Atomically move a task from PENDING to RUNNING and stamp ``last_run``.

        Raises ConflictError when the task is not PENDING at the moment of the
        swap; exactly one of several concurrent callers can succeed.
        """

    @abc.abstractmethod
    async def list_recurring_tasks(self) -> List[Task]:
        """PENDING tasks that carry a schedule and are flagged recurring."""

    @abc.abstractmethod
    async def list_due_tasks(self, now: datetime) -> List[Task]:
        """PENDING tasks whose ``scheduled_for`` is at or before ``now``."""

    @abc.abstractmethod
    async def list_scheduled_tasks(self) -> List[Task]:
        """Tasks with either a cron schedule or a one-shot trigger instant."""

    # Executions

    @abc.abstractmethod
    async def create_execution(self, execution: Execution) -> Execution: ...

    @abc.abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[Execution]: ...

    @abc.abstractmethod
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
        """Write the terminal state; raises ConflictError if already terminal."""

    @abc.abstractmethod
    async def list_executions(self, *, agent_id: Optional[str] = None) -> List[Execution]:
        """Executions ordered newest first."""

    # Logs and messages

    @abc.abstractmethod
    async def append_log(self, log: ExecutionLog) -> ExecutionLog: ...

    @abc.abstractmethod
    async def list_logs(self, execution_id: str) -> List[ExecutionLog]: ...

    @abc.abstractmethod
    async def create_message(self, message: Message) -> Message: ...

    @abc.abstractmethod
    async def list_messages(self, *, agent_id: Optional[str] = None) -> List[Message]: ...

    @abc.abstractmethod
    async def count_messages(self, *, since: Optional[datetime] = None) -> int: ...

    # Aggregates

    @abc.abstractmethod
    async def agent_status_counts(self) -> Dict[AgentStatus, int]: ...

    @abc.abstractmethod
    async def task_status_counts(self) -> Dict[TaskStatus, int]: ...

    @abc.abstractmethod
    async def execution_summary(self) -> ExecutionSummary: ...
