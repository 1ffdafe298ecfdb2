"""Execution state machine driving agent, task and execution status around one unit of work."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from agentflow.config import CompletionConfig
from agentflow.core.clock import Clock, SystemClock
from agentflow.core.errors import AgentflowError, ConflictError, ExecutionFailure, NotFoundError
from agentflow.core.events import EventType, NotificationBus
from agentflow.core.models import (
    Agent,
    AgentStatus,
    Execution,
    ExecutionLog,
    ExecutionStatus,
    LogLevel,
    Message,
    MessageType,
    Task,
    TaskStatus,
)
from agentflow.core.payloads import ExecutionOutput, LogMetadata, MessageMetadata
from agentflow.scheduling import cron
from agentflow.services.completion import CompletionRequest, CompletionService
from agentflow.storage.base import Store

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200


@dataclass(slots=True)
class ExecutionHandle:
    """A started unit of work.

    ``execution`` is the RUNNING record as created; ``completion`` resolves to
    the terminal record once the work has finished, successfully or not.
    """

    execution: Execution
    completion: asyncio.Task[Execution]

    @property
    def execution_id(self) -> str:
        return self.execution.id

    async def wait(self) -> Execution:
        return await self.completion


class ExecutionStateMachine:
    """Run units of work for agents and record every transition in the store."""

    def __init__(
        self,
        *,
        store: Store,
        bus: NotificationBus,
        completion: CompletionService,
        clock: Optional[Clock] = None,
        completion_config: Optional[CompletionConfig] = None,
        lookahead_years: int = cron.DEFAULT_LOOKAHEAD_YEARS,
    ) -> None:
        self._store = store
        self._bus = bus
        self._completion = completion
        self._clock = clock or SystemClock()
        self._config = completion_config or CompletionConfig()
        self._lookahead_years = lookahead_years
        self._inflight: Set[asyncio.Task[Execution]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    async def run_task(self, task_id: str) -> Optional[ExecutionHandle]:
        """Start the task on its assigned agent; ``None`` when it has none."""
        task = await self._store.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        if not task.assigned_agent_id:
            logger.warning("Task %s has no assigned agent, skipping run", task_id)
            return None
        return await self.start(task.assigned_agent_id, task_id=task_id)

    async def start(
        self,
        agent_id: str,
        task_id: Optional[str] = None,
        input: Optional[Dict[str, Any]] = None,
    ) -> ExecutionHandle:
        """Admit one unit of work and hand it to a background task.

        Raises NotFoundError or ConflictError without mutating anything when the
        agent or task cannot take the run.
        """
        agent = await self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        if not agent.is_active:
            raise ConflictError(f"Agent '{agent_id}' is {agent.status.value} and cannot accept work")

        started_at = self._clock.now()
        task: Optional[Task] = None
        if task_id is not None:
            existing = await self._store.get_task(task_id)
            if existing is None:
                raise NotFoundError("Task", task_id)
            if existing.status is not TaskStatus.PENDING:
                raise ConflictError(f"Task '{task_id}' is {existing.status.value}, expected PENDING")
            # Only one concurrent caller wins the PENDING -> RUNNING swap.
            task = await self._store.claim_task(task_id, started_at)

        payload = input if input is not None else (task.input if task else None)
        try:
            execution = await self._store.create_execution(
                Execution(
                    id=str(uuid.uuid4()),
                    agent_id=agent_id,
                    task_id=task_id,
                    started_at=started_at,
                    input=payload,
                )
            )
        except AgentflowError:
            if task is not None:
                await self._store.update_task(task.id, status=TaskStatus.PENDING)
            raise

        previous_status = agent.status
        try:
            agent = await self._set_agent_status(agent, AgentStatus.RUNNING)
            await self._append_log(
                execution,
                LogLevel.INFO,
                f"Starting execution for agent: {agent.name}",
                LogMetadata(agent_id=agent.id, task_id=task_id),
            )
            self._publish_execution(execution)
            if task is not None:
                self._publish_task(task)
        except Exception as exc:
            await self._abort_start(execution, agent.id, previous_status, task, exc)
            raise
        logger.info("Execution %s started for agent %s (task %s)", execution.id, agent.id, task_id)

        completion = asyncio.create_task(self._run(execution, agent, task), name=f"execution-{execution.id}")
        self._inflight.add(completion)
        completion.add_done_callback(self._on_done)
        return ExecutionHandle(execution=execution, completion=completion)

    async def drain(self) -> None:
        """Wait for every in-flight unit of work to write its terminal state."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def clear_agent_error(self, agent_id: str) -> Agent:
        """Return an agent parked in ERROR to IDLE."""
        agent = await self._store.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        if agent.status is not AgentStatus.ERROR:
            raise ConflictError(f"Agent '{agent_id}' is {agent.status.value}, not ERROR")
        return await self._set_agent_status(agent, AgentStatus.IDLE)

    def build_completion_request(
        self, agent: Agent, task: Optional[Task], payload: Optional[Dict[str, Any]]
    ) -> CompletionRequest:
        system = f"You are {agent.name}, {agent.type}. {agent.description}".strip()
        if task is not None:
            user = (
                f"You are {agent.name}, a {agent.type}. Your task is: {task.title}. "
                f"{task.description}. Use your capabilities to accomplish this task effectively."
            )
        else:
            user = f"You are {agent.name}, a {agent.type}."
        if payload:
            user += f"\n\nInput data: {json.dumps(payload, indent=2, default=str)}"
        if agent.capabilities:
            user += f"\n\nYour capabilities include: {', '.join(agent.capabilities)}."
        return CompletionRequest(
            system=system,
            user=user,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            model=agent.model or None,
        )

    async def _run(self, execution: Execution, agent: Agent, task: Optional[Task]) -> Execution:
        text: Optional[str] = None
        error: Optional[str] = None
        try:
            request = self.build_completion_request(agent, task, execution.input)
            text = await asyncio.wait_for(
                self._completion.complete(request), timeout=self._config.timeout_seconds
            )
            if not isinstance(text, str) or not text.strip():
                raise ExecutionFailure("Completion service returned an empty response")
        except asyncio.TimeoutError:
            error = f"Completion timed out after {self._config.timeout_seconds}s"
        except (AgentflowError, PydanticValidationError) as exc:
            error = str(exc)
        except Exception as exc:
            logger.exception("Unexpected completion error in execution %s", execution.id)
            error = str(exc) or type(exc).__name__

        # The agent and a recurring task are released even when recording fails.
        try:
            if error is None:
                return await self._succeed(execution, agent, task, text or "")
            return await self._fail(execution, agent, task, error)
        finally:
            await self._release_agent(
                agent, execution.id, AgentStatus.IDLE if error is None else AgentStatus.ERROR
            )
            if task is not None and task.is_cron_driven:
                await self._reschedule(task.id)

    async def _succeed(
        self, execution: Execution, agent: Agent, task: Optional[Task], text: str
    ) -> Execution:
        completed_at = self._clock.now()
        duration_ms = self._duration_ms(execution.started_at, completed_at)
        output = ExecutionOutput(result=text, timestamp=completed_at)

        finished = await self._store.finalize_execution(
            execution.id,
            status=ExecutionStatus.COMPLETED,
            completed_at=completed_at,
            duration_ms=duration_ms,
            output=output,
        )
        if task is not None:
            updated = await self._store.update_task(
                task.id,
                status=TaskStatus.COMPLETED,
                progress=100,
                output=output,
                completed_at=completed_at,
            )
            self._publish_task(updated)
        await self._append_log(
            execution,
            LogLevel.INFO,
            f"Execution completed successfully in {duration_ms}ms",
            LogMetadata(result_preview=text[:PREVIEW_LENGTH], duration_ms=duration_ms),
        )
        await self._send_message(
            agent,
            f"Task completed: {text[:PREVIEW_LENGTH]}...",
            MessageMetadata(execution_id=execution.id, task_id=execution.task_id),
        )
        self._publish_execution(finished)
        logger.info("Execution %s completed in %dms", execution.id, duration_ms)
        return finished

    async def _fail(
        self, execution: Execution, agent: Agent, task: Optional[Task], error: str
    ) -> Execution:
        completed_at = self._clock.now()
        duration_ms = self._duration_ms(execution.started_at, completed_at)
        error = error or "Unknown error"

        finished = await self._store.finalize_execution(
            execution.id,
            status=ExecutionStatus.FAILED,
            completed_at=completed_at,
            duration_ms=duration_ms,
            error=error,
        )
        if task is not None:
            updated = await self._store.update_task(
                task.id, status=TaskStatus.FAILED, completed_at=completed_at
            )
            self._publish_task(updated)
        await self._append_log(
            execution,
            LogLevel.ERROR,
            f"Execution failed: {error}",
            LogMetadata(error=error, duration_ms=duration_ms),
        )
        await self._send_message(
            agent,
            f"Task failed: {error}",
            MessageMetadata(execution_id=execution.id, task_id=execution.task_id, error=True),
        )
        self._publish_execution(finished)
        logger.warning("Execution %s failed after %dms: %s", execution.id, duration_ms, error)
        return finished

    async def _reschedule(self, task_id: str) -> None:
        try:
            task = await self._store.get_task(task_id)
            if task is None or not task.schedule:
                logger.warning("Recurring task %s has no stored schedule, not rescheduled", task_id)
                return
            fire_at = cron.next_run(
                task.schedule, self._clock.now(), lookahead_years=self._lookahead_years
            )
            updated = await self._store.update_task(
                task_id, status=TaskStatus.PENDING, scheduled_for=fire_at, progress=0
            )
        except AgentflowError as exc:
            logger.error("Failed to reschedule recurring task %s: %s", task_id, exc)
            return
        self._publish_task(updated)
        logger.info("Recurring task %s reset to PENDING, next run at %s", task_id, fire_at.isoformat())

    async def _release_agent(self, agent: Agent, execution_id: str, status: AgentStatus) -> None:
        try:
            if status is AgentStatus.IDLE:
                executions = await self._store.list_executions(agent_id=agent.id)
                if any(e.status is ExecutionStatus.RUNNING and e.id != execution_id for e in executions):
                    # Another run still holds the agent.
                    return
            await self._set_agent_status(agent, status)
        except AgentflowError as exc:
            logger.error("Could not set agent %s to %s: %s", agent.id, status.value, exc)

    async def _abort_start(
        self,
        execution: Execution,
        agent_id: str,
        previous_status: AgentStatus,
        task: Optional[Task],
        cause: Exception,
    ) -> None:
        """Undo an admitted run that failed before its work was handed off.

        The execution is closed as FAILED, a claimed task goes back to PENDING
        and the agent gets its previous status back. Each step is attempted
        even if an earlier one fails.
        """
        now = self._clock.now()
        error = f"Execution could not start: {cause}"
        try:
            await self._store.finalize_execution(
                execution.id,
                status=ExecutionStatus.FAILED,
                completed_at=now,
                duration_ms=self._duration_ms(execution.started_at, now),
                error=error,
            )
        except AgentflowError as exc:
            logger.error("Could not close aborted execution %s: %s", execution.id, exc)
        if task is not None:
            try:
                await self._store.update_task(task.id, status=TaskStatus.PENDING)
            except AgentflowError as exc:
                logger.error("Could not release task %s: %s", task.id, exc)
        try:
            current = await self._store.get_agent(agent_id)
            if current is not None and current.status is not previous_status:
                await self._store.set_agent_status(agent_id, previous_status, now)
        except AgentflowError as exc:
            logger.error("Could not restore agent %s to %s: %s", agent_id, previous_status.value, exc)
        logger.error("Execution %s aborted before it started: %s", execution.id, cause)

    async def _set_agent_status(self, agent: Agent, status: AgentStatus) -> Agent:
        updated = await self._store.set_agent_status(agent.id, status, self._clock.now())
        self._bus.emit(EventType.AGENT_UPDATED, agent_id=updated.id, status=updated.status.value)
        return updated

    async def _append_log(
        self, execution: Execution, level: LogLevel, message: str, metadata: LogMetadata
    ) -> None:
        await self._store.append_log(
            ExecutionLog(
                id=str(uuid.uuid4()),
                execution_id=execution.id,
                level=level,
                message=message,
                timestamp=self._clock.now(),
                metadata=metadata,
            )
        )

    async def _send_message(self, agent: Agent, content: str, metadata: MessageMetadata) -> None:
        message = await self._store.create_message(
            Message(
                id=str(uuid.uuid4()),
                agent_id=agent.id,
                content=content,
                created_at=self._clock.now(),
                type=MessageType.AGENT,
                metadata=metadata,
            )
        )
        self._bus.emit(
            EventType.MESSAGE_RECEIVED,
            message_id=message.id,
            agent_id=message.agent_id,
            content=message.content,
        )

    def _publish_execution(self, execution: Execution) -> None:
        self._bus.emit(
            EventType.EXECUTION_UPDATED,
            execution_id=execution.id,
            agent_id=execution.agent_id,
            task_id=execution.task_id,
            status=execution.status.value,
            duration_ms=execution.duration_ms,
        )

    def _publish_task(self, task: Task) -> None:
        self._bus.emit(
            EventType.TASK_UPDATED,
            task_id=task.id,
            status=task.status.value,
            progress=task.progress,
        )

    def _on_done(self, completion: asyncio.Task[Execution]) -> None:
        self._inflight.discard(completion)
        if completion.cancelled():
            logger.warning("Execution task %s was cancelled", completion.get_name())
            return
        exc = completion.exception()
        if exc is not None:
            logger.error(
                "Execution task %s could not record its terminal state",
                completion.get_name(),
                exc_info=exc,
            )

    @staticmethod
    def _duration_ms(started_at: datetime, finished_at: datetime) -> int:
        return max(0, int((finished_at - started_at).total_seconds() * 1000))
