"""Tests for the execution state machine."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from agentflow.config import CompletionConfig
from agentflow.core.errors import ConflictError, NotFoundError, PersistenceError
from agentflow.core.events import EventType
from agentflow.core.models import (
    AgentStatus,
    ExecutionStatus,
    LogLevel,
    MessageType,
    TaskStatus,
)
from agentflow.orchestration.executor import ExecutionStateMachine

from conftest import AdvancingCompletion, FailingCompletion, HangingCompletion, StaticCompletion


def _executor(store, bus, clock, completion, **config) -> ExecutionStateMachine:
    return ExecutionStateMachine(
        store=store,
        bus=bus,
        completion=completion,
        clock=clock,
        completion_config=CompletionConfig(**config),
    )


@pytest.mark.anyio
async def test_successful_run_completes_task_and_frees_agent(
    store, bus, clock, make_agent, make_task
) -> None:
    await make_agent()
    await make_task()
    executor = _executor(store, bus, clock, AdvancingCompletion(clock, 1.5, text="Digest ready"))

    async with bus.subscribe() as events:
        handle = await executor.start("agent-1", task_id="task-1")
        assert handle.execution.status is ExecutionStatus.RUNNING
        assert (await store.get_task("task-1")).status is TaskStatus.RUNNING
        assert (await store.get_agent("agent-1")).status is AgentStatus.RUNNING

        finished = await handle.wait()

    assert finished.status is ExecutionStatus.COMPLETED
    assert finished.duration_ms == 1500
    assert finished.output is not None and finished.output.result == "Digest ready"

    task = await store.get_task("task-1")
    assert task.status is TaskStatus.COMPLETED
    assert task.progress == 100
    assert task.output == finished.output
    assert task.completed_at == finished.completed_at
    assert task.last_run == finished.started_at
    assert (await store.get_agent("agent-1")).status is AgentStatus.IDLE

    logs = await store.list_logs(finished.id)
    assert [log.level for log in logs] == [LogLevel.INFO, LogLevel.INFO]
    assert logs[0].message == "Starting execution for agent: Reporter"
    assert logs[1].message == "Execution completed successfully in 1500ms"

    messages = await store.list_messages(agent_id="agent-1")
    assert len(messages) == 1
    assert messages[0].type is MessageType.AGENT
    assert messages[0].content == "Task completed: Digest ready..."
    assert messages[0].metadata.execution_id == finished.id
    assert not messages[0].metadata.error

    received = []
    while not events.empty():
        received.append(events.get_nowait())
    task_statuses = [e.payload["status"] for e in received if e.type is EventType.TASK_UPDATED]
    assert task_statuses == ["RUNNING", "COMPLETED"]
    assert any(e.type is EventType.MESSAGE_RECEIVED for e in received)


@pytest.mark.anyio
async def test_completion_request_is_built_from_agent_and_task(
    store, bus, clock, make_agent, make_task
) -> None:
    await make_agent()
    await make_task(input={"window": "1h"})
    completion = StaticCompletion()
    executor = _executor(store, bus, clock, completion)

    await (await executor.start("agent-1", task_id="task-1")).wait()

    request = completion.requests[0]
    assert request.system == "You are Reporter, summariser. Writes digests."
    assert request.user.startswith(
        "You are Reporter, a summariser. Your task is: Digest. Summarise the last hour. "
        "Use your capabilities to accomplish this task effectively."
    )
    assert '"window": "1h"' in request.user
    assert request.user.endswith("Your capabilities include: summarise, report.")
    assert request.temperature == 0.7
    assert request.max_tokens == 2000
    assert request.model == "gpt-4o-mini"


@pytest.mark.anyio
async def test_failed_run_parks_agent_in_error(store, bus, clock, make_agent, make_task) -> None:
    await make_agent()
    await make_task()
    executor = _executor(store, bus, clock, FailingCompletion("upstream exploded"))

    handle = await executor.start("agent-1", task_id="task-1")
    finished = await handle.wait()

    assert finished.status is ExecutionStatus.FAILED
    assert finished.error == "upstream exploded"
    assert finished.duration_ms is not None and finished.duration_ms >= 0
    task = await store.get_task("task-1")
    assert task.status is TaskStatus.FAILED
    assert task.completed_at is not None
    assert (await store.get_agent("agent-1")).status is AgentStatus.ERROR

    logs = await store.list_logs(finished.id)
    assert logs[-1].level is LogLevel.ERROR
    assert logs[-1].metadata.error == "upstream exploded"

    message = (await store.list_messages())[-1]
    assert message.content == "Task failed: upstream exploded"
    assert message.metadata.error is True


@pytest.mark.anyio
async def test_timeout_is_treated_as_failure(store, bus, clock, make_agent, make_task) -> None:
    await make_agent()
    await make_task()
    executor = _executor(store, bus, clock, HangingCompletion(), timeout_seconds=0.01)

    finished = await (await executor.start("agent-1", task_id="task-1")).wait()

    assert finished.status is ExecutionStatus.FAILED
    assert "timed out" in finished.error
    assert (await store.get_agent("agent-1")).status is AgentStatus.ERROR


@pytest.mark.anyio
async def test_blank_completion_is_treated_as_failure(store, bus, clock, make_agent) -> None:
    await make_agent()
    executor = _executor(store, bus, clock, StaticCompletion("   "))

    finished = await (await executor.start("agent-1")).wait()

    assert finished.status is ExecutionStatus.FAILED
    assert finished.error


@pytest.mark.anyio
async def test_ad_hoc_run_without_task(store, executor, make_agent) -> None:
    await make_agent()

    finished = await (await executor.start("agent-1", input={"topic": "uptime"})).wait()

    assert finished.task_id is None
    assert finished.input == {"topic": "uptime"}
    assert finished.status is ExecutionStatus.COMPLETED


@pytest.mark.anyio
async def test_unknown_agent_is_rejected(store, executor, make_task) -> None:
    await make_task()
    with pytest.raises(NotFoundError):
        await executor.start("ghost", task_id="task-1")
    assert (await store.get_task("task-1")).status is TaskStatus.PENDING


@pytest.mark.anyio
async def test_unknown_task_is_rejected(store, executor, make_agent) -> None:
    await make_agent()
    with pytest.raises(NotFoundError):
        await executor.start("agent-1", task_id="ghost")
    assert await store.list_executions() == []


@pytest.mark.anyio
@pytest.mark.parametrize("status", [AgentStatus.PAUSED, AgentStatus.STOPPED, AgentStatus.ERROR])
async def test_inactive_agent_is_rejected_without_mutation(
    status, store, executor, make_agent, make_task
) -> None:
    await make_agent(status=status)
    await make_task()

    with pytest.raises(ConflictError):
        await executor.start("agent-1", task_id="task-1")

    assert (await store.get_task("task-1")).status is TaskStatus.PENDING
    assert (await store.get_agent("agent-1")).status is status
    assert await store.list_executions() == []


@pytest.mark.anyio
async def test_task_that_left_pending_is_rejected(store, executor, make_agent, make_task) -> None:
    await make_agent()
    await make_task(status=TaskStatus.COMPLETED)

    with pytest.raises(ConflictError):
        await executor.start("agent-1", task_id="task-1")
    assert await store.list_executions() == []


@pytest.mark.anyio
async def test_concurrent_runs_admit_exactly_one(store, bus, clock, make_agent, make_task) -> None:
    await make_agent()
    await make_task()
    executor = _executor(store, bus, clock, StaticCompletion())

    results = await asyncio.gather(
        executor.start("agent-1", task_id="task-1"),
        executor.start("agent-1", task_id="task-1"),
        return_exceptions=True,
    )
    await executor.drain()

    conflicts = [r for r in results if isinstance(r, ConflictError)]
    handles = [r for r in results if not isinstance(r, BaseException)]
    assert len(conflicts) == 1
    assert len(handles) == 1
    assert len(await store.list_executions()) == 1


@pytest.mark.anyio
async def test_recurring_task_is_reset_after_success(store, executor, clock, make_agent, make_task) -> None:
    await make_agent()
    await make_task(schedule="0 * * * *", is_recurring=True)

    finished = await (await executor.start("agent-1", task_id="task-1")).wait()

    assert finished.status is ExecutionStatus.COMPLETED
    task = await store.get_task("task-1")
    assert task.status is TaskStatus.PENDING
    assert task.progress == 0
    assert task.scheduled_for == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.anyio
async def test_recurring_task_is_reset_after_failure(store, bus, clock, make_agent, make_task) -> None:
    await make_agent()
    await make_task(schedule="*/15 * * * *", is_recurring=True)
    executor = _executor(store, bus, clock, FailingCompletion())

    finished = await (await executor.start("agent-1", task_id="task-1")).wait()

    assert finished.status is ExecutionStatus.FAILED
    task = await store.get_task("task-1")
    assert task.status is TaskStatus.PENDING
    assert task.scheduled_for == datetime(2024, 1, 1, 9, 45, tzinfo=timezone.utc)


@pytest.mark.anyio
async def test_reschedule_failure_keeps_terminal_status(store, executor, make_agent, make_task) -> None:
    await make_agent()
    # Valid syntax but February never has a 31st.
    await make_task(schedule="0 0 31 2 *", is_recurring=True)

    finished = await (await executor.start("agent-1", task_id="task-1")).wait()

    assert finished.status is ExecutionStatus.COMPLETED
    assert (await store.get_task("task-1")).status is TaskStatus.COMPLETED


@pytest.mark.anyio
async def test_store_error_after_claim_rolls_the_run_back(
    store, executor, make_agent, make_task, monkeypatch
) -> None:
    await make_agent()
    await make_task()
    original = store.set_agent_status
    calls = {"n": 0}

    async def flaky(agent_id, status, at):
        calls["n"] += 1
        if calls["n"] == 1:
            raise PersistenceError("database unavailable")
        return await original(agent_id, status, at)

    monkeypatch.setattr(store, "set_agent_status", flaky)

    with pytest.raises(PersistenceError):
        await executor.start("agent-1", task_id="task-1")

    (aborted,) = await store.list_executions()
    assert aborted.status is ExecutionStatus.FAILED
    assert aborted.completed_at is not None
    assert "could not start" in aborted.error
    assert (await store.get_task("task-1")).status is TaskStatus.PENDING
    assert (await store.get_agent("agent-1")).status is AgentStatus.IDLE
    assert executor.in_flight == 0

    retried = await (await executor.start("agent-1", task_id="task-1")).wait()
    assert retried.status is ExecutionStatus.COMPLETED


@pytest.mark.anyio
async def test_recording_error_still_releases_agent_and_recurring_task(
    store, executor, make_agent, make_task, monkeypatch
) -> None:
    await make_agent()
    await make_task(schedule="0 * * * *", is_recurring=True)
    original = store.update_task

    async def rejecting(task_id, **changes):
        if changes.get("status") is TaskStatus.COMPLETED:
            raise PersistenceError("write rejected")
        return await original(task_id, **changes)

    monkeypatch.setattr(store, "update_task", rejecting)
    handle = await executor.start("agent-1", task_id="task-1")

    with pytest.raises(PersistenceError):
        await handle.wait()

    (execution,) = await store.list_executions()
    assert execution.status is ExecutionStatus.COMPLETED
    task = await store.get_task("task-1")
    assert task.status is TaskStatus.PENDING
    assert task.scheduled_for == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert (await store.get_agent("agent-1")).status is AgentStatus.IDLE


class GatedCompletion:
    """Holds each request until the test opens its gate."""

    def __init__(self) -> None:
        self.gates: list = []

    async def complete(self, request) -> str:
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        return "done"


@pytest.mark.anyio
async def test_agent_stays_running_while_another_run_is_in_flight(
    store, bus, clock, make_agent
) -> None:
    await make_agent()
    completion = GatedCompletion()
    executor = _executor(store, bus, clock, completion)

    first = await executor.start("agent-1")
    second = await executor.start("agent-1")
    await clock.settle()
    assert len(completion.gates) == 2

    completion.gates[0].set()
    assert (await first.wait()).status is ExecutionStatus.COMPLETED
    assert (await store.get_agent("agent-1")).status is AgentStatus.RUNNING

    completion.gates[1].set()
    assert (await second.wait()).status is ExecutionStatus.COMPLETED
    assert (await store.get_agent("agent-1")).status is AgentStatus.IDLE


@pytest.mark.anyio
async def test_clear_agent_error(store, bus, clock, make_agent) -> None:
    await make_agent()
    executor = _executor(store, bus, clock, FailingCompletion())
    await (await executor.start("agent-1")).wait()
    assert (await store.get_agent("agent-1")).status is AgentStatus.ERROR

    agent = await executor.clear_agent_error("agent-1")

    assert agent.status is AgentStatus.IDLE
    with pytest.raises(ConflictError):
        await executor.clear_agent_error("agent-1")
    with pytest.raises(NotFoundError):
        await executor.clear_agent_error("ghost")


@pytest.mark.anyio
async def test_run_task_without_assigned_agent_is_skipped(store, executor, make_task) -> None:
    await make_task(assigned_agent_id=None)

    assert await executor.run_task("task-1") is None
    assert (await store.get_task("task-1")).status is TaskStatus.PENDING
