"""HTTP API for starting units of work and inspecting their records."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from agentflow.core.errors import AgentflowError, NotFoundError
from agentflow.core.models import Execution, ExecutionLog
from agentflow.core.payloads import ExecutionOutput
from agentflow.orchestration.executor import ExecutionStateMachine
from agentflow.runtime import get_executor, get_store
from agentflow.storage.base import Store

from .errors import http_error

router = APIRouter(prefix="/execute", tags=["execution"])


class ExecuteRequest(BaseModel):
    agent_id: str = Field(..., description="Agent that performs the work")
    task_id: Optional[str] = Field(None, description="PENDING task to run, if any")
    input: Optional[Dict[str, Any]] = None


class ExecuteResponse(BaseModel):
    execution_id: str
    status: str
    message: str


class ExecutionLogResponse(BaseModel):
    level: str
    message: str
    timestamp: datetime
    metadata: Dict[str, Any]

    @classmethod
    def from_log(cls, log: ExecutionLog) -> "ExecutionLogResponse":
        return cls(
            level=log.level.value,
            message=log.message,
            timestamp=log.timestamp,
            metadata=log.metadata.model_dump(exclude_none=True),
        )


class ExecutionResponse(BaseModel):
    execution_id: str
    agent_id: str
    task_id: Optional[str]
    status: str
    input: Optional[Dict[str, Any]]
    output: Optional[ExecutionOutput]
    duration_ms: Optional[int]
    error: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    logs: List[ExecutionLogResponse] = Field(default_factory=list)

    @classmethod
    def from_execution(cls, execution: Execution, logs: List[ExecutionLog]) -> "ExecutionResponse":
        return cls(
            execution_id=execution.id,
            agent_id=execution.agent_id,
            task_id=execution.task_id,
            status=execution.status.value,
            input=execution.input,
            output=execution.output,
            duration_ms=execution.duration_ms,
            error=execution.error,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            logs=[ExecutionLogResponse.from_log(log) for log in logs],
        )


@router.post("", response_model=ExecuteResponse, status_code=status.HTTP_202_ACCEPTED)
async def execute(
    request: ExecuteRequest,
    executor: ExecutionStateMachine = Depends(get_executor),
) -> ExecuteResponse:
    try:
        handle = await executor.start(request.agent_id, task_id=request.task_id, input=request.input)
    except AgentflowError as exc:
        raise http_error(exc) from exc
    return ExecuteResponse(
        execution_id=handle.execution_id,
        status=handle.execution.status.value,
        message="Agent execution started",
    )


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str, store: Store = Depends(get_store)) -> ExecutionResponse:
    try:
        execution = await store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        logs = await store.list_logs(execution_id)
    except AgentflowError as exc:
        raise http_error(exc) from exc
    return ExecutionResponse.from_execution(execution, logs)
