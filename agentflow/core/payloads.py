"""Typed structures for the structured fields carried by core records."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecutionOutput(BaseModel):
    """Work product recorded on both the execution and its task."""

    result: str
    timestamp: datetime


class LogMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    result_preview: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class MessageMetadata(BaseModel):
    execution_id: str
    task_id: Optional[str] = None
    error: bool = False


class PerformanceMetricsSnapshot(BaseModel):
    """Derived per-agent performance figures; cached, optionally persisted."""

    agent_id: str
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    average_execution_time: float = 0.0
    total_execution_time: float = 0.0
    last_execution: Optional[datetime] = None
    tasks_completed: int = 0
    average_tasks_per_day: float = 0.0
    uptime: float = 100.0
    performance_score: float = Field(0.0, ge=0.0, le=100.0)
    efficiency: float = 0.0
    reliability: float = 0.0
    computed_at: Optional[datetime] = None
