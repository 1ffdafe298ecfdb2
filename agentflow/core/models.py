"""Core data models shared across orchestrator components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .payloads import ExecutionOutput, LogMetadata, MessageMetadata, PerformanceMetricsSnapshot


class AgentStatus(str, Enum):
    """Lifecycle states for an agent worker."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    ERROR = "ERROR"
    STOPPED = "STOPPED"


# Agents in these states cannot accept new work.
INACTIVE_AGENT_STATUSES = frozenset({AgentStatus.PAUSED, AgentStatus.ERROR, AgentStatus.STOPPED})


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class MessageType(str, Enum):
    USER = "USER"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


@dataclass(slots=True)
class Agent:
    """Worker entity owned by the store; the core only mutates ``status``."""

    id: str
    name: str
    type: str
    created_at: datetime
    updated_at: datetime
    description: str = ""
    model: str = ""
    capabilities: List[str] = field(default_factory=list)
    status: AgentStatus = AgentStatus.IDLE
    performance: Optional[PerformanceMetricsSnapshot] = None

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_AGENT_STATUSES


@dataclass(slots=True)
class Task:
    """Unit of intended work, optionally recurring and optionally assigned."""

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    schedule: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    is_recurring: bool = False
    assigned_agent_id: Optional[str] = None
    last_run: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    input: Optional[Dict[str, Any]] = None
    output: Optional[ExecutionOutput] = None

    @property
    def is_cron_driven(self) -> bool:
        return bool(self.schedule) and self.is_recurring


@dataclass(slots=True)
class Execution:
    """One concrete attempt by an agent to carry out a task (or an ad hoc run)."""

    id: str
    agent_id: str
    started_at: datetime
    task_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    input: Optional[Dict[str, Any]] = None
    output: Optional[ExecutionOutput] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not ExecutionStatus.RUNNING


@dataclass(slots=True)
class ExecutionLog:
    id: str
    execution_id: str
    level: LogLevel
    message: str
    timestamp: datetime
    metadata: LogMetadata = field(default_factory=LogMetadata)


@dataclass(slots=True)
class Message:
    id: str
    agent_id: str
    content: str
    created_at: datetime
    type: MessageType = MessageType.AGENT
    metadata: Optional[MessageMetadata] = None


@dataclass(slots=True, frozen=True)
class AgentStatusChange:
    """Entry of the per-agent status history used for uptime accounting."""

    agent_id: str
    status: AgentStatus
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class ExecutionSummary:
    """Aggregate execution counters reported by the store."""

    total: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    average_duration_ms: float = 0.0
