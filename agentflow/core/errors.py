"""Error taxonomy raised by the orchestration core."""
from __future__ import annotations


class AgentflowError(Exception):
    """Base class for every error raised by agentflow."""


class ValidationError(AgentflowError):
    """Malformed input such as a bad cron expression or a missing field."""


class NotFoundError(AgentflowError):
    """Unknown agent, task or alert identifier."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} '{identifier}' not found")
        self.kind = kind
        self.identifier = identifier


class ConflictError(AgentflowError):
    """The requested transition is not allowed from the current state."""


class SchedulingError(AgentflowError):
    """A schedule could not be armed or its next trigger could not be computed."""


class ExecutionFailure(AgentflowError):
    """The completion collaborator failed, timed out or returned garbage."""


class PersistenceError(AgentflowError):
    """The storage collaborator is unreachable or rejected a write."""
