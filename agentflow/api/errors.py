"""Translation of core errors into HTTP responses."""
from __future__ import annotations

from fastapi import HTTPException, status

from agentflow.core.errors import (
    AgentflowError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    SchedulingError,
    ValidationError,
)

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (SchedulingError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(exc: AgentflowError) -> HTTPException:
    for error_cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
