"""Contract for the external text-completion collaborator."""
from __future__ import annotations

from typing import Optional, Protocol

from pydantic import BaseModel, Field

MAX_TEMPERATURE = 2.0
MAX_OUTPUT_TOKENS = 32000


class CompletionRequest(BaseModel):
    """Single request to the completion service for one unit of work."""

    system: str
    user: str
    temperature: float = Field(0.7, ge=0.0, le=MAX_TEMPERATURE)
    max_tokens: int = Field(2000, ge=1, le=MAX_OUTPUT_TOKENS)
    model: Optional[str] = None


class CompletionService(Protocol):
    async def complete(self, request: CompletionRequest) -> str:
        """Return generated text or raise ExecutionFailure."""
