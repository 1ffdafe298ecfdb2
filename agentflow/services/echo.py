"""Offline completion backend used by the demo and when no provider is configured."""
from __future__ import annotations

import asyncio
import random

from .completion import CompletionRequest


class EchoCompletionService:
    """Completion backend that echoes the request to demonstrate lifecycle control."""

    def __init__(self, latency: tuple[float, float] = (0.05, 0.2)) -> None:
        self._latency = latency

    async def complete(self, request: CompletionRequest) -> str:
        await asyncio.sleep(random.uniform(*self._latency))  # Simulate work
        first_line = request.user.splitlines()[0] if request.user else ""
        return f"[echo:{request.model or 'default'}] {first_line}"
