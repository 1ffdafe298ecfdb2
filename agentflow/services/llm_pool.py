"""LLM client pool for shared model access with concurrency control."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Union

from openai import AsyncAzureOpenAI, AsyncOpenAI, OpenAIError

from agentflow.config import AzureOpenAIConfig, OpenAIConfig
from agentflow.core.errors import ExecutionFailure

from .completion import CompletionRequest

logger = logging.getLogger(__name__)

ProviderConfig = Union[AzureOpenAIConfig, OpenAIConfig]


class LLMPool:
    """Manages shared LLM clients with concurrency limiting.

    Implements the completion contract: :meth:`complete` routes a request to
    the model it names (or the pool default) and returns the generated text.
    """

    def __init__(self, default_model: Optional[str] = None) -> None:
        self._configs: Dict[str, ProviderConfig] = {}
        self._clients: Dict[str, Any] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._default_model = default_model

    @property
    def models(self) -> list[str]:
        return list(self._configs)

    def register_azure_openai(self, name: str, config: AzureOpenAIConfig) -> None:
        """Register an Azure OpenAI model configuration."""
        self._register(name, config, config.max_concurrent)

    def register_openai(self, name: str, config: OpenAIConfig) -> None:
        """Register an OpenAI-compatible model configuration."""
        self._register(name, config, config.max_concurrent)

    def _register(self, name: str, config: ProviderConfig, max_concurrent: int) -> None:
        self._configs[name] = config
        self._semaphores[name] = asyncio.Semaphore(max_concurrent)
        self._clients.pop(name, None)
        if self._default_model is None:
            self._default_model = name

    @asynccontextmanager
    async def acquire(self, model_name: str) -> AsyncIterator[Any]:
        """Acquire access to a model client with concurrency control."""
        if model_name not in self._configs:
            raise KeyError(f"Model '{model_name}' not registered in LLM pool")

        async with self._semaphores[model_name]:
            # Lazy initialization on first use
            if model_name not in self._clients:
                self._clients[model_name] = self._build_client(self._configs[model_name])
            yield self._clients[model_name]

    @staticmethod
    def _build_client(config: ProviderConfig) -> Any:
        if isinstance(config, AzureOpenAIConfig):
            return AsyncAzureOpenAI(
                api_key=config.api_key,
                api_version=config.api_version,
                azure_endpoint=config.endpoint,
            )
        return AsyncOpenAI(api_key=config.api_key, base_url=config.base_url)

    def _resolve_model(self, requested: Optional[str]) -> str:
        if requested and requested in self._configs:
            return requested
        if self._default_model is None:
            raise ExecutionFailure("No completion model registered")
        return self._default_model

    def _deployment(self, model_name: str) -> str:
        config = self._configs[model_name]
        if isinstance(config, AzureOpenAIConfig):
            return config.deployment_name
        return config.model

    async def complete(self, request: CompletionRequest) -> str:
        model_name = self._resolve_model(request.model)
        try:
            async with self.acquire(model_name) as client:
                response = await client.chat.completions.create(
                    model=self._deployment(model_name),
                    messages=[
                        {"role": "system", "content": request.system},
                        {"role": "user", "content": request.user},
                    ],
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                )
        except OpenAIError as exc:
            logger.warning("Completion request to %s failed: %s", model_name, exc)
            raise ExecutionFailure(f"Completion service error: {exc}") from exc

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content or not content.strip():
            raise ExecutionFailure(f"Malformed completion response from {model_name}: no content")
        return content
