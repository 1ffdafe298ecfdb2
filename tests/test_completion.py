"""Tests for the completion backends: the OpenAI client pool and the echo service."""
from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import pytest
from openai import APIConnectionError
from pydantic import ValidationError as PydanticValidationError

from agentflow.config import AzureOpenAIConfig, Config, OpenAIConfig
from agentflow.core.errors import ExecutionFailure
from agentflow.services import llm_pool
from agentflow.services.completion import CompletionRequest
from agentflow.services.echo import EchoCompletionService
from agentflow.services.llm_pool import LLMPool


class FakeChatClient:
    """Stands in for an OpenAI async client, answering with canned choices."""

    def __init__(self, content: Optional[str] = "Generated text", error: Optional[Exception] = None) -> None:
        self.content = content
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        if self.content is None:
            return SimpleNamespace(choices=[])
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


@pytest.fixture
def fake_client(monkeypatch) -> FakeChatClient:
    client = FakeChatClient()
    monkeypatch.setattr(llm_pool, "AsyncOpenAI", lambda **kwargs: client)
    monkeypatch.setattr(llm_pool, "AsyncAzureOpenAI", lambda **kwargs: client)
    return client


def _request(**overrides: Any) -> CompletionRequest:
    fields = dict(system="You are a tester.", user="Say hello")
    fields.update(overrides)
    return CompletionRequest(**fields)


@pytest.mark.anyio
async def test_complete_sends_system_and_user_messages(fake_client) -> None:
    pool = LLMPool()
    pool.register_openai("gpt-4o-mini", OpenAIConfig(api_key="sk-test"))

    text = await pool.complete(_request(temperature=0.2, max_tokens=50))

    assert text == "Generated text"
    (call,) = fake_client.calls
    assert call["model"] == "gpt-4o-mini"
    assert call["messages"] == [
        {"role": "system", "content": "You are a tester."},
        {"role": "user", "content": "Say hello"},
    ]
    assert call["temperature"] == 0.2
    assert call["max_tokens"] == 50


@pytest.mark.anyio
async def test_requested_model_is_used_when_registered(fake_client) -> None:
    pool = LLMPool()
    pool.register_openai("small", OpenAIConfig(api_key="sk-test", model="gpt-4o-mini"))
    pool.register_azure_openai(
        "large", AzureOpenAIConfig(api_key="az", endpoint="https://example.invalid", deployment_name="gpt-4")
    )

    await pool.complete(_request(model="large"))
    await pool.complete(_request(model="unknown"))

    assert [call["model"] for call in fake_client.calls] == ["gpt-4", "gpt-4o-mini"]
    assert pool.models == ["small", "large"]


@pytest.mark.anyio
async def test_empty_response_is_a_failure(fake_client) -> None:
    pool = LLMPool()
    pool.register_openai("gpt-4o-mini", OpenAIConfig(api_key="sk-test"))

    fake_client.content = None
    with pytest.raises(ExecutionFailure):
        await pool.complete(_request())

    fake_client.content = "  \n"
    with pytest.raises(ExecutionFailure):
        await pool.complete(_request())


@pytest.mark.anyio
async def test_client_errors_become_execution_failures(fake_client) -> None:
    pool = LLMPool()
    pool.register_openai("gpt-4o-mini", OpenAIConfig(api_key="sk-test"))
    fake_client.error = APIConnectionError(request=httpx.Request("POST", "https://api.openai.test"))

    with pytest.raises(ExecutionFailure, match="Completion service error"):
        await pool.complete(_request())


@pytest.mark.anyio
async def test_pool_without_models_fails() -> None:
    with pytest.raises(ExecutionFailure):
        await LLMPool().complete(_request())


@pytest.mark.anyio
async def test_acquire_unknown_model() -> None:
    with pytest.raises(KeyError):
        async with LLMPool().acquire("missing"):
            pass


@pytest.mark.parametrize(
    "overrides",
    [{"temperature": 2.5}, {"temperature": -0.1}, {"max_tokens": 0}, {"max_tokens": 32001}],
)
def test_request_parameters_are_bounded(overrides) -> None:
    with pytest.raises(PydanticValidationError):
        _request(**overrides)


@pytest.mark.anyio
async def test_echo_service_repeats_first_line() -> None:
    service = EchoCompletionService(latency=(0.0, 0.0))
    text = await service.complete(_request(user="first line\nsecond line", model="gpt-4o-mini"))
    assert text == "[echo:gpt-4o-mini] first line"


def test_config_defaults_to_echo_without_credentials(monkeypatch) -> None:
    for name in ("AZURE_OPENAI_KEY", "AZURE_OPENAI_ENDPOINT", "OPENAI_API_KEY", "AGENTFLOW_COMPLETION_BACKEND"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AGENTFLOW_ALERT_CPU", "65")
    monkeypatch.setenv("AGENTFLOW_LOG_LEVEL", "debug")

    loaded = Config.from_env()

    assert loaded.completion.backend == "echo"
    assert loaded.monitoring.thresholds.cpu == 65.0
    assert loaded.log_level == "DEBUG"


def test_config_prefers_azure_when_configured(monkeypatch) -> None:
    monkeypatch.delenv("AGENTFLOW_COMPLETION_BACKEND", raising=False)
    monkeypatch.setenv("AZURE_OPENAI_KEY", "key")
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://example.invalid")
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")

    loaded = Config.from_env()

    assert loaded.completion.backend == "azure"
    assert loaded.azure_openai.deployment_name == "gpt-4o"
