"""Application runtime composition helpers."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from agentflow.config import config
from agentflow.core.clock import SystemClock
from agentflow.core.events import NotificationBus
from agentflow.monitoring.alerts import AlertEngine
from agentflow.monitoring.metrics import MetricsCollector, build_system_source
from agentflow.monitoring.performance import PerformanceAggregator
from agentflow.orchestration.executor import ExecutionStateMachine
from agentflow.scheduling.registry import ScheduleRegistry
from agentflow.services.completion import CompletionService
from agentflow.services.echo import EchoCompletionService
from agentflow.services.llm_pool import LLMPool
from agentflow.storage.memory import InMemoryStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    """Install a single stream handler on the package logger."""
    package_logger = logging.getLogger("agentflow")
    package_logger.setLevel((level or config.log_level).upper())
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)


@lru_cache
def get_clock() -> SystemClock:
    return SystemClock()


@lru_cache
def get_store() -> InMemoryStore:
    return InMemoryStore(clock=get_clock())


@lru_cache
def get_bus() -> NotificationBus:
    return NotificationBus()


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()

    # Register Azure OpenAI if configured
    if config.azure_openai:
        pool.register_azure_openai(config.azure_openai.deployment_name, config.azure_openai)

    if config.openai:
        pool.register_openai(config.openai.model, config.openai)

    return pool


@lru_cache
def get_completion_service() -> CompletionService:
    backend = config.completion.backend
    if backend == "echo":
        return EchoCompletionService()
    pool = get_llm_pool()
    if not pool.models:
        raise RuntimeError(f"Completion backend '{backend}' selected but no provider credentials are set")
    return pool


@lru_cache
def get_executor() -> ExecutionStateMachine:
    return ExecutionStateMachine(
        store=get_store(),
        bus=get_bus(),
        completion=get_completion_service(),
        clock=get_clock(),
        completion_config=config.completion,
        lookahead_years=config.scheduler.lookahead_years,
    )


@lru_cache
def get_registry() -> ScheduleRegistry:
    return ScheduleRegistry(
        store=get_store(),
        executor=get_executor(),
        clock=get_clock(),
        scan_interval_seconds=config.scheduler.scan_interval_seconds,
        lookahead_years=config.scheduler.lookahead_years,
    )


@lru_cache
def get_metrics() -> MetricsCollector:
    monitoring = config.monitoring
    return MetricsCollector(
        store=get_store(),
        bus=get_bus(),
        source=build_system_source(monitoring.system_source),
        clock=get_clock(),
        history_size=monitoring.history_size,
        system_interval_seconds=monitoring.system_interval_seconds,
        application_interval_seconds=monitoring.application_interval_seconds,
    )


@lru_cache
def get_alerts() -> AlertEngine:
    return AlertEngine(
        metrics=get_metrics(),
        clock=get_clock(),
        thresholds=config.monitoring.thresholds,
        interval_seconds=config.monitoring.alert_interval_seconds,
    )


@lru_cache
def get_performance() -> PerformanceAggregator:
    return PerformanceAggregator(
        store=get_store(),
        clock=get_clock(),
        cache_ttl_seconds=config.performance.cache_ttl_seconds,
        refresh_interval_seconds=config.performance.refresh_interval_seconds,
    )


async def start_services() -> None:
    """Start the scheduler and the periodic monitors.

    A registry start failure propagates; everything else is best effort.
    """
    configure_logging()
    await get_registry().start()
    await get_metrics().start()
    await get_alerts().start()
    await get_performance().start()
    logger.info("Services started (%s, completion backend %s)", config.environment, config.completion.backend)


async def stop_services() -> None:
    """Stop timers and samplers, then let in-flight executions finish."""
    await get_registry().stop()
    await get_alerts().stop()
    await get_metrics().stop()
    await get_performance().stop()
    await get_executor().drain()
    logger.info("Services stopped")
