"""Configuration management for the orchestration core."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class AzureOpenAIConfig:
    """Azure OpenAI service configuration."""

    api_key: str
    endpoint: str
    api_version: str = "2024-02-15-preview"
    deployment_name: str = "gpt-4"
    max_concurrent: int = 50


@dataclass(frozen=True)
class OpenAIConfig:
    """Plain OpenAI (or compatible) endpoint configuration."""

    api_key: str
    base_url: Optional[str] = None
    model: str = "gpt-4o-mini"
    max_concurrent: int = 50


@dataclass(frozen=True)
class CompletionConfig:
    """Generation parameters shared by every unit of work."""

    backend: str = "echo"
    temperature: float = 0.7
    max_tokens: int = 2000
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class SchedulerConfig:
    scan_interval_seconds: float = 60.0
    lookahead_years: int = 4


@dataclass(frozen=True)
class AlertThresholds:
    """Breach levels evaluated by the alert engine and the health check."""

    cpu: float = 80.0
    memory: float = 85.0
    disk: float = 90.0
    error_rate: float = 10.0
    response_time_ms: float = 5000.0
    failed_tasks: float = 20.0


@dataclass(frozen=True)
class MonitoringConfig:
    system_interval_seconds: float = 30.0
    application_interval_seconds: float = 60.0
    alert_interval_seconds: float = 300.0
    history_size: int = 1000
    system_source: str = "psutil"
    thresholds: AlertThresholds = field(default_factory=AlertThresholds)


@dataclass(frozen=True)
class PerformanceConfig:
    cache_ttl_seconds: float = 300.0
    refresh_interval_seconds: float = 600.0


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    azure_openai: Optional[AzureOpenAIConfig] = None
    openai: Optional[OpenAIConfig] = None
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    environment: str = "development"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        azure_key = os.getenv("AZURE_OPENAI_KEY")
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")

        azure_config = None
        if azure_key and azure_endpoint:
            azure_config = AzureOpenAIConfig(
                api_key=azure_key,
                endpoint=azure_endpoint,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                deployment_name=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4"),
                max_concurrent=_env_int("AZURE_OPENAI_MAX_CONCURRENT", 50),
            )

        openai_config = None
        openai_key = os.getenv("OPENAI_API_KEY")
        if openai_key:
            openai_config = OpenAIConfig(
                api_key=openai_key,
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
                max_concurrent=_env_int("OPENAI_MAX_CONCURRENT", 50),
            )

        # Without credentials the only usable backend is the offline echo one.
        default_backend = "azure" if azure_config else "openai" if openai_config else "echo"
        completion = CompletionConfig(
            backend=os.getenv("AGENTFLOW_COMPLETION_BACKEND", default_backend),
            temperature=_env_float("AGENTFLOW_COMPLETION_TEMPERATURE", 0.7),
            max_tokens=_env_int("AGENTFLOW_COMPLETION_MAX_TOKENS", 2000),
            timeout_seconds=_env_float("AGENTFLOW_COMPLETION_TIMEOUT", 60.0),
        )

        thresholds = AlertThresholds(
            cpu=_env_float("AGENTFLOW_ALERT_CPU", 80.0),
            memory=_env_float("AGENTFLOW_ALERT_MEMORY", 85.0),
            disk=_env_float("AGENTFLOW_ALERT_DISK", 90.0),
            error_rate=_env_float("AGENTFLOW_ALERT_ERROR_RATE", 10.0),
            response_time_ms=_env_float("AGENTFLOW_ALERT_RESPONSE_TIME_MS", 5000.0),
            failed_tasks=_env_float("AGENTFLOW_ALERT_FAILED_TASKS", 20.0),
        )

        return cls(
            azure_openai=azure_config,
            openai=openai_config,
            completion=completion,
            scheduler=SchedulerConfig(
                scan_interval_seconds=_env_float("AGENTFLOW_SCAN_INTERVAL", 60.0),
                lookahead_years=_env_int("AGENTFLOW_CRON_LOOKAHEAD_YEARS", 4),
            ),
            monitoring=MonitoringConfig(
                system_interval_seconds=_env_float("AGENTFLOW_SYSTEM_METRICS_INTERVAL", 30.0),
                application_interval_seconds=_env_float("AGENTFLOW_APP_METRICS_INTERVAL", 60.0),
                alert_interval_seconds=_env_float("AGENTFLOW_ALERT_INTERVAL", 300.0),
                history_size=_env_int("AGENTFLOW_METRICS_HISTORY", 1000),
                system_source=os.getenv("AGENTFLOW_SYSTEM_METRICS_SOURCE", "psutil"),
                thresholds=thresholds,
            ),
            performance=PerformanceConfig(
                cache_ttl_seconds=_env_float("AGENTFLOW_PERFORMANCE_CACHE_TTL", 300.0),
                refresh_interval_seconds=_env_float("AGENTFLOW_PERFORMANCE_REFRESH", 600.0),
            ),
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("AGENTFLOW_LOG_LEVEL", "INFO").upper(),
        )


# Global config instance
config = Config.from_env()
