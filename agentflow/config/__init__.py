"""Unified configuration system for AgentFlow."""

from agentflow.config.loader import ConfigLoadError, YAMLConfigLoader
from agentflow.config.manager import ConfigManager
from agentflow.config.models import (
    AgentFlowConfig,
    DatabaseConfig,
    DispatcherConfig,
    FeedbackConfig,
    HttpConfig,
    RateLimitConfig,
    RetryConfig,
    SchedulerConfig,
    VaultConfig,
    WorkerConfig,
)

__all__ = [
    "AgentFlowConfig",
    "ConfigLoadError",
    "ConfigManager",
    "DatabaseConfig",
    "DispatcherConfig",
    "FeedbackConfig",
    "HttpConfig",
    "RateLimitConfig",
    "RetryConfig",
    "SchedulerConfig",
    "VaultConfig",
    "WorkerConfig",
    "YAMLConfigLoader",
]
