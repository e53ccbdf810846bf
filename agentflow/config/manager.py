"""Configuration manager for AgentFlow."""

from __future__ import annotations

import json
import os
from threading import Lock
from typing import Any, ClassVar

from agentflow.config.loader import YAMLConfigLoader
from agentflow.config.models import AgentFlowConfig

ENV_PREFIX = "AGENTFLOW_"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = dict(base)
    for key, value in updates.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce_env_value(raw: str) -> Any:
    value = raw.strip()
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    if value.startswith("[") or value.startswith("{"):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _collect_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """Turn AGENTFLOW_SECTION__FIELD variables into a nested dict."""
    overrides: dict[str, Any] = {}
    for key, raw_value in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = [part.strip().lower() for part in key[len(prefix) :].split("__") if part.strip()]
        if len(path) < 2:
            continue
        cursor = overrides
        for part in path[:-1]:
            existing = cursor.get(part)
            if not isinstance(existing, dict):
                existing = {}
                cursor[part] = existing
            cursor = existing
        cursor[path[-1]] = _coerce_env_value(raw_value)
    return overrides


class ConfigManager:
    """Thread-safe singleton for typed configuration access.

    Precedence, lowest to highest: model defaults, YAML file, environment,
    explicit overrides passed to load().
    """

    _instance: ClassVar[ConfigManager | None] = None
    _class_lock: ClassVar[Lock] = Lock()

    def __init__(self) -> None:
        self._lock = Lock()
        self._config = AgentFlowConfig.model_validate({})
        self._config_path: str | None = None

    @classmethod
    def instance(cls) -> ConfigManager:
        if cls._instance is not None:
            return cls._instance
        with cls._class_lock:
            if cls._instance is None:
                cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset_for_tests(cls) -> None:
        """Reset singleton state for isolated unit tests."""
        with cls._class_lock:
            cls._instance = None

    @classmethod
    def load(
        cls,
        config_path: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> ConfigManager:
        """Load configuration from defaults + YAML + env + runtime overrides."""
        manager = cls.instance()
        merged = _deep_merge(YAMLConfigLoader.load_dict(config_path), _collect_env_overrides())
        merged = _deep_merge(merged, overrides or {})
        new_config = AgentFlowConfig.model_validate(merged)
        with manager._lock:
            manager._config = new_config
            manager._config_path = config_path
        return manager

    def get(self) -> AgentFlowConfig:
        """Return current config snapshot."""
        with self._lock:
            return self._config
