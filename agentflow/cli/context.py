"""Shared helpers for CLI commands: config loading and runtime construction."""

import asyncio
import json
import logging
from typing import Any, Coroutine, TypeVar

import typer

from agentflow.config import ConfigLoadError, ConfigManager
from agentflow.config.models import AgentFlowConfig
from agentflow.runtime.errors import AgentFlowError, MissingCredentialsError, RateLimitExceeded
from agentflow.runtime.main import AgentFlowRuntime, build_runtime

T = TypeVar("T")

logger = logging.getLogger(__name__)


def load_config(config_path: str | None) -> AgentFlowConfig:
    try:
        return ConfigManager.load(config_path=config_path).get()
    except ConfigLoadError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc


def load_runtime(config_path: str | None) -> AgentFlowRuntime:
    """Build the runtime from configuration; patched in tests."""
    config = load_config(config_path)
    if not config.database.url:
        logger.warning("No database.url configured; using in-memory stores for this process only")
    return build_runtime(config)


def run_async(coro: Coroutine[Any, Any, T], runtime: AgentFlowRuntime | None = None) -> T:
    """Run one coroutine; the runtime's pooled connections are released before the loop closes."""
    if runtime is None:
        return asyncio.run(coro)

    async def _run() -> T:
        try:
            return await coro
        finally:
            await runtime.aclose()

    return asyncio.run(_run())


def echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def fail(exc: AgentFlowError) -> typer.Exit:
    """Print a runtime error and return the Exit to raise."""
    typer.echo(f"Error [{exc.code}]: {exc}", err=True)
    if isinstance(exc, MissingCredentialsError):
        typer.echo("Add them with: agentflow credential set USER_ID PROVIDER", err=True)
    if isinstance(exc, RateLimitExceeded):
        typer.echo(f"Retry after {exc.retry_after_seconds}s", err=True)
    return typer.Exit(1)


def parse_payload(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as exc:
        typer.echo(f"Error: --payload is not valid JSON: {exc.msg}", err=True)
        raise typer.Exit(2) from exc
    if not isinstance(payload, dict):
        typer.echo("Error: --payload must be a JSON object.", err=True)
        raise typer.Exit(2)
    return payload
