"""CLI tools: agentflow run, serve, enqueue, status, cancel, schedule, credential, db."""

import asyncio
import logging
import signal
import sys
from datetime import datetime
from importlib import metadata

import typer

from agentflow.cli import context
from agentflow.runtime.errors import AgentFlowError
from agentflow.runtime.main import AgentFlowRuntime
from agentflow.runtime.types import EnqueueRequest
from agentflow.runtime.vault import generate_key

app = typer.Typer(
    name="agentflow",
    help="AgentFlow: durable execution runtime for webhook agents.",
    no_args_is_help=True,
)

_SUBAPPS_REGISTERED = False


def _register_subapps() -> None:
    global _SUBAPPS_REGISTERED
    if _SUBAPPS_REGISTERED:
        return
    from agentflow.cli.agent import agent_app
    from agentflow.cli.credential import credential_app
    from agentflow.cli.db import db_app
    from agentflow.cli.schedule import schedule_app

    app.add_typer(agent_app, name="agent")
    app.add_typer(credential_app, name="credential")
    app.add_typer(db_app, name="db")
    app.add_typer(schedule_app, name="schedule")
    _SUBAPPS_REGISTERED = True


def _version() -> str:
    try:
        return metadata.version("agentflow")
    except metadata.PackageNotFoundError:
        return "unknown"


@app.callback()
def _root(
    ctx: typer.Context,
    config: str = typer.Option("", "--config", "-c", help="Path to agentflow.yaml."),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)."),
) -> None:
    level = getattr(logging, log_level.strip().upper(), None)
    if not isinstance(level, int):
        typer.echo(f"Error: unknown log level: {log_level}", err=True)
        raise typer.Exit(2)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = {"config": config or None}


def _config_path(ctx: typer.Context) -> str | None:
    return (ctx.obj or {}).get("config")


async def _run_until_signalled(runtime: AgentFlowRuntime) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt is handled in main().
            continue
    await runtime.start()
    try:
        await stop.wait()
    finally:
        await runtime.stop()


@app.command("version")
def version_command() -> None:
    """Print installed package version."""
    typer.echo(f"agentflow {_version()}")


@app.command("run")
def run_command(ctx: typer.Context) -> None:
    """Run the worker pool and poller until SIGINT/SIGTERM."""
    runtime = context.load_runtime(_config_path(ctx))
    typer.echo(f"Starting {len(runtime.pool.workers)} worker(s); press Ctrl+C to stop.")
    context.run_async(_run_until_signalled(runtime))


@app.command("serve")
def serve_command(
    ctx: typer.Context,
    host: str = typer.Option("", "--host", help="Bind host (default: http.host)."),
    port: int = typer.Option(0, "--port", help="Bind port (default: http.port)."),
    with_workers: bool = typer.Option(True, "--workers/--no-workers", help="Run the worker pool in-process."),
) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    runtime = context.load_runtime(_config_path(ctx))
    uvicorn.run(
        runtime.build_http_app(run_workers=with_workers),
        host=host or runtime.config.http.host,
        port=port or runtime.config.http.port,
        log_level=logging.getLevelName(logging.getLogger().getEffectiveLevel()).lower(),
    )


@app.command("enqueue")
def enqueue_command(
    ctx: typer.Context,
    agent_id: str = typer.Argument(..., help="Agent to execute."),
    user_id: str = typer.Argument(..., help="User whose credentials are injected."),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON object passed to the agent."),
    priority: int = typer.Option(0, "--priority", help="Higher runs first."),
    max_retries: int = typer.Option(-1, "--max-retries", help="Override default max retries."),
    scheduled_at: str = typer.Option("", "--at", help="ISO-8601 time to run at (default: now)."),
    tenant_id: str = typer.Option("default", "--tenant", help="Tenant id."),
) -> None:
    """Enqueue one job and print its id."""
    when: datetime | None = None
    if scheduled_at.strip():
        try:
            when = datetime.fromisoformat(scheduled_at.strip())
        except ValueError as exc:
            typer.echo(f"Error: --at must be ISO-8601: {scheduled_at}", err=True)
            raise typer.Exit(2) from exc
    request = EnqueueRequest(
        agent_id=agent_id,
        user_id=user_id,
        payload=context.parse_payload(payload),
        priority=priority,
        scheduled_at=when,
        max_retries=None if max_retries < 0 else max_retries,
        source="cli",
        tenant_id=tenant_id,
    )
    runtime = context.load_runtime(_config_path(ctx))
    try:
        job_id = context.run_async(runtime.service.enqueue(request), runtime)
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    typer.echo(job_id)


@app.command("status")
def status_command(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id.")) -> None:
    """Show job status and its ledger phases."""
    runtime = context.load_runtime(_config_path(ctx))
    try:
        view = context.run_async(runtime.service.status(job_id), runtime)
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    context.echo_json(view.to_dict())


@app.command("cancel")
def cancel_command(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job id."),
    reason: str = typer.Option("", "--reason", help="Recorded cancellation reason."),
) -> None:
    """Cancel a pending or running job."""
    runtime = context.load_runtime(_config_path(ctx))
    try:
        job = context.run_async(runtime.service.cancel(job_id, reason or None), runtime)
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    typer.echo(f"{job.id} {job.status}")


@app.command("keygen")
def keygen_command() -> None:
    """Print a new vault encryption key."""
    typer.echo(generate_key())


_register_subapps()


def main() -> None:
    """CLI entry point."""
    if "--version" in sys.argv or "-V" in sys.argv:
        typer.echo(f"agentflow {_version()}")
        raise SystemExit(0)
    try:
        app()
    except KeyboardInterrupt:
        sys.exit(130)
