"""agentflow schedule: recurring executions."""

import typer

from agentflow.cli import context
from agentflow.runtime.errors import AgentFlowError
from agentflow.runtime.types import ScheduleUpdate

schedule_app = typer.Typer(name="schedule", help="Schedule operations: create, show, pause, resume.")


def _config(ctx: typer.Context) -> str | None:
    return (ctx.obj or {}).get("config")


@schedule_app.command("create")
def create_command(
    ctx: typer.Context,
    agent_id: str = typer.Argument(..., help="Agent to execute."),
    user_id: str = typer.Argument(..., help="User whose credentials are injected."),
    cron: str = typer.Option(..., "--cron", help="Cron expression, e.g. '0 9 * * *'."),
    tz: str = typer.Option("UTC", "--timezone", help="IANA timezone for the cron expression."),
    name: str = typer.Option("", "--name", help="Schedule name."),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON object passed to each run."),
    priority: int = typer.Option(0, "--priority", help="Priority of generated jobs."),
) -> None:
    """Create a schedule and print it."""
    runtime = context.load_runtime(_config(ctx))
    try:
        schedule = context.run_async(
            runtime.service.create_schedule(
                agent_id=agent_id,
                user_id=user_id,
                cron_expression=cron,
                timezone_name=tz,
                name=name,
                payload=context.parse_payload(payload),
                priority=priority,
            ),
            runtime,
        )
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    context.echo_json(schedule.to_dict())


@schedule_app.command("show")
def show_command(ctx: typer.Context, schedule_id: str = typer.Argument(..., help="Schedule id.")) -> None:
    runtime = context.load_runtime(_config(ctx))
    try:
        schedule = context.run_async(runtime.service.get_schedule(schedule_id), runtime)
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    context.echo_json(schedule.to_dict())


def _set_active(ctx: typer.Context, schedule_id: str, active: bool) -> None:
    runtime = context.load_runtime(_config(ctx))
    try:
        update = ScheduleUpdate(is_active=active)
        schedule = context.run_async(runtime.service.update_schedule(schedule_id, update), runtime)
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    typer.echo(f"{schedule.id} {'active' if schedule.is_active else 'paused'}")


@schedule_app.command("pause")
def pause_command(ctx: typer.Context, schedule_id: str = typer.Argument(..., help="Schedule id.")) -> None:
    """Stop generating runs for a schedule."""
    _set_active(ctx, schedule_id, False)


@schedule_app.command("resume")
def resume_command(ctx: typer.Context, schedule_id: str = typer.Argument(..., help="Schedule id.")) -> None:
    """Resume a paused schedule from the next future fire time."""
    _set_active(ctx, schedule_id, True)
