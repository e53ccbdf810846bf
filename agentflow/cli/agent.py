"""agentflow agent: register and inspect agent descriptors."""

import typer

from agentflow.cli import context
from agentflow.runtime.errors import AgentFlowError
from agentflow.runtime.types import AgentDescriptor
from agentflow.runtime.vault import requirement_for

agent_app = typer.Typer(name="agent", help="Agent registry operations: add, show.")


@agent_app.command("add")
def add_command(
    ctx: typer.Context,
    agent_id: str = typer.Argument(..., help="Agent id."),
    webhook_url: str = typer.Argument(..., help="Agent webhook URL."),
    name: str = typer.Option("", "--name", help="Display name."),
    credential: list[str] = typer.Option([], "--credential", help="Required provider; repeat for several."),
    optional_credential: list[str] = typer.Option([], "--optional-credential", help="Optional provider."),
    timeout: float = typer.Option(0.0, "--timeout", help="Webhook timeout in seconds (default: dispatcher)."),
) -> None:
    """Register or replace an agent descriptor."""
    requirements = [requirement_for(p.strip()) for p in credential if p.strip()]
    requirements += [requirement_for(p.strip(), required=False) for p in optional_credential if p.strip()]
    descriptor = AgentDescriptor(
        agent_id=agent_id,
        webhook_url=webhook_url,
        name=name or agent_id,
        credentials=requirements,
        timeout_seconds=timeout if timeout > 0 else None,
    )
    runtime = context.load_runtime((ctx.obj or {}).get("config"))
    try:
        saved = context.run_async(runtime.service.register_agent(descriptor), runtime)
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    typer.echo(f"Registered agent {saved.agent_id} ({len(saved.credentials)} credential requirement(s)).")


@agent_app.command("show")
def show_command(ctx: typer.Context, agent_id: str = typer.Argument(..., help="Agent id.")) -> None:
    """Print an agent descriptor."""
    runtime = context.load_runtime((ctx.obj or {}).get("config"))
    descriptor = context.run_async(runtime.agents.get(agent_id), runtime)
    if descriptor is None:
        typer.echo(f"Error: agent not found: {agent_id}", err=True)
        raise typer.Exit(1)
    context.echo_json(
        {
            "agent_id": descriptor.agent_id,
            "name": descriptor.name,
            "webhook_url": descriptor.webhook_url,
            "is_active": descriptor.is_active,
            "disabled_reason": descriptor.disabled_reason,
            "timeout_seconds": descriptor.timeout_seconds,
            "credentials": [
                {
                    "provider": r.provider,
                    "required": r.required,
                    "inject_method": r.inject_method,
                    "field": r.target_field,
                }
                for r in descriptor.credentials
            ],
        }
    )
