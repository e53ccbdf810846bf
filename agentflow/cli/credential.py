"""agentflow credential: store, list and revoke encrypted user credentials."""

from datetime import datetime, timezone

import typer

from agentflow.cli import context
from agentflow.runtime.errors import AgentFlowError

credential_app = typer.Typer(name="credential", help="Credential vault operations: set, list, revoke.")


@credential_app.command("set")
def set_command(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Owner of the credential."),
    provider: str = typer.Argument(..., help="Provider name, e.g. shopify."),
    value: str = typer.Option(..., "--value", prompt=True, hide_input=True, help="Secret value (prompted when omitted)."),
    expires_at: str = typer.Option("", "--expires-at", help="ISO-8601 expiry."),
    tenant_id: str = typer.Option("default", "--tenant", help="Tenant id."),
    skip_validation: bool = typer.Option(False, "--skip-validation", help="Do not run provider validators."),
) -> None:
    """Encrypt and store a credential; the value is never echoed."""
    expiry = None
    if expires_at.strip():
        try:
            expiry = datetime.fromisoformat(expires_at.strip())
        except ValueError as exc:
            typer.echo(f"Error: --expires-at must be ISO-8601: {expires_at}", err=True)
            raise typer.Exit(2) from exc
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
    runtime = context.load_runtime((ctx.obj or {}).get("config"))
    try:
        stored = context.run_async(
            runtime.vault.store(
                user_id,
                provider,
                value,
                expires_at=expiry,
                tenant_id=tenant_id,
                validate=not skip_validation,
            ),
            runtime,
        )
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    typer.echo(f"Stored {stored.provider} credential for {stored.user_id}.")


@credential_app.command("list")
def list_command(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Owner of the credentials."),
    tenant_id: str = typer.Option("default", "--tenant", help="Tenant id."),
) -> None:
    """Show stored credential metadata; values are never printed."""
    runtime = context.load_runtime((ctx.obj or {}).get("config"))
    try:
        summaries = context.run_async(runtime.service.list_credentials(user_id, tenant_id=tenant_id), runtime)
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    context.echo_json([summary.to_dict() for summary in summaries])


@credential_app.command("revoke")
def revoke_command(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Owner of the credential."),
    provider: str = typer.Argument(..., help="Provider name."),
    tenant_id: str = typer.Option("default", "--tenant", help="Tenant id."),
) -> None:
    """Revoke a credential; queued jobs that need it fail with missing credentials."""
    runtime = context.load_runtime((ctx.obj or {}).get("config"))
    try:
        context.run_async(runtime.service.revoke_credential(user_id, provider, tenant_id=tenant_id), runtime)
    except AgentFlowError as exc:
        raise context.fail(exc) from exc
    typer.echo(f"Revoked {provider} credential for {user_id}.")
