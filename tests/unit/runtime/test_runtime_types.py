from __future__ import annotations

from datetime import datetime, timedelta, timezone

from agentflow.runtime.errors import MissingCredentialsError, RateLimitExceeded
from agentflow.runtime.types import (
    AgentDescriptor,
    Credential,
    CredentialRequirement,
    HealthView,
    InjectedRequest,
    Job,
    ResolvedCredentials,
    WorkerState,
)


def test_target_field_defaults_per_inject_method() -> None:
    assert CredentialRequirement("slack").target_field == "Authorization"
    assert CredentialRequirement("slack", inject_method="query").target_field == "slack"
    assert CredentialRequirement("slack", inject_method="body", field_name="token").target_field == "token"


def test_required_providers_sorted_and_excludes_optional() -> None:
    agent = AgentDescriptor(
        agent_id="a",
        webhook_url="https://example.com",
        credentials=[
            CredentialRequirement("stripe"),
            CredentialRequirement("airtable"),
            CredentialRequirement("notion", required=False),
        ],
    )
    assert agent.required_providers == ["airtable", "stripe"]


def test_credential_usable_until_expiry() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    credential = Credential("u", "gmail", "blob", expires_at=now + timedelta(minutes=1))
    assert credential.is_usable(now)
    assert not credential.is_usable(now + timedelta(minutes=1))
    assert not Credential("u", "gmail", "blob", status="revoked").is_usable(now)


def test_secret_holders_do_not_print_values() -> None:
    resolved = ResolvedCredentials(values={"gmail": "super-secret"})
    injected = InjectedRequest(headers={"Authorization": "Bearer super-secret"})
    credential = Credential("u", "gmail", "ciphertext-blob")
    assert "super-secret" not in repr(resolved)
    assert "super-secret" not in repr(injected)
    assert "ciphertext-blob" not in repr(credential)


def test_job_terminal_flag() -> None:
    assert not Job(id="1", agent_id="a", user_id="u").is_terminal
    assert Job(id="1", agent_id="a", user_id="u", status="timeout").is_terminal


def test_health_view_degraded_without_live_workers() -> None:
    assert HealthView(workers=[], live_workers=0, pending=3, running=0).to_dict()["status"] == "degraded"
    view = HealthView(workers=[WorkerState("w", 5)], live_workers=1, pending=0, running=1).to_dict()
    assert view["status"] == "ok"
    assert view["workers"][0]["worker_id"] == "w"


def test_missing_credentials_error_lists_sorted_names() -> None:
    exc = MissingCredentialsError(["stripe", "airtable"])
    assert exc.missing == ["airtable", "stripe"]
    assert str(exc) == "Missing required credentials: airtable, stripe"


def test_rate_limit_retry_after_is_at_least_one_second() -> None:
    assert RateLimitExceeded(0).retry_after_seconds == 1
