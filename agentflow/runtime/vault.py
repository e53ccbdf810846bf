"""Credential vault adapter and pure credential injection helpers.

Plaintext credential values exist only inside ``ResolvedCredentials`` and
``InjectedRequest`` for the duration of one dispatch. Neither type prints
its values, and ``scrub`` removes them from anything that leaves the
dispatcher.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from cryptography.fernet import Fernet, InvalidToken

from agentflow.runtime.errors import (
    CredentialCorruptError,
    CredentialNotFoundError,
    MissingCredentialsError,
    ValidationError,
)
from agentflow.runtime.persistence.repositories import CredentialRepository
from agentflow.runtime.types import (
    TOKEN_PLACEHOLDER,
    Credential,
    CredentialRequirement,
    CredentialSummary,
    InjectedRequest,
    ResolvedCredentials,
    ValidationResult,
    utc_now,
)

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

CredentialValidator = Callable[[str], Any]

# Injection defaults for well-known providers.
PROVIDER_TEMPLATES: dict[str, CredentialRequirement] = {
    "openai": CredentialRequirement("openai"),
    "gmail": CredentialRequirement("gmail"),
    "slack": CredentialRequirement("slack"),
    "stripe": CredentialRequirement("stripe"),
    "hubspot": CredentialRequirement("hubspot"),
    "shopify": CredentialRequirement("shopify", field_name="X-Shopify-Access-Token", format_template="{{token}}"),
    "airtable": CredentialRequirement("airtable"),
    "notion": CredentialRequirement("notion"),
    "google_sheets": CredentialRequirement("google_sheets"),
    "discord": CredentialRequirement("discord", format_template="Bot {{token}}"),
    "github": CredentialRequirement("github"),
    "sendgrid": CredentialRequirement("sendgrid"),
    "twilio": CredentialRequirement("twilio", format_template="Basic {{token}}"),
}


def requirement_for(provider: str, *, required: bool = True) -> CredentialRequirement:
    """Return the injection rule for a provider, falling back to a bearer header."""
    template = PROVIDER_TEMPLATES.get(provider)
    if template is None:
        return CredentialRequirement(provider=provider, required=required)
    return CredentialRequirement(
        provider=provider,
        required=required,
        inject_method=template.inject_method,
        field_name=template.field_name,
        format_template=template.format_template,
    )


def format_credential(template: str, value: str) -> str:
    """Substitute the secret into the template's single placeholder."""
    return template.replace(TOKEN_PLACEHOLDER, value)


def build_injection(
    payload: Mapping[str, Any],
    requirements: Iterable[CredentialRequirement],
    resolved: Mapping[str, str],
) -> InjectedRequest:
    """Merge the job payload with formatted credentials.

    Requirements whose provider is not in ``resolved`` are skipped; callers
    decide beforehand whether a missing provider is fatal. The payload is
    never mutated.
    """
    injected = InjectedRequest(body=dict(payload))
    for requirement in requirements:
        value = resolved.get(requirement.provider)
        if value is None:
            continue
        formatted = format_credential(requirement.format_template, value)
        if requirement.inject_method == "header":
            injected.headers[requirement.target_field] = formatted
        elif requirement.inject_method == "query":
            injected.query[requirement.target_field] = formatted
        elif requirement.inject_method == "body":
            injected.body[requirement.target_field] = formatted
        else:
            raise ValueError(f"unsupported inject method: {requirement.inject_method}")
    return injected


def scrub(value: Any, secrets: Iterable[str]) -> Any:
    """Recursively replace every secret occurrence with ``[REDACTED]``."""
    needles = sorted({secret for secret in secrets if secret}, key=len, reverse=True)
    if not needles:
        return value
    return _scrub(value, needles)


def _scrub(value: Any, needles: list[str]) -> Any:
    if isinstance(value, str):
        for needle in needles:
            if needle in value:
                value = value.replace(needle, REDACTED)
        return value
    if isinstance(value, dict):
        return {_scrub(key, needles): _scrub(item, needles) for key, item in value.items()}
    if isinstance(value, list):
        return [_scrub(item, needles) for item in value]
    if isinstance(value, tuple):
        return tuple(_scrub(item, needles) for item in value)
    return value


def generate_key() -> str:
    """Create a new process-wide vault key."""
    return Fernet.generate_key().decode("ascii")


class CredentialVault:
    """Encrypts, stores and resolves per-user provider credentials."""

    def __init__(
        self,
        repository: CredentialRepository,
        encryption_key: str | bytes,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        key = encryption_key.encode("ascii") if isinstance(encryption_key, str) else encryption_key
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise ValueError("vault encryption key must be 32 url-safe base64-encoded bytes") from exc
        self._repository = repository
        self._clock = clock
        self._validators: dict[str, CredentialValidator] = {}

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str) or plaintext == "":
            raise ValidationError("credential value must be a non-empty string")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, blob: str, *, provider: str | None = None) -> str:
        try:
            data = blob.encode("ascii") if isinstance(blob, str) else blob
            return self._fernet.decrypt(data).decode("utf-8")
        except (InvalidToken, UnicodeError, TypeError, ValueError):
            raise CredentialCorruptError(provider) from None

    def register_validator(self, provider: str, validator: CredentialValidator) -> None:
        self._validators[provider] = validator

    async def validate(self, provider: str, plaintext: str) -> ValidationResult:
        """Run the provider's validation hook; unknown providers are accepted."""
        validator = self._validators.get(provider)
        if validator is None:
            return ValidationResult(valid=True)
        outcome = validator(plaintext)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, ValidationResult):
            return outcome
        if outcome:
            return ValidationResult(valid=True)
        return ValidationResult(valid=False, message=f"credential rejected by {provider} validator")

    async def store(
        self,
        user_id: str,
        provider: str,
        plaintext: str,
        *,
        expires_at: datetime | None = None,
        tenant_id: str = "default",
        validate: bool = True,
    ) -> Credential:
        if validate:
            result = await self.validate(provider, plaintext)
            if not result.valid:
                raise ValidationError(result.message or f"invalid credential for provider '{provider}'")
        credential = Credential(
            tenant_id=tenant_id,
            user_id=user_id,
            provider=provider,
            encrypted_value=self.encrypt(plaintext),
            status="active",
            expires_at=expires_at,
        )
        stored = await self._repository.upsert(credential)
        logger.info("Stored credential provider=%s user=%s", provider, user_id)
        return stored

    async def revoke(self, user_id: str, provider: str, *, tenant_id: str = "default") -> None:
        """Mark a stored credential revoked; jobs needing it then fail as missing credentials."""
        if not await self._repository.set_status(user_id, provider, "revoked", tenant_id=tenant_id):
            raise CredentialNotFoundError(user_id, provider)
        logger.info("Revoked credential provider=%s user=%s", provider, user_id)

    async def list_for(self, user_id: str, *, tenant_id: str = "default") -> list[CredentialSummary]:
        """Metadata of every credential the user has stored, sorted by provider."""
        now = self._clock()
        stored = await self._repository.list_for_user(user_id, tenant_id=tenant_id)
        return [credential.summary(now) for credential in stored]

    async def resolve(
        self,
        user_id: str,
        requirements: Iterable[CredentialRequirement],
        *,
        tenant_id: str = "default",
    ) -> ResolvedCredentials:
        """Decrypt the user's active credentials for the given requirements.

        Required providers without a usable credential are listed in
        ``missing``; optional ones are silently skipped. A credential past
        its expiry is marked expired and reported missing.
        """
        now = self._clock()
        resolved = ResolvedCredentials()
        for requirement in requirements:
            provider = requirement.provider
            if provider in resolved.values or provider in resolved.missing:
                continue
            credential = await self._repository.get(user_id, provider, tenant_id=tenant_id)
            if credential is not None and credential.status == "active" and not credential.is_usable(now):
                await self._repository.set_status(user_id, provider, "expired", tenant_id=tenant_id)
                logger.info("Credential provider=%s user=%s expired", provider, user_id)
                credential = None
            if credential is None or credential.status != "active":
                if requirement.required:
                    resolved.missing.append(provider)
                continue
            resolved.values[provider] = self.decrypt(credential.encrypted_value, provider=provider)
        if resolved.values:
            await self._repository.touch(user_id, sorted(resolved.values), now, tenant_id=tenant_id)
        return resolved

    async def resolve_or_raise(
        self,
        user_id: str,
        requirements: Iterable[CredentialRequirement],
        *,
        tenant_id: str = "default",
    ) -> ResolvedCredentials:
        resolved = await self.resolve(user_id, requirements, tenant_id=tenant_id)
        if resolved.missing:
            raise MissingCredentialsError(resolved.missing)
        return resolved

    async def missing_for(
        self,
        user_id: str,
        requirements: Iterable[CredentialRequirement],
        *,
        tenant_id: str = "default",
    ) -> list[str]:
        """Required providers the user has no usable credential for, without decrypting."""
        now = self._clock()
        missing: list[str] = []
        for requirement in requirements:
            if not requirement.required or requirement.provider in missing:
                continue
            credential = await self._repository.get(user_id, requirement.provider, tenant_id=tenant_id)
            if credential is None or not credential.is_usable(now):
                missing.append(requirement.provider)
        return sorted(missing)
