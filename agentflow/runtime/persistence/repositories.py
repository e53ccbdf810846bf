"""Repositories for collaborator records: agent descriptors and user credentials."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Protocol

from sqlalchemy import ColumnElement, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentflow.runtime.persistence.models import (
    AgentCredentialRequirementModel,
    AgentModel,
    UserCredentialModel,
)
from agentflow.runtime.types import AgentDescriptor, Credential, CredentialRequirement, CredentialStatus


class AgentDirectory(Protocol):
    """Read access to agent descriptors plus the auto-disable signal."""

    async def get(self, agent_id: str) -> AgentDescriptor | None: ...

    async def save(self, descriptor: AgentDescriptor) -> AgentDescriptor: ...

    async def deactivate(self, agent_id: str, reason: str) -> bool: ...


class CredentialRepository(Protocol):
    """Storage of encrypted user credentials."""

    async def get(self, user_id: str, provider: str, *, tenant_id: str = "default") -> Credential | None: ...

    async def list_for_user(self, user_id: str, *, tenant_id: str = "default") -> list[Credential]: ...

    async def upsert(self, credential: Credential) -> Credential: ...

    async def set_status(
        self, user_id: str, provider: str, status: CredentialStatus, *, tenant_id: str = "default"
    ) -> bool: ...

    async def touch(
        self, user_id: str, providers: list[str], when: datetime, *, tenant_id: str = "default"
    ) -> None: ...


def _requirement_from_model(model: AgentCredentialRequirementModel) -> CredentialRequirement:
    return CredentialRequirement(
        provider=model.provider,
        required=model.required,
        inject_method=model.inject_method,  # type: ignore[arg-type]
        field_name=model.field_name,
        format_template=model.format_template,
    )


def _credential_owner(tenant_id: str, user_id: str, provider: str) -> tuple[ColumnElement[bool], ...]:
    return (
        UserCredentialModel.tenant_id == tenant_id,
        UserCredentialModel.user_id == user_id,
        UserCredentialModel.provider == provider,
    )


def _credential_from_model(model: UserCredentialModel) -> Credential:
    return Credential(
        id=str(model.id),
        tenant_id=model.tenant_id,
        user_id=model.user_id,
        provider=model.provider,
        encrypted_value=model.encrypted_value,
        status=model.status,  # type: ignore[arg-type]
        expires_at=model.expires_at,
        last_used_at=model.last_used_at,
    )


class SqlAgentDirectory:
    """Agent descriptors stored in the agents tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, agent_id: str) -> AgentDescriptor | None:
        async with self._session_factory() as session:
            agent = await session.get(AgentModel, agent_id)
            if agent is None:
                return None
            stmt = (
                select(AgentCredentialRequirementModel)
                .where(AgentCredentialRequirementModel.agent_id == agent_id)
                .order_by(AgentCredentialRequirementModel.position.asc())
            )
            rows = (await session.execute(stmt)).scalars().all()
            return AgentDescriptor(
                agent_id=agent.id,
                tenant_id=agent.tenant_id,
                name=agent.name,
                webhook_url=agent.webhook_url,
                credentials=[_requirement_from_model(row) for row in rows],
                timeout_seconds=agent.timeout_seconds,
                is_active=agent.is_active,
                disabled_reason=agent.disabled_reason,
            )

    async def save(self, descriptor: AgentDescriptor) -> AgentDescriptor:
        async with self._session_factory() as session:
            agent = await session.get(AgentModel, descriptor.agent_id)
            if agent is None:
                agent = AgentModel(id=descriptor.agent_id, tenant_id=descriptor.tenant_id)
                session.add(agent)
            agent.name = descriptor.name
            agent.webhook_url = descriptor.webhook_url
            agent.timeout_seconds = float(descriptor.timeout_seconds) if descriptor.timeout_seconds else None
            agent.is_active = descriptor.is_active
            agent.disabled_reason = descriptor.disabled_reason
            await session.flush()
            await session.execute(
                delete(AgentCredentialRequirementModel).where(
                    AgentCredentialRequirementModel.agent_id == descriptor.agent_id
                )
            )
            for position, item in enumerate(descriptor.credentials):
                session.add(
                    AgentCredentialRequirementModel(
                        tenant_id=descriptor.tenant_id,
                        agent_id=descriptor.agent_id,
                        provider=item.provider,
                        required=item.required,
                        inject_method=item.inject_method,
                        field_name=item.field_name,
                        format_template=item.format_template,
                        position=position,
                    )
                )
            await session.commit()
        return descriptor

    async def deactivate(self, agent_id: str, reason: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(AgentModel)
                .where(AgentModel.id == agent_id, AgentModel.is_active.is_(True))
                .values(is_active=False, disabled_reason=reason)
            )
            await session.commit()
            return bool(result.rowcount)


class SqlCredentialRepository:
    """Encrypted credentials stored in user_credentials."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str, provider: str, *, tenant_id: str = "default") -> Credential | None:
        async with self._session_factory() as session:
            stmt = select(UserCredentialModel).where(*_credential_owner(tenant_id, user_id, provider))
            model = await session.scalar(stmt)
            return _credential_from_model(model) if model is not None else None

    async def list_for_user(self, user_id: str, *, tenant_id: str = "default") -> list[Credential]:
        async with self._session_factory() as session:
            stmt = (
                select(UserCredentialModel)
                .where(UserCredentialModel.tenant_id == tenant_id, UserCredentialModel.user_id == user_id)
                .order_by(UserCredentialModel.provider)
            )
            result = await session.scalars(stmt)
            return [_credential_from_model(model) for model in result.all()]

    async def upsert(self, credential: Credential) -> Credential:
        async with self._session_factory() as session:
            stmt = select(UserCredentialModel).where(
                *_credential_owner(credential.tenant_id, credential.user_id, credential.provider)
            )
            model = await session.scalar(stmt)
            if model is None:
                model = UserCredentialModel(
                    tenant_id=credential.tenant_id,
                    user_id=credential.user_id,
                    provider=credential.provider,
                )
                session.add(model)
            model.encrypted_value = credential.encrypted_value
            model.status = credential.status
            model.expires_at = credential.expires_at
            await session.flush()
            await session.refresh(model)
            await session.commit()
            return _credential_from_model(model)

    async def set_status(
        self, user_id: str, provider: str, status: CredentialStatus, *, tenant_id: str = "default"
    ) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(UserCredentialModel)
                .where(*_credential_owner(tenant_id, user_id, provider))
                .values(status=status)
            )
            await session.commit()
            return bool(result.rowcount)

    async def touch(
        self, user_id: str, providers: list[str], when: datetime, *, tenant_id: str = "default"
    ) -> None:
        if not providers:
            return
        async with self._session_factory() as session:
            await session.execute(
                update(UserCredentialModel)
                .where(
                    UserCredentialModel.tenant_id == tenant_id,
                    UserCredentialModel.user_id == user_id,
                    UserCredentialModel.provider.in_(providers),
                )
                .values(last_used_at=when)
            )
            await session.commit()


class InMemoryAgentDirectory:
    """In-memory agent directory for tests and local runs."""

    def __init__(self, agents: list[AgentDescriptor] | None = None) -> None:
        self._items: dict[str, AgentDescriptor] = {}
        self._lock = threading.Lock()
        for agent in agents or []:
            self._items[agent.agent_id] = agent

    async def get(self, agent_id: str) -> AgentDescriptor | None:
        item = self._items.get(agent_id)
        return replace(item, credentials=list(item.credentials)) if item is not None else None

    async def save(self, descriptor: AgentDescriptor) -> AgentDescriptor:
        with self._lock:
            self._items[descriptor.agent_id] = descriptor
        return descriptor

    async def deactivate(self, agent_id: str, reason: str) -> bool:
        with self._lock:
            item = self._items.get(agent_id)
            if item is None or not item.is_active:
                return False
            self._items[agent_id] = replace(item, is_active=False, disabled_reason=reason)
            return True


class InMemoryCredentialRepository:
    """In-memory credential repository keyed by (tenant, user, provider)."""

    def __init__(self) -> None:
        self._items: dict[tuple[str, str, str], Credential] = {}
        self._lock = threading.Lock()

    async def get(self, user_id: str, provider: str, *, tenant_id: str = "default") -> Credential | None:
        item = self._items.get((tenant_id, user_id, provider))
        return replace(item) if item is not None else None

    async def list_for_user(self, user_id: str, *, tenant_id: str = "default") -> list[Credential]:
        return [
            replace(item)
            for (tenant, user, _), item in sorted(self._items.items())
            if tenant == tenant_id and user == user_id
        ]

    async def upsert(self, credential: Credential) -> Credential:
        key = (credential.tenant_id, credential.user_id, credential.provider)
        with self._lock:
            existing = self._items.get(key)
            stored = replace(
                credential,
                id=existing.id if existing is not None else f"{credential.user_id}:{credential.provider}",
                last_used_at=existing.last_used_at if existing is not None else None,
            )
            self._items[key] = stored
        return replace(stored)

    async def set_status(
        self, user_id: str, provider: str, status: CredentialStatus, *, tenant_id: str = "default"
    ) -> bool:
        key = (tenant_id, user_id, provider)
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return False
            self._items[key] = replace(item, status=status)
            return True

    async def touch(
        self, user_id: str, providers: list[str], when: datetime, *, tenant_id: str = "default"
    ) -> None:
        with self._lock:
            for provider in providers:
                key = (tenant_id, user_id, provider)
                item = self._items.get(key)
                if item is not None:
                    self._items[key] = replace(item, last_used_at=when)
