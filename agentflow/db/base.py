"""Declarative base and tenant_id mixin for AgentFlow ORM models."""

from sqlalchemy import String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all AgentFlow ORM models.

    Every runtime table carries tenant_id so that one database can host
    several marketplaces; single-tenant deployments keep 'default'.
    Exposes metadata for Alembic.
    """

    tenant_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="default",
        index=True,
        doc="Tenant identifier; single-tenant default is 'default'.",
    )
