"""Persistence models for sync state.

Three tables:
- IdentityMappingModel: one row per (integration, key); the idempotence record
- IntegrationConfigModel: one JSON document per integration (written atomically)
- IntegrationMessageModel: operator-visible warnings and errors
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.syncbridge.core.database import Base


class IdentityMappingModel(Base):
    """Mapping between an external id and its counterpart in the other system."""

    __tablename__ = "identity_mappings"
    __table_args__ = (
        UniqueConstraint("integration_id", "key", name="uq_identity_mappings_integration_key"),
        Index("ix_identity_mappings_integration_type", "integration_id", "entity_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[str] = mapped_column(String(100), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    counterpart_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    sync_method: Mapped[str] = mapped_column(String(20), nullable=False, default="webhook")
    last_action: Mapped[str | None] = mapped_column(String(30), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    mapping_metadata: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class IntegrationConfigModel(Base):
    """Integration configuration document (subscriptions, scoping, caches)."""

    __tablename__ = "integration_configs"

    integration_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    config: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class IntegrationMessageModel(Base):
    """Persistent warning or error shown to the integration's operator."""

    __tablename__ = "integration_messages"
    __table_args__ = (Index("ix_integration_messages_integration", "integration_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
