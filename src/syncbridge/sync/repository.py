"""PostgreSQL-backed mapping and configuration stores.

Both stores use the session_factory callable pattern: an async generator
yielding AsyncSession instances (``src.syncbridge.core.database.get_session``).
Mappings are scoped to one integration id; the merge semantics are shared
with the in-memory store via ``merge_mapping``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.syncbridge.models.sync import (
    IdentityMappingModel,
    IntegrationConfigModel,
    IntegrationMessageModel,
)
from src.syncbridge.sync.schemas import (
    EntityType,
    IdentityMapping,
    IntegrationConfig,
    IntegrationMessage,
    MessageLevel,
)
from src.syncbridge.sync.store import IntegrationConfigStore, MappingStore, merge_mapping

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_mapping(model: IdentityMappingModel) -> IdentityMapping:
    """Convert IdentityMappingModel to IdentityMapping schema."""
    return IdentityMapping(
        key=model.key,
        counterpart_id=model.counterpart_id,
        entity_type=EntityType(model.entity_type),
        sync_method=model.sync_method,
        last_action=model.last_action,
        last_synced_at=model.last_synced_at,
        metadata=model.mapping_metadata or {},
    )


def _apply_mapping(model: IdentityMappingModel, mapping: IdentityMapping) -> None:
    data = mapping.model_dump(mode="json")
    model.counterpart_id = mapping.counterpart_id
    model.entity_type = data["entity_type"]
    model.sync_method = data["sync_method"]
    model.last_action = data["last_action"]
    model.last_synced_at = mapping.last_synced_at
    model.mapping_metadata = data["metadata"]


# ── Mapping Store ───────────────────────────────────────────────────────────


class SqlMappingStore(MappingStore):
    """Identity mappings for one integration, stored in ``identity_mappings``.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        integration_id: Integration whose mappings this store addresses.
    """

    def __init__(self, session_factory: SessionFactory, integration_id: str) -> None:
        self._session_factory = session_factory
        self._integration_id = integration_id

    def _select(self, key: str):
        return select(IdentityMappingModel).where(
            IdentityMappingModel.integration_id == self._integration_id,
            IdentityMappingModel.key == key,
        )

    async def get(self, key: str) -> IdentityMapping | None:
        async for session in self._session_factory():
            result = await session.execute(self._select(key))
            model = result.scalar_one_or_none()
            return _model_to_mapping(model) if model else None
        return None

    async def upsert(self, key: str, changes: dict[str, Any]) -> IdentityMapping:
        async for session in self._session_factory():
            result = await session.execute(self._select(key).with_for_update())
            model = result.scalar_one_or_none()

            existing = _model_to_mapping(model) if model else None
            mapping = merge_mapping(key, existing, changes)

            if model is None:
                model = IdentityMappingModel(integration_id=self._integration_id, key=key)
                session.add(model)
            _apply_mapping(model, mapping)

            await session.commit()
            logger.debug(
                "mapping.upserted",
                integration_id=self._integration_id,
                key=key,
                entity_type=mapping.entity_type.value,
                created=existing is None,
            )
            return mapping
        raise RuntimeError("session factory yielded no session")

    async def delete(self, key: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(IdentityMappingModel).where(
                    IdentityMappingModel.integration_id == self._integration_id,
                    IdentityMappingModel.key == key,
                )
            )
            await session.commit()
            return (result.rowcount or 0) > 0
        return False


# ── Configuration Store ─────────────────────────────────────────────────────


class SqlConfigStore(IntegrationConfigStore):
    """Integration configuration documents and operator messages.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def load(self, integration_id: str) -> IntegrationConfig | None:
        async for session in self._session_factory():
            model = await session.get(IntegrationConfigModel, integration_id)
            if model is None:
                return None
            return IntegrationConfig.model_validate(
                {**model.config, "integration_id": integration_id}
            )
        return None

    async def save(self, config: IntegrationConfig) -> None:
        document = config.model_dump(mode="json")
        async for session in self._session_factory():
            model = await session.get(IntegrationConfigModel, config.integration_id)
            if model is None:
                session.add(
                    IntegrationConfigModel(integration_id=config.integration_id, config=document)
                )
            else:
                model.config = document
            await session.commit()
            logger.info(
                "integration.config_saved",
                integration_id=config.integration_id,
                subscriptions=sorted(c.value for c in config.subscriptions),
            )

    async def add_message(self, integration_id: str, message: IntegrationMessage) -> None:
        async for session in self._session_factory():
            session.add(
                IntegrationMessageModel(
                    integration_id=integration_id,
                    level=message.level.value,
                    title=message.title,
                    message=message.message,
                    created_at=message.timestamp,
                )
            )
            await session.commit()

    async def list_messages(
        self, integration_id: str, level: MessageLevel | None = None
    ) -> list[IntegrationMessage]:
        async for session in self._session_factory():
            stmt = select(IntegrationMessageModel).where(
                IntegrationMessageModel.integration_id == integration_id
            )
            if level is not None:
                stmt = stmt.where(IntegrationMessageModel.level == level.value)
            stmt = stmt.order_by(IntegrationMessageModel.created_at.desc())
            result = await session.execute(stmt)
            return [
                IntegrationMessage(
                    level=MessageLevel(m.level),
                    title=m.title,
                    message=m.message,
                    timestamp=m.created_at,
                )
                for m in result.scalars().all()
            ]
        return []
