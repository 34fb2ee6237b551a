"""Identity mapping and integration configuration store interfaces.

The mapping store is the single authoritative source of sync state; every
idempotence decision routes through ``get``. Each key is independently
owned, so no cross-key transactions are needed.

Concrete implementations:
- InMemoryMappingStore / InMemoryConfigStore: process-local (tests, CLI dry runs)
- SqlMappingStore / SqlConfigStore (src.syncbridge.sync.repository): PostgreSQL
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from src.syncbridge.sync.schemas import (
    IdentityMapping,
    IntegrationConfig,
    IntegrationMessage,
    MessageLevel,
)


def merge_mapping(
    key: str,
    existing: IdentityMapping | None,
    changes: dict[str, Any],
) -> IdentityMapping:
    """Apply a partial update to a mapping, merging metadata shallowly.

    ``last_synced_at`` is stamped on every write unless the caller sets it.
    A new mapping requires ``entity_type`` in ``changes``.
    """
    changes = dict(changes)
    metadata_changes = changes.pop("metadata", None) or {}

    if existing is None:
        if "entity_type" not in changes:
            raise ValueError(f"entity_type is required to create mapping '{key}'")
        base: dict[str, Any] = {"key": key, "metadata": {}}
    else:
        base = existing.model_dump()

    base.update(changes)
    base["key"] = key
    base["metadata"] = {**base.get("metadata", {}), **metadata_changes}
    if "last_synced_at" not in changes:
        base["last_synced_at"] = datetime.now(timezone.utc)
    return IdentityMapping.model_validate(base)


class MappingStore(ABC):
    """Durable key -> IdentityMapping store scoped to one integration."""

    @abstractmethod
    async def get(self, key: str) -> IdentityMapping | None:
        """Return the live mapping for a key, or None."""
        ...

    @abstractmethod
    async def upsert(self, key: str, changes: dict[str, Any]) -> IdentityMapping:
        """Create or merge-update the mapping for a key and return it."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove an entity mapping. Returns True if one existed."""
        ...


class IntegrationConfigStore(ABC):
    """Persisted per-integration configuration and operator messages."""

    @abstractmethod
    async def load(self, integration_id: str) -> IntegrationConfig | None:
        ...

    @abstractmethod
    async def save(self, config: IntegrationConfig) -> None:
        """Persist the complete configuration in a single write."""
        ...

    @abstractmethod
    async def add_message(self, integration_id: str, message: IntegrationMessage) -> None:
        ...

    @abstractmethod
    async def list_messages(
        self, integration_id: str, level: MessageLevel | None = None
    ) -> list[IntegrationMessage]:
        ...


# ── In-memory implementations ───────────────────────────────────────────────


class InMemoryMappingStore(MappingStore):
    """Dict-backed mapping store."""

    def __init__(self) -> None:
        self._mappings: dict[str, IdentityMapping] = {}

    async def get(self, key: str) -> IdentityMapping | None:
        return self._mappings.get(key)

    async def upsert(self, key: str, changes: dict[str, Any]) -> IdentityMapping:
        mapping = merge_mapping(key, self._mappings.get(key), changes)
        self._mappings[key] = mapping
        return mapping

    async def delete(self, key: str) -> bool:
        return self._mappings.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._mappings)


class InMemoryConfigStore(IntegrationConfigStore):
    """Dict-backed configuration store."""

    def __init__(self, configs: list[IntegrationConfig] | None = None) -> None:
        self._configs: dict[str, IntegrationConfig] = {
            c.integration_id: c for c in (configs or [])
        }
        self._messages: dict[str, list[IntegrationMessage]] = {}

    async def load(self, integration_id: str) -> IntegrationConfig | None:
        config = self._configs.get(integration_id)
        return config.model_copy(deep=True) if config else None

    async def save(self, config: IntegrationConfig) -> None:
        self._configs[config.integration_id] = config.model_copy(deep=True)

    async def add_message(self, integration_id: str, message: IntegrationMessage) -> None:
        self._messages.setdefault(integration_id, []).append(message)

    async def list_messages(
        self, integration_id: str, level: MessageLevel | None = None
    ) -> list[IntegrationMessage]:
        messages = self._messages.get(integration_id, [])
        if level is not None:
            messages = [m for m in messages if m.level == level]
        return list(messages)
