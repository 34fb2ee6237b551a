"""Per-integration assembly of the sync engine.

``SyncIntegration`` wires the resolver, pipelines, router, provisioner and
backfill engine around one integration's configuration and stores.
``IntegrationFactory`` builds it from settings for the API and the
queue worker; tests construct ``SyncIntegration`` directly with doubles.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from src.syncbridge.clients.attio import AttioClient
from src.syncbridge.clients.base import CRMClient, TelephonyClient
from src.syncbridge.clients.quo import QuoClient
from src.syncbridge.config import Settings
from src.syncbridge.sync.activities import ActivityPipeline
from src.syncbridge.sync.backfill import BackfillEngine
from src.syncbridge.sync.enrichment import CallEnricher
from src.syncbridge.sync.object_types import ObjectTypeCache
from src.syncbridge.sync.provisioning import WebhookProvisioner
from src.syncbridge.sync.records import RecordSyncHandler
from src.syncbridge.sync.resolver import ContactResolver
from src.syncbridge.sync.router import EventRouter, RoutedEvent
from src.syncbridge.sync.schemas import (
    BackfillResult,
    IntegrationConfig,
    IntegrationMessage,
    MessageLevel,
    ProvisioningResult,
    TeardownResult,
)
from src.syncbridge.sync.signatures import SignatureVerifier, WebhookSource
from src.syncbridge.sync.store import IntegrationConfigStore, MappingStore

logger = structlog.get_logger(__name__)


class SyncIntegration:
    """The sync engine bound to one integration instance.

    Args:
        config: The integration's persisted configuration.
        crm: CRM capability interface.
        telephony: Telephony capability interface.
        config_store: Integration configuration store.
        mappings: Identity mapping store scoped to this integration.
        settings: Application settings.
    """

    def __init__(
        self,
        config: IntegrationConfig,
        crm: CRMClient,
        telephony: TelephonyClient,
        config_store: IntegrationConfigStore,
        mappings: MappingStore,
        settings: Settings,
    ) -> None:
        self.config = config
        self._config_store = config_store
        self.mappings = mappings

        self.object_types = ObjectTypeCache(crm, config.object_types)
        self.resolver = ContactResolver(crm, mappings)
        self.activities = ActivityPipeline(
            crm,
            telephony,
            mappings,
            self.resolver,
            config,
            note_format=settings.NOTE_FORMAT,
            service_name=settings.TELEPHONY_SERVICE_NAME,
            voicemail_delay=settings.VOICEMAIL_FETCH_DELAY_SECONDS,
        )
        self.enricher = CallEnricher(
            crm,
            telephony,
            mappings,
            config,
            note_format=settings.NOTE_FORMAT,
            service_name=settings.TELEPHONY_SERVICE_NAME,
        )
        self.records = RecordSyncHandler(crm, telephony, mappings, self.object_types)
        self.router = EventRouter(
            config.integration_id, self.activities, self.enricher, self.records, config_store
        )
        self.provisioner = WebhookProvisioner(
            crm,
            telephony,
            config_store,
            settings.webhook_url,
            settings.INTEGRATION_NAME,
        )
        self.backfill = BackfillEngine(crm, telephony, mappings, settings.BACKFILL_PAGE_SIZE)

    @property
    def integration_id(self) -> str:
        return self.config.integration_id

    async def handle(self, source: WebhookSource, body: dict[str, Any]) -> RoutedEvent:
        """Route one verified delivery, then persist any new object-type resolutions."""
        try:
            return await self.router.route(source, body)
        finally:
            await self.persist_object_types()

    async def persist_object_types(self) -> None:
        if not self.object_types.dirty:
            return
        latest = await self._config_store.load(self.integration_id) or self.config
        latest.object_types.update(self.object_types.snapshot())
        await self._config_store.save(latest)
        self.config.object_types = dict(latest.object_types)
        logger.debug("integration.object_types_persisted", integration_id=self.integration_id)

    async def provision(self) -> ProvisioningResult:
        return await self.provisioner.provision(self.config)

    async def teardown(self) -> TeardownResult:
        return await self.provisioner.teardown(self.config)

    async def list_messages(self, level: MessageLevel | None = None) -> list[IntegrationMessage]:
        return await self._config_store.list_messages(self.integration_id, level)

    async def run_backfill(
        self,
        object_type: str = "people",
        cursor: int | None = None,
        max_pages: int | None = 1,
    ) -> list[BackfillResult]:
        return await self.backfill.run(object_type, cursor, max_pages)


class IntegrationFactory:
    """Builds ``SyncIntegration`` instances from settings and stores.

    Args:
        settings: Application settings (API credentials, rendering options).
        config_store: Integration configuration store.
        mapping_store: Builds a mapping store scoped to an integration id.
        crm_factory: Optional CRM client builder (defaults to AttioClient).
        telephony_factory: Optional telephony client builder (defaults to QuoClient).
    """

    def __init__(
        self,
        settings: Settings,
        config_store: IntegrationConfigStore,
        mapping_store: Callable[[str], MappingStore],
        crm_factory: Callable[[], CRMClient] | None = None,
        telephony_factory: Callable[[], TelephonyClient] | None = None,
    ) -> None:
        self._settings = settings
        self.config_store = config_store
        self._mapping_store = mapping_store
        self._crm_factory = crm_factory or (
            lambda: AttioClient(settings.CRM_API_KEY, settings.CRM_API_BASE_URL)
        )
        self._telephony_factory = telephony_factory or (
            lambda: QuoClient(settings.TELEPHONY_API_KEY, settings.TELEPHONY_API_BASE_URL)
        )
        self.verifier = SignatureVerifier.from_names(settings.SIGNATURE_CANDIDATES)

    async def load_config(self, integration_id: str) -> IntegrationConfig | None:
        return await self.config_store.load(integration_id)

    async def build(self, integration_id: str, *, create: bool = False) -> SyncIntegration | None:
        """Assemble the engine for an integration.

        Returns None when the integration has no configuration, unless
        ``create`` is set, in which case an empty configuration is saved.
        """
        config = await self.config_store.load(integration_id)
        if config is None:
            if not create:
                return None
            config = IntegrationConfig(integration_id=integration_id)
            await self.config_store.save(config)
            logger.info("integration.created", integration_id=integration_id)

        return SyncIntegration(
            config=config,
            crm=self._crm_factory(),
            telephony=self._telephony_factory(),
            config_store=self.config_store,
            mappings=self._mapping_store(integration_id),
            settings=self._settings,
        )
