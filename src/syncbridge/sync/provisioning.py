"""Webhook subscription provisioning and teardown for one integration.

Brings the external subscription state in line with the intended bundle:
one CRM record-change subscription, plus one telephony subscription each
for messages, calls and call summaries. Either the whole bundle for a side
ends up created and persisted in a single configuration write, or every
subscription created during the attempt is deleted again through the
transaction log.

The integration needs both event sources, so the overall result is a
success only when both sides are configured.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import partial
from typing import Any, NamedTuple

import structlog

from src.syncbridge.clients.base import CRMClient, TelephonyClient
from src.syncbridge.exceptions import ProvisioningError, UpstreamAPIError
from src.syncbridge.sync.schemas import (
    TELEPHONY_CATEGORIES,
    IntegrationConfig,
    IntegrationMessage,
    MessageLevel,
    ProvisioningResult,
    ProvisioningStatus,
    SideResult,
    SubscriptionCategory,
    TeardownResult,
    WebhookSubscription,
)
from src.syncbridge.sync.store import IntegrationConfigStore
from src.syncbridge.sync.transactions import TransactionLog

logger = structlog.get_logger(__name__)

CRM_RECORD_EVENTS: list[str] = ["record.created", "record.updated", "record.deleted"]


class TelephonyWebhookSpec(NamedTuple):
    category: SubscriptionCategory
    events: list[str]
    label: str
    create_method: str


# Creation order is fixed; rollback unwinds in reverse.
TELEPHONY_WEBHOOKS: tuple[TelephonyWebhookSpec, ...] = (
    TelephonyWebhookSpec(
        SubscriptionCategory.MESSAGES,
        ["message.received", "message.delivered"],
        "Messages",
        "create_message_webhook",
    ),
    TelephonyWebhookSpec(
        SubscriptionCategory.CALLS,
        ["call.completed", "call.recording.completed"],
        "Calls",
        "create_call_webhook",
    ),
    TelephonyWebhookSpec(
        SubscriptionCategory.CALL_SUMMARIES,
        ["call.summary.completed"],
        "Call Summaries",
        "create_call_summary_webhook",
    ),
)


def _is_gone(exc: Exception) -> bool:
    return isinstance(exc, UpstreamAPIError) and exc.status_code == 404


class WebhookProvisioner:
    """Creates and removes webhook subscriptions on both external services.

    Args:
        crm: CRM capability interface.
        telephony: Telephony capability interface.
        config_store: Persisted integration configuration.
        webhook_url: Builds the target URL for an integration id; may raise
            ConfigurationError (e.g. missing BASE_URL).
        integration_name: Prefix for telephony webhook labels.
    """

    def __init__(
        self,
        crm: CRMClient,
        telephony: TelephonyClient,
        config_store: IntegrationConfigStore,
        webhook_url: Callable[[str], str],
        integration_name: str = "SyncBridge",
    ) -> None:
        self._crm = crm
        self._telephony = telephony
        self._config_store = config_store
        self._webhook_url = webhook_url
        self._integration_name = integration_name

    async def provision(self, config: IntegrationConfig) -> ProvisioningResult:
        """Provision both sides; success requires both to be configured.

        ``config`` is updated in place with whatever was persisted.
        """
        crm = await self.provision_crm(config)
        telephony = await self.provision_telephony(config)

        success = (
            crm.status is not ProvisioningStatus.FAILED
            and telephony.status is not ProvisioningStatus.FAILED
        )

        for side, outcome in (("CRM", crm), ("Telephony", telephony)):
            if outcome.status is ProvisioningStatus.FAILED:
                await self._record_message(
                    config.integration_id,
                    MessageLevel.ERRORS,
                    f"{side} Webhook Setup Failed",
                    f"Could not set up {side.lower()} webhooks: {outcome.error}. "
                    "Manual sync is still available.",
                )

        logger.info(
            "provisioning.complete",
            integration_id=config.integration_id,
            success=success,
            crm=crm.status.value,
            telephony=telephony.status.value,
        )
        return ProvisioningResult(success=success, crm=crm, telephony=telephony)

    # ── CRM side ────────────────────────────────────────────────────────

    async def provision_crm(self, config: IntegrationConfig) -> SideResult:
        existing = config.subscriptions.get(SubscriptionCategory.CRM_RECORDS)
        if existing is not None:
            logger.info(
                "provisioning.crm_already_configured",
                integration_id=config.integration_id,
                webhook_id=existing.id,
            )
            return SideResult(
                status=ProvisioningStatus.ALREADY_CONFIGURED,
                subscription_ids={SubscriptionCategory.CRM_RECORDS: existing.id},
                webhook_url=existing.url,
            )

        log = TransactionLog("crm_webhooks")
        try:
            url = self._webhook_url(config.integration_id)
            response = await self._crm.create_webhook(
                url,
                [{"event_type": event, "filter": None} for event in CRM_RECORD_EVENTS],
            )
            data = response.get("data") or {}
            webhook_id = (data.get("id") or {}).get("webhook_id")
            if webhook_id:
                log.record("crm_records", webhook_id, partial(self._crm.delete_webhook, webhook_id))
            if not webhook_id:
                raise ProvisioningError("Invalid CRM webhook response: missing webhook ID")
            if not data.get("secret"):
                raise ProvisioningError("Invalid CRM webhook response: missing webhook secret")

            subscription = WebhookSubscription(
                id=webhook_id,
                secret=data["secret"],
                url=url,
                subscribed_events=list(CRM_RECORD_EVENTS),
            )
            updated = config.model_copy(deep=True)
            updated.subscriptions[SubscriptionCategory.CRM_RECORDS] = subscription
            await self._config_store.save(updated)
        except Exception as exc:
            await self._rollback(config.integration_id, log)
            logger.error("provisioning.crm_failed", integration_id=config.integration_id, error=str(exc))
            return SideResult(status=ProvisioningStatus.FAILED, error=str(exc))

        config.subscriptions = updated.subscriptions
        logger.info("provisioning.crm_configured", integration_id=config.integration_id, webhook_id=webhook_id)
        return SideResult(
            status=ProvisioningStatus.CONFIGURED,
            subscription_ids={SubscriptionCategory.CRM_RECORDS: webhook_id},
            webhook_url=url,
        )

    # ── Telephony side ──────────────────────────────────────────────────

    async def provision_telephony(self, config: IntegrationConfig) -> SideResult:
        present = [c for c in TELEPHONY_CATEGORIES if config.has_subscription(c)]

        if len(present) == len(TELEPHONY_CATEGORIES):
            logger.info("provisioning.telephony_already_configured", integration_id=config.integration_id)
            return SideResult(
                status=ProvisioningStatus.ALREADY_CONFIGURED,
                subscription_ids={c: config.subscriptions[c].id for c in present},
                webhook_url=config.subscriptions[present[0]].url,
            )

        if present:
            await self._cleanup_partial(config, present)

        log = TransactionLog("telephony_webhooks")
        created: dict[SubscriptionCategory, WebhookSubscription] = {}
        try:
            url = self._webhook_url(config.integration_id)
            for spec in TELEPHONY_WEBHOOKS:
                created[spec.category] = await self._create_telephony_webhook(spec, url, config, log)

            updated = config.model_copy(deep=True)
            for category in TELEPHONY_CATEGORIES:
                updated.subscriptions.pop(category, None)
            updated.subscriptions.update(created)
            await self._config_store.save(updated)
        except Exception as exc:
            await self._rollback(config.integration_id, log)
            logger.error(
                "provisioning.telephony_failed",
                integration_id=config.integration_id,
                created_before_failure=len(created),
                error=str(exc),
            )
            return SideResult(status=ProvisioningStatus.FAILED, error=str(exc))

        config.subscriptions = updated.subscriptions
        logger.info(
            "provisioning.telephony_configured",
            integration_id=config.integration_id,
            resource_ids=config.enabled_resource_ids,
        )
        return SideResult(
            status=ProvisioningStatus.CONFIGURED,
            subscription_ids={c: s.id for c, s in created.items()},
            webhook_url=url,
        )

    async def _create_telephony_webhook(
        self,
        spec: TelephonyWebhookSpec,
        url: str,
        config: IntegrationConfig,
        log: TransactionLog,
    ) -> WebhookSubscription:
        create = getattr(self._telephony, spec.create_method)
        response: dict[str, Any] = await create(
            url=url,
            events=list(spec.events),
            label=f"{self._integration_name} - {spec.label}",
            resource_ids=list(config.enabled_resource_ids),
        )
        data = response.get("data") or {}
        webhook_id, key = data.get("id"), data.get("key")

        if webhook_id:
            log.record(spec.category.value, webhook_id, partial(self._telephony.delete_webhook, webhook_id))
        if not webhook_id:
            raise ProvisioningError(f"Invalid {spec.label} webhook response: missing webhook ID")
        if not key:
            raise ProvisioningError(f"Invalid {spec.label} webhook response: missing webhook key")

        logger.info(
            "provisioning.telephony_webhook_created",
            integration_id=config.integration_id,
            category=spec.category.value,
            webhook_id=webhook_id,
        )
        return WebhookSubscription(
            id=webhook_id,
            secret=key,
            url=url,
            subscribed_events=list(spec.events),
            resource_ids=list(config.enabled_resource_ids),
        )

    async def _cleanup_partial(
        self, config: IntegrationConfig, present: list[SubscriptionCategory]
    ) -> None:
        """Best-effort removal of a half-provisioned bundle before recreating it.

        Subscriptions that were deleted (or already gone upstream) are dropped
        from the persisted configuration; ones whose delete failed stay
        recorded so a later teardown can retry them.
        """
        logger.warning(
            "provisioning.partial_bundle_detected",
            integration_id=config.integration_id,
            present=[c.value for c in present],
        )
        removed: list[SubscriptionCategory] = []
        for category in present:
            webhook_id = config.subscriptions[category].id
            try:
                await self._telephony.delete_webhook(webhook_id)
                logger.info("provisioning.orphan_deleted", category=category.value, webhook_id=webhook_id)
            except Exception as exc:
                if not _is_gone(exc):
                    logger.warning(
                        "provisioning.orphan_delete_failed",
                        category=category.value,
                        webhook_id=webhook_id,
                        error=str(exc),
                    )
                    continue
            removed.append(category)

        if not removed:
            return
        updated = config.model_copy(deep=True)
        for category in removed:
            updated.subscriptions.pop(category, None)
        await self._config_store.save(updated)
        config.subscriptions = updated.subscriptions

    async def _rollback(self, integration_id: str, log: TransactionLog) -> None:
        if not len(log):
            return
        failures = await log.unwind()
        if failures:
            orphaned = ", ".join(f.step.resource_id for f in failures)
            await self._record_message(
                integration_id,
                MessageLevel.WARNINGS,
                "Webhook Rollback Incomplete",
                f"Could not delete webhooks after a failed setup; remove manually: {orphaned}",
            )

    # ── Teardown ────────────────────────────────────────────────────────

    async def teardown(self, config: IntegrationConfig) -> TeardownResult:
        """Delete every recorded subscription and forget only confirmed deletions.

        A subscription whose deletion failed stays recorded in the
        configuration for manual cleanup.
        """
        result = TeardownResult()
        remaining = dict(config.subscriptions)

        for category, subscription in config.subscriptions.items():
            client = self._crm if category is SubscriptionCategory.CRM_RECORDS else self._telephony
            try:
                await client.delete_webhook(subscription.id)
            except Exception as exc:
                if not _is_gone(exc):
                    logger.error(
                        "teardown.delete_failed",
                        integration_id=config.integration_id,
                        category=category.value,
                        webhook_id=subscription.id,
                        error=str(exc),
                    )
                    result.failed[subscription.id] = str(exc)
                    continue
            result.deleted.append(subscription.id)
            remaining.pop(category)

        config.subscriptions = remaining
        await self._config_store.save(config)

        if result.failed:
            await self._record_message(
                config.integration_id,
                MessageLevel.WARNINGS,
                "Webhook Cleanup Incomplete",
                "Could not delete webhooks: " + ", ".join(sorted(result.failed)),
            )

        logger.info(
            "teardown.complete",
            integration_id=config.integration_id,
            deleted=len(result.deleted),
            failed=len(result.failed),
        )
        return result

    async def _record_message(
        self, integration_id: str, level: MessageLevel, title: str, message: str
    ) -> None:
        await self._config_store.add_message(
            integration_id, IntegrationMessage(level=level, title=title, message=message)
        )
