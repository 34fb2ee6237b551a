"""Tests for webhook provisioning, rollback, and teardown.

Covers:
- CRM side: create, validate response, persist, idempotent re-run
- Telephony side: three subscriptions with resource scoping, rollback on Nth failure
- Partial bundle cleanup and rollback failure reporting
- Teardown keeps failed subscriptions recorded
- TransactionLog unwind ordering
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.syncbridge.exceptions import ConfigurationError, UpstreamAPIError
from src.syncbridge.sync.provisioning import CRM_RECORD_EVENTS, WebhookProvisioner
from src.syncbridge.sync.schemas import (
    MessageLevel,
    ProvisioningStatus,
    SubscriptionCategory,
    WebhookSubscription,
)
from src.syncbridge.sync.transactions import TransactionLog

INTEGRATION_ID = "int-test"
LINE_ID = "PN-line-1"

URL = f"https://sync.example.com/api/v1/integrations/{INTEGRATION_ID}/webhooks"


def _url(integration_id: str) -> str:
    return f"https://sync.example.com/api/v1/integrations/{integration_id}/webhooks"


def _telephony_ok(telephony: AsyncMock) -> None:
    telephony.create_message_webhook.return_value = {"data": {"id": "WH-msg", "key": "k-msg"}}
    telephony.create_call_webhook.return_value = {"data": {"id": "WH-call", "key": "k-call"}}
    telephony.create_call_summary_webhook.return_value = {"data": {"id": "WH-sum", "key": "k-sum"}}


def _crm_ok(crm: AsyncMock) -> None:
    crm.create_webhook.return_value = {"data": {"id": {"webhook_id": "crm-wh-1"}, "secret": "s3cret"}}


@pytest.fixture
def provisioner(crm, telephony, config_store) -> WebhookProvisioner:
    return WebhookProvisioner(crm, telephony, config_store, _url, "SyncBridge")


class TestProvisionCRM:
    async def test_creates_and_persists(self, provisioner, crm, config, config_store):
        _crm_ok(crm)

        result = await provisioner.provision_crm(config)

        assert result.status is ProvisioningStatus.CONFIGURED
        assert result.subscription_ids == {SubscriptionCategory.CRM_RECORDS: "crm-wh-1"}
        crm.create_webhook.assert_awaited_once_with(
            URL, [{"event_type": e, "filter": None} for e in CRM_RECORD_EVENTS]
        )
        stored = await config_store.load(INTEGRATION_ID)
        assert stored.secret_for(SubscriptionCategory.CRM_RECORDS) == "s3cret"
        assert config.has_subscription(SubscriptionCategory.CRM_RECORDS)

    async def test_already_configured_is_noop(self, provisioner, crm, config):
        config.subscriptions[SubscriptionCategory.CRM_RECORDS] = WebhookSubscription(
            id="crm-existing", secret="x", url=URL
        )
        result = await provisioner.provision_crm(config)
        assert result.status is ProvisioningStatus.ALREADY_CONFIGURED
        crm.create_webhook.assert_not_awaited()

    async def test_missing_secret_rolls_back(self, provisioner, crm, config, config_store):
        crm.create_webhook.return_value = {"data": {"id": {"webhook_id": "crm-wh-1"}}}

        result = await provisioner.provision_crm(config)

        assert result.status is ProvisioningStatus.FAILED
        assert "missing webhook secret" in result.error
        crm.delete_webhook.assert_awaited_once_with("crm-wh-1")
        stored = await config_store.load(INTEGRATION_ID)
        assert not stored.has_subscription(SubscriptionCategory.CRM_RECORDS)

    async def test_missing_id_fails_without_rollback(self, provisioner, crm, config):
        crm.create_webhook.return_value = {"data": {"secret": "s"}}
        result = await provisioner.provision_crm(config)
        assert result.status is ProvisioningStatus.FAILED
        assert "missing webhook ID" in result.error
        crm.delete_webhook.assert_not_awaited()

    async def test_missing_base_url(self, crm, telephony, config_store, config):
        def no_base(_integration_id: str) -> str:
            raise ConfigurationError("BASE_URL environment variable is required for webhook setup")

        provisioner = WebhookProvisioner(crm, telephony, config_store, no_base)
        result = await provisioner.provision_crm(config)
        assert result.status is ProvisioningStatus.FAILED
        assert "BASE_URL" in result.error
        crm.create_webhook.assert_not_awaited()


class TestProvisionTelephony:
    async def test_creates_three_scoped_webhooks(self, provisioner, telephony, config, config_store):
        _telephony_ok(telephony)

        result = await provisioner.provision_telephony(config)

        assert result.status is ProvisioningStatus.CONFIGURED
        assert result.subscription_ids == {
            SubscriptionCategory.MESSAGES: "WH-msg",
            SubscriptionCategory.CALLS: "WH-call",
            SubscriptionCategory.CALL_SUMMARIES: "WH-sum",
        }
        telephony.create_call_webhook.assert_awaited_once_with(
            url=URL,
            events=["call.completed", "call.recording.completed"],
            label="SyncBridge - Calls",
            resource_ids=[LINE_ID],
        )
        stored = await config_store.load(INTEGRATION_ID)
        assert stored.secret_for(SubscriptionCategory.CALL_SUMMARIES) == "k-sum"

    async def test_third_failure_rolls_back_first_two(self, provisioner, telephony, config, config_store):
        _telephony_ok(telephony)
        telephony.create_call_summary_webhook.side_effect = UpstreamAPIError("telephony", 500, "boom")

        result = await provisioner.provision_telephony(config)

        assert result.status is ProvisioningStatus.FAILED
        deleted = [c.args[0] for c in telephony.delete_webhook.await_args_list]
        assert deleted == ["WH-call", "WH-msg"]
        stored = await config_store.load(INTEGRATION_ID)
        assert not any(stored.has_subscription(c) for c in SubscriptionCategory)

    async def test_missing_key_rolls_back_including_created(self, provisioner, telephony, config):
        _telephony_ok(telephony)
        telephony.create_call_webhook.return_value = {"data": {"id": "WH-call"}}

        result = await provisioner.provision_telephony(config)

        assert result.status is ProvisioningStatus.FAILED
        assert "missing webhook key" in result.error
        deleted = {c.args[0] for c in telephony.delete_webhook.await_args_list}
        assert deleted == {"WH-call", "WH-msg"}
        telephony.create_call_summary_webhook.assert_not_awaited()

    async def test_rollback_failure_records_warning(self, provisioner, telephony, config, config_store):
        _telephony_ok(telephony)
        telephony.create_call_summary_webhook.side_effect = UpstreamAPIError("telephony", 500, "boom")
        telephony.delete_webhook.side_effect = [UpstreamAPIError("telephony", 500, "nope"), None]

        await provisioner.provision_telephony(config)

        warnings = await config_store.list_messages(INTEGRATION_ID, MessageLevel.WARNINGS)
        assert [m.title for m in warnings] == ["Webhook Rollback Incomplete"]
        assert "WH-call" in warnings[0].message

    async def test_partial_bundle_is_cleaned_and_recreated(self, provisioner, telephony, config):
        _telephony_ok(telephony)
        config.subscriptions[SubscriptionCategory.MESSAGES] = WebhookSubscription(
            id="WH-old", secret="old", url=URL
        )

        result = await provisioner.provision_telephony(config)

        assert result.status is ProvisioningStatus.CONFIGURED
        telephony.delete_webhook.assert_awaited_once_with("WH-old")
        assert config.subscriptions[SubscriptionCategory.MESSAGES].id == "WH-msg"

    async def test_cleanup_is_persisted_when_recreate_fails(self, provisioner, telephony, config, config_store):
        _telephony_ok(telephony)
        telephony.create_call_webhook.side_effect = UpstreamAPIError("telephony", 500, "boom")
        config.subscriptions[SubscriptionCategory.MESSAGES] = WebhookSubscription(
            id="WH-old", secret="old", url=URL
        )
        loaded = await config_store.load(INTEGRATION_ID)

        result = await provisioner.provision_telephony(loaded)

        assert result.status is ProvisioningStatus.FAILED
        stored = await config_store.load(INTEGRATION_ID)
        assert SubscriptionCategory.MESSAGES not in stored.subscriptions

    async def test_failed_orphan_delete_stays_recorded(self, provisioner, telephony, config, config_store):
        _telephony_ok(telephony)
        telephony.create_message_webhook.side_effect = UpstreamAPIError("telephony", 500, "boom")
        telephony.delete_webhook.side_effect = UpstreamAPIError("telephony", 500, "nope")
        config.subscriptions[SubscriptionCategory.CALLS] = WebhookSubscription(id="WH-old", secret="old", url=URL)
        loaded = await config_store.load(INTEGRATION_ID)

        await provisioner.provision_telephony(loaded)

        stored = await config_store.load(INTEGRATION_ID)
        assert stored.subscriptions[SubscriptionCategory.CALLS].id == "WH-old"

    async def test_full_bundle_is_noop(self, provisioner, telephony, config):
        for category in (
            SubscriptionCategory.MESSAGES,
            SubscriptionCategory.CALLS,
            SubscriptionCategory.CALL_SUMMARIES,
        ):
            config.subscriptions[category] = WebhookSubscription(id=f"WH-{category.value}", url=URL)

        result = await provisioner.provision_telephony(config)

        assert result.status is ProvisioningStatus.ALREADY_CONFIGURED
        telephony.create_message_webhook.assert_not_awaited()


class TestProvision:
    async def test_success_requires_both_sides(self, provisioner, crm, telephony, config, config_store):
        _crm_ok(crm)
        _telephony_ok(telephony)
        telephony.create_message_webhook.side_effect = UpstreamAPIError("telephony", 503, "down")

        result = await provisioner.provision(config)

        assert result.success is False
        assert result.crm.status is ProvisioningStatus.CONFIGURED
        assert result.telephony.status is ProvisioningStatus.FAILED
        errors = await config_store.list_messages(INTEGRATION_ID, MessageLevel.ERRORS)
        assert [m.title for m in errors] == ["Telephony Webhook Setup Failed"]

    async def test_both_sides_configured(self, provisioner, crm, telephony, config, config_store):
        _crm_ok(crm)
        _telephony_ok(telephony)

        result = await provisioner.provision(config)

        assert result.success is True
        stored = await config_store.load(INTEGRATION_ID)
        assert all(stored.has_subscription(c) for c in SubscriptionCategory)


class TestTeardown:
    def _subscribe_all(self, config) -> None:
        config.subscriptions = {
            SubscriptionCategory.CRM_RECORDS: WebhookSubscription(id="crm-1", url=URL),
            SubscriptionCategory.MESSAGES: WebhookSubscription(id="WH-msg", url=URL),
            SubscriptionCategory.CALLS: WebhookSubscription(id="WH-call", url=URL),
        }

    async def test_deletes_everything(self, provisioner, crm, telephony, config, config_store):
        self._subscribe_all(config)

        result = await provisioner.teardown(config)

        assert result.success
        assert sorted(result.deleted) == ["WH-call", "WH-msg", "crm-1"]
        crm.delete_webhook.assert_awaited_once_with("crm-1")
        assert (await config_store.load(INTEGRATION_ID)).subscriptions == {}

    async def test_not_found_counts_as_deleted(self, provisioner, telephony, config):
        self._subscribe_all(config)
        telephony.delete_webhook.side_effect = UpstreamAPIError("telephony", 404, "gone")

        result = await provisioner.teardown(config)

        assert result.success
        assert config.subscriptions == {}

    async def test_failed_deletion_stays_recorded(self, provisioner, telephony, config, config_store):
        self._subscribe_all(config)

        async def delete(webhook_id: str) -> None:
            if webhook_id == "WH-call":
                raise UpstreamAPIError("telephony", 500, "boom")

        telephony.delete_webhook.side_effect = delete

        result = await provisioner.teardown(config)

        assert not result.success
        assert list(result.failed) == ["WH-call"]
        stored = await config_store.load(INTEGRATION_ID)
        assert list(stored.subscriptions) == [SubscriptionCategory.CALLS]
        warnings = await config_store.list_messages(INTEGRATION_ID, MessageLevel.WARNINGS)
        assert warnings[0].title == "Webhook Cleanup Incomplete"


class TestTransactionLog:
    async def test_unwind_newest_first_and_continues_on_failure(self):
        order: list[str] = []

        def undo(name: str, fail: bool = False):
            async def _undo():
                order.append(name)
                if fail:
                    raise RuntimeError(f"{name} failed")

            return _undo

        log = TransactionLog("test")
        log.record("a", "id-a", undo("a"))
        log.record("b", "id-b", undo("b", fail=True))
        log.record("c", "id-c", undo("c"))

        failures = await log.unwind()

        assert order == ["c", "b", "a"]
        assert [f.step.resource_id for f in failures] == ["id-b"]
        assert len(log) == 0
