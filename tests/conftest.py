"""Shared fixtures for sync engine tests.

Provides:
- AsyncMock doubles for the CRM and telephony capability interfaces
- In-memory mapping and configuration stores
- An integration configuration with telephony line metadata
- Settings with a public BASE_URL and no voicemail delay
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.syncbridge.clients.base import CRMClient, TelephonyClient
from src.syncbridge.config import Settings
from src.syncbridge.sync.schemas import IntegrationConfig
from src.syncbridge.sync.store import InMemoryConfigStore, InMemoryMappingStore

INTEGRATION_ID = "int-test"
LINE_ID = "PN-line-1"
LINE_NUMBER = "+15550000001"


@pytest.fixture
def crm() -> AsyncMock:
    client = AsyncMock(spec=CRMClient)
    client.can_update_notes = False
    return client


@pytest.fixture
def telephony() -> AsyncMock:
    return AsyncMock(spec=TelephonyClient)


@pytest.fixture
def mappings() -> InMemoryMappingStore:
    return InMemoryMappingStore()


@pytest.fixture
def config() -> IntegrationConfig:
    return IntegrationConfig(
        integration_id=INTEGRATION_ID,
        enabled_resource_ids=[LINE_ID],
        resource_metadata={
            LINE_ID: {"number": LINE_NUMBER, "formattedNumber": "(555) 000-0001", "name": "Sales Line"},
        },
    )


@pytest.fixture
def config_store(config: IntegrationConfig) -> InMemoryConfigStore:
    return InMemoryConfigStore([config])


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        BASE_URL="https://sync.example.com",
        VOICEMAIL_FETCH_DELAY_SECONDS=0,
        NOTE_FORMAT="markdown",
        CRM_API_KEY="crm-key",
        TELEPHONY_API_KEY="tel-key",
    )
