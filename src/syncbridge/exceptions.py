"""Exception hierarchy for the synchronization engine.

Only genuine failures are exceptions. Expected outcomes such as an
unmapped contact on a call, a duplicate delivery, or a summary arriving
for an unknown call are returned as typed result models instead.

Hierarchy:
    SyncError
    ├── SignatureInvalid      -- inbound webhook failed authentication
    ├── ContactNotFound       -- no eligible CRM record for a phone number
    ├── ConfigurationError    -- missing settings (e.g. BASE_URL)
    ├── ProvisioningError     -- webhook creation returned an unusable response
    ├── InvalidPayload        -- webhook body is structurally unusable
    ├── PartialSyncError      -- some items of a multi-item event failed upstream
    └── UpstreamAPIError      -- an external REST call failed
        └── UpstreamConflict  -- HTTP 409 on create
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all engine errors."""


class SignatureInvalid(SyncError):
    """Raised when an inbound webhook signature is missing, malformed or wrong."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Webhook signature verification failed: {reason}")
        self.reason = reason


class ContactNotFound(SyncError):
    """Raised when no previously-synced CRM record matches a phone number."""

    def __init__(self, phone_number: str) -> None:
        super().__init__(f"No synced contact found for phone number {phone_number}")
        self.phone_number = phone_number


class ConfigurationError(SyncError):
    """Raised when required configuration is missing."""


class ProvisioningError(SyncError):
    """Raised when a webhook subscription cannot be created or validated."""


class InvalidPayload(SyncError):
    """Raised when a webhook body cannot be processed at all."""


class PartialSyncError(SyncError):
    """Raised after a multi-item event was applied with upstream failures.

    Successful items are already recorded in the mapping store, so a retry
    of the whole event only re-attempts the failed items.
    """

    def __init__(self, message: str, failures: list[str]) -> None:
        super().__init__(message)
        self.failures = failures


class UpstreamAPIError(SyncError):
    """Raised when a CRM or telephony REST call fails.

    Args:
        service: Name of the external service ("crm" or "telephony").
        status_code: HTTP status code, or None for transport failures.
        message: Response body or error description.
    """

    def __init__(self, service: str, status_code: int | None, message: str) -> None:
        super().__init__(f"{service} API error ({status_code}): {message}")
        self.service = service
        self.status_code = status_code
        self.message = message

    @property
    def retryable(self) -> bool:
        """Rate limits and server errors are worth retrying; other 4xx are not."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class UpstreamConflict(UpstreamAPIError):
    """HTTP 409 -- the record already exists on the remote side."""
