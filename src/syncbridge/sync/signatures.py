"""Inbound webhook signature verification.

Two schemes are supported:

Scheme A (CRM): ``HMAC-SHA256(secret, body)`` hex-encoded, delivered in a
single header. Lengths are compared before the constant-time compare so a
mismatched-length header is rejected without comparing.

Scheme B (telephony): composite header ``hmac;version;timestamp;signature``
with a base64 digest and a per-event-type secret. The exact canonical form
of "timestamp + body" is not documented upstream, so the verifier walks an
ordered list of candidate canonicalizations (configuration data, see
``Settings.SIGNATURE_CANDIDATES``) and accepts on the first match. The
matched candidate is logged so the list can be narrowed once confirmed.

Both verifiers are pure: identical inputs always give the same answer.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from collections.abc import Mapping, Sequence
from enum import Enum

import structlog
from pydantic import BaseModel

from src.syncbridge.exceptions import SignatureInvalid
from src.syncbridge.sync.schemas import IntegrationConfig, SubscriptionCategory

logger = structlog.get_logger(__name__)

CRM_SIGNATURE_HEADERS: tuple[str, ...] = (
    "x-attio-signature",
    "attio-signature",
    "x-webhook-signature",
)
TELEPHONY_SIGNATURE_HEADER = "openphone-signature"


class WebhookSource(str, Enum):
    CRM = "crm"
    TELEPHONY = "telephony"


class Canonicalization(str, Enum):
    """How the signed string is assembled from timestamp and body."""

    TIMESTAMP_BODY = "timestamp_body"
    TIMESTAMP_DOT_BODY = "timestamp_dot_body"


class KeyEncoding(str, Enum):
    """How the stored signing key is turned into HMAC key bytes."""

    RAW = "raw"
    BASE64 = "base64"


class SignatureCandidate(BaseModel, frozen=True):
    canonicalization: Canonicalization
    key_encoding: KeyEncoding

    @property
    def name(self) -> str:
        return f"{self.canonicalization.value}:{self.key_encoding.value}"

    @classmethod
    def parse(cls, value: str) -> SignatureCandidate:
        """Parse ``"<canonicalization>:<key-encoding>"``.

        Raises:
            ValueError: If either part is not a known value.
        """
        canonical, _, encoding = value.partition(":")
        return cls(
            canonicalization=Canonicalization(canonical.strip()),
            key_encoding=KeyEncoding(encoding.strip() or KeyEncoding.RAW.value),
        )


DEFAULT_SIGNATURE_CANDIDATES: tuple[SignatureCandidate, ...] = (
    SignatureCandidate(canonicalization=Canonicalization.TIMESTAMP_BODY, key_encoding=KeyEncoding.RAW),
    SignatureCandidate(canonicalization=Canonicalization.TIMESTAMP_BODY, key_encoding=KeyEncoding.BASE64),
    SignatureCandidate(canonicalization=Canonicalization.TIMESTAMP_DOT_BODY, key_encoding=KeyEncoding.RAW),
    SignatureCandidate(canonicalization=Canonicalization.TIMESTAMP_DOT_BODY, key_encoding=KeyEncoding.BASE64),
)


class CompositeSignature(BaseModel, frozen=True):
    scheme: str
    version: str
    timestamp: str
    signature: str


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # Header mappings from HTTP frameworks are case-insensitive, plain dicts are not.
    value = headers.get(name)
    if value is None:
        lowered = {k.lower(): v for k, v in headers.items()}
        value = lowered.get(name)
    return value


def detect_source(headers: Mapping[str, str]) -> WebhookSource | None:
    """Classify an inbound delivery by the signature header it carries."""
    for name in CRM_SIGNATURE_HEADERS:
        if _header(headers, name):
            return WebhookSource.CRM
    if _header(headers, TELEPHONY_SIGNATURE_HEADER):
        return WebhookSource.TELEPHONY
    return None


# ── Scheme A: hex HMAC-SHA256 ───────────────────────────────────────────────


def verify_hex_signature(
    signature: str | None,
    payload: str | bytes,
    secret: str | None,
) -> bool:
    """Verify a hex HMAC-SHA256 signature over the raw payload.

    Args:
        signature: Hex digest from the request header.
        payload: Raw request body.
        secret: Shared webhook secret stored at provisioning time.

    Returns:
        True only if the signature matches. Missing signature or secret is False.
    """
    if not signature or not secret:
        return False

    expected = hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()

    if len(signature) != len(expected):
        return False

    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


# ── Scheme B: composite header, base64 digest ───────────────────────────────


def parse_composite_header(header: str | None) -> CompositeSignature:
    """Split ``hmac;version;timestamp;signature`` into its fields.

    Raises:
        SignatureInvalid: If the header is missing, has the wrong field
            count, or its scheme tag is not ``hmac``.
    """
    if not header:
        raise SignatureInvalid("missing signature header")

    parts = header.split(";")
    if len(parts) != 4:
        raise SignatureInvalid(f"expected 4 header fields, got {len(parts)}")

    scheme, version, timestamp, signature = parts
    if scheme != "hmac":
        raise SignatureInvalid(f"unsupported signature scheme '{scheme}'")

    return CompositeSignature(scheme=scheme, version=version, timestamp=timestamp, signature=signature)


def category_for_event(event_type: str | None) -> SubscriptionCategory | None:
    """Map a telephony event type to the subscription whose key signs it.

    ``call.summary*`` must be checked before the broader ``call.*`` prefix.
    """
    if not event_type:
        return None
    if event_type.startswith("call.summary"):
        return SubscriptionCategory.CALL_SUMMARIES
    if event_type.startswith("call."):
        return SubscriptionCategory.CALLS
    if event_type.startswith("message."):
        return SubscriptionCategory.MESSAGES
    return None


def select_signing_key(
    event_type: str | None,
    keys: Mapping[SubscriptionCategory, str | None],
) -> str:
    """Pick the webhook key for an event type, failing closed.

    Raises:
        SignatureInvalid: For an unknown event type or a missing key.
    """
    category = category_for_event(event_type)
    if category is None:
        raise SignatureInvalid(f"no signing key for event type '{event_type}'")

    key = keys.get(category)
    if not key:
        raise SignatureInvalid(f"webhook key not configured for {category.value}")
    return key


def _key_bytes(key: str, encoding: KeyEncoding) -> bytes | None:
    if encoding is KeyEncoding.RAW:
        return key.encode("utf-8")
    try:
        return base64.b64decode(key, validate=True)
    except (binascii.Error, ValueError):
        return None


def _signed_bytes(timestamp: str, body: bytes, canonicalization: Canonicalization) -> bytes:
    if canonicalization is Canonicalization.TIMESTAMP_DOT_BODY:
        return timestamp.encode("utf-8") + b"." + body
    return timestamp.encode("utf-8") + body


def match_composite_signature(
    parsed: CompositeSignature,
    body: str | bytes,
    key: str,
    candidates: Sequence[SignatureCandidate] = DEFAULT_SIGNATURE_CANDIDATES,
) -> SignatureCandidate | None:
    """Return the first candidate canonicalization whose digest matches, if any."""
    raw_body = _to_bytes(body)
    provided = parsed.signature.encode("utf-8")

    for candidate in candidates:
        key_bytes = _key_bytes(key, candidate.key_encoding)
        if key_bytes is None:
            continue
        digest = hmac.new(
            key_bytes,
            _signed_bytes(parsed.timestamp, raw_body, candidate.canonicalization),
            hashlib.sha256,
        ).digest()
        expected = base64.b64encode(digest)
        if len(expected) == len(provided) and hmac.compare_digest(expected, provided):
            return candidate
    return None


# ── Verifier ────────────────────────────────────────────────────────────────


class SignatureVerifier:
    """Verifies inbound deliveries against an integration's stored secrets.

    Args:
        candidates: Ordered composite-signature canonicalizations to accept.
    """

    def __init__(self, candidates: Sequence[SignatureCandidate] = DEFAULT_SIGNATURE_CANDIDATES) -> None:
        if not candidates:
            raise ValueError("At least one signature candidate is required")
        self._candidates = tuple(candidates)

    @classmethod
    def from_names(cls, names: Sequence[str]) -> SignatureVerifier:
        return cls([SignatureCandidate.parse(name) for name in names])

    @property
    def candidates(self) -> tuple[SignatureCandidate, ...]:
        return self._candidates

    def verify_crm(
        self,
        headers: Mapping[str, str],
        body: str | bytes,
        config: IntegrationConfig,
    ) -> None:
        """Verify a CRM delivery (scheme A).

        Raises:
            SignatureInvalid: Missing header, missing secret, or mismatch.
        """
        signature = next(
            (value for name in CRM_SIGNATURE_HEADERS if (value := _header(headers, name))),
            None,
        )
        if not signature:
            raise SignatureInvalid("missing signature header")

        secret = config.secret_for(SubscriptionCategory.CRM_RECORDS)
        if not secret:
            raise SignatureInvalid("webhook secret not configured")

        if not verify_hex_signature(signature, body, secret):
            raise SignatureInvalid("signature mismatch")

        logger.debug("signature.verified", source=WebhookSource.CRM.value, integration_id=config.integration_id)

    def verify_telephony(
        self,
        headers: Mapping[str, str],
        body: str | bytes,
        event_type: str | None,
        config: IntegrationConfig,
    ) -> SignatureCandidate:
        """Verify a telephony delivery (scheme B).

        Returns:
            The candidate canonicalization that matched.

        Raises:
            SignatureInvalid: Malformed header, unknown event type, missing
                key, or no candidate matched.
        """
        parsed = parse_composite_header(_header(headers, TELEPHONY_SIGNATURE_HEADER))
        keys = {category: config.secret_for(category) for category in SubscriptionCategory}
        key = select_signing_key(event_type, keys)

        matched = match_composite_signature(parsed, body, key, self._candidates)
        if matched is None:
            logger.warning(
                "signature.no_candidate_matched",
                integration_id=config.integration_id,
                event_type=event_type,
                candidates=[c.name for c in self._candidates],
            )
            raise SignatureInvalid("no matching signature format")

        logger.info(
            "signature.candidate_matched",
            integration_id=config.integration_id,
            event_type=event_type,
            candidate=matched.name,
        )
        return matched

    def verify(
        self,
        source: WebhookSource,
        headers: Mapping[str, str],
        body: str | bytes,
        event_type: str | None,
        config: IntegrationConfig,
    ) -> None:
        if source is WebhookSource.CRM:
            self.verify_crm(headers, body, config)
        else:
            self.verify_telephony(headers, body, event_type, config)
