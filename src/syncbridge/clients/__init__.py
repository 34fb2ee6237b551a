"""External service clients -- capability interfaces plus REST implementations.

Provides abstract CRMClient / TelephonyClient interfaces consumed by the
engine, with concrete httpx implementations:
- AttioClient: CRM records, notes and webhooks (Attio REST v2)
- QuoClient: calls, contacts, lines, users and webhooks (Quo public API)
"""

from src.syncbridge.clients.attio import AttioClient
from src.syncbridge.clients.base import CRMClient, TelephonyClient
from src.syncbridge.clients.quo import QuoClient, build_contacts_query

__all__ = [
    "AttioClient",
    "CRMClient",
    "QuoClient",
    "TelephonyClient",
    "build_contacts_query",
]
