"""CRM person record -> telephony contact transformation.

CRM attributes are arrays of historical values, each with an
``active_until`` timestamp; the current value has ``active_until = None``.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.syncbridge.clients.base import CRMClient

logger = structlog.get_logger(__name__)

CONTACT_SOURCE = "openphone-attio"
COMPANIES = "companies"


def get_active_value(values: list[dict[str, Any]] | None) -> dict[str, Any] | None:
    """First currently-active attribute value, else the first entry."""
    if not isinstance(values, list) or not values:
        return None
    for value in values:
        if value.get("active_until") is None:
            return value
    return values[0]


def record_id_of(record: dict[str, Any]) -> str | None:
    identifier = record.get("id")
    if isinstance(identifier, dict):
        return identifier.get("record_id")
    return identifier


def company_id_of(record: dict[str, Any]) -> str | None:
    company = get_active_value((record.get("values") or {}).get("company"))
    return company.get("target_record_id") if company else None


def company_name_of(company: dict[str, Any] | None) -> str | None:
    names = ((company or {}).get("values") or {}).get("name") or []
    return names[0].get("value") if names else None


class PersonTransformer:
    """Transforms CRM people into telephony contacts.

    Company references are resolved from a page-wide map fetched with a
    single ``$in`` query; records whose company is missing from the map
    fall back to an individual fetch.
    """

    def __init__(self, crm: CRMClient, source: str = CONTACT_SOURCE) -> None:
        self._crm = crm
        self._source = source

    async def fetch_company_map(self, records: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        """Batch-fetch the distinct companies referenced by ``records``.

        Returns an empty map when the batch query fails.
        """
        company_ids = list(dict.fromkeys(cid for cid in map(company_id_of, records) if cid))
        if not company_ids:
            return {}

        try:
            response = await self._crm.query_records(
                COMPANIES, {"filter": {"record_id": {"$in": company_ids}}}
            )
        except Exception as exc:
            logger.error("transform.company_batch_failed", count=len(company_ids), error=str(exc))
            return {}

        companies = {
            rid: company
            for company in (response.get("data") or [])
            if (rid := record_id_of(company))
        }
        missing = [cid for cid in company_ids if cid not in companies]
        if missing:
            logger.warning("transform.companies_missing", missing=missing)
        logger.info("transform.companies_fetched", requested=len(company_ids), found=len(companies))
        return companies

    async def _company_name(
        self, person_id: str | None, company_id: str, company_map: dict[str, dict[str, Any]] | None
    ) -> str | None:
        if company_map and company_id in company_map:
            return company_name_of(company_map[company_id])
        try:
            response = await self._crm.get_record(COMPANIES, company_id)
        except Exception as exc:
            logger.warning(
                "transform.company_fetch_failed",
                person_id=person_id,
                company_id=company_id,
                error=str(exc),
            )
            return None
        return company_name_of((response or {}).get("data"))

    async def transform(
        self,
        person: dict[str, Any],
        company_map: dict[str, dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """Build the telephony contact payload for one CRM person."""
        values = person.get("values") or {}
        person_id = record_id_of(person)

        name = get_active_value(values.get("name")) or {}
        first_name = (name.get("first_name") or "").strip() or "Unknown"
        last_name = name.get("last_name") or ""

        role_value = get_active_value(values.get("job_title")) or get_active_value(values.get("role"))
        role = role_value.get("value") if role_value else None

        emails = [
            {"name": "Email", "value": item["email_address"]}
            for item in values.get("email_addresses") or []
            if item.get("active_until") is None and item.get("email_address")
        ]
        phone_numbers = [
            {"name": "Phone", "value": item["phone_number"]}
            for item in values.get("phone_numbers") or []
            if item.get("active_until") is None and item.get("phone_number")
        ]

        company = None
        company_id = company_id_of(person)
        if company_id:
            company = await self._company_name(person_id, company_id, company_map)

        return {
            "externalId": person_id,
            "source": self._source,
            "sourceUrl": person.get("web_url"),
            "defaultFields": {
                "firstName": first_name,
                "lastName": last_name,
                "company": company,
                "role": role,
                "phoneNumbers": phone_numbers,
                "emails": emails,
            },
            "customFields": [],
        }
