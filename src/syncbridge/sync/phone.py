"""Phone number normalization and participant filtering."""

from __future__ import annotations

import re
from collections.abc import Iterable

import structlog

logger = structlog.get_logger(__name__)

_STRIP_PATTERN = re.compile(r"[\s()\-]")


def normalize_phone(phone: str | None) -> str | None:
    """Strip spaces, parentheses and hyphens; keep ``+`` and digits.

    >>> normalize_phone("+1 (555) 123-4567")
    '+15551234567'
    """
    if not phone or not isinstance(phone, str):
        return phone
    return _STRIP_PATTERN.sub("", phone)


def own_number_set(numbers: Iterable[str]) -> set[str]:
    return {n for n in (normalize_phone(raw) for raw in numbers) if n}


def external_participants(
    participants: list[str] | None,
    own_numbers: Iterable[str],
) -> list[str]:
    """Return the call participants that are not the telephony line's own numbers.

    Without any known own numbers the first participant is assumed to be
    the external party.
    """
    if not participants:
        return []

    own = own_number_set(own_numbers)
    if not own:
        logger.warning("participants.no_line_metadata", fallback=participants[0])
        return [participants[0]]

    external: list[str] = []
    seen: set[str] = set()
    for participant in participants:
        normalized = normalize_phone(participant)
        if not normalized or normalized in own or normalized in seen:
            continue
        seen.add(normalized)
        external.append(participant)

    if not external:
        logger.warning("participants.all_internal", count=len(participants))
    return external
