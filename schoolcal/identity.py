from __future__ import annotations

import hashlib
from collections import Counter
from datetime import date, datetime, timezone
from typing import Any, Iterable

from schoolcal.models import SOURCE_APPOINTMENTS, SOURCE_EXAMS, SOURCE_SUBSTITUTIONS
from schoolcal.source import parse_source_date

SENTINEL_DATE_KEY = "00000000"
FALLBACK_HASH_LENGTH = 12

ORIGIN_TAGS = {
    SOURCE_EXAMS: "sa",
    SOURCE_APPOINTMENTS: "at",
}


def format_date_key(value: Any) -> str:
    """Return ``YYYYMMDD`` for a date-like value, or the sentinel key when it cannot be read."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        parsed: date | None = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        parsed = parse_source_date(value)
    if parsed is None:
        return SENTINEL_DATE_KEY
    return parsed.strftime("%Y%m%d")


def _owner_prefix(source_short: str, owner_id: Any) -> str:
    return f"{source_short}-kid{owner_id}"


def slot_uid(source_short: str, owner_id: Any, date_value: Any, slot: Any, index: int = 0) -> str:
    slot_token = str(slot).strip() if slot not in (None, "") else "0"
    uid = f"{_owner_prefix(source_short, owner_id)}-{format_date_key(date_value)}-P{slot_token}"
    if index > 0:
        uid = f"{uid}-{index}"
    return uid


def origin_uid(source_short: str, owner_id: Any, kind: str, origin_id: Any) -> str:
    tag = ORIGIN_TAGS.get(kind, "at")
    return f"{_owner_prefix(source_short, owner_id)}-{tag}{origin_id}"


def fallback_uid(source_short: str, owner_id: Any, date_value: Any, title: str | None) -> str:
    digest = hashlib.sha1(  # nosec B324
        f"{source_short}|{owner_id}|{format_date_key(date_value)}|{title or ''}".encode("utf-8")
    ).hexdigest()[:FALLBACK_HASH_LENGTH]
    return f"{_owner_prefix(source_short, owner_id)}-at{digest}"


def derive_uid(kind: str, source_short: str, owner_id: Any, record: Any, index: int = 0) -> str:
    """Derive the stable uid for one extracted record.

    Substitutions are keyed by date and period slot. Exams and appointments use the
    portal-assigned id when there is one and fall back to a hash of date and title.
    """
    record_date = record.date or record.start
    if kind == SOURCE_SUBSTITUTIONS:
        return slot_uid(source_short, owner_id, record_date, record.slot, index)
    if record.origin_id not in (None, ""):
        return origin_uid(source_short, owner_id, kind, record.origin_id)
    return fallback_uid(source_short, owner_id, record_date, record.title)


def assign_uids(kind: str, source_short: str, owner_id: Any, records: Iterable[Any]) -> list[tuple[str, Any]]:
    """Pair each record of one extraction batch with its uid.

    Slot-based records that share (date, slot) within the batch get an increasing
    disambiguating index in extraction order; the first occurrence keeps index 0.
    """
    seen: Counter[str] = Counter()
    assigned: list[tuple[str, Any]] = []
    for record in records:
        index = 0
        if kind == SOURCE_SUBSTITUTIONS:
            base = slot_uid(source_short, owner_id, record.date or record.start, record.slot)
            index = seen[base]
            seen[base] += 1
        assigned.append((derive_uid(kind, source_short, owner_id, record, index), record))
    return assigned
