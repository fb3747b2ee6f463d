from __future__ import annotations

import hashlib
import json
from typing import Any

from schoolcal.models import DomainRecord, serialize_temporal


def effective_reminders(record: DomainRecord, default_minutes: int | None = None) -> list[int]:
    if record.reminders:
        return [int(x) for x in record.reminders]
    if default_minutes is not None:
        return [int(default_minutes)]
    return []


def display_fields(record: DomainRecord, reminders: list[int] | None = None) -> dict[str, Any]:
    """The subset of a record that shows up in the calendar.

    Bookkeeping (``last_synced_at``, ``sync_hash``) and the opaque metadata bag are left
    out so that recording a push never changes the fingerprint.
    """
    return {
        "summary": record.summary or "",
        "description": record.description or "",
        "location": record.location or "",
        "start": serialize_temporal(record.start) or "",
        "end": serialize_temporal(record.end) or "",
        "all_day": bool(record.all_day),
        "reminders": sorted(reminders if reminders is not None else (record.reminders or [])),
    }


def compute_sync_hash(record: DomainRecord, reminders: list[int] | None = None) -> str:
    canonical = json.dumps(display_fields(record, reminders), sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()  # nosec B324
