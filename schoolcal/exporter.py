from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

from schoolcal.archive_store import ArchiveKey, ArchiveStore, build_owner_slug, merge_archive
from schoolcal.identity import assign_uids
from schoolcal.models import (
    SOURCE_SUBSTITUTIONS,
    AccountConfig,
    Archive,
    ArchiveMetadata,
    DomainRecord,
    KidConfig,
    utc_now,
)
from schoolcal.source import SourceBatch, SourceRecord, parse_source_date, parse_source_datetime

logger = logging.getLogger(__name__)

_TIME_PATTERN = re.compile(r"(\d{1,2}):(\d{2})")
PERIOD_TIMES_KEY = "period_times"


def owner_key(kid: KidConfig, kind: str) -> ArchiveKey:
    slug = build_owner_slug(kid.id, kid.first_name, kid.last_name, kid.class_name)
    return ArchiveKey(owner_slug=slug, source_kind=kind)


def normalize_time_label(label: str | None) -> str | None:
    if not label:
        return None
    cleaned = re.sub(r"[hH.]", ":", label.strip())
    match = _TIME_PATTERN.search(cleaned)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def _extract_times(detail: str) -> list[str]:
    cleaned = re.sub(r"[hH.]", ":", detail or "")
    labels = [normalize_time_label(f"{h}:{m}") for h, m in _TIME_PATTERN.findall(cleaned)]
    return [label for label in labels if label]


def extract_period_times(rows: list[dict[str, Any]]) -> dict[str, dict[str, str]]:
    """Build ``{period: {"start": "HH:MM", "end": "HH:MM"}}`` from timetable info rows."""
    table: dict[str, dict[str, str]] = {}
    for row in rows or []:
        if not isinstance(row, dict) or row.get("type") != "info":
            continue
        raw_period = row.get("value", row.get("period"))
        try:
            period = int(str(raw_period).strip())
        except (TypeError, ValueError):
            continue
        times = _extract_times(str(row.get("detail") or ""))
        if len(times) >= 2:
            table[str(period)] = {"start": times[0], "end": times[-1]}
    return table


def combine_date_and_time(day: date, label: str, tz_name: str) -> datetime | None:
    normalized = normalize_time_label(label)
    if normalized is None:
        return None
    hour, minute = (int(part) for part in normalized.split(":"))
    local = datetime(day.year, day.month, day.day, hour, minute, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def _join(parts: list[str], separator: str = ", ") -> str:
    return separator.join(part for part in parts if part)


def substitution_summary(record: SourceRecord) -> str:
    details = record.details
    base = f"{record.slot}. period substitution" if record.slot else "Substitution"
    original_class = str(details.get("original_class") or "")
    substitute_class = str(details.get("substitute_class") or "")
    original_teacher = str(details.get("original_teacher") or "")
    substitute_teacher = str(details.get("substitute_teacher") or "")

    parts: list[str] = []
    current_class = substitute_class or original_class
    if current_class:
        if original_class and substitute_class and original_class != substitute_class:
            parts.append(f"{current_class} (previously {original_class})")
        else:
            parts.append(current_class)
    current_teacher = substitute_teacher or original_teacher
    if current_teacher:
        if original_teacher and substitute_teacher and original_teacher != substitute_teacher:
            parts.append(f"with {current_teacher} (previously {original_teacher})")
        else:
            parts.append(f"with {current_teacher}")
    if record.location:
        parts.append(f"room {record.location}")
    note = str(details.get("note") or "")
    if note:
        parts.append(note)
    return f"{base}. {_join(parts)}" if parts else base


def _header_lines(account: AccountConfig, kid: KidConfig) -> list[str]:
    child = _join([kid.first_name, kid.last_name], " ")
    return [
        f"School: {account.school_name} ({account.short})",
        f"Child: {child} ({kid.class_name})".replace(" ()", ""),
    ]


def substitution_description(account: AccountConfig, kid: KidConfig, record: SourceRecord) -> str:
    lines = _header_lines(account, kid)
    labels = (
        ("original_teacher", "Original teacher"),
        ("substitute_teacher", "Substitute"),
        ("original_class", "Original subject"),
        ("substitute_class", "Substitute subject"),
    )
    if record.slot is not None:
        lines.append(f"Period: {record.slot}")
    for key, label in labels:
        if record.details.get(key):
            lines.append(f"{label}: {record.details[key]}")
    if record.location:
        lines.append(f"Room: {record.location}")
    if record.details.get("note"):
        lines.append(f"Note: {record.details['note']}")
    return "\n".join(lines)


def dated_description(account: AccountConfig, kid: KidConfig, record: SourceRecord) -> str:
    lines = _header_lines(account, kid)
    lines.append(f"Title: {record.title}")
    if record.raw_date:
        lines.append(f"Date: {record.raw_date}")
    if record.raw_time:
        lines.append(f"Time: {record.raw_time}")
    if record.category:
        lines.append(f"Category: {record.category}")
    return "\n".join(lines)


def _build_substitution(
    uid: str,
    record: SourceRecord,
    account: AccountConfig,
    kid: KidConfig,
    period_times: dict[str, dict[str, str]],
    tz_name: str,
) -> DomainRecord:
    day = parse_source_date(record.date or record.start)
    slot_times = period_times.get(str(record.slot)) if record.slot is not None else None
    metadata = {
        "period": record.slot,
        **{key: value for key, value in record.details.items() if value not in (None, "")},
        "period_start_local": slot_times.get("start") if slot_times else None,
        "period_end_local": slot_times.get("end") if slot_times else None,
    }
    start: date | datetime | None = day
    end: date | datetime | None = day
    all_day = True
    if day is not None and slot_times:
        timed_start = combine_date_and_time(day, slot_times.get("start", ""), tz_name)
        timed_end = combine_date_and_time(day, slot_times.get("end", ""), tz_name)
        if timed_start is not None:
            start = timed_start
            end = timed_end or timed_start
            all_day = False
    return DomainRecord(
        uid=uid,
        kind=SOURCE_SUBSTITUTIONS,
        start=start,
        end=end,
        all_day=all_day,
        summary=substitution_summary(record),
        description=substitution_description(account, kid, record),
        location=record.location,
        metadata=metadata,
    )


def _build_dated(uid: str, record: SourceRecord, account: AccountConfig, kid: KidConfig) -> DomainRecord:
    all_day = bool(record.all_day)
    if all_day:
        start: date | datetime | None = parse_source_date(record.start or record.date)
        end: date | datetime | None = parse_source_date(record.end) or start
    else:
        start = parse_source_datetime(record.start or record.date)
        end = parse_source_datetime(record.end) or start
    summary = f"{record.title} ({kid.class_name})" if kid.class_name else record.title
    return DomainRecord(
        uid=uid,
        kind=record.kind,
        start=start,
        end=end,
        all_day=all_day,
        summary=summary,
        description=dated_description(account, kid, record),
        location=record.location,
        metadata={
            "origin_id": record.origin_id,
            "raw_date": record.raw_date,
            "raw_time": record.raw_time,
            "category": record.category,
        },
    )


def build_domain_records(
    kind: str,
    account: AccountConfig,
    kid: KidConfig,
    records: list[SourceRecord],
    *,
    period_times: dict[str, dict[str, str]] | None = None,
    tz_name: str = "UTC",
) -> list[DomainRecord]:
    built: list[DomainRecord] = []
    for uid, record in assign_uids(kind, account.short, kid.id, records):
        if kind == SOURCE_SUBSTITUTIONS:
            built.append(_build_substitution(uid, record, account, kid, period_times or {}, tz_name))
        else:
            built.append(_build_dated(uid, record, account, kid))
    return built


@dataclass
class ExportOutcome:
    key: ArchiveKey
    archive: Archive
    extracted: int


def export_archive(
    store: ArchiveStore,
    account: AccountConfig,
    kid: KidConfig,
    batch: SourceBatch,
    *,
    existing: Archive | None = None,
    tz_name: str = "UTC",
) -> ExportOutcome:
    """Merge one extraction batch into the stored archive for (kid, kind) and save it."""
    key = owner_key(kid, batch.kind)
    auxiliary: dict[str, Any] = {}
    period_times: dict[str, dict[str, str]] = {}
    if batch.kind == SOURCE_SUBSTITUTIONS:
        stored = existing.metadata.auxiliary.get(PERIOD_TIMES_KEY) if existing is not None else None
        period_times = dict(stored or {}) or extract_period_times(batch.timetable)
        if period_times:
            auxiliary[PERIOD_TIMES_KEY] = period_times

    incoming = build_domain_records(
        batch.kind, account, kid, batch.records, period_times=period_times, tz_name=tz_name
    )
    last_update = batch.last_update
    if last_update is None and existing is not None:
        last_update = existing.metadata.last_update
    metadata = ArchiveMetadata(
        source_kind=batch.kind,
        owner={
            "id": kid.id,
            "first_name": kid.first_name,
            "last_name": kid.last_name,
            "class_name": kid.class_name,
        },
        school={"identifier": account.short, "display_name": account.school_name},
        last_update=last_update,
        generated_at=utc_now(),
        auxiliary=auxiliary,
    )
    archive = merge_archive(existing, incoming, metadata)
    store.save(key, archive)
    logger.info("Archive %s: %d extracted, %d stored", key, len(incoming), len(archive.entries))
    return ExportOutcome(key=key, archive=archive, extracted=len(incoming))
