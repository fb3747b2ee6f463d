from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Protocol

import requests

from schoolcal.errors import SourceNotFoundError, SourceUnavailableError
from schoolcal.models import SOURCE_KINDS, AccountConfig, parse_iso_datetime

logger = logging.getLogger(__name__)

_GERMAN_DATE_PATTERN = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2,4})$")


def parse_source_datetime(value: Any) -> datetime | None:
    """Lenient instant parser for raw portal values; returns None instead of raising."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    match = _GERMAN_DATE_PATTERN.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        if year < 100:
            year += 2000
        try:
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            return None
    try:
        return parse_iso_datetime(text)
    except ValueError:
        return None


def parse_source_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    parsed = parse_source_datetime(value)
    if parsed is None:
        return None
    return parsed.astimezone(timezone.utc).date()


@dataclass
class SourceRecord:
    """One raw fact as yielded by a source extractor, before uid assignment."""

    kind: str
    title: str = ""
    origin_id: str | None = None
    date: str | None = None
    start: str | None = None
    end: str | None = None
    all_day: bool | None = None
    slot: int | None = None
    location: str = ""
    category: str = ""
    raw_date: str = ""
    raw_time: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, kind: str, data: dict[str, Any]) -> "SourceRecord":
        origin_id = data.get("id")
        slot = data.get("period", data.get("slot"))
        try:
            slot_value = int(slot) if slot not in (None, "") else None
        except (TypeError, ValueError):
            slot_value = None
        all_day = data.get("all_day")
        known = {
            "id",
            "title",
            "date",
            "start",
            "end",
            "all_day",
            "period",
            "slot",
            "room",
            "location",
            "category",
            "raw_date",
            "raw_time",
        }
        return cls(
            kind=kind,
            title=str(data.get("title", "") or "").strip(),
            origin_id=str(origin_id).strip() if origin_id not in (None, "") else None,
            date=_optional_text(data.get("date")),
            start=_optional_text(data.get("start")),
            end=_optional_text(data.get("end")),
            all_day=bool(all_day) if all_day is not None else None,
            slot=slot_value,
            location=str(data.get("room") or data.get("location") or "").strip(),
            category=str(data.get("category", "") or "").strip(),
            raw_date=str(data.get("raw_date", "") or "").strip(),
            raw_time=str(data.get("raw_time", "") or "").strip(),
            details={key: value for key, value in data.items() if key not in known},
        )


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class SourceBatch:
    kind: str
    records: list[SourceRecord]
    last_update: datetime | None = None
    timetable: list[dict[str, Any]] = field(default_factory=list)


class SourceExtractor(Protocol):
    def list_records(self, owner_id: str) -> SourceBatch:
        ...


class JsonFeedExtractor:
    """Reads one source kind for one account from a JSON feed endpoint.

    The feed answers ``GET <feed_url>/<kind>?owner=<id>`` with
    ``{"records": [...], "last_update": "...", "timetable": [...]}``.
    """

    def __init__(self, account: AccountConfig, kind: str, timeout: int = 30) -> None:
        if kind not in SOURCE_KINDS:
            raise ValueError(f"Unknown source kind: {kind}")
        self.account = account
        self.kind = kind
        self.timeout = timeout

    def _endpoint(self) -> str:
        return f"{self.account.feed_url.rstrip('/')}/{self.kind}"

    def list_records(self, owner_id: str) -> SourceBatch:
        if not self.account.feed_url:
            raise SourceNotFoundError(f"Account {self.account.short} has no feed_url.")
        auth = None
        if self.account.username:
            auth = (self.account.username, self.account.password)
        try:
            response = requests.get(
                self._endpoint(),
                params={"owner": owner_id},
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except (
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
        ) as exc:
            raise SourceNotFoundError(f"Bad feed_url for {self.account.short}: {exc}") from exc
        except requests.RequestException as exc:
            raise SourceUnavailableError(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code == 404:
            raise SourceNotFoundError(f"Feed not found: {self._endpoint()} (owner {owner_id})")
        if response.status_code >= 500 or response.status_code == 429:
            raise SourceUnavailableError(f"HTTP {response.status_code}: {response.text[:300]}")
        if not response.ok:
            raise SourceNotFoundError(f"HTTP {response.status_code}: {response.text[:300]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceUnavailableError(f"Feed returned invalid JSON: {exc}") from exc
        if isinstance(payload, list):
            payload = {"records": payload}
        if not isinstance(payload, dict):
            raise SourceUnavailableError("Feed payload root must be an object or a list.")
        records = [
            SourceRecord.from_dict(self.kind, item)
            for item in payload.get("records") or []
            if isinstance(item, dict)
        ]
        timetable = payload.get("timetable")
        return SourceBatch(
            kind=self.kind,
            records=records,
            last_update=parse_source_datetime(payload.get("last_update")),
            timetable=[row for row in timetable if isinstance(row, dict)] if isinstance(timetable, list) else [],
        )


def extract_with_retry(
    extractor: SourceExtractor,
    owner_id: str,
    *,
    attempts: int = 3,
    delay_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> SourceBatch:
    """Call ``extractor.list_records`` retrying transient failures with linear backoff."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return extractor.list_records(owner_id)
        except SourceUnavailableError as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "Source unavailable for owner %s (attempt %d/%d): %s", owner_id, attempt, attempts, exc
            )
            sleep(delay_seconds * attempt)
    raise AssertionError("unreachable")
